class IdeaVaultError(Exception):
    """Base class for every error the vault raises on purpose."""


class ValidationError(IdeaVaultError, ValueError):
    """Caller-supplied data breaks a record invariant (empty name, empty idea)."""


class NotFoundError(IdeaVaultError, KeyError):
    """A referenced project or idea does not exist."""

    def __str__(self):
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""


class StorageError(IdeaVaultError):
    """The SQLite layer failed: open error, aborted transaction, disk full."""


class ConsistencyError(IdeaVaultError, RuntimeError):
    """A multi-row operation would have left mixed state; it was rolled back."""
