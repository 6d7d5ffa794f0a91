import logging

from .constants import APP_NAME, SCHEMA_VERSION
from .db import IdeaVaultStore
from .errors import ConsistencyError, IdeaVaultError, NotFoundError, StorageError, ValidationError
from .vault import IdeaVault

VERSION = "1.0.0"

logger = logging.getLogger(__name__)
logger.debug("%s %s (schema %s)", APP_NAME, VERSION, SCHEMA_VERSION)

__all__ = [
    "ConsistencyError",
    "IdeaVault",
    "IdeaVaultError",
    "IdeaVaultStore",
    "NotFoundError",
    "StorageError",
    "ValidationError",
    "VERSION",
]
