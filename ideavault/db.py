import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager

logger = logging.getLogger("IdeaVault")

from .constants import DEFAULT_SETTINGS, SCHEMA_VERSION
from .errors import StorageError
from .paths import get_db_path
from .schema import SCHEMA_SQL
from .utils import json_dumps

KINDS = ("projects", "content")

# Columns that carry a secondary index in SCHEMA_SQL.
INDEXED_FIELDS = {
    "projects": frozenset({"created_at"}),
    "content": frozenset({"project_id", "created_at"}),
}

# Plain columns that may be projected by get_all(fields=...).
SCALAR_FIELDS = {
    "projects": frozenset({"id", "name", "created_at"}),
    "content": frozenset({"id", "project_id", "text", "created_at", "updated_at"}),
}


def _check_kind(kind):
    if kind not in KINDS:
        raise ValueError(f"unknown record kind: {kind!r}")


def _check_index(kind, field):
    _check_kind(kind)
    if field not in INDEXED_FIELDS[kind]:
        raise ValueError(f"{kind} has no index on {field!r}")


def _split_file(file):
    """Split an attachment into (metadata json, raw bytes) for the content row."""
    if not file:
        return None, None
    meta = {k: v for k, v in file.items() if k != "content"}
    data = file.get("content")
    if isinstance(data, str):
        data = data.encode("utf-8")
    return json_dumps(meta), sqlite3.Binary(bytes(data or b""))


def _row_to_project(row):
    return {
        "id": int(row["id"]),
        "name": row["name"],
        "created_at": row["created_at"],
    }


def _row_to_content(row):
    file = None
    if row["file_json"]:
        file = json.loads(row["file_json"])
        data = bytes(row["file_data"] or b"")
        file["content"] = data if file.get("is_image") else data.decode("utf-8")
    return {
        "id": int(row["id"]),
        "project_id": int(row["project_id"]),
        "text": row["text"] or "",
        "file": file,
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


_ROW_CONVERTERS = {
    "projects": _row_to_project,
    "content": _row_to_content,
}


class Transaction:
    """One open SQLite transaction. Obtained from IdeaVaultStore.transaction()."""

    def __init__(self, conn, write=True):
        self.conn = conn
        self.write = write

    def _require_write(self):
        if not self.write:
            raise ValueError("read-only transaction")

    # ── counters ──

    def next_id(self, counter_name):
        self._require_write()
        row = self.conn.execute(
            "SELECT value FROM counters WHERE name = ?", (counter_name,)
        ).fetchone()
        current = int(row["value"]) if row else 1
        self.conn.execute(
            """
            INSERT INTO counters(name, value) VALUES(?, ?)
            ON CONFLICT(name) DO UPDATE SET value=excluded.value
            """,
            (counter_name, current + 1),
        )
        logger.debug("next_id %s -> %d", counter_name, current)
        return current

    # ── records ──

    def put(self, kind, record):
        _check_kind(kind)
        self._require_write()
        if kind == "projects":
            self.conn.execute(
                "INSERT OR REPLACE INTO projects(id,name,created_at) VALUES(?,?,?)",
                (int(record["id"]), record["name"], record["created_at"]),
            )
            return record

        file_json, file_data = _split_file(record.get("file"))
        self.conn.execute(
            """
            INSERT OR REPLACE INTO content(
              id,project_id,text,file_json,file_data,created_at,updated_at
            ) VALUES(?,?,?,?,?,?,?)
            """,
            (
                int(record["id"]),
                int(record["project_id"]),
                record.get("text") or "",
                file_json,
                file_data,
                record["created_at"],
                record.get("updated_at"),
            ),
        )
        return record

    def get(self, kind, record_id):
        _check_kind(kind)
        row = self.conn.execute(f"SELECT * FROM {kind} WHERE id = ?", (int(record_id),)).fetchone()
        if not row:
            return None
        return _ROW_CONVERTERS[kind](row)

    def get_all(self, kind, fields=None):
        _check_kind(kind)
        if fields:
            unknown = set(fields) - SCALAR_FIELDS[kind]
            if unknown:
                raise ValueError(f"cannot project {kind} on {sorted(unknown)}")
            cols = ",".join(fields)
            rows = self.conn.execute(f"SELECT {cols} FROM {kind} ORDER BY id").fetchall()
            return [dict(r) for r in rows]
        rows = self.conn.execute(f"SELECT * FROM {kind} ORDER BY id").fetchall()
        return [_ROW_CONVERTERS[kind](r) for r in rows]

    def get_by_index(self, kind, field, value):
        _check_index(kind, field)
        rows = self.conn.execute(
            f"SELECT * FROM {kind} WHERE {field} = ? ORDER BY id", (value,)
        ).fetchall()
        return [_ROW_CONVERTERS[kind](r) for r in rows]

    def delete(self, kind, record_id):
        _check_kind(kind)
        self._require_write()
        cur = self.conn.execute(f"DELETE FROM {kind} WHERE id = ?", (int(record_id),))
        return cur.rowcount > 0

    def delete_by_index(self, kind, field, value):
        _check_index(kind, field)
        self._require_write()
        cur = self.conn.execute(f"DELETE FROM {kind} WHERE {field} = ?", (value,))
        return cur.rowcount

    def count(self, kind):
        _check_kind(kind)
        row = self.conn.execute(f"SELECT COUNT(*) AS total FROM {kind}").fetchone()
        return int(row["total"] if row else 0)

    def count_by_index(self, kind, field, value):
        _check_index(kind, field)
        row = self.conn.execute(
            f"SELECT COUNT(*) AS total FROM {kind} WHERE {field} = ?", (value,)
        ).fetchone()
        return int(row["total"] if row else 0)

    # ── meta ──

    def get_meta(self, key):
        row = self.conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key, value):
        self._require_write()
        self.conn.execute("INSERT OR REPLACE INTO meta(key,value) VALUES(?,?)", (key, value))


class IdeaVaultStore:
    _instance = None
    _lock = threading.Lock()

    @classmethod
    def get(cls):
        with cls._lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def __init__(self, db_path=None):
        self.db_path = db_path or get_db_path()
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        self._init_db()
        logger.info("Vault opened at %s", self.db_path)

    def _connect(self):
        # Autocommit mode: transactions are opened explicitly in transaction().
        conn = sqlite3.connect(self.db_path, timeout=5.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    def _init_db(self):
        try:
            conn = self._connect()
            try:
                conn.executescript(SCHEMA_SQL)
                self._migrate_db(conn)
                conn.execute(
                    "INSERT OR REPLACE INTO meta(key,value) VALUES('schema_version', ?)",
                    (SCHEMA_VERSION,),
                )
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open vault at {self.db_path}: {exc}") from exc

    def _migrate_db(self, conn):
        cols = {row["name"] for row in conn.execute("PRAGMA table_info(content)").fetchall()}
        if "updated_at" not in cols:
            conn.execute("ALTER TABLE content ADD COLUMN updated_at TEXT")

    @contextmanager
    def transaction(self, write=True):
        """Scope one logical operation.

        Write transactions start with BEGIN IMMEDIATE so the SQLite write lock
        is taken before the first read; a read-modify-write inside the block
        cannot interleave with another writer. Commits on normal exit, rolls
        back on any exception. sqlite3 errors come out as StorageError.
        """
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open vault at {self.db_path}: {exc}") from exc

        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            yield Transaction(conn, write=write)
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.rollback()
            logger.warning("Transaction rolled back: %s", exc)
            raise StorageError(str(exc)) from exc
        except BaseException:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    # ── single-operation helpers ──

    def next_id(self, counter_name):
        with self.transaction() as tx:
            return tx.next_id(counter_name)

    def put(self, kind, record):
        with self.transaction() as tx:
            return tx.put(kind, record)

    def get_record(self, kind, record_id):
        with self.transaction(write=False) as tx:
            return tx.get(kind, record_id)

    def get_all(self, kind):
        with self.transaction(write=False) as tx:
            return tx.get_all(kind)

    def get_by_index(self, kind, field, value):
        with self.transaction(write=False) as tx:
            return tx.get_by_index(kind, field, value)

    def delete(self, kind, record_id):
        with self.transaction() as tx:
            return tx.delete(kind, record_id)

    def count(self, kind):
        with self.transaction(write=False) as tx:
            return tx.count(kind)

    # ── settings ──

    def get_settings(self) -> dict:
        with self.transaction(write=False) as tx:
            raw = tx.get_meta("settings")
        if raw:
            try:
                stored = json.loads(raw)
                return {**DEFAULT_SETTINGS, **stored}
            except (json.JSONDecodeError, TypeError):
                logger.warning("Ignoring unreadable settings row")
        return dict(DEFAULT_SETTINGS)

    def set_settings(self, settings: dict):
        with self.transaction() as tx:
            tx.set_meta("settings", json.dumps(settings, ensure_ascii=False))
