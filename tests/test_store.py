import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from ideavault.db import IdeaVaultStore
from ideavault.errors import StorageError


class EntityStoreTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = str(Path(self.temp_dir.name) / "ideavault.db")
        patcher = mock.patch("ideavault.db.get_db_path", return_value=self.db_path)
        self.addCleanup(patcher.stop)
        patcher.start()
        self.store = IdeaVaultStore()

    def tearDown(self):
        self.temp_dir.cleanup()

    def _project(self, project_id, name="Ideas", created_at="2026-10-01T09:00:00+00:00"):
        return {"id": project_id, "name": name, "created_at": created_at}

    def _content(self, content_id, project_id, text="note", file=None):
        return {
            "id": content_id,
            "project_id": project_id,
            "text": text,
            "file": file,
            "created_at": "2026-10-02T10:00:00+00:00",
            "updated_at": None,
        }

    def test_put_then_get_round_trips_project(self):
        self.store.put("projects", self._project(1))

        self.assertEqual(self.store.get_record("projects", 1), self._project(1))

    def test_put_is_idempotent(self):
        self.store.put("projects", self._project(1))
        self.store.put("projects", self._project(1))

        self.assertEqual(self.store.count("projects"), 1)

    def test_put_replaces_existing_record(self):
        self.store.put("projects", self._project(1))
        self.store.put("projects", self._project(1, name="Renamed"))

        self.assertEqual(self.store.get_record("projects", 1)["name"], "Renamed")

    def test_get_missing_returns_none(self):
        self.assertIsNone(self.store.get_record("content", 42))

    def test_get_by_index_filters_on_project(self):
        self.store.put("content", self._content(1, project_id=1))
        self.store.put("content", self._content(2, project_id=2))
        self.store.put("content", self._content(3, project_id=1))

        items = self.store.get_by_index("content", "project_id", 1)

        self.assertEqual([c["id"] for c in items], [1, 3])

    def test_get_by_index_rejects_unindexed_field(self):
        with self.assertRaises(ValueError):
            self.store.get_by_index("content", "text", "note")

    def test_unknown_kind_is_rejected(self):
        with self.assertRaises(ValueError):
            self.store.get_all("tags")

    def test_delete_missing_is_not_an_error(self):
        self.store.put("content", self._content(1, project_id=1))

        self.assertTrue(self.store.delete("content", 1))
        self.assertFalse(self.store.delete("content", 1))
        self.assertEqual(self.store.count("content"), 0)

    def test_image_attachment_bytes_round_trip(self):
        file = {
            "name": "pixel.png",
            "mime_type": "image/png",
            "size_bytes": 4,
            "content": b"\x89PNG",
            "extension": "png",
            "is_image": True,
            "width": 1,
            "height": 1,
        }
        self.store.put("content", self._content(1, project_id=1, text="", file=file))

        stored = self.store.get_record("content", 1)

        self.assertEqual(stored["file"], file)
        self.assertIsInstance(stored["file"]["content"], bytes)

    def test_text_attachment_comes_back_as_str(self):
        file = {
            "name": "notes.md",
            "mime_type": "text/markdown",
            "size_bytes": 7,
            "content": "# héllo",
            "extension": "md",
            "is_image": False,
            "width": None,
            "height": None,
        }
        self.store.put("content", self._content(1, project_id=1, file=file))

        self.assertEqual(self.store.get_record("content", 1)["file"]["content"], "# héllo")

    def test_failed_transaction_leaves_no_partial_write(self):
        with self.assertRaises(StorageError):
            with self.store.transaction() as tx:
                tx.put("projects", self._project(1))
                tx.conn.execute("INSERT INTO no_such_table VALUES (1)")

        self.assertIsNone(self.store.get_record("projects", 1))

    def test_non_storage_error_also_rolls_back(self):
        with self.assertRaises(RuntimeError):
            with self.store.transaction() as tx:
                tx.put("projects", self._project(1))
                raise RuntimeError("boom")

        self.assertEqual(self.store.count("projects"), 0)

    def test_read_transaction_refuses_writes(self):
        with self.assertRaises(ValueError):
            with self.store.transaction(write=False) as tx:
                tx.put("projects", self._project(1))

    def test_open_failure_is_reported_as_storage_error(self):
        with mock.patch("ideavault.db.sqlite3.connect", side_effect=sqlite3.OperationalError("unable to open")):
            with self.assertRaises(StorageError):
                self.store.count("projects")

    def test_schema_version_and_seeded_counters(self):
        with self.store.transaction(write=False) as tx:
            self.assertEqual(tx.get_meta("schema_version"), "2")
            rows = tx.conn.execute("SELECT name, value FROM counters ORDER BY name").fetchall()

        self.assertEqual([(r["name"], r["value"]) for r in rows], [("contentId", 1), ("projectId", 1)])

    def test_settings_default_and_persist(self):
        self.assertEqual(self.store.get_settings(), {"recent_window_days": 7})

        self.store.set_settings({"recent_window_days": 14})

        self.assertEqual(IdeaVaultStore().get_settings()["recent_window_days"], 14)

    def test_migration_adds_updated_at_to_old_content_table(self):
        old_path = str(Path(self.temp_dir.name) / "old.db")
        conn = sqlite3.connect(old_path)
        conn.execute(
            "CREATE TABLE content (id INTEGER PRIMARY KEY, project_id INTEGER NOT NULL, "
            "text TEXT NOT NULL DEFAULT '', file_json TEXT, file_data BLOB, created_at TEXT NOT NULL)"
        )
        conn.commit()
        conn.close()

        store = IdeaVaultStore(old_path)
        store.put("content", self._content(1, project_id=1))

        self.assertIsNone(store.get_record("content", 1)["updated_at"])


if __name__ == "__main__":
    unittest.main()
