SCHEMA_SQL = r"""
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS meta (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS projects (
  id INTEGER PRIMARY KEY,
  name TEXT NOT NULL,
  created_at TEXT NOT NULL
);

-- project_id is an application-level reference; cascade delete is done by the vault.
CREATE TABLE IF NOT EXISTS content (
  id INTEGER PRIMARY KEY,
  project_id INTEGER NOT NULL,
  text TEXT NOT NULL DEFAULT '',
  file_json TEXT,
  file_data BLOB,
  created_at TEXT NOT NULL,
  updated_at TEXT
);

CREATE TABLE IF NOT EXISTS counters (
  name TEXT PRIMARY KEY,
  value INTEGER NOT NULL
);

INSERT OR IGNORE INTO counters(name, value) VALUES('projectId', 1);
INSERT OR IGNORE INTO counters(name, value) VALUES('contentId', 1);

CREATE INDEX IF NOT EXISTS idx_projects_created_at ON projects(created_at);
CREATE INDEX IF NOT EXISTS idx_content_project_id ON content(project_id);
CREATE INDEX IF NOT EXISTS idx_content_created_at ON content(created_at);
"""
