"""Database schema DDL. All tables use CREATE IF NOT EXISTS for idempotency."""

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS repair_log (
    sequence_num INTEGER PRIMARY KEY AUTOINCREMENT,
    repair_id TEXT UNIQUE NOT NULL,
    timestamp TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'load',
    repairs TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_repair_log_timestamp ON repair_log(timestamp);
"""

# Whole-document write for the documents table; every write bumps the version.
UPSERT_DOCUMENT_SQL = """
INSERT INTO documents (key, value, version, updated_at)
VALUES (?, ?, 1, ?)
ON CONFLICT(key) DO UPDATE SET
    value = excluded.value,
    version = documents.version + 1,
    updated_at = excluded.updated_at
"""
