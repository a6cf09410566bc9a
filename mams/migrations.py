"""
MAMS Schema Migrations
=======================
Versioned SQL applied on top of the base tables that MemoryStore creates.
Versions are applied in order, each in its own transaction, and recorded
in schema_version. A version that fails is rolled back and the store
refuses to open.

New versions go at the end of MIGRATIONS as a list of statements.
"""

import sqlite3
from collections import OrderedDict
from datetime import datetime, timezone

from mams.log import log


MIGRATIONS = OrderedDict()

# Version 1: ranking and adjacency indexes.
MIGRATIONS[1] = [
    "CREATE INDEX IF NOT EXISTS idx_chunks_bucket_rank ON chunks(bucket_id, score DESC, last_accessed DESC)",
    "CREATE INDEX IF NOT EXISTS idx_links_source ON links(source_id)",
    "CREATE INDEX IF NOT EXISTS idx_links_target ON links(target_id)",
]

# Version 2: reflection browsing by recency and by chunk.
MIGRATIONS[2] = [
    "CREATE INDEX IF NOT EXISTS idx_reflections_created ON reflections(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_reflections_chunk ON reflections(chunk_id)",
]

LATEST_VERSION = max(MIGRATIONS.keys())

_VERSION_TABLE = """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at TEXT NOT NULL
    )
"""


def get_version(conn) -> int:
    """Highest applied version. A database that predates versioning is at 0."""
    exists = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
    ).fetchone()
    if not exists:
        return 0
    return conn.execute("SELECT COALESCE(MAX(version), 0) FROM schema_version").fetchone()[0]


def pending_versions(conn) -> list[int]:
    current = get_version(conn)
    return [v for v in MIGRATIONS if v > current]


def _apply(conn, version: int):
    try:
        for stmt in MIGRATIONS[version]:
            conn.execute(stmt)
        conn.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
            (version, datetime.now(timezone.utc).isoformat()),
        )
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise RuntimeError(
            f"Schema migration to version {version} failed: {e}. "
            f"The memory database is unchanged at version {get_version(conn)}."
        ) from e


def run_migrations(conn) -> list[int]:
    """
    Bring the schema up to date, one transaction per version.

    Returns:
        The versions applied by this call, oldest first.
    """
    conn.execute(_VERSION_TABLE)
    conn.commit()
    applied = []
    for version in pending_versions(conn):
        _apply(conn, version)
        applied.append(version)
    if applied:
        log.info("Schema migrated to version %d", applied[-1])
    return applied
