"""SQLite schema for the durable snapshot store.

Database: data/snapshots.db (WAL mode)
Tables: endpoint_snapshots, schema_version
"""
import logging
import sqlite3
from pathlib import Path


logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1


def init_snapshot_database(db_path: str | Path) -> None:
    """Initialize snapshot database with schema.

    Creates tables if they don't exist and enables WAL mode for concurrent reads.

    Args:
        db_path: Path to SQLite database file
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)

    try:
        conn.execute("PRAGMA journal_mode=WAL")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        cursor = conn.execute("SELECT MAX(version) FROM schema_version")
        current_version = cursor.fetchone()[0] or 0

        if current_version < SCHEMA_VERSION:
            _apply_schema(conn)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            conn.commit()
            logger.info("Snapshot schema initialized (version %s)", SCHEMA_VERSION)
        else:
            logger.debug("Snapshot schema up to date (version %s)", current_version)

    finally:
        conn.close()


def _apply_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS endpoint_snapshots (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            store_id TEXT NOT NULL,
            endpoint TEXT NOT NULL,
            scope_id TEXT NOT NULL DEFAULT '',
            variant_key TEXT NOT NULL DEFAULT '',
            row_count INTEGER NOT NULL DEFAULT 0,
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(store_id, endpoint, scope_id, variant_key)
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_endpoint_snapshots_lookup
        ON endpoint_snapshots(store_id, endpoint, scope_id, updated_at DESC)
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_endpoint_snapshots_recent
        ON endpoint_snapshots(store_id, endpoint, updated_at DESC)
        """
    )
