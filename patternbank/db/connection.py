"""SQLite connection and schema management.

Uses WAL mode for concurrent readers on file databases. Each Store owns
one connection; there is no module-level singleton.

Schema v2: patterns gained contradiction_flagged and version, trajectories
gained rationale, output and query_embedding.
"""

import sqlite3
from pathlib import Path

from ..logging_config import get_logger

log = get_logger("patternbank.db")

SCHEMA_VERSION = 2
MEMORY_DB = ":memory:"


def connect(path=MEMORY_DB) -> sqlite3.Connection:
    """Open a connection and make sure the schema is current.

    The connection is in autocommit mode; callers group writes with
    explicit BEGIN IMMEDIATE / COMMIT.
    """
    path = str(path)
    if path != MEMORY_DB:
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    db = sqlite3.connect(path, check_same_thread=False, isolation_level=None, timeout=30.0)
    db.row_factory = sqlite3.Row

    if path != MEMORY_DB:
        db.execute("PRAGMA journal_mode=WAL")
    db.execute("PRAGMA foreign_keys=ON")

    init_db(db)
    return db


def init_db(db: sqlite3.Connection) -> None:
    """Initialize database schema. Idempotent."""
    db.executescript("""
        -- Schema versioning
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS patterns (
            namespace TEXT NOT NULL,
            id TEXT NOT NULL,
            content TEXT NOT NULL,
            domain TEXT NOT NULL DEFAULT '',
            tags TEXT NOT NULL DEFAULT '[]',
            embedding BLOB NOT NULL,
            confidence REAL NOT NULL DEFAULT 0.5
                CHECK (confidence >= 0.05 AND confidence <= 0.95),
            usage_count INTEGER NOT NULL DEFAULT 0 CHECK (usage_count >= 0),
            success_count INTEGER NOT NULL DEFAULT 0
                CHECK (success_count >= 0 AND success_count <= usage_count),
            created_at TEXT NOT NULL,
            last_used_at TEXT,
            contradiction_flagged INTEGER NOT NULL DEFAULT 0,
            version INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (namespace, id)
        );

        CREATE INDEX IF NOT EXISTS idx_patterns_domain ON patterns(namespace, domain);

        -- Pattern relationships (advisory graph edges)
        CREATE TABLE IF NOT EXISTS pattern_links (
            namespace TEXT NOT NULL,
            from_id TEXT NOT NULL,
            to_id TEXT NOT NULL,
            relation TEXT NOT NULL
                CHECK (relation IN ('requires', 'causes', 'enhances', 'related_to')),
            created_at TEXT NOT NULL,
            PRIMARY KEY (namespace, from_id, to_id, relation)
        );

        CREATE INDEX IF NOT EXISTS idx_links_to ON pattern_links(namespace, to_id);

        CREATE TABLE IF NOT EXISTS trajectories (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL,
            namespace TEXT NOT NULL,
            query_text TEXT NOT NULL,
            used_pattern_ids TEXT NOT NULL DEFAULT '[]',
            verdict TEXT NOT NULL CHECK (verdict IN ('success', 'failure', 'partial')),
            verdict_confidence REAL NOT NULL DEFAULT 0,
            timestamp TEXT NOT NULL,
            consolidated INTEGER NOT NULL DEFAULT 0,
            rationale TEXT,
            output TEXT NOT NULL DEFAULT '',
            query_embedding BLOB,
            UNIQUE (namespace, id)
        );

        CREATE INDEX IF NOT EXISTS idx_trajectories_ns ON trajectories(namespace, seq);

        -- One row per applied (trajectory, pattern) reinforcement
        CREATE TABLE IF NOT EXISTS reinforcements (
            namespace TEXT NOT NULL,
            trajectory_id TEXT NOT NULL,
            pattern_id TEXT NOT NULL,
            applied_at TEXT NOT NULL,
            PRIMARY KEY (namespace, trajectory_id, pattern_id)
        );

        CREATE INDEX IF NOT EXISTS idx_reinforcements_pattern ON reinforcements(namespace, pattern_id);

        -- At most one consolidation pass per namespace
        CREATE TABLE IF NOT EXISTS consolidation_leases (
            namespace TEXT PRIMARY KEY,
            holder TEXT NOT NULL,
            acquired_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        );
    """)

    # Apply migrations for existing databases
    _apply_migrations(db)


def _columns(db: sqlite3.Connection, table: str) -> set:
    return {row[1] for row in db.execute(f"PRAGMA table_info({table})").fetchall()}


def current_version(db: sqlite3.Connection) -> int:
    row = db.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] else 0


def _apply_migrations(db: sqlite3.Connection) -> None:
    """Bring stores created by older releases up to SCHEMA_VERSION."""
    version = current_version(db)
    if version >= SCHEMA_VERSION:
        return

    db.execute("BEGIN IMMEDIATE")
    try:
        # v2: contradiction flag and optimistic-concurrency counter on patterns
        columns = _columns(db, "patterns")
        if "contradiction_flagged" not in columns:
            db.execute("ALTER TABLE patterns ADD COLUMN contradiction_flagged INTEGER NOT NULL DEFAULT 0")
        if "version" not in columns:
            db.execute("ALTER TABLE patterns ADD COLUMN version INTEGER NOT NULL DEFAULT 0")

        columns = _columns(db, "trajectories")
        if "rationale" not in columns:
            db.execute("ALTER TABLE trajectories ADD COLUMN rationale TEXT")
        if "output" not in columns:
            db.execute("ALTER TABLE trajectories ADD COLUMN output TEXT NOT NULL DEFAULT ''")
        if "query_embedding" not in columns:
            db.execute("ALTER TABLE trajectories ADD COLUMN query_embedding BLOB")

        db.execute(
            "INSERT OR REPLACE INTO schema_version VALUES (?, datetime('now'))",
            (SCHEMA_VERSION,)
        )
        db.execute("COMMIT")
    except sqlite3.Error:
        db.execute("ROLLBACK")
        raise

    if version:
        log.info("Migrated schema from v%d to v%d", version, SCHEMA_VERSION)
