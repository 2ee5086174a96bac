"""
Local storage helpers: private paths, SQLite connections, schema migrations.

The persisted shapes of rules, decisions and nonce records are defined once
here. Each migration is applied in order inside one transaction and the
schema version is tracked in ``PRAGMA user_version``. Migrations run when a
store is constructed, never while serving a query.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from pathlib import Path

from .errors import MigrationError

logger = logging.getLogger(__name__)


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


_V1_RULES = """
CREATE TABLE rules (
    rule_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    kind TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    priority INTEGER NOT NULL DEFAULT 0,
    scope TEXT NOT NULL,
    params TEXT NOT NULL,
    fallback_action TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
)
"""

_V1_ASSIGNMENTS = """
CREATE TABLE rule_assignments (
    user_id TEXT NOT NULL,
    rule_id TEXT NOT NULL REFERENCES rules (rule_id) ON DELETE CASCADE,
    active INTEGER NOT NULL DEFAULT 1,
    created_at INTEGER NOT NULL,
    PRIMARY KEY (user_id, rule_id)
)
"""

_V1_DECISIONS = """
CREATE TABLE decisions (
    decision_id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    counterparty TEXT NOT NULL,
    amount_micros INTEGER NOT NULL,
    currency TEXT NOT NULL,
    category TEXT,
    transaction_class TEXT NOT NULL,
    agent_name TEXT,
    agent_type TEXT,
    counterparty_agent TEXT,
    purpose TEXT,
    time_of_day TEXT,
    day_of_week INTEGER,
    allowed INTEGER NOT NULL,
    requires_approval INTEGER NOT NULL,
    flagged_for_review INTEGER NOT NULL,
    reason TEXT,
    rule_results TEXT NOT NULL,
    approval_status TEXT,
    created_at INTEGER NOT NULL
)
"""

_V1_DECISIONS_INDEX = """
CREATE INDEX idx_decisions_user_created ON decisions (user_id, created_at)
"""

_V1_NONCES = """
CREATE TABLE nonces (
    nonce TEXT PRIMARY KEY,
    tx_reference TEXT NOT NULL,
    counterparty TEXT NOT NULL,
    amount TEXT NOT NULL,
    asset TEXT NOT NULL,
    status TEXT NOT NULL,
    verified INTEGER NOT NULL DEFAULT 0,
    verified_at INTEGER,
    claimed_at INTEGER NOT NULL,
    expires_at INTEGER NOT NULL,
    reason TEXT
)
"""

# Ordered; index + 1 is the schema version the migration produces.
MIGRATIONS: list[tuple[str, ...]] = [
    (_V1_RULES, _V1_ASSIGNMENTS, _V1_DECISIONS, _V1_DECISIONS_INDEX, _V1_NONCES),
]

SCHEMA_VERSION = len(MIGRATIONS)


def connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def schema_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version").fetchone()[0])


def migrate(db_path: Path) -> int:
    """Bring the database at ``db_path`` up to ``SCHEMA_VERSION``."""
    ensure_private_dir(db_path.parent)
    conn = connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=FULL")
        conn.execute("BEGIN IMMEDIATE")
        current = schema_version(conn)
        if current > SCHEMA_VERSION:
            conn.execute("ROLLBACK")
            raise MigrationError(
                f"Database schema v{current} is newer than supported v{SCHEMA_VERSION}"
            )
        try:
            for version in range(current + 1, SCHEMA_VERSION + 1):
                for statement in MIGRATIONS[version - 1]:
                    conn.execute(statement)
                logger.info("Applied schema migration v%d to %s", version, db_path)
            # PRAGMA does not accept bound parameters.
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION:d}")
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            conn.execute("ROLLBACK")
            raise MigrationError(f"Schema migration failed: {exc}") from exc
    finally:
        conn.close()
    ensure_private_file(db_path)
    return SCHEMA_VERSION
