"""
BOXENGINE — Database Abstraction Layer

Dual-mode: SQLite for local dev and tests, PostgreSQL for production.
Auto-detects based on DATABASE_URL environment variable.

Usage:
    from config.database import get_db, get_standalone_db, init_db

    # In Flask request context: auto-managed lifecycle
    rows = get_db().execute("SELECT * FROM prize_tiers WHERE box_id = %s", [box_id]).fetchall()

    # Outside request context: standalone connection, caller closes
    db = get_standalone_db()
    with db.transaction():
        db.execute("UPDATE user_seeds SET nonce = nonce + 1 WHERE id = ?", [pair_id])
    db.close()
"""

import logging
import os
import sqlite3
from contextlib import contextmanager

logger = logging.getLogger("boxengine.db")

# ── Detect database mode ──
DATABASE_URL = os.getenv("DATABASE_URL", "")
USE_POSTGRES = DATABASE_URL.startswith("postgres")

if USE_POSTGRES:
    try:
        import psycopg
        from psycopg.rows import dict_row
        from psycopg_pool import ConnectionPool
        HAS_PSYCOPG = True
    except ImportError:
        logger.warning("DATABASE_URL is set but psycopg3 not installed — falling back to SQLite")
        HAS_PSYCOPG = False
        USE_POSTGRES = False
else:
    HAS_PSYCOPG = False

# ── SQLite fallback path ──
SQLITE_PATH = os.getenv("DB_PATH", "boxengine.db")

# Unique-constraint violations from either backend
INTEGRITY_ERRORS = (sqlite3.IntegrityError,)
if HAS_PSYCOPG:
    INTEGRITY_ERRORS = INTEGRITY_ERRORS + (psycopg.IntegrityError,)

# ── Connection pool (PostgreSQL only) ──
_pg_pool = None


def _get_pg_pool():
    """Lazy-init PostgreSQL connection pool."""
    global _pg_pool
    if _pg_pool is None and USE_POSTGRES and HAS_PSYCOPG:
        conninfo = DATABASE_URL
        # Hosted providers hand out postgres:// but psycopg wants postgresql://
        if conninfo.startswith("postgres://"):
            conninfo = conninfo.replace("postgres://", "postgresql://", 1)
        _pg_pool = ConnectionPool(
            conninfo=conninfo,
            min_size=2,
            max_size=20,
            max_idle=300,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        logger.info("PostgreSQL pool initialized (min=2, max=20)")
    return _pg_pool


def _sqlite_dict_factory(cursor, row):
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


def _open_sqlite(path=None):
    """Open a raw SQLite connection."""
    conn = sqlite3.connect(path or SQLITE_PATH, timeout=10, check_same_thread=False)
    conn.row_factory = _sqlite_dict_factory
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ═══════════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════════

class DatabaseConnection:
    """Unified wrapper around SQLite or PostgreSQL connections.

    Normalizes the interface so callers don't care which backend is active.
    - Accepts ? or %s placeholders — converts to the active backend
    - Returns list[dict] from queries
    - transaction() gives an all-or-nothing block with a write lock
    """

    def __init__(self, conn, is_pg=False, pool=None):
        self._conn = conn
        self._is_pg = is_pg
        self._pool = pool
        self._cursor = None

    @property
    def is_pg(self):
        return self._is_pg

    def _adapt_sql(self, sql):
        """Convert between placeholder styles and strip row locks SQLite lacks."""
        if self._is_pg:
            sql = sql.replace("?", "%s")
        else:
            sql = sql.replace("%s", "?")
            # SQLite has no row locks; BEGIN IMMEDIATE already holds the write lock
            sql = sql.replace(" FOR UPDATE", "")
        return sql

    def execute(self, sql, params=None):
        """Execute a query. Returns self for chaining."""
        self._cursor = self._conn.execute(self._adapt_sql(sql), params or [])
        return self

    def executescript(self, sql):
        """Execute multiple statements (SQLite-style). For PG, splits on semicolons."""
        if self._is_pg:
            for stmt in sql.split(";"):
                stmt = stmt.strip()
                if stmt:
                    self._conn.execute(stmt)
        else:
            self._conn.executescript(sql)
        return self

    def fetchone(self):
        """Fetch one row as dict, or None."""
        if self._cursor is None:
            return None
        row = self._cursor.fetchone()
        return dict(row) if row and not isinstance(row, dict) else row

    def fetchall(self):
        """Fetch all rows as list[dict]."""
        if self._cursor is None:
            return []
        rows = self._cursor.fetchall()
        return [dict(r) if not isinstance(r, dict) else r for r in rows]

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    @contextmanager
    def transaction(self):
        """All-or-nothing block.

        SQLite: BEGIN IMMEDIATE takes the database write lock up front, so
        read-then-write sequences cannot interleave across processes.
        PostgreSQL: psycopg opens the transaction on first statement; callers
        lock rows with SELECT ... FOR UPDATE.
        """
        if not self._is_pg:
            if self._conn.in_transaction:
                self._conn.commit()
            self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise

    def close(self):
        if self._is_pg and self._pool is not None:
            self._conn.rollback()  # Reads leave an open transaction behind
            self._pool.putconn(self._conn)
        else:
            self._conn.close()


def get_db():
    """Get a database connection.

    In Flask request context: caches on g, auto-closed on teardown. Uses the
    app's DB_FACTORY when one is configured (tests point it at a temp file).
    Outside request context: returns standalone connection — caller must close.
    """
    from flask import current_app, g, has_app_context

    try:
        if has_app_context():
            if "_database" not in g:
                factory = current_app.config.get("DB_FACTORY") or _make_connection
                g._database = factory()
            return g._database
    except RuntimeError:
        pass

    return _make_connection()


def get_standalone_db():
    """Always returns a new standalone connection (for the ledger, CLI, scripts).
    Caller MUST close this connection."""
    return _make_connection()


def sqlite_connection(path):
    """Standalone SQLite connection at an explicit path (tests, scripts)."""
    return DatabaseConnection(_open_sqlite(path), is_pg=False)


def _make_connection():
    """Create a new DatabaseConnection."""
    if USE_POSTGRES and HAS_PSYCOPG:
        pool = _get_pg_pool()
        conn = pool.getconn()
        return DatabaseConnection(conn, is_pg=True, pool=pool)
    conn = _open_sqlite()
    return DatabaseConnection(conn, is_pg=False)


def close_db_on_teardown(exc):
    """Flask teardown handler — auto-close the per-request connection."""
    from flask import g
    db = g.pop("_database", None)
    if db is not None:
        db.close()


# ═══════════════════════════════════════════════════════════════
# Schema Initialization & Migration
# ═══════════════════════════════════════════════════════════════

# SQL that works for BOTH SQLite and PostgreSQL
# TEXT timestamps (ISO-8601, UTC) and INTEGER booleans keep both backends identical
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS user_seeds (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    client_seed TEXT NOT NULL,
    server_seed TEXT NOT NULL,
    server_seed_hash TEXT NOT NULL,
    nonce INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT DEFAULT (CURRENT_TIMESTAMP),
    revealed_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_user_seeds_one_active ON user_seeds(user_id) WHERE is_active = 1;
CREATE INDEX IF NOT EXISTS idx_user_seeds_user ON user_seeds(user_id, revealed_at);

CREATE TABLE IF NOT EXISTS round_records (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    seed_pair_id TEXT NOT NULL,
    client_seed TEXT NOT NULL,
    server_seed_hash TEXT NOT NULL,
    nonce INTEGER NOT NULL,
    ticket INTEGER NOT NULL,
    created_at TEXT DEFAULT (CURRENT_TIMESTAMP),
    FOREIGN KEY (seed_pair_id) REFERENCES user_seeds(id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_round_records_nonce ON round_records(seed_pair_id, nonce);
CREATE INDEX IF NOT EXISTS idx_round_records_user ON round_records(user_id, created_at);

CREATE TABLE IF NOT EXISTS prize_tiers (
    id TEXT PRIMARY KEY,
    box_id TEXT NOT NULL,
    tier_name TEXT NOT NULL,
    display_name TEXT NOT NULL,
    color_hex TEXT,
    probability REAL NOT NULL,
    avg_value REAL NOT NULL DEFAULT 0,
    ev_contribution REAL NOT NULL DEFAULT 0,
    item_ids TEXT,
    sort_order INTEGER NOT NULL DEFAULT 0,
    target_rtp REAL,
    created_at TEXT DEFAULT (CURRENT_TIMESTAMP)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_prize_tiers_box ON prize_tiers(box_id, tier_name)
"""


def init_db(db=None):
    """Initialize the database schema. Pass a connection to reuse it (left open)."""
    own = db is None
    db = db or _make_connection()
    try:
        db.executescript(SCHEMA_SQL)
        db.commit()
        mode = "PostgreSQL" if db.is_pg else "SQLite"
        logger.info(f"Database initialized ({mode})")
    finally:
        if own:
            db.close()


def migrate_db(db=None):
    """Run migrations — add columns that may be missing from older schemas."""
    own = db is None
    db = db or _make_connection()
    try:
        if db.is_pg:
            _pg_migrate(db)
        else:
            _sqlite_migrate(db)
        db.commit()
    finally:
        if own:
            db.close()


# Columns added after the first schema release: (table, column, DDL type)
_ADDED_COLUMNS = [
    ("user_seeds", "created_at", "TEXT"),
    ("prize_tiers", "target_rtp", "REAL"),
    ("prize_tiers", "item_ids", "TEXT"),
]


def _sqlite_migrate(db):
    """SQLite-specific migration using PRAGMA table_info."""
    for table, column, ddl in _ADDED_COLUMNS:
        db.execute(f"PRAGMA table_info({table})")
        cols = [r["name"] for r in db.fetchall()]
        if column not in cols:
            db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
            logger.info(f"Migrated: {table}.{column}")


def _pg_migrate(db):
    """PostgreSQL migration using information_schema."""
    for table, column, ddl in _ADDED_COLUMNS:
        db.execute(
            "SELECT 1 FROM information_schema.columns WHERE table_name = %s AND column_name = %s",
            [table, column],
        )
        if db.fetchone() is None:
            db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
            logger.info(f"Migrated: {table}.{column}")
