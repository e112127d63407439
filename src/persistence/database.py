"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema creation.

Every balance or plan mutation runs inside ``Database.transaction()``:
- SQLite: ``BEGIN IMMEDIATE`` takes the write lock up front, so writers from
  other threads and processes serialize on the database file.
- PostgreSQL: one connection per transaction, rows locked with ``FOR UPDATE``.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Billable accounts; credit_balance is a cache of SUM(ledger_entries.delta)
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    credit_balance INTEGER NOT NULL DEFAULT 0,
    referral_code TEXT UNIQUE,
    referred_by TEXT,
    auth_method TEXT,
    stripe_customer_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Append-only credit ledger
CREATE TABLE IF NOT EXISTS ledger_entries (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id TEXT NOT NULL UNIQUE,
    account_id TEXT NOT NULL,
    delta INTEGER NOT NULL,
    reason TEXT NOT NULL,
    meta TEXT,  -- JSON object
    idempotency_key TEXT UNIQUE,
    balance_after INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (account_id) REFERENCES accounts(id)
);

-- Subscription plans, one row per (account, plan name)
CREATE TABLE IF NOT EXISTS plans (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    stripe_subscription_id TEXT,
    current_period_start INTEGER,
    current_period_end INTEGER,
    pending_plan TEXT,
    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
    last_event_at INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (account_id, name),
    FOREIGN KEY (account_id) REFERENCES accounts(id)
);

-- Generated results eligible for a one-time download charge
CREATE TABLE IF NOT EXISTS artifacts (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    account_id TEXT NOT NULL,
    downloaded INTEGER NOT NULL DEFAULT 0,
    downloaded_at TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (account_id) REFERENCES accounts(id)
);

-- One-off promotional codes, each redeemable by a single account
CREATE TABLE IF NOT EXISTS special_referral_codes (
    code TEXT PRIMARY KEY,
    credits INTEGER NOT NULL,
    description TEXT,
    created_by TEXT,
    used_by TEXT UNIQUE,
    used_at TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (used_by) REFERENCES accounts(id)
);

-- Processed payment-processor events
CREATE TABLE IF NOT EXISTS webhook_events (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    subscription_id TEXT,
    outcome TEXT NOT NULL,
    received_at TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_ledger_account_seq ON ledger_entries(account_id, seq);
CREATE INDEX IF NOT EXISTS idx_plans_account ON plans(account_id);
CREATE INDEX IF NOT EXISTS idx_plans_subscription ON plans(stripe_subscription_id);
CREATE INDEX IF NOT EXISTS idx_artifacts_workflow ON artifacts(workflow_id);
CREATE INDEX IF NOT EXISTS idx_webhook_events_subscription ON webhook_events(subscription_id);
"""

POSTGRES_SCHEMA_SQL = """
-- Accounts
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    credit_balance INTEGER NOT NULL DEFAULT 0,
    referral_code TEXT UNIQUE,
    referred_by TEXT,
    auth_method TEXT,
    stripe_customer_id TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Ledger
CREATE TABLE IF NOT EXISTS ledger_entries (
    seq BIGSERIAL PRIMARY KEY,
    entry_id TEXT NOT NULL UNIQUE,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    delta INTEGER NOT NULL,
    reason TEXT NOT NULL,
    meta JSONB,
    idempotency_key TEXT UNIQUE,
    balance_after INTEGER NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);

-- Plans
CREATE TABLE IF NOT EXISTS plans (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    stripe_subscription_id TEXT,
    current_period_start BIGINT,
    current_period_end BIGINT,
    pending_plan TEXT,
    cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
    last_event_at BIGINT NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    UNIQUE (account_id, name)
);

-- Artifacts
CREATE TABLE IF NOT EXISTS artifacts (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    downloaded BOOLEAN NOT NULL DEFAULT FALSE,
    downloaded_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL
);

-- Special referral codes
CREATE TABLE IF NOT EXISTS special_referral_codes (
    code TEXT PRIMARY KEY,
    credits INTEGER NOT NULL,
    description TEXT,
    created_by TEXT,
    used_by TEXT UNIQUE REFERENCES accounts(id),
    used_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL
);

-- Webhook events
CREATE TABLE IF NOT EXISTS webhook_events (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    subscription_id TEXT,
    outcome TEXT NOT NULL,
    received_at TIMESTAMPTZ NOT NULL
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_ledger_account_seq ON ledger_entries(account_id, seq);
CREATE INDEX IF NOT EXISTS idx_plans_account ON plans(account_id);
CREATE INDEX IF NOT EXISTS idx_plans_subscription ON plans(stripe_subscription_id);
CREATE INDEX IF NOT EXISTS idx_artifacts_workflow ON artifacts(workflow_id);
CREATE INDEX IF NOT EXISTS idx_webhook_events_subscription ON webhook_events(subscription_id);
"""


class Transaction:
    """
    A single atomic unit of work.

    Repositories call ``execute`` with ``?`` placeholders; they are rewritten
    to ``%s`` for PostgreSQL.
    """

    def __init__(self, conn: Any, is_postgres: bool):
        self.conn = conn
        self.is_postgres = is_postgres

    @property
    def for_update(self) -> str:
        """Row-lock suffix for SELECTs that precede a read-modify-write."""
        return " FOR UPDATE" if self.is_postgres else ""

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        if self.is_postgres:
            cursor = self.conn.cursor()
            cursor.execute(query.replace("?", "%s"), params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []
        cursor = self.conn.execute(query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction() as tx:
            tx.execute("SELECT * FROM accounts WHERE id = ?", (account_id,))
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///stager_ledger.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "stager_ledger.db"

    def _sqlite_conn(self) -> sqlite3.Connection:
        """Thread-local SQLite connection in autocommit mode; transactions are explicit."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            db_path = self._get_sqlite_path()
            conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return self._local.conn

    def _postgres_connect(self) -> Any:
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        return psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)

    @contextmanager
    def _begin(self) -> Generator[Transaction, None, None]:
        if self.is_postgres:
            conn = self._postgres_connect()
            try:
                yield Transaction(conn, is_postgres=True)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        else:
            conn = self._sqlite_conn()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(conn, is_postgres=False)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """
        Open an atomic unit of work, or join the one already open on this thread.

        Either everything written inside the block commits, or nothing does.
        """
        current = getattr(self._local, "tx", None)
        if current is not None:
            yield current
            return

        with self._begin() as tx:
            self._local.tx = tx
            try:
                yield tx
            finally:
                self._local.tx = None

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            now = datetime.now(timezone.utc).isoformat()
            if self.is_postgres:
                with self.transaction() as tx:
                    tx.conn.cursor().execute(POSTGRES_SCHEMA_SQL)
                    tx.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (?, ?) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
            else:
                conn = self._sqlite_conn()
                conn.executescript(SCHEMA_SQL)
                conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now)
                )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a single statement, inside the current transaction if one is open."""
        with self.transaction() as tx:
            return tx.execute(query, params)

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
