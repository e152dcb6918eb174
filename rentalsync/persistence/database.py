"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema creation.

Besides raw queries, the Database exposes the generic store-adapter
operations the jobs rely on: find_one, insert and update. Each call commits
on its own; there is no multi-record transaction. Uniqueness constraints are
the real concurrency guard and surface as StoreConflict.
"""

import os
import re
import sqlite3
import uuid
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List, Tuple
from datetime import datetime, timezone
import threading
import structlog

from ..core.errors import StoreConflict

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tenants (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tenant_config (
    tenant_id TEXT NOT NULL REFERENCES tenants(id),
    config_key TEXT NOT NULL,
    config_value TEXT NOT NULL,  -- JSON object
    updated_at TEXT NOT NULL,
    PRIMARY KEY (tenant_id, config_key)
);

-- Persisted "last synced at" per tenant and job
CREATE TABLE IF NOT EXISTS sync_state (
    tenant_id TEXT NOT NULL REFERENCES tenants(id),
    job TEXT NOT NULL,
    last_synced_at TEXT NOT NULL,
    PRIMARY KEY (tenant_id, job)
);

CREATE TABLE IF NOT EXISTS customers (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL REFERENCES tenants(id),
    external_id TEXT NOT NULL,
    name TEXT NOT NULL,
    tax_id TEXT,
    email TEXT NOT NULL,
    phone TEXT NOT NULL,
    street TEXT NOT NULL,
    number TEXT NOT NULL,
    city TEXT NOT NULL,
    state TEXT NOT NULL,
    zip_code TEXT NOT NULL,
    kind TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    source TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (tenant_id, external_id)
);

CREATE TABLE IF NOT EXISTS vehicles (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL REFERENCES tenants(id),
    plate TEXT NOT NULL,
    brand TEXT NOT NULL,
    model TEXT NOT NULL,
    tracker_imei TEXT,
    tracker_model TEXT,
    chip_number TEXT,
    provider_vehicle_id TEXT,
    status TEXT NOT NULL,
    odometer INTEGER NOT NULL DEFAULT 0,
    latitude REAL,
    longitude REAL,
    address TEXT,
    speed REAL,
    online INTEGER NOT NULL DEFAULT 0,
    signal_bars INTEGER NOT NULL DEFAULT 0,
    battery REAL,
    last_seen_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (tenant_id, plate)
);

CREATE TABLE IF NOT EXISTS contracts (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL REFERENCES tenants(id),
    customer_id TEXT,
    description TEXT,
    monthly_amount REAL NOT NULL,
    next_billing_date TEXT NOT NULL,
    last_invoice_at TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    recurring INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

-- (contract_id, due_date) is the billing idempotency key
CREATE TABLE IF NOT EXISTS invoices (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL REFERENCES tenants(id),
    contract_id TEXT REFERENCES contracts(id),
    customer_id TEXT,
    invoice_number TEXT NOT NULL UNIQUE,
    description TEXT,
    amount REAL NOT NULL,
    due_date TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    gateway_charge_id TEXT,
    barcode TEXT,
    pix_payload TEXT,
    payment_url TEXT,
    payment_methods TEXT,
    billing_kind TEXT NOT NULL DEFAULT 'recurring',
    attempt_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    paid_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (contract_id, due_date)
);

CREATE TABLE IF NOT EXISTS integration_logs (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    service TEXT NOT NULL,
    operation TEXT NOT NULL,
    request_data TEXT,  -- JSON
    response_data TEXT,  -- JSON
    status TEXT NOT NULL,
    error_message TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_contracts_billing ON contracts(tenant_id, status, next_billing_date);
CREATE INDEX IF NOT EXISTS idx_invoices_tenant_status ON invoices(tenant_id, status);
CREATE INDEX IF NOT EXISTS idx_invoices_charge ON invoices(gateway_charge_id);
CREATE INDEX IF NOT EXISTS idx_logs_tenant ON integration_logs(tenant_id, created_at);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tenants (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS tenant_config (
    tenant_id TEXT NOT NULL REFERENCES tenants(id),
    config_key TEXT NOT NULL,
    config_value JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (tenant_id, config_key)
);

CREATE TABLE IF NOT EXISTS sync_state (
    tenant_id TEXT NOT NULL REFERENCES tenants(id),
    job TEXT NOT NULL,
    last_synced_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (tenant_id, job)
);

CREATE TABLE IF NOT EXISTS customers (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL REFERENCES tenants(id),
    external_id TEXT NOT NULL,
    name TEXT NOT NULL,
    tax_id TEXT,
    email TEXT NOT NULL,
    phone TEXT NOT NULL,
    street TEXT NOT NULL,
    number TEXT NOT NULL,
    city TEXT NOT NULL,
    state TEXT NOT NULL,
    zip_code TEXT NOT NULL,
    kind TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    source TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    UNIQUE (tenant_id, external_id)
);

CREATE TABLE IF NOT EXISTS vehicles (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL REFERENCES tenants(id),
    plate TEXT NOT NULL,
    brand TEXT NOT NULL,
    model TEXT NOT NULL,
    tracker_imei TEXT,
    tracker_model TEXT,
    chip_number TEXT,
    provider_vehicle_id TEXT,
    status TEXT NOT NULL,
    odometer INTEGER NOT NULL DEFAULT 0,
    latitude DOUBLE PRECISION,
    longitude DOUBLE PRECISION,
    address TEXT,
    speed DOUBLE PRECISION,
    online BOOLEAN NOT NULL DEFAULT FALSE,
    signal_bars INTEGER NOT NULL DEFAULT 0,
    battery DOUBLE PRECISION,
    last_seen_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    UNIQUE (tenant_id, plate)
);

CREATE TABLE IF NOT EXISTS contracts (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL REFERENCES tenants(id),
    customer_id TEXT,
    description TEXT,
    monthly_amount NUMERIC(12, 2) NOT NULL,
    next_billing_date DATE NOT NULL,
    last_invoice_at TIMESTAMPTZ,
    status TEXT NOT NULL DEFAULT 'active',
    recurring BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS invoices (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL REFERENCES tenants(id),
    contract_id TEXT REFERENCES contracts(id),
    customer_id TEXT,
    invoice_number TEXT NOT NULL UNIQUE,
    description TEXT,
    amount NUMERIC(12, 2) NOT NULL,
    due_date DATE NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    gateway_charge_id TEXT,
    barcode TEXT,
    pix_payload TEXT,
    payment_url TEXT,
    payment_methods TEXT,
    billing_kind TEXT NOT NULL DEFAULT 'recurring',
    attempt_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    paid_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    UNIQUE (contract_id, due_date)
);

CREATE TABLE IF NOT EXISTS integration_logs (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    service TEXT NOT NULL,
    operation TEXT NOT NULL,
    request_data JSONB,
    response_data JSONB,
    status TEXT NOT NULL,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_contracts_billing ON contracts(tenant_id, status, next_billing_date);
CREATE INDEX IF NOT EXISTS idx_invoices_tenant_status ON invoices(tenant_id, status);
CREATE INDEX IF NOT EXISTS idx_invoices_charge ON invoices(gateway_charge_id);
CREATE INDEX IF NOT EXISTS idx_logs_tenant ON integration_logs(tenant_id, created_at);
"""

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


def _identifier(name: str) -> str:
    """Guard table/column names interpolated into SQL."""
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        db.initialize()
        row_id = db.insert("customers", {...})
        row = db.find_one("customers", {"tenant_id": t, "external_id": e})
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///rentalsync.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._init_lock = threading.Lock()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (used when DATABASE_URL changes)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "rentalsync.db"

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe)."""
        if self.is_postgres:
            with self._postgres_connection() as conn:
                yield conn
        else:
            with self._sqlite_connection() as conn:
                yield conn

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection with WAL mode for concurrency."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            db_path = self._get_sqlite_path()
            self._local.conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")

        try:
            yield self._local.conn
            self._local.conn.commit()
        except Exception:
            self._local.conn.rollback()
            raise

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, one per unit of work."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install rentalsync[postgres]")

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL

            with self.connection() as conn:
                now = datetime.now(timezone.utc).isoformat()
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(schema)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.executescript(schema)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def _sql(self, query: str) -> str:
        """Translate qmark placeholders for psycopg2."""
        return query.replace("?", "%s") if self.is_postgres else query

    def _run(self, query: str, params: tuple) -> Tuple[List[Dict[str, Any]], int]:
        with self.connection() as conn:
            if self.is_postgres:
                cursor = conn.cursor()
                cursor.execute(self._sql(query), params)
            else:
                cursor = conn.execute(query, params)
            rows = [dict(row) for row in cursor.fetchall()] if cursor.description else []
            return rows, cursor.rowcount

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        rows, _ = self._run(query, params)
        return rows

    def execute_rowcount(self, query: str, params: tuple = ()) -> int:
        """Execute a write and return the affected row count."""
        _, rowcount = self._run(query, params)
        return rowcount

    def _is_unique_violation(self, error: Exception) -> bool:
        if isinstance(error, sqlite3.IntegrityError):
            return "UNIQUE" in str(error).upper() or "PRIMARY KEY" in str(error).upper()
        # psycopg2 unique_violation
        return getattr(error, "pgcode", None) == "23505"

    # ------------------------------------------------------------------
    # Store adapter operations
    # ------------------------------------------------------------------

    def find_one(self, table: str, keys: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Return the first row matching all key fields, or None."""
        rows = self.find_all(table, keys, limit=1)
        return rows[0] if rows else None

    def find_all(
        self,
        table: str,
        keys: Dict[str, Any],
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return rows matching all key fields."""
        where = " AND ".join(f"{_identifier(k)} = ?" for k in keys) or "1 = 1"
        query = f"SELECT * FROM {_identifier(table)} WHERE {where}"
        if order_by:
            query += f" ORDER BY {_identifier(order_by)}"
        if limit:
            query += f" LIMIT {int(limit)}"
        return self.execute(query, tuple(keys.values()))

    def insert(self, table: str, row: Dict[str, Any]) -> str:
        """
        Insert one row and return its id.

        Raises:
            StoreConflict: when a uniqueness constraint rejects the row
        """
        row = dict(row)
        if not row.get("id"):
            row["id"] = str(uuid.uuid4())
        columns = ", ".join(_identifier(c) for c in row)
        placeholders = ", ".join("?" for _ in row)
        query = f"INSERT INTO {_identifier(table)} ({columns}) VALUES ({placeholders})"
        try:
            self._run(query, tuple(row.values()))
        except Exception as e:
            if self._is_unique_violation(e):
                raise StoreConflict(f"Duplicate key in {table}: {e}") from e
            raise
        return row["id"]

    def update(
        self,
        table: str,
        row_id: str,
        patch: Dict[str, Any],
        where: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Update one row by id. Extra `where` fields make the update conditional
        (compare-and-set); the return value is the affected row count.
        """
        if not patch:
            return 0
        assignments = ", ".join(f"{_identifier(c)} = ?" for c in patch)
        conditions = ["id = ?"] + [f"{_identifier(k)} = ?" for k in (where or {})]
        query = f"UPDATE {_identifier(table)} SET {assignments} WHERE {' AND '.join(conditions)}"
        params = tuple(patch.values()) + (row_id,) + tuple((where or {}).values())
        try:
            return self.execute_rowcount(query, params)
        except Exception as e:
            if self._is_unique_violation(e):
                raise StoreConflict(f"Duplicate key in {table}: {e}") from e
            raise

    def delete_where(self, table: str, keys: Dict[str, Any]) -> int:
        """Delete rows matching all key fields; returns the deleted count."""
        if not keys:
            raise ValueError("Refusing to delete without a filter")
        where = " AND ".join(f"{_identifier(k)} = ?" for k in keys)
        return self.execute_rowcount(f"DELETE FROM {_identifier(table)} WHERE {where}", tuple(keys.values()))

    def ping(self) -> bool:
        """Cheap liveness check for the store."""
        self.execute("SELECT 1 AS ok")
        return True

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
