"""
PostgreSQL access layer for the VPS storefront core
Direct database connections with raw SQL queries, executed off the event loop
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor

from config import get_config

logger = logging.getLogger(__name__)

_connection_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None

_CONNECTION_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


def generate_uuid() -> str:
    """Generate a new UUID v4 string for database records"""
    return str(uuid.uuid4())


def get_connection_pool() -> psycopg2.pool.ThreadedConnectionPool:
    """Get or create the connection pool"""
    global _connection_pool
    if _connection_pool is None:
        db_config = get_config().database
        if not db_config.url:
            raise ValueError("Database URL not found - set DATABASE_URL")
        _connection_pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=db_config.min_connections,
            maxconn=db_config.max_connections,
            dsn=db_config.url,
            cursor_factory=RealDictCursor,
            connect_timeout=15,
            keepalives_idle=300,
            keepalives_interval=15,
            keepalives_count=2,
            options='-c timezone=UTC',
        )
        logger.info(f"✅ Database pool created ({db_config.min_connections}-{db_config.max_connections} connections)")
    return _connection_pool


def get_connection():
    conn = get_connection_pool().getconn()
    conn.autocommit = True
    return conn


def return_connection(conn, is_broken: bool = False) -> None:
    if _connection_pool is None or conn is None:
        return
    try:
        _connection_pool.putconn(conn, close=is_broken)
    except Exception as e:
        logger.warning(f"⚠️ Failed to return connection to pool: {e}")


def close_connection_pool() -> None:
    global _connection_pool
    if _connection_pool is not None:
        _connection_pool.closeall()
        _connection_pool = None
        logger.info("🔌 Database pool closed")


def _strict() -> bool:
    return get_config().database.strict_errors


async def execute_query(query: str, params: Optional[tuple] = None) -> List[Dict]:
    """Execute a SELECT (or RETURNING) query and return rows; connection errors are retried"""

    def _execute() -> List[Dict]:
        max_retries = 3
        for attempt in range(max_retries):
            conn = None
            broken = False
            try:
                conn = get_connection()
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    if cursor.description is None:
                        return []
                    return [dict(row) for row in cursor.fetchall()]
            except _CONNECTION_ERRORS as e:
                broken = True
                if attempt < max_retries - 1:
                    logger.warning(f"🔄 Database connection retry {attempt + 1}/{max_retries}: {e}")
                    time.sleep(0.5 + attempt * 0.5)
                    continue
                logger.error(f"💥 All database connection attempts failed after {max_retries} retries: {e}")
                if _strict():
                    raise
                return []
            except psycopg2.IntegrityError:
                raise
            except Exception as e:
                logger.error(f"❌ Database query error: {e}")
                if _strict():
                    raise
                return []
            finally:
                if conn is not None:
                    return_connection(conn, is_broken=broken)
        return []

    return await asyncio.to_thread(_execute)


async def execute_update(query: str, params: Optional[tuple] = None) -> int:
    """Execute an UPDATE/INSERT/DELETE and return affected rows (writes are never retried)"""

    def _execute() -> int:
        conn = None
        broken = False
        try:
            conn = get_connection()
            conn.autocommit = False
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                rowcount = cursor.rowcount
            conn.commit()
            logger.debug(f"✅ SQL UPDATE affected {rowcount} rows")
            return rowcount
        except psycopg2.IntegrityError:
            if conn is not None:
                conn.rollback()
            raise
        except _CONNECTION_ERRORS as e:
            broken = True
            logger.error(f"💥 CONNECTION ERROR in execute_update: {e}")
            if _strict():
                raise
            return 0
        except Exception as e:
            logger.error(f"💥 SQL ERROR in execute_update: {type(e).__name__}: {e}")
            logger.debug(f"  Query: {query}")
            if conn is not None:
                try:
                    conn.rollback()
                except Exception as rollback_error:
                    logger.error(f"Failed to rollback transaction: {rollback_error}")
            if _strict():
                raise
            return 0
        finally:
            if conn is not None:
                if not broken:
                    try:
                        conn.autocommit = True
                    except Exception:
                        broken = True
                return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)


async def run_in_transaction(func: Callable, *args, **kwargs) -> Any:
    """Run func(conn, *args, **kwargs) inside a single transaction"""

    def _execute_in_transaction():
        conn = get_connection()
        try:
            conn.autocommit = False
            try:
                result = func(conn, *args, **kwargs)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.autocommit = True
        finally:
            return_connection(conn)

    return await asyncio.to_thread(_execute_in_transaction)


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        reseller_id TEXT,
        catalog_item_id TEXT,
        product_name TEXT NOT NULL,
        memory TEXT,
        price NUMERIC(12, 2) NOT NULL DEFAULT 0,
        promo_code TEXT,
        promo_metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        customer_name TEXT,
        customer_email TEXT,
        customer_phone TEXT,
        client_txn_id TEXT NOT NULL UNIQUE,
        gateway TEXT,
        gateway_order_id TEXT,
        transaction_id TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        provider TEXT,
        provider_service_id TEXT,
        ip_address TEXT,
        username TEXT,
        password TEXT,
        os TEXT,
        provisioning_status TEXT NOT NULL DEFAULT 'unset',
        provisioning_error TEXT,
        provisioning_error_code TEXT,
        auto_provisioned BOOLEAN NOT NULL DEFAULT FALSE,
        expiry_date TIMESTAMPTZ,
        pending_renewal JSONB,
        renewal_payments JSONB NOT NULL DEFAULT '[]'::jsonb,
        provider_metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        machine_status TEXT,
        power_status TEXT,
        last_sync_at TIMESTAMPTZ,
        last_action TEXT,
        last_action_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_gateway_order_id ON orders (gateway_order_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_status_provisioning ON orders (status, provisioning_status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_orders_pending_renewal_txn ON orders ((pending_renewal->>'renewal_txn_id'))",
    """
    CREATE TABLE IF NOT EXISTS server_action_requests (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        action TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        payload JSONB NOT NULL DEFAULT '{}'::jsonb,
        product_name TEXT,
        ip_address TEXT,
        os TEXT,
        memory TEXT,
        customer_name TEXT,
        customer_email TEXT,
        admin_notes TEXT,
        requested_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        processed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_server_action_pending
        ON server_action_requests (order_id, action) WHERE status = 'pending'
    """,
    """
    CREATE TABLE IF NOT EXISTS catalog_items (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        memory TEXT,
        price NUMERIC(12, 2) NOT NULL DEFAULT 0,
        provider TEXT,
        provider_product_id TEXT,
        tags JSONB NOT NULL DEFAULT '[]'::jsonb,
        memory_options JSONB NOT NULL DEFAULT '{}'::jsonb,
        default_configurations JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    "ALTER TABLE catalog_items ADD COLUMN IF NOT EXISTS memory_options JSONB NOT NULL DEFAULT '{}'::jsonb",
    "ALTER TABLE catalog_items ADD COLUMN IF NOT EXISTS default_configurations JSONB NOT NULL DEFAULT '{}'::jsonb",
    """
    CREATE TABLE IF NOT EXISTS resellers (
        id TEXT PRIMARY KEY,
        business_name TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        balance NUMERIC(12, 2) NOT NULL DEFAULT 0,
        credit_limit NUMERIC(12, 2) NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS wallet_transactions (
        id TEXT PRIMARY KEY,
        reseller_id TEXT NOT NULL REFERENCES resellers(id),
        type TEXT NOT NULL,
        amount NUMERIC(12, 2) NOT NULL,
        previous_balance NUMERIC(12, 2) NOT NULL,
        new_balance NUMERIC(12, 2) NOT NULL,
        order_id TEXT,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
]


async def init_database() -> None:
    """Initialize database tables if they don't exist"""

    def _init(conn):
        with conn.cursor() as cursor:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)

    await run_in_transaction(_init)
    logger.info("✅ Database schema initialized")
