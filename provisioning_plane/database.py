"""
Provisioning Plane Database Layer
=================================

Async PostgreSQL connection pool, schema migrations and the
PostgreSQL-backed order store, using asyncpg.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

from .models import (
    Order,
    OrderStatus,
    ProvisioningStatus,
    SERVICE_TERM,
    PAYABLE_STATUSES,
    Provider,
    utcnow,
)
from .order_store import (
    OrderStore,
    InfrastructureError,
    LeaseLost,
    OrderNotFound,
    ProvisioningConflict,
    STUCK_RESET_MESSAGE,
    clean_changes,
)
from .providers.base import ServerCredentials

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Global pool reference, plus the in-flight creation shared by racing callers
_pool: Optional[asyncpg.Pool] = None
_pool_task: Optional["asyncio.Task[asyncpg.Pool]"] = None

DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


async def _create_pool(database_url: str, min_size: int, max_size: int) -> asyncpg.Pool:
    logger.info("Initializing database connection pool...")
    pool = await asyncpg.create_pool(database_url, min_size=min_size, max_size=max_size)
    try:
        await run_migrations(pool)
    except BaseException:
        await pool.close()
        raise
    logger.info("Database initialized successfully")
    return pool


async def init_database(database_url: str, min_size: int = 2, max_size: int = 10) -> asyncpg.Pool:
    """
    Return the process-wide pool, creating it on first use.

    Concurrent first callers await the same creation. If creation fails the
    cache is cleared so the next call tries again.
    """
    global _pool, _pool_task

    if _pool is not None:
        return _pool

    if _pool_task is None:
        _pool_task = asyncio.ensure_future(_create_pool(database_url, min_size, max_size))

    task = _pool_task
    try:
        pool = await asyncio.shield(task)
    except DB_ERRORS as e:
        if _pool_task is task:
            _pool_task = None
        raise InfrastructureError(f"Database connection failed: {e}") from e
    except Exception:
        if _pool_task is task:
            _pool_task = None
        raise

    _pool = pool
    return pool


async def close_database():
    """Close the database connection pool."""
    global _pool, _pool_task
    if _pool:
        await _pool.close()
        logger.info("Database connection pool closed")
    _pool = None
    _pool_task = None


async def run_migrations(pool: asyncpg.Pool):
    """
    Run pending SQL migrations in order.

    Migrations are SQL files in migrations/ named NNN_description.sql.
    Applied migrations are tracked in the schema_migrations table.
    """
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version VARCHAR(10) PRIMARY KEY,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """)

        rows = await conn.fetch("SELECT version FROM schema_migrations ORDER BY version")
        applied = {row["version"] for row in rows}

        for migration_file in sorted(MIGRATIONS_DIR.glob("*.sql")):
            version = migration_file.stem.split("_")[0]

            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue

            logger.info(f"Applying migration {version}: {migration_file.name}")
            sql = migration_file.read_text(encoding="utf-8")

            try:
                async with conn.transaction():
                    await conn.execute(sql)
                    await conn.execute(
                        "INSERT INTO schema_migrations (version) VALUES ($1)",
                        version,
                    )
                logger.info(f"Migration {version} applied successfully")
            except asyncpg.PostgresError as e:
                logger.error(f"Migration {version} failed: {e}")
                raise


async def check_health(pool: asyncpg.Pool) -> Dict[str, Any]:
    """Check database connectivity and return stats."""
    try:
        await pool.fetchval("SELECT 1")
        order_count = await pool.fetchval("SELECT COUNT(*) FROM orders")
        in_flight = await pool.fetchval(
            "SELECT COUNT(*) FROM orders WHERE provisioning_status = 'provisioning'"
        )
        return {
            "status": "healthy",
            "connected": True,
            "backend": "postgres",
            "orders_total": order_count,
            "orders_in_flight": in_flight,
        }
    except DB_ERRORS as e:
        return {"status": "unhealthy", "connected": False, "error": str(e)}


# =============================================================================
# Row mapping
# =============================================================================

def _row_to_order(row: asyncpg.Record) -> Order:
    return Order.from_record(dict(row))


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


# =============================================================================
# Order store
# =============================================================================

ELIGIBLE_SQL = """
    SELECT * FROM orders
    WHERE provisioning_status IS DISTINCT FROM 'provisioning'
      AND (
        (status = ANY($1::text[]) AND NOT auto_provisioned)
        OR (
          provider = $2
          AND (
            provisioning_status = 'failed'
            OR (status = 'confirmed' AND (ip_address IS NULL OR ip_address = ''))
          )
        )
      )
    ORDER BY created_at ASC
"""


class PostgresOrderStore(OrderStore):
    """
    Order store backed by PostgreSQL.

    The in-flight guard is a single conditional UPDATE, so it holds across
    processes sharing the database.
    """

    def __init__(self, database_url: str, min_size: int = 2, max_size: int = 10):
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size

    async def _pool(self) -> asyncpg.Pool:
        return await init_database(self.database_url, self.min_size, self.max_size)

    async def _fetchrow(self, query: str, *args) -> Optional[asyncpg.Record]:
        pool = await self._pool()
        try:
            return await pool.fetchrow(query, *args)
        except DB_ERRORS as e:
            raise InfrastructureError(f"Database query failed: {e}") from e

    async def _fetch(self, query: str, *args) -> List[asyncpg.Record]:
        pool = await self._pool()
        try:
            return await pool.fetch(query, *args)
        except DB_ERRORS as e:
            raise InfrastructureError(f"Database query failed: {e}") from e

    def _require(self, row: Optional[asyncpg.Record], order_id: str) -> Order:
        if row is None:
            raise OrderNotFound(order_id)
        return _row_to_order(row)

    async def _require_fenced(self, row: Optional[asyncpg.Record], order_id: str,
                              lease: Optional[int]) -> Order:
        if row is None and lease is not None:
            exists = await self._fetchrow("SELECT id FROM orders WHERE id = $1", order_id)
            if exists is not None:
                raise LeaseLost(order_id, lease)
        return self._require(row, order_id)

    async def get_order(self, order_id: str) -> Order:
        row = await self._fetchrow("SELECT * FROM orders WHERE id = $1", order_id)
        order = self._require(row, order_id)
        if row["provider"] is None:
            # Read repair: persist the default provider once
            await self._fetchrow(
                "UPDATE orders SET provider = $2 WHERE id = $1 AND provider IS NULL",
                order_id, order.provider.value,
            )
        return order

    async def list_orders(self) -> List[Order]:
        rows = await self._fetch("SELECT * FROM orders ORDER BY created_at DESC")
        return [_row_to_order(r) for r in rows]

    async def add_order(self, order: Order) -> Order:
        row = await self._fetchrow(
            """
            INSERT INTO orders (
                id, status, product_name, memory, os, provider, provisioning_status,
                auto_provisioned, provider_service_id, ip_address, username, password,
                provisioning_error, expiry_date, plan_id, hostname, provisioning_started_at,
                provisioning_attempts, created_at, updated_at
            ) VALUES (
                $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, $19, $20
            )
            RETURNING *
            """,
            order.id,
            order.status.value,
            order.product_name,
            order.memory,
            order.os,
            order.provider.value,
            _enum_value(order.provisioning_status),
            order.auto_provisioned,
            order.provider_service_id,
            order.ip_address,
            order.username,
            order.password,
            order.provisioning_error,
            order.expiry_date,
            order.plan_id,
            order.hostname,
            order.provisioning_started_at,
            order.provisioning_attempts,
            order.created_at,
            order.updated_at,
        )
        return _row_to_order(row)

    async def load_eligible_orders(self, limit: Optional[int] = None) -> List[Order]:
        query = ELIGIBLE_SQL
        args: list = [[s.value for s in PAYABLE_STATUSES], Provider.SMARTVPS.value]
        if limit:
            query += " LIMIT $3"
            args.append(limit)
        rows = await self._fetch(query, *args)
        return [_row_to_order(r) for r in rows]

    async def begin_provisioning(self, order_id: str, started_at: Optional[datetime] = None) -> Order:
        started_at = started_at or utcnow()
        row = await self._fetchrow(
            """
            UPDATE orders
            SET provisioning_status = 'provisioning',
                auto_provisioned = TRUE,
                provisioning_error = NULL,
                provisioning_started_at = $2,
                provisioning_attempts = provisioning_attempts + 1,
                provider = COALESCE(NULLIF(provider, ''), 'hostycare'),
                last_action = 'auto_provision_started',
                last_action_time = $2,
                updated_at = $2
            WHERE id = $1
              AND provisioning_status IS DISTINCT FROM 'provisioning'
            RETURNING *
            """,
            order_id, started_at,
        )
        if row is None:
            exists = await self._fetchrow("SELECT id FROM orders WHERE id = $1", order_id)
            if exists is None:
                raise OrderNotFound(order_id)
            raise ProvisioningConflict(order_id)
        return _row_to_order(row)

    async def complete_provisioning(
        self,
        order_id: str,
        credentials: ServerCredentials,
        completed_at: Optional[datetime] = None,
        hostname: Optional[str] = None,
        lease: Optional[int] = None,
    ) -> Order:
        completed_at = completed_at or utcnow()
        row = await self._fetchrow(
            """
            UPDATE orders
            SET status = $2,
                provisioning_status = $3,
                provisioning_error = NULL,
                ip_address = $4,
                username = $5,
                password = $6,
                os = COALESCE($7, os),
                hostname = COALESCE($8, hostname),
                provider_service_id = COALESCE(provider_service_id, $9),
                expiry_date = $10,
                last_action = 'auto_provision_completed',
                last_action_time = $11,
                updated_at = $11
            WHERE id = $1
              AND ($12::int IS NULL OR (
                provisioning_attempts = $12
                AND provisioning_status IN ('provisioning', 'failed')
              ))
            RETURNING *
            """,
            order_id,
            OrderStatus.ACTIVE.value,
            ProvisioningStatus.ACTIVE.value,
            credentials.ip_address,
            credentials.username,
            credentials.password,
            credentials.os,
            hostname,
            credentials.service_id,
            completed_at + SERVICE_TERM,
            completed_at,
            lease,
        )
        return await self._require_fenced(row, order_id, lease)

    async def fail_provisioning(self, order_id: str, error: str, lease: Optional[int] = None,
                                service_id: Optional[str] = None) -> Order:
        row = await self._fetchrow(
            """
            UPDATE orders
            SET provisioning_status = 'failed',
                provisioning_error = $2,
                provider_service_id = COALESCE(provider_service_id, $4),
                last_action = 'auto_provision_failed',
                last_action_time = NOW(),
                updated_at = NOW()
            WHERE id = $1
              AND ($3::int IS NULL OR (
                provisioning_attempts = $3
                AND provisioning_status IN ('provisioning', 'failed')
              ))
            RETURNING *
            """,
            order_id, error, lease, service_id,
        )
        return await self._require_fenced(row, order_id, lease)

    async def update_order(self, order_id: str, changes: Dict[str, Any],
                           action: str = "manual_update") -> Order:
        cleaned = clean_changes(changes)
        assignments = []
        args: list = [order_id]
        for key, value in cleaned.items():
            args.append(_enum_value(value))
            # Keys come from a fixed allow-list
            assignments.append(f"{key} = ${len(args)}")
        args.append(action)
        assignments += [
            f"last_action = ${len(args)}",
            "last_action_time = NOW()",
            "updated_at = NOW()",
        ]
        row = await self._fetchrow(
            f"UPDATE orders SET {', '.join(assignments)} WHERE id = $1 RETURNING *",
            *args,
        )
        return self._require(row, order_id)

    async def reset_stuck(self, older_than: datetime) -> List[Order]:
        rows = await self._fetch(
            """
            UPDATE orders
            SET provisioning_status = 'failed',
                provisioning_error = $2,
                last_action = 'reset_stuck',
                last_action_time = NOW(),
                updated_at = NOW()
            WHERE provisioning_status = 'provisioning'
              AND COALESCE(provisioning_started_at, updated_at) < $1
            RETURNING *
            """,
            older_than, STUCK_RESET_MESSAGE,
        )
        return [_row_to_order(r) for r in rows]

    async def health(self) -> Dict[str, Any]:
        try:
            pool = await self._pool()
        except InfrastructureError as e:
            return {"status": "unhealthy", "connected": False, "error": str(e)}
        return await check_health(pool)

    async def close(self):
        await close_database()
