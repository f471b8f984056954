"""
PostgreSQL persistence layer for Entitlements Service.

Holds the subscription cache (one row per account, whole-record upserts) and
the single-row trial policy.
"""

from datetime import datetime, timezone
from typing import List, Optional

import asyncpg

from shared.errors import EntitlementsException
from shared.logging import get_logger
from ..resolver.models import SubscriptionRecord, SubscriptionStatus


class PostgreSQLPersistence:
    """PostgreSQL persistence layer for subscription records and trial policy."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("entitlements.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )

            await self._create_tables()

            self.logger.info("PostgreSQL persistence started")

        except (OSError, asyncpg.PostgresError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise EntitlementsException("POSTGRES_START_FAILED", str(e)) from e

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS subscription_records (
                    account_id VARCHAR(255) PRIMARY KEY,
                    status VARCHAR(32) NOT NULL,
                    billing_subscription_id VARCHAR(255),
                    billing_customer_id VARCHAR(255),
                    current_period_end TIMESTAMP WITH TIME ZONE,
                    trial_end_date TIMESTAMP WITH TIME ZONE,
                    cancel_at TIMESTAMP WITH TIME ZONE,
                    admin_override BOOLEAN NOT NULL DEFAULT FALSE,
                    override_notes TEXT,
                    override_by VARCHAR(255),
                    override_at TIMESTAMP WITH TIME ZONE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_subscription_records_status
                ON subscription_records(status);
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS trial_policy (
                    id SMALLINT PRIMARY KEY DEFAULT 1 CHECK (id = 1),
                    default_trial_days INTEGER NOT NULL CHECK (default_trial_days >= 0),
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)

    async def get_subscription_record(self, account_id: str) -> Optional[SubscriptionRecord]:
        """Load the subscription record for an account, or None when absent."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM subscription_records WHERE account_id = $1
            """, account_id)

        if not row:
            return None

        return self._row_to_record(row)

    async def upsert_subscription_record(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Write the whole record; last write wins."""
        now = datetime.now(timezone.utc)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO subscription_records (
                    account_id, status, billing_subscription_id, billing_customer_id,
                    current_period_end, trial_end_date, cancel_at, admin_override,
                    override_notes, override_by, override_at, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $12)
                ON CONFLICT (account_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    billing_subscription_id = EXCLUDED.billing_subscription_id,
                    billing_customer_id = EXCLUDED.billing_customer_id,
                    current_period_end = EXCLUDED.current_period_end,
                    trial_end_date = EXCLUDED.trial_end_date,
                    cancel_at = EXCLUDED.cancel_at,
                    admin_override = EXCLUDED.admin_override,
                    override_notes = EXCLUDED.override_notes,
                    override_by = EXCLUDED.override_by,
                    override_at = EXCLUDED.override_at,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
            """,
                record.account_id, record.status.value, record.billing_subscription_id,
                record.billing_customer_id, record.current_period_end, record.trial_end_date,
                record.cancel_at, record.admin_override, record.override_notes,
                record.override_by, record.override_at, now
            )

        self.logger.info("Subscription record saved", account_id=record.account_id, status=record.status.value)
        return self._row_to_record(row)

    async def list_records_by_status(self, status: SubscriptionStatus) -> List[SubscriptionRecord]:
        """List records in a given status."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM subscription_records
                WHERE status = $1
                ORDER BY updated_at DESC
            """, status.value)

        return [self._row_to_record(row) for row in rows]

    async def get_default_trial_days(self, default: int) -> int:
        """Read the trial policy, falling back to ``default`` until one is stored."""
        async with self.pool.acquire() as conn:
            value = await conn.fetchval("""
                SELECT default_trial_days FROM trial_policy WHERE id = 1
            """)

        return default if value is None else int(value)

    async def set_default_trial_days(self, days: int) -> int:
        """Store the trial policy."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO trial_policy (id, default_trial_days, updated_at)
                VALUES (1, $1, NOW())
                ON CONFLICT (id) DO UPDATE SET
                    default_trial_days = EXCLUDED.default_trial_days,
                    updated_at = EXCLUDED.updated_at
            """, days)

        self.logger.info("Trial policy updated", default_trial_days=days)
        return days

    def _row_to_record(self, row) -> SubscriptionRecord:
        """Convert database row to SubscriptionRecord."""
        return SubscriptionRecord(
            account_id=row["account_id"],
            status=SubscriptionStatus(row["status"]),
            billing_subscription_id=row["billing_subscription_id"],
            billing_customer_id=row["billing_customer_id"],
            current_period_end=row["current_period_end"],
            trial_end_date=row["trial_end_date"],
            cancel_at=row["cancel_at"],
            admin_override=row["admin_override"],
            override_notes=row["override_notes"],
            override_by=row["override_by"],
            override_at=row["override_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"]
        )

    async def health_check(self) -> bool:
        """Check database health."""
        if not self.pool:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (OSError, asyncpg.PostgresError) as e:
            self.logger.warning("PostgreSQL health check failed", error=str(e))
            return False
