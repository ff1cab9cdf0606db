"""Database module for the sticker pipeline.

Handles the PostgreSQL connection pool and every query the pipeline runs.

Tables:
- users: one row per email address, never deleted
- login_tokens: hashed magic-link secrets (single use, short lived)
- sessions: server-side session records behind the signed cookie
- subscriptions: one row per payment-processor subscription lifecycle
- generations: completed generation jobs, counted for the free quota

Table creation is idempotent and runs on every boot.
"""

import logging
from typing import Optional

import asyncpg
from asyncpg import Pool

from stickershop.errors import DatabaseUnavailable

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id SERIAL PRIMARY KEY,
    email VARCHAR(320) NOT NULL UNIQUE,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS login_tokens (
    id SERIAL PRIMARY KEY,
    user_id INT NOT NULL REFERENCES users(id),
    token_hash VARCHAR(64) NOT NULL UNIQUE,
    expires_at TIMESTAMPTZ NOT NULL,
    used BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_login_tokens_user_created
    ON login_tokens(user_id, created_at);

CREATE TABLE IF NOT EXISTS sessions (
    id VARCHAR(64) PRIMARY KEY,
    user_id INT NOT NULL REFERENCES users(id),
    created_at TIMESTAMPTZ DEFAULT NOW(),
    expires_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_user
    ON sessions(user_id);

CREATE TABLE IF NOT EXISTS subscriptions (
    id SERIAL PRIMARY KEY,
    user_id INT NOT NULL REFERENCES users(id),
    plan VARCHAR(10) NOT NULL DEFAULT 'free',
    status VARCHAR(32) NOT NULL,
    stripe_customer_id VARCHAR(255),
    stripe_subscription_id VARCHAR(255) NOT NULL UNIQUE,
    current_period_end TIMESTAMPTZ,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_user
    ON subscriptions(user_id, updated_at DESC);

CREATE INDEX IF NOT EXISTS idx_subscriptions_customer
    ON subscriptions(stripe_customer_id);

CREATE TABLE IF NOT EXISTS generations (
    id SERIAL PRIMARY KEY,
    user_id INT NOT NULL REFERENCES users(id),
    mode VARCHAR(10) NOT NULL,
    external_id VARCHAR(255) NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE(user_id, external_id)
);

CREATE INDEX IF NOT EXISTS idx_generations_user_created
    ON generations(user_id, created_at);
"""


class Database:
    """Handle around the asyncpg pool.

    Constructed once at startup and shared by every component. When no
    DATABASE_URL is configured the handle stays disconnected and every query
    raises ``DatabaseUnavailable``.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._pool: Optional[Pool] = None

    # -----------------------------
    # Connection Management
    # -----------------------------

    async def connect(self) -> None:
        """Create the connection pool and make sure all tables exist."""
        if not self._dsn:
            logger.warning("DATABASE_URL not set - accounts, quotas and subscriptions disabled")
            return

        try:
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=2,
                max_size=10,
                command_timeout=60,
            )
            logger.info("Database connection pool created")
            await self.create_tables()
        except Exception as e:
            logger.error("Failed to initialize database: %s", str(e))
            raise

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database connection pool closed")

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    def _require_pool(self) -> Pool:
        if not self._pool:
            raise DatabaseUnavailable()
        return self._pool

    async def create_tables(self) -> None:
        """Create required tables if they don't exist (safe on every boot)."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("Database tables created/verified")

    # -----------------------------
    # Users
    # -----------------------------

    async def upsert_user(self, email: str) -> dict:
        """Return the user for this email, creating it on first sight."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO users (email)
                VALUES ($1)
                ON CONFLICT (email) DO UPDATE SET email = EXCLUDED.email
                RETURNING id, email, created_at
                """,
                email
            )
            return dict(row)

    async def get_user(self, user_id: int) -> Optional[dict]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, email, created_at FROM users WHERE id = $1",
                user_id
            )
            return dict(row) if row else None

    # -----------------------------
    # Login Tokens (magic links)
    # -----------------------------

    async def create_login_token(self, user_id: int, token_hash: str, ttl_minutes: int) -> int:
        """Store a hashed login token that expires after ``ttl_minutes``.

        Returns:
            Login token ID
        """
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO login_tokens (user_id, token_hash, expires_at)
                VALUES ($1, $2, NOW() + make_interval(mins => $3))
                RETURNING id
                """,
                user_id, token_hash, ttl_minutes
            )
            return row["id"]

    async def count_recent_login_tokens(self, user_id: int, minutes: int = 60) -> int:
        """Count login tokens issued to this user in the last N minutes.

        Used for rate limiting to prevent abuse.
        """
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT COUNT(*) AS count
                FROM login_tokens
                WHERE user_id = $1
                AND created_at > NOW() - make_interval(mins => $2)
                """,
                user_id, minutes
            )
            return row["count"] if row else 0

    async def redeem_login_token(
        self,
        token_hash: str,
        session_id: str,
        session_ttl_days: int,
    ) -> Optional[dict]:
        """Consume a login token and open a session in one transaction.

        The token update is conditional, so two concurrent redemptions of the
        same token can't both succeed.

        Returns:
            The user row, or None if the token was invalid/expired/already used.
        """
        pool = self._require_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                token_row = await conn.fetchrow(
                    """
                    UPDATE login_tokens
                    SET used = TRUE
                    WHERE token_hash = $1
                    AND used = FALSE
                    AND expires_at > NOW()
                    RETURNING user_id
                    """,
                    token_hash
                )
                if not token_row:
                    return None

                await conn.execute(
                    """
                    INSERT INTO sessions (id, user_id, expires_at)
                    VALUES ($1, $2, NOW() + make_interval(days => $3))
                    """,
                    session_id, token_row["user_id"], session_ttl_days
                )

                user_row = await conn.fetchrow(
                    "SELECT id, email, created_at FROM users WHERE id = $1",
                    token_row["user_id"]
                )
                return dict(user_row)

    async def cleanup_expired_login_tokens(self) -> int:
        """Delete login tokens that expired more than a day ago.

        Returns number of deleted rows.
        """
        pool = self._require_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                DELETE FROM login_tokens
                WHERE expires_at < NOW() - INTERVAL '24 hours'
                """
            )
            count = int(result.split()[-1])
            if count > 0:
                logger.info("Cleaned up %d expired login tokens", count)
            return count

    # -----------------------------
    # Sessions
    # -----------------------------

    async def get_session_user(self, session_id: str) -> Optional[dict]:
        """Get the user behind a session, if the session hasn't expired."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT u.id, u.email, u.created_at
                FROM sessions s
                JOIN users u ON s.user_id = u.id
                WHERE s.id = $1
                AND s.expires_at > NOW()
                """,
                session_id
            )
            return dict(row) if row else None

    async def delete_session(self, session_id: str) -> None:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute("DELETE FROM sessions WHERE id = $1", session_id)

    async def cleanup_expired_sessions(self) -> int:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("DELETE FROM sessions WHERE expires_at < NOW()")
            count = int(result.split()[-1])
            if count > 0:
                logger.info("Cleaned up %d expired sessions", count)
            return count

    # -----------------------------
    # Subscriptions
    # -----------------------------

    async def get_active_pro_subscription(self, user_id: int) -> Optional[dict]:
        """Most recently updated active pro subscription for this user."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, user_id, plan, status, stripe_customer_id,
                       stripe_subscription_id, current_period_end,
                       created_at, updated_at
                FROM subscriptions
                WHERE user_id = $1
                AND plan = 'pro'
                AND status = 'active'
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                user_id
            )
            return dict(row) if row else None

    async def upsert_subscription(
        self,
        user_id: int,
        stripe_subscription_id: str,
        stripe_customer_id: Optional[str],
        plan: str,
        status: str,
        current_period_end=None,
    ) -> dict:
        """Create the row for this external subscription id.

        An existing row keeps its user, plan and status, so a replayed or
        late checkout event can never revive a canceled subscription. Only the
        customer id and a missing period end are refreshed.
        """
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO subscriptions (
                    user_id, plan, status, stripe_customer_id, stripe_subscription_id,
                    current_period_end
                )
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (stripe_subscription_id) DO UPDATE
                SET stripe_customer_id = COALESCE(EXCLUDED.stripe_customer_id,
                                                  subscriptions.stripe_customer_id),
                    current_period_end = COALESCE(subscriptions.current_period_end,
                                                  EXCLUDED.current_period_end),
                    updated_at = NOW()
                RETURNING id, user_id, plan, status, stripe_customer_id,
                          stripe_subscription_id, current_period_end,
                          created_at, updated_at
                """,
                user_id, plan, status, stripe_customer_id, stripe_subscription_id, current_period_end
            )
            return dict(row)

    async def update_subscription_status(
        self,
        stripe_subscription_id: str,
        status: str,
        current_period_end=None,
    ) -> Optional[dict]:
        """Update status (and period end, when given) by external subscription id.

        Returns None when no row matches, e.g. a lifecycle event delivered
        before the checkout event that creates the row.
        """
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE subscriptions
                SET status = $2,
                    current_period_end = COALESCE($3, current_period_end),
                    updated_at = NOW()
                WHERE stripe_subscription_id = $1
                RETURNING id, user_id, plan, status, stripe_customer_id,
                          stripe_subscription_id, current_period_end,
                          created_at, updated_at
                """,
                stripe_subscription_id, status, current_period_end
            )
            return dict(row) if row else None

    # -----------------------------
    # Generations
    # -----------------------------

    async def count_recent_generations(self, user_id: int, hours: int) -> int:
        """Count generations recorded for this user in the trailing window."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT COUNT(*) AS count
                FROM generations
                WHERE user_id = $1
                AND created_at > NOW() - make_interval(hours => $2)
                """,
                user_id, hours
            )
            return row["count"] if row else 0

    async def record_generation(self, user_id: int, external_id: str, mode: str) -> bool:
        """Record a completed generation job.

        Returns True if a row was inserted, False if this (user, job) pair was
        already recorded.
        """
        pool = self._require_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                INSERT INTO generations (user_id, external_id, mode)
                VALUES ($1, $2, $3)
                ON CONFLICT (user_id, external_id) DO NOTHING
                """,
                user_id, external_id, mode
            )
            return result.split()[-1] == "1"
