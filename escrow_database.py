"""
PostgreSQL persistence for the escrow settlement engine.

Stores one row per transaction (scalar columns plus JSONB for milestones,
dispute and the in-flight settlement reservation), versioned agreements,
the append-only audit log, user read models, runtime settings and in-app
notifications. Transaction writes are compare-and-swap on ``version``.
"""

import asyncpg
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from escrow_models import (
    Transaction, UserAccount, UserRole, Agreement, AgreementAcceptance, AuditEntry,
    ACTIVE_STATUSES, TransactionStatus, ConcurrentModificationError, new_id,
)

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Custom exception for database-related errors."""
    pass


TRANSACTION_COLUMNS = [
    'id', 'title', 'description', 'amount', 'currency', 'buyer_id', 'seller_id',
    'seller_email', 'initiated_by', 'status', 'milestones', 'inspection_period',
    'inspection_ends_at', 'dispute', 'payment_intent_id', 'charge_id', 'transfer_ids',
    'unreconciled_transfer_ids',
    'refund_id', 'platform_fee', 'processor_fee', 'platform_fee_collected',
    'amount_released', 'amount_paid_out', 'pending_settlement', 'cancellation_reason',
    'created_at', 'updated_at', 'funded_at', 'delivered_at', 'completed_at',
    'cancelled_at', 'refunded_at', 'version',
]

TRUST_COUNTERS = ('total_completed', 'total_disputed', 'total_cancelled')


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode JSONB columns to Python objects."""
    await conn.set_type_codec(
        'jsonb',
        encoder=lambda value: json.dumps(value, default=str),
        decoder=json.loads,
        schema='pg_catalog'
    )


def _user_from_row(row: asyncpg.Record) -> UserAccount:
    return UserAccount(
        id=row['id'],
        email=row['email'],
        role=UserRole(row['role']),
        is_suspended=row['is_suspended'],
        trust_score=row['trust_score'],
        payout_account_id=row['payout_account_id'],
        payout_onboarded=row['payout_onboarded'],
        telegram_chat_id=row['telegram_chat_id'],
        total_completed=row['total_completed'],
        total_disputed=row['total_disputed'],
        total_cancelled=row['total_cancelled'],
        total_volume=row['total_volume'],
    )


def _agreement_from_row(row: asyncpg.Record) -> Agreement:
    return Agreement(
        id=row['id'],
        transaction_id=row['transaction_id'],
        version=row['version'],
        title=row['title'],
        terms=row['terms'],
        created_by=row['created_by'],
        accepted_by=[
            AgreementAcceptance(
                user_id=a['user_id'],
                accepted_at=datetime.fromisoformat(a['accepted_at'])
            )
            for a in row['accepted_by'] or []
        ],
        is_active=row['is_active'],
        created_at=row['created_at'],
    )


class EscrowDatabase:
    """Database handler for the escrow engine with PostgreSQL"""

    def __init__(self, database_url: str, min_size: int = 5, max_size: int = 20):
        """
        Initialize database handler

        Args:
            database_url: PostgreSQL connection URL
            min_size: Minimum pool size
            max_size: Maximum pool size
        """
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Establish database connection pool"""
        try:
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60,
                init=_init_connection
            )
            logger.info("Database connection pool established")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise DatabaseError(f"Database connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed")

    async def ping(self) -> bool:
        if not self.pool:
            return False
        async with self.pool.acquire() as conn:
            return await conn.fetchval("SELECT 1") == 1

    async def initialize_tables(self) -> None:
        """Create all required database tables with indexes and constraints"""
        if not self.pool:
            raise DatabaseError("Database not connected. Call connect() first.")

        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id VARCHAR(64) PRIMARY KEY,
                    email VARCHAR(255) UNIQUE NOT NULL,
                    role VARCHAR(10) DEFAULT 'user' CHECK (role IN ('user', 'admin')),
                    is_suspended BOOLEAN DEFAULT FALSE,
                    trust_score INTEGER DEFAULT 100 CHECK (trust_score >= 0 AND trust_score <= 100),
                    payout_account_id VARCHAR(100),
                    payout_onboarded BOOLEAN DEFAULT FALSE,
                    telegram_chat_id BIGINT,
                    total_completed INTEGER DEFAULT 0,
                    total_disputed INTEGER DEFAULT 0,
                    total_cancelled INTEGER DEFAULT 0,
                    total_volume DECIMAL(15, 2) DEFAULT 0.00,
                    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS escrow_transactions (
                    id VARCHAR(64) PRIMARY KEY,
                    title VARCHAR(200) NOT NULL,
                    description TEXT DEFAULT '',
                    amount DECIMAL(12, 2) NOT NULL CHECK (amount > 0),
                    currency VARCHAR(3) NOT NULL DEFAULT 'npr',
                    buyer_id VARCHAR(64) NOT NULL,
                    seller_id VARCHAR(64),
                    seller_email VARCHAR(255),
                    initiated_by VARCHAR(64) NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'accepted', 'funded', 'delivered',
                                          'completed', 'disputed', 'cancelled', 'refunded')),
                    milestones JSONB NOT NULL DEFAULT '[]'::jsonb,
                    inspection_period INTEGER NOT NULL DEFAULT 14
                        CHECK (inspection_period BETWEEN 1 AND 30),
                    inspection_ends_at TIMESTAMPTZ,
                    dispute JSONB,
                    payment_intent_id VARCHAR(100),
                    charge_id VARCHAR(100),
                    transfer_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
                    unreconciled_transfer_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
                    refund_id VARCHAR(100),
                    platform_fee DECIMAL(12, 2) DEFAULT 0.00,
                    processor_fee DECIMAL(12, 2) DEFAULT 0.00,
                    platform_fee_collected DECIMAL(12, 2) DEFAULT 0.00,
                    amount_released DECIMAL(12, 2) NOT NULL DEFAULT 0.00,
                    amount_paid_out DECIMAL(12, 2) NOT NULL DEFAULT 0.00,
                    pending_settlement JSONB,
                    cancellation_reason TEXT,
                    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMPTZ,
                    funded_at TIMESTAMPTZ,
                    delivered_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ,
                    cancelled_at TIMESTAMPTZ,
                    refunded_at TIMESTAMPTZ,
                    version INTEGER NOT NULL DEFAULT 0,
                    CONSTRAINT released_within_amount
                        CHECK (amount_released >= 0 AND amount_released <= amount)
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS agreements (
                    id VARCHAR(64) PRIMARY KEY,
                    transaction_id VARCHAR(64) NOT NULL
                        REFERENCES escrow_transactions(id) ON DELETE CASCADE,
                    version INTEGER NOT NULL,
                    title VARCHAR(200) NOT NULL DEFAULT 'Transaction Agreement',
                    terms TEXT NOT NULL,
                    created_by VARCHAR(64) NOT NULL,
                    accepted_by JSONB NOT NULL DEFAULT '[]'::jsonb,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (transaction_id, version)
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_log (
                    id VARCHAR(64) PRIMARY KEY,
                    actor_id VARCHAR(64),
                    transaction_id VARCHAR(64),
                    action VARCHAR(100) NOT NULL,
                    category VARCHAR(20) NOT NULL
                        CHECK (category IN ('auth', 'payment', 'transaction', 'security',
                                            'user', 'admin', 'system')),
                    status VARCHAR(10) NOT NULL DEFAULT 'success'
                        CHECK (status IN ('success', 'failure')),
                    severity VARCHAR(10) NOT NULL DEFAULT 'info'
                        CHECK (severity IN ('info', 'warning', 'error', 'critical')),
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS system_settings (
                    key VARCHAR(100) PRIMARY KEY,
                    value JSONB NOT NULL,
                    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    id SERIAL PRIMARY KEY,
                    recipient_id VARCHAR(64) NOT NULL,
                    title VARCHAR(200) NOT NULL,
                    body TEXT NOT NULL,
                    category VARCHAR(30) NOT NULL,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    is_read BOOLEAN DEFAULT FALSE,
                    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # Create indexes for performance
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_escrow_buyer ON escrow_transactions(buyer_id);
                CREATE INDEX IF NOT EXISTS idx_escrow_seller ON escrow_transactions(seller_id);
                CREATE INDEX IF NOT EXISTS idx_escrow_status ON escrow_transactions(status);
                CREATE INDEX IF NOT EXISTS idx_escrow_inspection
                    ON escrow_transactions(status, inspection_ends_at);
                CREATE INDEX IF NOT EXISTS idx_escrow_payment_intent
                    ON escrow_transactions(payment_intent_id);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_agreements_active
                    ON agreements(transaction_id) WHERE is_active;
                CREATE INDEX IF NOT EXISTS idx_audit_transaction ON audit_log(transaction_id);
                CREATE INDEX IF NOT EXISTS idx_audit_created ON audit_log(created_at);
                CREATE INDEX IF NOT EXISTS idx_users_payout ON users(payout_account_id);
                CREATE INDEX IF NOT EXISTS idx_notifications_recipient ON notifications(recipient_id);
            """)

            logger.info("All database tables and indexes created successfully")

    # ==================== TRANSACTIONS ====================

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM escrow_transactions WHERE id = $1", transaction_id
            )
        return Transaction.from_record(dict(row)) if row else None

    async def find_transaction_by_payment_intent(
        self,
        payment_intent_id: str
    ) -> Optional[Transaction]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM escrow_transactions WHERE payment_intent_id = $1",
                payment_intent_id
            )
        return Transaction.from_record(dict(row)) if row else None

    async def insert_transaction(self, txn: Transaction) -> Transaction:
        """
        Insert a new transaction row

        Raises:
            DatabaseError: If the insert fails
        """
        record = txn.to_record()
        placeholders = ', '.join(f'${i}' for i in range(1, len(TRANSACTION_COLUMNS) + 1))
        query = (
            f"INSERT INTO escrow_transactions ({', '.join(TRANSACTION_COLUMNS)}) "
            f"VALUES ({placeholders}) RETURNING *"
        )
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(query, *[record[c] for c in TRANSACTION_COLUMNS])
        except asyncpg.PostgresError as e:
            logger.error(f"Error inserting transaction {txn.id}: {e}")
            raise DatabaseError(f"Failed to insert transaction: {e}") from e

        logger.info(f"Transaction {txn.id} created")
        return Transaction.from_record(dict(row))

    async def save_transaction(self, txn: Transaction, expected_version: int) -> Transaction:
        """
        Persist ``txn`` if nobody else has committed since it was loaded

        Args:
            txn: Mutated transaction
            expected_version: Version the caller loaded

        Returns:
            The stored transaction with its new version

        Raises:
            ConcurrentModificationError: If the stored version moved on
            DatabaseError: If the update fails
        """
        record = txn.to_record()
        columns = [c for c in TRANSACTION_COLUMNS if c not in ('id', 'version')]
        assignments = ', '.join(f"{c} = ${i}" for i, c in enumerate(columns, start=3))
        query = (
            f"UPDATE escrow_transactions SET {assignments}, version = version + 1 "
            f"WHERE id = $1 AND version = $2 RETURNING *"
        )
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    query, txn.id, expected_version, *[record[c] for c in columns]
                )
        except asyncpg.PostgresError as e:
            logger.error(f"Error saving transaction {txn.id}: {e}")
            raise DatabaseError(f"Failed to save transaction: {e}") from e

        if row is None:
            raise ConcurrentModificationError(
                f"Transaction {txn.id} was modified concurrently (expected version {expected_version})"
            )
        return Transaction.from_record(dict(row))

    async def list_user_transactions(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 50
    ) -> List[Transaction]:
        query = """
            SELECT * FROM escrow_transactions
            WHERE (buyer_id = $1 OR seller_id = $1)
        """
        params: List[Any] = [user_id]
        if status:
            query += " AND status = $2"
            params.append(status)
        query += f" ORDER BY created_at DESC LIMIT ${len(params) + 1}"
        params.append(limit)

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [Transaction.from_record(dict(r)) for r in rows]

    async def get_transaction_stats(self, user_id: str) -> Dict[str, Any]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(amount), 0) AS total_amount,
                    COUNT(*) FILTER (WHERE status IN ('pending', 'accepted')) AS pending,
                    COUNT(*) FILTER (WHERE status = 'completed') AS completed
                FROM escrow_transactions
                WHERE buyer_id = $1 OR seller_id = $1
            """, user_id)
        return {
            'total': row['total'],
            'total_amount': Decimal(row['total_amount']),
            'pending': row['pending'],
            'completed': row['completed'],
        }

    async def get_auto_release_candidates(self, now: datetime, limit: int = 100) -> List[str]:
        """Ids of delivered transactions whose inspection window has elapsed"""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT id FROM escrow_transactions
                WHERE status = $1
                  AND inspection_ends_at IS NOT NULL
                  AND inspection_ends_at <= $2
                ORDER BY inspection_ends_at ASC
                LIMIT $3
            """, TransactionStatus.DELIVERED.value, now, limit)
        return [r['id'] for r in rows]

    async def has_active_transactions(self, user_id: str) -> bool:
        async with self.pool.acquire() as conn:
            return await conn.fetchval("""
                SELECT EXISTS (
                    SELECT 1 FROM escrow_transactions
                    WHERE (buyer_id = $1 OR seller_id = $1) AND status = ANY($2)
                )
            """, user_id, [s.value for s in ACTIVE_STATUSES])

    # ==================== USERS ====================

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
        return _user_from_row(row) if row else None

    async def find_user_by_email(self, email: str) -> Optional[UserAccount]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM users WHERE LOWER(email) = LOWER($1)", email
            )
        return _user_from_row(row) if row else None

    async def adjust_trust_score(
        self,
        user_id: str,
        delta: int,
        counter: str,
        volume: Decimal = Decimal('0')
    ) -> Optional[int]:
        """
        Atomically apply a clamped score delta and bump an outcome counter

        Returns:
            The new score, or None if the user does not exist
        """
        if counter not in TRUST_COUNTERS:
            raise ValueError(f"Unknown trust counter: {counter}")

        async with self.pool.acquire() as conn:
            return await conn.fetchval(f"""
                UPDATE users
                SET trust_score = LEAST(100, GREATEST(0, trust_score + $2)),
                    {counter} = {counter} + 1,
                    total_volume = total_volume + $3
                WHERE id = $1
                RETURNING trust_score
            """, user_id, delta, volume)

    async def set_payout_onboarded(self, payout_account_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE users SET payout_onboarded = TRUE
                WHERE payout_account_id = $1 AND payout_onboarded = FALSE
            """, payout_account_id)
        return result == "UPDATE 1"

    async def delete_user(self, user_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM users WHERE id = $1", user_id)
        return result == "DELETE 1"

    # ==================== AGREEMENTS ====================

    async def get_active_agreement(self, transaction_id: str) -> Optional[Agreement]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM agreements
                WHERE transaction_id = $1 AND is_active
            """, transaction_id)
        return _agreement_from_row(row) if row else None

    async def create_agreement_version(
        self,
        transaction_id: str,
        title: str,
        terms: str,
        created_by: str,
        created_at: datetime
    ) -> Agreement:
        """
        Deactivate the current version and insert the next one

        The creator's acceptance is recorded on the new version.
        """
        accepted = [{'user_id': created_by, 'accepted_at': created_at.isoformat()}]

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                # Serialise concurrent version bumps for the same transaction
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))", transaction_id
                )
                latest = await conn.fetchval(
                    "SELECT COALESCE(MAX(version), 0) FROM agreements WHERE transaction_id = $1",
                    transaction_id
                )
                await conn.execute(
                    "UPDATE agreements SET is_active = FALSE WHERE transaction_id = $1 AND is_active",
                    transaction_id
                )
                row = await conn.fetchrow("""
                    INSERT INTO agreements
                        (id, transaction_id, version, title, terms, created_by,
                         accepted_by, is_active, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, TRUE, $8)
                    RETURNING *
                """, new_id(), transaction_id, latest + 1, title, terms, created_by,
                    accepted, created_at)

        logger.info(f"Agreement v{latest + 1} created for transaction {transaction_id}")
        return _agreement_from_row(row)

    async def add_agreement_acceptance(
        self,
        agreement_id: str,
        user_id: str,
        accepted_at: datetime
    ) -> bool:
        """Record an acceptance; False if the user had already accepted"""
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE agreements
                SET accepted_by = accepted_by || jsonb_build_array(
                    jsonb_build_object('user_id', $2::text, 'accepted_at', $3::text))
                WHERE id = $1
                  AND NOT accepted_by @> jsonb_build_array(jsonb_build_object('user_id', $2::text))
            """, agreement_id, user_id, accepted_at.isoformat())
        return result == "UPDATE 1"

    # ==================== AUDIT ====================

    async def append_audit(self, entry: AuditEntry) -> bool:
        """
        Append an audit record

        Returns:
            True if the record was written
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO audit_log
                        (id, actor_id, transaction_id, action, category, status,
                         severity, metadata, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """, entry.id, entry.actor_id, entry.transaction_id, entry.action,
                    entry.category, entry.status, entry.severity, entry.metadata,
                    entry.created_at)
                return True
        except Exception as e:
            logger.error(f"Error appending audit record {entry.action}: {e}")
            return False

    async def list_audit(self, transaction_id: str, limit: int = 100) -> List[AuditEntry]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM audit_log
                WHERE transaction_id = $1
                ORDER BY created_at DESC
                LIMIT $2
            """, transaction_id, limit)
        return [
            AuditEntry(
                id=r['id'],
                actor_id=r['actor_id'],
                transaction_id=r['transaction_id'],
                action=r['action'],
                category=r['category'],
                status=r['status'],
                severity=r['severity'],
                metadata=r['metadata'] or {},
                created_at=r['created_at'],
            )
            for r in rows
        ]

    async def purge_audit(self, before: datetime) -> int:
        """Delete audit records older than ``before``; returns the count"""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM audit_log WHERE created_at < $1", before
            )
        return int(result.split()[-1])

    # ==================== SETTINGS & NOTIFICATIONS ====================

    async def fetch_settings(self) -> Dict[str, Any]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT key, value FROM system_settings")
        return {r['key']: r['value'] for r in rows}

    async def create_notification(
        self,
        recipient_id: str,
        title: str,
        body: str,
        category: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Create an in-app notification for a user

        Returns:
            True if notification created
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO notifications (recipient_id, title, body, category, metadata)
                    VALUES ($1, $2, $3, $4, $5)
                """, recipient_id, title, body, category, metadata or {})
                return True
        except Exception as e:
            logger.error(f"Error creating notification: {e}")
            return False


# Convenience function for easy initialization
async def create_escrow_db(
    database_url: str,
    min_size: int = 5,
    max_size: int = 20
) -> EscrowDatabase:
    """
    Create and initialize escrow database

    Returns:
        Connected EscrowDatabase instance
    """
    db = EscrowDatabase(database_url, min_size, max_size)
    await db.connect()
    await db.initialize_tables()
    return db
