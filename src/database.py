"""SQLite storage for the settlement engine.

Holds the webhook event ledger (owned by this engine) next to the tables it
reads and writes through narrow contracts: organizer/vendor platform debt,
orders and event payment configuration. The two operations that must stay
correct under concurrent deliveries, the webhook conditional insert and the
debt floor-decrement, are each a single SQL statement.
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from .config import config
from .logging_utils import get_logger
from .models import (
    ChargeContext,
    DebtLedgerEntry,
    DebtRecord,
    OrderRecord,
    PaymentConfig,
    PaymentProvider,
    WebhookEventRecord,
)

logger = get_logger(__name__)

SCHEMA_SQL = """
-- Processed provider notifications (dedup ledger)
CREATE TABLE IF NOT EXISTS webhook_events (
    provider TEXT NOT NULL,
    event_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    processed_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    related_order_id TEXT,
    PRIMARY KEY (provider, event_id)
);

-- Outstanding platform debt per organizer or vendor
CREATE TABLE IF NOT EXISTS platform_debt (
    owner_id TEXT PRIMARY KEY,
    total_debt_cents INTEGER NOT NULL DEFAULT 0,
    total_settled_cents INTEGER NOT NULL DEFAULT 0,
    remaining_debt_cents INTEGER NOT NULL DEFAULT 0 CHECK(remaining_debt_cents >= 0),
    last_applied_cents INTEGER NOT NULL DEFAULT 0,
    last_settlement_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Debt history
CREATE TABLE IF NOT EXISTS platform_debt_ledger (
    entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    transaction_type TEXT NOT NULL CHECK(transaction_type IN ('CASH_ORDER_DEBT', 'DIGITAL_SETTLEMENT')),
    order_id TEXT,
    amount_cents INTEGER NOT NULL,
    balance_after_cents INTEGER NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

-- Orders (ticket, product and platform purchases)
CREATE TABLE IF NOT EXISTS orders (
    order_id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('PENDING', 'PAID', 'FAILED', 'REFUNDED')),
    payment_intent_id TEXT,
    debt_settlement_cents INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL DEFAULT '{}',
    updated_at TEXT NOT NULL
);

-- Event payment configuration
CREATE TABLE IF NOT EXISTS payment_configs (
    entity_id TEXT PRIMARY KEY,
    connected_account_id TEXT,
    owner_id TEXT,
    paypal_merchant_id TEXT,
    payment_model TEXT NOT NULL DEFAULT 'CREDIT_CARD'
);

CREATE INDEX IF NOT EXISTS idx_webhook_events_expires_at ON webhook_events(expires_at);
CREATE INDEX IF NOT EXISTS idx_webhook_events_processed_at ON webhook_events(processed_at);
CREATE INDEX IF NOT EXISTS idx_debt_ledger_owner ON platform_debt_ledger(owner_id, created_at);
"""


# Statuses an order may move to, keyed by target status
ORDER_TRANSITIONS = {
    "PAID": ("PENDING", "FAILED"),
    "FAILED": ("PENDING",),
    "REFUNDED": ("PENDING", "PAID"),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Fixed-width UTC timestamp so that text comparison orders correctly."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


class Database:
    """Async database interface for the settlement engine."""

    def __init__(self, db_path: str = None):
        """Initialize database connection settings.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
        """
        self.db_path = db_path or config.database_path

    async def initialize(self) -> None:
        """Create the schema if it does not exist."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    # Webhook event ledger
    async def insert_webhook_event(self, record: WebhookEventRecord) -> bool:
        """Insert a webhook event unless one exists for the same provider and ID.

        Args:
            record: Event record to insert.

        Returns:
            True if the record was created, False if it already existed.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO webhook_events
                    (provider, event_id, event_type, processed_at, expires_at, related_order_id)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.provider.value,
                        record.event_id,
                        record.event_type,
                        to_db_time(record.processed_at),
                        to_db_time(record.expires_at),
                        record.related_order_id,
                    ),
                )
                await db.commit()
            return True
        except sqlite3.IntegrityError:
            return False

    async def get_webhook_event(
        self, provider: PaymentProvider, event_id: str
    ) -> Optional[WebhookEventRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM webhook_events WHERE provider = ? AND event_id = ?",
                (provider.value, event_id),
            )
            row = await cursor.fetchone()

            if row:
                return WebhookEventRecord(
                    event_id=row["event_id"],
                    provider=PaymentProvider(row["provider"]),
                    event_type=row["event_type"],
                    processed_at=from_db_time(row["processed_at"]),
                    expires_at=from_db_time(row["expires_at"]),
                    related_order_id=row["related_order_id"],
                )
            return None

    async def delete_webhook_event(self, provider: PaymentProvider, event_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM webhook_events WHERE provider = ? AND event_id = ?",
                (provider.value, event_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def delete_webhook_events_expired_before(self, cutoff: datetime) -> int:
        """Delete every event whose expiry is strictly before ``cutoff``.

        Returns:
            Number of rows removed.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM webhook_events WHERE expires_at < ?",
                (to_db_time(cutoff),),
            )
            await db.commit()
            return cursor.rowcount

    async def count_webhook_events(
        self,
        day_ago: datetime,
        week_ago: datetime,
        provider: Optional[PaymentProvider] = None,
    ) -> dict:
        """Aggregate ledger counts without loading the records.

        Returns:
            Dict with ``total``, ``last_24_hours`` and ``last_7_days`` counts,
            ``event_types`` (last 7 days) and ``providers`` (all records).
        """
        where = "WHERE provider = ?" if provider is not None else ""
        params: tuple = (provider.value,) if provider is not None else ()
        day, week = to_db_time(day_ago), to_db_time(week_ago)

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                SELECT COUNT(*),
                       COALESCE(SUM(CASE WHEN processed_at > ? THEN 1 ELSE 0 END), 0),
                       COALESCE(SUM(CASE WHEN processed_at > ? THEN 1 ELSE 0 END), 0)
                FROM webhook_events {where}
                """,
                (day, week, *params),
            )
            total, last_day, last_week = await cursor.fetchone()

            type_filter = "AND provider = ?" if provider is not None else ""
            cursor = await db.execute(
                f"""
                SELECT event_type, COUNT(*) FROM webhook_events
                WHERE processed_at > ? {type_filter}
                GROUP BY event_type
                """,
                (week, *params),
            )
            event_types = dict(await cursor.fetchall())

            cursor = await db.execute(
                f"SELECT provider, COUNT(*) FROM webhook_events {where} GROUP BY provider",
                params,
            )
            providers = dict(await cursor.fetchall())

        return {
            "total": total,
            "last_24_hours": last_day,
            "last_7_days": last_week,
            "event_types": event_types,
            "providers": providers,
        }

    # Platform debt
    async def get_debt_record(self, owner_id: str) -> Optional[DebtRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT remaining_debt_cents FROM platform_debt WHERE owner_id = ?",
                (owner_id,),
            )
            row = await cursor.fetchone()

        if row:
            return DebtRecord(owner_id=owner_id, remaining_debt_cents=row[0])
        return None

    async def add_debt(
        self,
        owner_id: str,
        amount_cents: int,
        order_id: Optional[str] = None,
        description: str = "",
    ) -> int:
        """Record platform fees owed from a cash order.

        Returns:
            The owner's remaining debt after the increase.
        """
        now = to_db_time(utcnow())
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO platform_debt
                (owner_id, total_debt_cents, remaining_debt_cents, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    total_debt_cents = total_debt_cents + excluded.total_debt_cents,
                    remaining_debt_cents = remaining_debt_cents + excluded.remaining_debt_cents,
                    updated_at = excluded.updated_at
                """,
                (owner_id, amount_cents, amount_cents, now, now),
            )
            cursor = await db.execute(
                "SELECT remaining_debt_cents FROM platform_debt WHERE owner_id = ?",
                (owner_id,),
            )
            (balance,) = await cursor.fetchone()
            await db.execute(
                """
                INSERT INTO platform_debt_ledger
                (owner_id, transaction_type, order_id, amount_cents, balance_after_cents,
                 description, created_at)
                VALUES (?, 'CASH_ORDER_DEBT', ?, ?, ?, ?, ?)
                """,
                (owner_id, order_id, amount_cents, balance, description, now),
            )
            await db.commit()
        logger.info(f"Added debt for {owner_id}: {amount_cents} cents, balance {balance}")
        return balance

    async def decrement_debt(
        self, owner_id: str, amount_cents: int, order_id: Optional[str] = None
    ) -> Optional[tuple[int, int]]:
        """Decrease an owner's debt by up to ``amount_cents``, never below zero.

        The decrement and the applied amount are computed by one UPDATE, so
        concurrent settlements for the same owner cannot overshoot.

        Returns:
            ``(applied_cents, remaining_cents)``, or None if the owner has no record.
        """
        now = to_db_time(utcnow())
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE platform_debt
                SET last_applied_cents = MIN(remaining_debt_cents, ?),
                    total_settled_cents = total_settled_cents + MIN(remaining_debt_cents, ?),
                    remaining_debt_cents = MAX(0, remaining_debt_cents - ?),
                    last_settlement_at = ?,
                    updated_at = ?
                WHERE owner_id = ?
                """,
                (amount_cents, amount_cents, amount_cents, now, now, owner_id),
            )
            if cursor.rowcount == 0:
                await db.rollback()
                return None

            # Same transaction: the row is still locked by our write
            cursor = await db.execute(
                "SELECT last_applied_cents, remaining_debt_cents FROM platform_debt WHERE owner_id = ?",
                (owner_id,),
            )
            applied, remaining = await cursor.fetchone()

            await db.execute(
                """
                INSERT INTO platform_debt_ledger
                (owner_id, transaction_type, order_id, amount_cents, balance_after_cents,
                 description, created_at)
                VALUES (?, 'DIGITAL_SETTLEMENT', ?, ?, ?, 'Settlement from digital payment', ?)
                """,
                (owner_id, order_id, applied, remaining, now),
            )
            await db.commit()
        return applied, remaining

    async def get_debt_history(self, owner_id: str, limit: int = 50) -> list[DebtLedgerEntry]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM platform_debt_ledger
                WHERE owner_id = ?
                ORDER BY created_at DESC, entry_id DESC
                LIMIT ?
                """,
                (owner_id, limit),
            )
            rows = await cursor.fetchall()

        return [
            DebtLedgerEntry(
                owner_id=row["owner_id"],
                transaction_type=row["transaction_type"],
                order_id=row["order_id"],
                amount_cents=row["amount_cents"],
                balance_after_cents=row["balance_after_cents"],
                description=row["description"],
                created_at=from_db_time(row["created_at"]),
            )
            for row in rows
        ]

    # Orders
    async def create_order(
        self, order_id: str, kind: ChargeContext, metadata: Optional[dict] = None
    ) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO orders (order_id, kind, status, metadata, updated_at)
                VALUES (?, ?, 'PENDING', ?, ?)
                """,
                (order_id, kind.value, json.dumps(metadata or {}), to_db_time(utcnow())),
            )
            await db.commit()
        logger.info(f"Created order: {order_id}")

    async def get_order(self, order_id: str) -> Optional[OrderRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM orders WHERE order_id = ?", (order_id,))
            row = await cursor.fetchone()

            if row:
                return OrderRecord(
                    order_id=row["order_id"],
                    kind=ChargeContext(row["kind"]),
                    status=row["status"],
                    payment_intent_id=row["payment_intent_id"],
                    debt_settlement_cents=row["debt_settlement_cents"],
                    updated_at=from_db_time(row["updated_at"]),
                )
            return None

    async def update_order_status(
        self,
        order_id: str,
        status: str,
        payment_intent_id: Optional[str] = None,
    ) -> bool:
        """Move an order to a new payment status if the transition is allowed.

        The check and the write are one UPDATE, so a late or reordered
        notification cannot move a refunded order back to paid. Re-applying
        the status the same payment already set is allowed, which lets a
        released notification finish its remaining side effects.

        Returns:
            False if the order does not exist or is in a status that cannot
            move to ``status``.
        """
        allowed_from = ORDER_TRANSITIONS.get(status, ())
        placeholders = ", ".join("?" for _ in allowed_from) or "NULL"
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE orders
                SET status = ?,
                    payment_intent_id = COALESCE(?, payment_intent_id),
                    updated_at = ?
                WHERE order_id = ?
                  AND (status IN ({placeholders})
                       OR (status = ? AND payment_intent_id IS ?))
                """,
                (
                    status,
                    payment_intent_id,
                    to_db_time(utcnow()),
                    order_id,
                    *allowed_from,
                    status,
                    payment_intent_id,
                ),
            )
            await db.commit()
            updated = cursor.rowcount == 1
        if updated:
            logger.info(f"Updated order {order_id} status to {status}")
        return updated

    async def set_order_settlement(self, order_id: str, settlement_cents: int) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE orders SET debt_settlement_cents = ?, updated_at = ? WHERE order_id = ?",
                (settlement_cents, to_db_time(utcnow()), order_id),
            )
            await db.commit()

    # Event payment configuration
    async def upsert_payment_config(self, payment_config: PaymentConfig) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO payment_configs
                (entity_id, connected_account_id, owner_id, paypal_merchant_id, payment_model)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(entity_id) DO UPDATE SET
                    connected_account_id = excluded.connected_account_id,
                    owner_id = excluded.owner_id,
                    paypal_merchant_id = excluded.paypal_merchant_id,
                    payment_model = excluded.payment_model
                """,
                (
                    payment_config.entity_id,
                    payment_config.connected_account_id,
                    payment_config.owner_id,
                    payment_config.paypal_merchant_id,
                    payment_config.payment_model,
                ),
            )
            await db.commit()

    async def get_payment_config(self, entity_id: str) -> Optional[PaymentConfig]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM payment_configs WHERE entity_id = ?", (entity_id,)
            )
            row = await cursor.fetchone()

            if row:
                return PaymentConfig(
                    entity_id=row["entity_id"],
                    connected_account_id=row["connected_account_id"],
                    owner_id=row["owner_id"],
                    paypal_merchant_id=row["paypal_merchant_id"],
                    payment_model=row["payment_model"],
                )
            return None
