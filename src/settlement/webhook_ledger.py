"""Webhook event ledger: exactly-once side effects over at-least-once delivery.

Each ``(provider, event_id)`` moves UNSEEN -> RECORDED -> EVICTED. Recording
is a conditional insert guarded by the table's primary key, so when several
deliveries of one notification race, exactly one of them sees
``created=True`` and performs the side effects.

Records are kept for a retention window (7 days by default) that is assumed
to exceed every supported provider's redelivery window. Revisit the window
if a provider changes its retry policy: evicting a record only reclaims
space, it does not undo the event's business effect.
"""

from datetime import datetime, timedelta
from typing import Optional

from src.database import Database, utcnow
from src.logging_utils import get_logger
from src.models import PaymentProvider, RecordResult, WebhookEventRecord, WebhookStats

logger = get_logger(__name__)

DEFAULT_RETENTION = timedelta(days=7)


class WebhookEventLedger:
    """Records which provider notifications have already been processed."""

    def __init__(self, db: Database, retention: timedelta = DEFAULT_RETENTION):
        self.db = db
        self.retention = retention

    async def record_if_new(
        self,
        event_id: str,
        event_type: str,
        provider: PaymentProvider,
        related_order_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RecordResult:
        """Record a notification unless it was already recorded.

        Args:
            event_id: Provider-assigned notification ID.
            event_type: Provider event type, e.g. ``payment_intent.succeeded``.
            provider: Which provider sent it.
            related_order_id: Order the notification concerns, if known.
            now: Processing time; defaults to the current UTC time.

        Returns:
            ``created=True`` for the first delivery, ``created=False`` for a retry.
        """
        processed_at = now or utcnow()
        record = WebhookEventRecord(
            event_id=event_id,
            provider=provider,
            event_type=event_type,
            processed_at=processed_at,
            expires_at=processed_at + self.retention,
            related_order_id=related_order_id,
        )

        created = await self.db.insert_webhook_event(record)
        if created:
            logger.info(f"Recorded {provider.value} event {event_id} ({event_type})")
            return RecordResult(created=True, record=record)

        logger.info(f"{provider.value} event {event_id} already recorded, skipping")
        return RecordResult(created=False)

    async def is_recorded(
        self, event_id: str, provider: PaymentProvider = PaymentProvider.STRIPE
    ) -> bool:
        return await self.db.get_webhook_event(provider, event_id) is not None

    async def release(self, event_id: str, provider: PaymentProvider) -> None:
        """Forget a record whose side effects failed, so redelivery can retry."""
        if await self.db.delete_webhook_event(provider, event_id):
            logger.warning(f"Released {provider.value} event {event_id} after failed processing")

    async def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Remove records whose ``expires_at`` is strictly before ``now``.

        Meant for a scheduled job. Skipping it for a while only lets the
        table grow; it never affects deduplication.
        """
        removed = await self.db.delete_webhook_events_expired_before(now or utcnow())
        if removed:
            logger.info(f"Evicted {removed} expired webhook events")
        return removed

    async def stats(
        self, now: Optional[datetime] = None, provider: Optional[PaymentProvider] = None
    ) -> WebhookStats:
        """Counts for the ledger, optionally for a single provider.

        Aggregated by the database; records are never loaded.
        """
        now = now or utcnow()
        counts = await self.db.count_webhook_events(
            day_ago=now - timedelta(days=1),
            week_ago=now - timedelta(days=7),
            provider=provider,
        )

        return WebhookStats(
            total_events=counts["total"],
            last_24_hours=counts["last_24_hours"],
            last_7_days=counts["last_7_days"],
            event_type_counts=counts["event_types"],
            provider_counts=counts["providers"],
        )
