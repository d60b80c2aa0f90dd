"""Scheduled sweep of the webhook event ledger.

Deletes records past their retention window. Run it daily from cron or any
job scheduler; running it late or rarely only lets the table grow.
"""

import asyncio
import sys
from datetime import timedelta
from pathlib import Path

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config, validate_config_for_service
from src.database import Database
from src.logging_utils import CorrelationIdContext, get_logger, setup_logging
from src.settlement.webhook_ledger import WebhookEventLedger

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main() -> int:
    validate_config_for_service("maintenance")
    db = Database(config.database_path)
    await db.initialize()
    ledger = WebhookEventLedger(db, retention=timedelta(days=config.webhook_retention_days))

    with CorrelationIdContext():
        removed = await ledger.evict_expired()
        logger.info(f"Webhook ledger sweep complete: {removed} records removed")
    return removed


if __name__ == "__main__":
    asyncio.run(main())
