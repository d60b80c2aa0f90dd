"""Database initialization script.

Run this to create the settlement schema. Optionally seeds a demo event with
a connected account and some cash-order debt for its organizer.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config
from src.database import Database
from src.logging_utils import get_logger, setup_logging
from src.models import PaymentConfig
from src.settlement.fees import platform_fee_cents

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main(seed_demo: bool):
    """Initialize the database."""
    db = Database(config.database_path)
    logger.info(f"Database path: {db.db_path}")

    await db.initialize()

    if seed_demo:
        await db.upsert_payment_config(
            PaymentConfig(
                entity_id="evt_demo",
                connected_account_id="acct_1DemoOrganizer00000",
                owner_id="org_demo",
                paypal_merchant_id="DEMOMERCHANT1",
                payment_model="CREDIT_CARD",
            )
        )
        # Platform fee owed on a $250 cash order taken at the door
        owed = platform_fee_cents(25_000)
        balance = await db.add_debt("org_demo", owed, order_id="cash_demo", description="Seeded cash order")
        logger.info(f"Seeded evt_demo; org_demo owes ${balance / 100:.2f}")

    logger.info("Database initialization complete!")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--seed-demo", action="store_true", help="Seed a demo event and organizer debt")
    args = parser.parse_args()
    asyncio.run(main(args.seed_demo))
