import asyncio
import logging

from config.settings import settings
from core.logging import configure_logging
from services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


async def main():
    """
    One-time script to create the subscriptions and runs tables in the configured database.
    Opening the store runs metadata.create_all, so this is safe to repeat.
    """
    db_url = settings.DATABASE_URL
    if not db_url:
        raise RuntimeError("DATABASE_URL is not configured")

    store = SubscriptionStore(db_url)
    await store.open()
    await store.close()
    logger.info("Database schema created/updated successfully at %s", db_url)


if __name__ == "__main__":
    configure_logging()
    asyncio.run(main())
