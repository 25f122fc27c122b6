"""Initialize database tables.

Run from the backend directory:
    python -m receiptflow.scripts.init_db
"""

import asyncio
import logging

from receiptflow.core.database import get_db_debug_info, init_db

logger = logging.getLogger(__name__)


async def main():
    logger.info("Initializing database tables on %s", get_db_debug_info().get("url"))
    await init_db()
    logger.info("Database initialization complete")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
