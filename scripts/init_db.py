import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

# Environment must be loaded before the engine module reads settings.
load_dotenv()

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from visitor_intent.core.config import settings  # noqa: E402
from visitor_intent.db.engine import init_db  # noqa: E402

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main():
    database_url = settings.DATABASE_URL
    db_type = "SQLite" if "sqlite" in database_url else "PostgreSQL"

    logger.info("Initializing %s database...", db_type)
    logger.info("   URL: %s", database_url.split("@")[-1] if "@" in database_url else "local")

    try:
        await init_db()
        logger.info("Visitor tracking schema initialized successfully.")
    except Exception as e:
        logger.error("Failed to initialize database: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Operation cancelled.")
