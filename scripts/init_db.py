import asyncio
import logging
import sys
import os
sys.path.append(os.getcwd())
from approval_engine.config import settings
from approval_engine.database import db

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

async def init_db():
    db.connect()
    print(f"Creating indexes on '{settings.DB_NAME}'...")
    await db.ensure_indexes()
    print("Database initialization complete.")
    db.close()

if __name__ == "__main__":
    asyncio.run(init_db())
