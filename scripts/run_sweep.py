import asyncio
import logging
import sys
import os
sys.path.append(os.getcwd())
from approval_engine.config import settings
from approval_engine.database import db
from approval_engine.engine.sla_monitor import sla_monitor

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

async def run_sweep():
    """
    One pass of the approval follow-up job: expiries, escalations, reminders.
    Meant to be called by cron every few minutes.
    """
    logger.info("Starting approval sweep...")
    db.connect()
    try:
        counts = await sla_monitor.run_sweep()
    finally:
        db.close()

    logger.info(
        f"Expired {counts['expired']}, escalated {counts['escalated']}, "
        f"reminded {counts['reminded']} ({counts['errors']} errors)"
    )
    return counts

if __name__ == "__main__":
    counts = asyncio.run(run_sweep())
    sys.exit(1 if counts["errors"] else 0)
