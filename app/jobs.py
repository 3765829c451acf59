import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pymongo.errors import PyMongoError

from app.ledger import Collections, OrderLedger

logger = logging.getLogger(__name__)

CLEANUP_JOB_ID = "retention_cleanup"


class RetentionCleanupJob:
    """Deletes transaction logs and abandoned pending orders past retention."""

    # collection -> timestamp field the retention window applies to
    TARGETS = (
        (Collections.TRANSACTION_LOGS, "generated_at"),
        (Collections.PENDING_ORDERS, "created_at"),
    )

    def __init__(self, ledger: OrderLedger, retention_days: int = 30, batch_size: int = 500):
        self.ledger = ledger
        self.retention_days = retention_days
        self.batch_size = batch_size

    async def run(self, now: Optional[datetime] = None) -> Dict[str, int]:
        cutoff = (now or datetime.utcnow()) - timedelta(days=self.retention_days)
        deleted = {}
        for collection, field in self.TARGETS:
            try:
                count = await self.ledger.delete_older_than(collection, field, cutoff, self.batch_size)
            except PyMongoError:
                logger.exception("Retention cleanup failed", extra={"collection": collection})
                count = 0
            deleted[collection] = count
            logger.info("Retention cleanup finished", extra={"collection": collection, "deleted": count})
        return deleted


def create_scheduler(job: RetentionCleanupJob, interval_hours: int = 24) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        job.run,
        IntervalTrigger(hours=interval_hours),
        id=CLEANUP_JOB_ID,
        name="Retention cleanup",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler
