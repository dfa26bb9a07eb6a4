"""
Stale-job recovery.

A job left in processing for longer than every stage timeout combined
(plus a margin) cannot still be owned by a live worker: its worker crashed
after claiming it. Such jobs go back to pending. attempts is not touched:
the requeue adds nothing, while the claim that preceded the crash stays counted.
"""

import logging
from datetime import datetime, timedelta

from sttqueue.core.db_sqlite import Database, utcnow

logger = logging.getLogger(__name__)


def stale_threshold(grace_sec: float, now: datetime | None = None) -> datetime:
    return (now or utcnow()) - timedelta(seconds=grace_sec)


def recover_stale_jobs(db: Database, grace_sec: float, now: datetime | None = None) -> list[str]:
    """Requeue processing jobs whose last update is older than ``grace_sec``."""
    threshold = stale_threshold(grace_sec, now)
    recovered = db.requeue_stale_jobs(threshold)
    if recovered:
        logger.warning("Recovered %d stale job(s): %s", len(recovered), ', '.join(recovered))
    else:
        logger.info("No stale jobs older than %s", threshold.isoformat())
    return recovered
