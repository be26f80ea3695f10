"""
Cleanup sweeper: downgrades premium records whose access has lapsed.

Runs as a scheduled batch against live data. It takes no locks, so a
webhook landing on the same user mid-sweep is resolved last-writer-wins;
the next webhook or sweep converges the record again.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

import crud
from .lifecycle import downgrade, downgrade_reason, grace_period_end
from .records import utcnow

logger = logging.getLogger(__name__)


class CleanupSweeper:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def run(self, now: Optional[datetime] = None) -> dict:
        now = now or self.clock()
        logger.info("Starting expired premium cleanup...")

        records = crud.list_premium_records(self.db)
        downgraded = 0
        for record in records:
            reason = downgrade_reason(record, now)
            if reason is None:
                continue

            boundary, source = grace_period_end(record)
            if boundary is not None:
                logger.info(f"Downgrading user {record.user_id} to basic - Reason: {reason} (grace end {boundary.isoformat()} from {source})")
            else:
                logger.info(f"Downgrading user {record.user_id} to basic - Reason: {reason}")
            crud.save_record(self.db, downgrade(record, reason, now))
            downgraded += 1

        logger.info(f"Cleanup completed. {downgraded} users downgraded to basic.")
        return {
            "totalPremiumUsers": len(records),
            "downgradedUsers": downgraded,
            "activeUsers": len(records) - downgraded,
        }
