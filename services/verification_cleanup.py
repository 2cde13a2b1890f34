import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from services.verification_store import VerificationRecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupReport:
    threshold: datetime
    expired_unverified: int
    old_verified: int

    @property
    def total(self) -> int:
        return self.expired_unverified + self.old_verified


def cleanup_verifications(
    session_factory: Callable[[], Session],
    now: datetime,
    retention: timedelta = timedelta(hours=24),
) -> CleanupReport:
    """
    Purge verification rows past the retention window:
    unverified rows created before the threshold and verified rows verified
    before it. Safe to run repeatedly and alongside live traffic.
    """
    threshold = now - retention

    with session_factory() as db:
        store = VerificationRecordStore(db)
        logger.info(
            f"Verification cleanup starting threshold={threshold.isoformat()} "
            f"expired={store.count_expired(now)} old_verified={store.count_old_verified(threshold)}"
        )
        old_verified = store.sweep_old_verified(threshold)
        expired_unverified = store.sweep_expired_unverified(threshold)
        db.commit()

    report = CleanupReport(threshold, expired_unverified, old_verified)
    logger.info(
        f"Verification cleanup done: {report.old_verified} verified, "
        f"{report.expired_unverified} unverified removed"
    )
    return report
