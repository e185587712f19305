"""
Grace-period expiry job.

A subscription deleted at the payments processor while its paid period was
still running stays ACTIVE with cancel_at_period_end. Once that period has
elapsed this job moves it to CANCELLED.

Should run hourly via cron or task scheduler:
    python -m ledgerlink.jobs.expire_grace_periods
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledgerlink.billing.state_machine import expire_grace_period
from ledgerlink.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


class GracePeriodExpiryJob:
    """Cancels subscriptions whose grace period has ended."""

    def __init__(self, db_session: Session):
        self.db_session = db_session

    def run(self, now: Optional[datetime] = None) -> dict:
        """
        Execute the job.

        Returns:
            Summary of results
        """
        now = now or datetime.now(timezone.utc)
        logger.info("Starting grace period expiry job")

        results = {
            "started_at": now.isoformat(),
            "subscriptions_expired": 0,
            "errors": [],
        }

        expired_subs = self.db_session.query(Subscription).filter(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.cancel_at_period_end.is_(True),
            Subscription.provider_ended_at.isnot(None),
            Subscription.current_period_end.isnot(None),
            Subscription.current_period_end <= now,
        ).all()

        for sub in expired_subs:
            logger.info("Expiring subscription due to grace period", extra={
                "subscription_id": sub.id,
                "user_id": sub.user_id,
                "grace_period_ended": sub.current_period_end.isoformat(),
            })
            expire_grace_period(sub)

        try:
            self.db_session.commit()
            results["subscriptions_expired"] = len(expired_subs)
        except SQLAlchemyError as e:
            self.db_session.rollback()
            logger.error("Grace period expiry commit failed", extra={"error": str(e)})
            results["errors"].append(str(e))

        results["completed_at"] = datetime.now(timezone.utc).isoformat()
        logger.info("Grace period expiry completed", extra=results)
        return results


def main():
    """Entry point for cron/scheduler."""
    from ledgerlink.database.session import SessionLocal, get_engine

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    get_engine()
    session = SessionLocal()
    try:
        results = GracePeriodExpiryJob(session).run()
    finally:
        session.close()

    if results["errors"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
