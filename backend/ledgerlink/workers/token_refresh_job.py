"""
Token refresh job - cron job for proactively refreshing expiring tokens.

Refreshes every ACTIVE connection whose access token expires within the
window so that request-time refreshes are rare. Connections whose refresh
fails are demoted to INACTIVE by the coordinator and reported here.

CONSTRAINTS:
- Operates across users (no user scoping)
- Shares the process-wide single-flight lock with request-time refreshes
- Window from TOKEN_REFRESH_WINDOW_MINUTES (default 30)

Run as a cron job every 15 minutes:
    python -m ledgerlink.workers.token_refresh_job
"""

import asyncio
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from ledgerlink.config import get_token_refresh_window_minutes
from ledgerlink.credentials.refresh import (
    RefreshCoordinator,
    RefreshOutcome,
    RefreshOutcomeStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class RefreshJobStats:
    """Statistics from a token refresh run."""

    window_minutes: int
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    refreshed: int = 0
    reauthorization_required: int = 0
    skipped: int = 0
    failed: int = 0
    completed_at: Optional[datetime] = None

    @classmethod
    def from_outcomes(cls, window_minutes: int, outcomes: List[RefreshOutcome]) -> "RefreshJobStats":
        stats = cls(window_minutes=window_minutes)
        for outcome in outcomes:
            if outcome.status == RefreshOutcomeStatus.SUCCESS:
                stats.refreshed += 1
            elif outcome.status == RefreshOutcomeStatus.REAUTHORIZATION_REQUIRED:
                stats.reauthorization_required += 1
            elif outcome.status == RefreshOutcomeStatus.SKIPPED:
                stats.skipped += 1
            else:
                stats.failed += 1
        return stats

    def to_dict(self) -> dict:
        duration = None
        if self.completed_at:
            duration = (self.completed_at - self.started_at).total_seconds()

        return {
            "window_minutes": self.window_minutes,
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "refreshed": self.refreshed,
            "reauthorization_required": self.reauthorization_required,
            "skipped": self.skipped,
            "failed": self.failed,
            "duration_seconds": duration,
        }


async def run_token_refresh(
    db_session: Session,
    coordinator: Optional[RefreshCoordinator] = None,
    within_minutes: Optional[int] = None,
) -> RefreshJobStats:
    """
    Refresh all connections expiring within the window.

    Args:
        db_session: Database session (not user-scoped)
        coordinator: Coordinator to use (built from db_session if omitted)
        within_minutes: Window override
    """
    window = within_minutes if within_minutes is not None else get_token_refresh_window_minutes()
    coordinator = coordinator or RefreshCoordinator(db_session)

    started_at = datetime.now(timezone.utc)
    outcomes = await coordinator.refresh_expiring(within_minutes=window)

    stats = RefreshJobStats.from_outcomes(window, outcomes)
    stats.started_at = started_at
    stats.completed_at = datetime.now(timezone.utc)

    for outcome in outcomes:
        if outcome.status == RefreshOutcomeStatus.REAUTHORIZATION_REQUIRED:
            logger.warning(
                "Connection requires re-authorization",
                extra={
                    "connection_id": outcome.connection_id,
                    "provider": outcome.provider,
                },
            )
    return stats


def main():
    """Entry point for token refresh job."""
    from ledgerlink.credentials.redaction import setup_credential_logging
    from ledgerlink.database.session import SessionLocal, get_engine

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    setup_credential_logging()
    logger.info("Token Refresh Job starting")

    get_engine()
    session = SessionLocal()
    try:
        stats = asyncio.run(run_token_refresh(session))
        logger.info("Token Refresh Job stats", extra=stats.to_dict())
    except Exception as exc:
        logger.error(
            "Token Refresh Job failed",
            extra={"error": str(exc)},
            exc_info=True,
        )
        sys.exit(1)
    finally:
        session.close()

    logger.info("Token Refresh Job finished")


if __name__ == "__main__":
    main()
