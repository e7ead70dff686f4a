"""Celery tasks for housekeeping of password reset codes."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from prometheus_client import Counter
from sqlalchemy import or_

from .config import settings
from .database import PasswordReset, SessionLocal, utcnow
from .worker import celery_app


logger = logging.getLogger(__name__)

# Counter to track how many reset code rows are purged
RESET_CODE_PURGE_COUNTER = Counter(
    "reset_codes_purged_total", "Total password reset codes purged"
)


def purge_stale_codes(session, retention_days: int, now: Optional[datetime] = None) -> int:
    """Delete codes that are used or expired and older than the retention window."""
    now = now or utcnow()
    cutoff = now - timedelta(days=retention_days)
    return (
        session.query(PasswordReset)
        .filter(
            or_(PasswordReset.used.is_(True), PasswordReset.expires_at <= now),
            PasswordReset.created_at < cutoff,
        )
        .delete(synchronize_session=False)
    )


# Use manual retry handling to get finer control over exceptions
@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def purge_reset_codes(self) -> int:
    """Remove stale password reset codes.

    Returns the number of rows deleted.
    """
    logger.info("purging password reset codes older than %d days", settings.reset_code_retention_days)
    session = SessionLocal()
    try:
        deleted = purge_stale_codes(session, settings.reset_code_retention_days)
        session.commit()
        RESET_CODE_PURGE_COUNTER.inc(deleted)
        logger.info("purged %d password reset codes", deleted)
        return deleted
    except Exception as exc:  # pragma: no cover - executed on failure
        session.rollback()
        logger.exception("Failed to purge password reset codes")
        raise self.retry(exc=exc)
    finally:
        session.close()
