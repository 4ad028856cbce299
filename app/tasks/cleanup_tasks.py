"""
Celery tasks for authentication housekeeping.

Deletes one-time codes and biometric challenges that expired long enough
ago that no flow can still reference them.
"""

import logging
from datetime import timedelta
from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(name="cleanup_expired_auth_records")
def cleanup_expired_auth_records_task(older_than_hours: int = 24):
    """
    Periodic task to delete stale codes and challenges.

    Scheduled hourly by the beat schedule in app.core.celery_app.

    Args:
        older_than_hours: Only records that expired at least this long ago are removed

    Returns:
        dict: Counts of deleted codes and challenges
    """
    from app.core.database import SessionLocal
    from app.core.verification import cleanup_expired_codes
    from app.services.webauthn_service import WebAuthnService

    older_than = timedelta(hours=older_than_hours)
    db = SessionLocal()
    try:
        deleted_codes = cleanup_expired_codes(db, older_than=older_than)
        deleted_challenges = WebAuthnService(db).cleanup_challenges(older_than=older_than)
        logger.info(f"Cleaned up {deleted_codes} expired codes and {deleted_challenges} expired challenges")
        return {
            "status": "success",
            "deleted_codes": deleted_codes,
            "deleted_challenges": deleted_challenges,
        }
    except Exception as e:
        logger.error(f"Error cleaning up expired auth records: {str(e)}")
        raise
    finally:
        db.close()
