"""
Repository operations for one-time codes.

All writes that race (re-issue, failed attempt, consume) are single
conditional UPDATE statements, so concurrent requests for the same
(identifier, purpose) never lose an increment or consume a code twice.
"""

import uuid
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.database import utcnow
from app.models.one_time_code import OneTimeCode, CodePurpose


def get_code(db: Session, identifier: str, purpose: CodePurpose) -> Optional[OneTimeCode]:
    return db.query(OneTimeCode).filter(
        OneTimeCode.identifier == identifier,
        OneTimeCode.purpose == purpose
    ).first()


def put_with_reset(
    db: Session,
    identifier: str,
    purpose: CodePurpose,
    code_hash: str,
    expires_at: datetime,
    identity_id: Optional[UUID] = None,
) -> OneTimeCode:
    """
    Store a freshly issued code for (identifier, purpose).

    Overwrites any existing record in place: new digest and expiry,
    attempts reset to 0, consumed reset to False. The digest of a replaced
    unconsumed code is kept in superseded_code_hash. Inserts when no record
    exists; a concurrent insert for the same key is retried as an update.

    Returns:
        OneTimeCode: The live record
    """
    values = {
        "code_hash": code_hash,
        "expires_at": expires_at,
        "identity_id": identity_id,
        "attempts": 0,
        "consumed": False,
        "created_at": utcnow(),
    }
    # SET expressions read the pre-update row
    superseded = case((OneTimeCode.consumed == False, OneTimeCode.code_hash), else_=None)  # noqa: E712
    reset = (
        update(OneTimeCode)
        .where(OneTimeCode.identifier == identifier, OneTimeCode.purpose == purpose)
        .values(superseded_code_hash=superseded, **values)
        .execution_options(synchronize_session=False)
    )

    result = db.execute(reset)
    if result.rowcount == 0:
        db.add(OneTimeCode(id=uuid.uuid4(), identifier=identifier, purpose=purpose, **values))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            db.execute(reset)
            db.commit()
    else:
        db.commit()

    db.expire_all()
    return get_code(db, identifier, purpose)


def register_failed_attempt(db: Session, record_id: UUID, max_attempts: int) -> bool:
    """
    Atomically count one failed attempt.

    Returns:
        bool: False if the cap was already reached (nothing incremented)
    """
    result = db.execute(
        update(OneTimeCode)
        .where(
            OneTimeCode.id == record_id,
            OneTimeCode.consumed == False,  # noqa: E712
            OneTimeCode.attempts < max_attempts,
        )
        .values(attempts=OneTimeCode.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def consume(db: Session, record_id: UUID, code_hash: str, max_attempts: int) -> bool:
    """
    Atomically mark a live, matching code consumed.

    Returns:
        bool: True only for the single caller that consumed it
    """
    result = db.execute(
        update(OneTimeCode)
        .where(
            OneTimeCode.id == record_id,
            OneTimeCode.code_hash == code_hash,
            OneTimeCode.consumed == False,  # noqa: E712
            OneTimeCode.attempts < max_attempts,
        )
        .values(consumed=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def delete_stale(db: Session, cutoff: datetime) -> int:
    """Delete codes that expired before ``cutoff``."""
    deleted = db.query(OneTimeCode).filter(
        OneTimeCode.expires_at < cutoff
    ).delete(synchronize_session=False)
    db.commit()
    return deleted
