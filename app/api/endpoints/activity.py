"""
Security activity endpoints.

Lets a signed-in user review the audit trail of their own account.
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.deps import get_current_identity
from app.models.identity import Identity
from app.models.security_event import EventType, RiskLevel
from app.schemas.audit import ActivityResponse, ActivitySummary, SecurityEventResponse
from app.services.audit_log import AuditLog

router = APIRouter(prefix="/user", tags=["Activity"])

SUMMARY_DAYS = 30


@router.get("/activity", response_model=ActivityResponse)
def list_activity(
    event_type: Optional[EventType] = None,
    risk_level: Optional[RiskLevel] = None,
    days: Optional[int] = Query(None, ge=1, le=365),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    """
    Page through the current account's security events, newest first.

    Filters: event type, risk level, days back, and a search term matched
    against the description and IP address.
    """
    audit = AuditLog(db)
    events, total = audit.list_events(
        identity.id,
        event_type=event_type,
        risk_level=risk_level,
        days=days,
        search=search,
        page=page,
        limit=limit,
    )
    summary_days = days or SUMMARY_DAYS
    counts = audit.summarize(identity.id, days=summary_days)

    return ActivityResponse(
        events=[SecurityEventResponse.model_validate(event) for event in events],
        page=page,
        limit=limit,
        total=total,
        summary=ActivitySummary(total=sum(counts.values()), by_risk_level=counts, days=summary_days),
    )
