"""
Security audit log service.

Appends SecurityEvent rows with a typed payload per event type. Events are
committed immediately so failure paths are recorded even when the caller
goes on to raise.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.core.database import utcnow
from app.models.security_event import SecurityEvent, EventType, RiskLevel
from app.schemas.audit import EVENT_PAYLOADS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientContext:
    """Caller network details attached to every audit event."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditLog:
    """Append-only writer and reader for security events."""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        event_type: EventType,
        description: str,
        payload: BaseModel,
        context: Optional[ClientContext] = None,
        identity_id: Optional[UUID] = None,
        risk_level: RiskLevel = RiskLevel.LOW,
    ) -> SecurityEvent:
        """
        Append one security event and commit it.

        Args:
            event_type: Closed event type
            description: Human-readable summary
            payload: Payload model registered for this event type
            context: Client IP and user agent
            identity_id: Owning identity, if known
            risk_level: Severity of the event

        Returns:
            SecurityEvent: The persisted event

        Raises:
            TypeError: If the payload shape does not belong to the event type
        """
        expected = EVENT_PAYLOADS[event_type]
        if not isinstance(payload, expected):
            raise TypeError(
                f"{event_type.value} requires {expected.__name__}, got {type(payload).__name__}"
            )

        context = context or ClientContext()
        event = SecurityEvent(
            identity_id=identity_id,
            event_type=event_type,
            description=description,
            payload=payload.model_dump(mode="json"),
            ip_address=context.ip_address,
            user_agent=context.user_agent[:512] if context.user_agent else None,
            risk_level=risk_level,
            created_at=utcnow(),
        )
        self.db.add(event)
        self.db.commit()

        log = logger.warning if risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL) else logger.info
        log(f"Security event {event_type.value} ({risk_level.value}) identity={identity_id} ip={context.ip_address}")
        return event

    def list_events(
        self,
        identity_id: UUID,
        event_type: Optional[EventType] = None,
        risk_level: Optional[RiskLevel] = None,
        days: Optional[int] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[SecurityEvent], int]:
        """Page through an identity's events, newest first."""
        query = self.db.query(SecurityEvent).filter(SecurityEvent.identity_id == identity_id)

        if event_type:
            query = query.filter(SecurityEvent.event_type == event_type)
        if risk_level:
            query = query.filter(SecurityEvent.risk_level == risk_level)
        if days:
            query = query.filter(SecurityEvent.created_at >= utcnow() - timedelta(days=days))
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                SecurityEvent.description.ilike(pattern),
                SecurityEvent.ip_address.ilike(pattern),
            ))

        total = query.count()
        events = (
            query.order_by(SecurityEvent.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return events, total

    def summarize(self, identity_id: UUID, days: int = 30) -> Dict[str, int]:
        """Count an identity's events per risk level over the last ``days``."""
        rows = (
            self.db.query(SecurityEvent.risk_level, func.count(SecurityEvent.id))
            .filter(
                SecurityEvent.identity_id == identity_id,
                SecurityEvent.created_at >= utcnow() - timedelta(days=days),
            )
            .group_by(SecurityEvent.risk_level)
            .all()
        )
        counts = {level.value: 0 for level in RiskLevel}
        for level, count in rows:
            counts[level.value] = count
        return counts
