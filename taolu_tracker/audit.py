"""
Audit trail for state-changing tracker operations.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from database.models_taolu import AuditEvent

logger = logging.getLogger(__name__)


def log_audit_event(
    db: Session,
    event_type: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    actor: Optional[str] = None,
    severity: str = "info",
) -> None:
    """
    Stage an audit record in the caller's unit of work.

    The record commits together with the operation it describes, so a
    row that cannot be written fails that operation's commit.
    """
    db.add(AuditEvent(
        event_type=event_type,
        severity=severity,
        message=message,
        details=details,
        actor=actor,
    ))
    logger.debug(f"Audit event staged: {event_type}")


def recent_audit_events(
    db: Session,
    event_type: Optional[str] = None,
    limit: int = 50,
) -> List[AuditEvent]:
    query = db.query(AuditEvent)
    if event_type:
        query = query.filter(AuditEvent.event_type == event_type)
    return query.order_by(desc(AuditEvent.id)).limit(limit).all()
