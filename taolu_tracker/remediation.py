"""
Single-Session Refinement.

After a session finishes, a coach may mark any subset of its live
deductions as fixed, once. The award is a snapshot: later edits to
the session's deductions never change it.
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.engine import commit_session
from database.models_taolu import (
    DeductionStatus,
    LedgerSource,
    TaoluDeduction,
    TaoluRemediation,
    TaoluSession,
)

from .audit import log_audit_event
from .config import TaoluConfig, get_config
from .errors import AlreadyRefinedError, NotFoundError, ValidationError
from .points import PointsLedger

logger = logging.getLogger(__name__)


def _unique(ids: Iterable[str]) -> List[str]:
    seen = []
    for raw in ids or []:
        value = str(raw).strip() if raw is not None else ""
        if value and value not in seen:
            seen.append(value)
    return seen


class RemediationService:
    """Records the one-time remediation of a finished session."""

    def __init__(
        self,
        db: Session,
        points: Optional[PointsLedger] = None,
        config: Optional[TaoluConfig] = None,
    ):
        self.db = db
        self.points = points or PointsLedger(db)
        self.config = config or get_config()

    def _require_session(self, session_id: str) -> TaoluSession:
        if not session_id:
            raise ValidationError("Missing session_id")
        session = self.db.get(TaoluSession, session_id)
        if session is None:
            raise NotFoundError("Session", session_id)
        return session

    def get_remediation(self, session_id: str) -> Optional[TaoluRemediation]:
        if not session_id:
            return None
        return (
            self.db.query(TaoluRemediation)
            .filter(TaoluRemediation.session_id == session_id)
            .first()
        )

    def select_fixed(self, session_id: str, deduction_ids: List[str]) -> List[str]:
        """
        Validate a staged selection without changing state.

        Returns the de-duplicated ids.
        """
        session = self._require_session(session_id)
        ids = _unique(deduction_ids)
        if not ids:
            return []

        live_ids = {
            row.id
            for row in self.db.query(TaoluDeduction.id)
            .filter(
                TaoluDeduction.session_id == session.id,
                TaoluDeduction.status == DeductionStatus.LIVE.value,
                TaoluDeduction.id.in_(ids),
            )
            .all()
        }
        unknown = [i for i in ids if i not in live_ids]
        if unknown:
            raise ValidationError(
                "Deductions are not live deductions of this session",
                {"session_id": session.id, "deduction_ids": unknown},
            )
        return ids

    def submit_remediation(
        self,
        session_id: str,
        deduction_ids: List[str],
        actor: Optional[str] = None,
    ) -> TaoluRemediation:
        """
        Persist the remediation and post its award.

        points_awarded = unique fixed ids * points per fix.
        """
        session = self._require_session(session_id)
        if not session.is_finished:
            raise ValidationError(
                "Session must be finished before refinement",
                {"session_id": session.id},
            )

        existing = self.get_remediation(session.id)
        if existing is not None:
            logger.warning(f"Remediation already completed: session={session.id}")
            raise AlreadyRefinedError(
                f"Session {session.id} already refined",
                {"session_id": session.id, "remediation_id": existing.id},
            )

        ids = self.select_fixed(session.id, deduction_ids)
        points_awarded = len(ids) * self.config.scoring.remediation_points_per_fix

        remediation = TaoluRemediation(
            session_id=session.id,
            student_id=session.student_id,
            taolu_form_id=session.taolu_form_id,
            points_awarded=points_awarded,
            deduction_ids=ids,
            created_by=actor,
        )
        self.db.add(remediation)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"Concurrent remediation rejected: session={session_id}")
            raise AlreadyRefinedError(
                f"Session {session_id} already refined",
                {"session_id": session_id},
            )

        self.points.post(
            student_id=session.student_id,
            points=points_awarded,
            note=f"Taolu refinement - {len(ids)} fixed",
            source_type=LedgerSource.REMEDIATION,
            source_id=remediation.id,
            created_by=actor,
        )
        log_audit_event(
            self.db,
            event_type="remediation_submitted",
            message=f"Session {session.id} refined: {len(ids)} fixed, {points_awarded} points",
            details={
                "session_id": session.id,
                "remediation_id": remediation.id,
                "deduction_ids": ids,
                "points_awarded": points_awarded,
            },
            actor=actor,
        )
        commit_session(self.db)

        logger.info(
            f"Remediation submitted: session={session.id} fixed={len(ids)} points={points_awarded}"
        )
        return remediation
