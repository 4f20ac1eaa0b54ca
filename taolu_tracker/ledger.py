"""
Deduction Ledger.

============================================================
DEDUCTION STATES
============================================================

    log_deduction ──► LIVE ◄──► VOIDED
                        │          │
                        └──► remove_deduction (row deleted)

- Deductions are appended one per judge tap, never coalesced.
- Each session keeps its own append counter (sequence) that
  orders deductions sharing an occurred_at.
- Updates are field-level: only supplied fields are written.
- Deductions recorded as fixed in a completed remediation are
  locked.

============================================================
"""

import logging
from typing import Any, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.engine import DatabasePersistenceError, commit_session
from database.models_taolu import (
    DeductionStatus,
    TaoluDeduction,
    TaoluRemediation,
    TaoluSession,
    utc_now,
)

from .audit import log_audit_event
from .catalog import ReferenceCatalog
from .errors import (
    AlreadyFinishedError,
    AlreadyRefinedError,
    InvalidSectionError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

MAX_APPEND_ATTEMPTS = 5


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()
"""Marker for an assign field the caller did not supply."""


def _clean_note(note: Optional[str]) -> Optional[str]:
    if note is None:
        return None
    note = str(note).strip()
    return note or None


class DeductionLedger:
    """Append, edit, void and remove deductions of a session."""

    def __init__(self, db: Session, catalog: Optional[ReferenceCatalog] = None):
        self.db = db
        self.catalog = catalog or ReferenceCatalog(db)

    # ---------------------------------------------------------
    # HELPERS
    # ---------------------------------------------------------

    def _require_session(self, session_id: str) -> TaoluSession:
        if not session_id:
            raise ValidationError("Missing session_id")
        session = self.db.get(TaoluSession, session_id)
        if session is None:
            raise NotFoundError("Session", session_id)
        return session

    def _require_deduction(self, deduction_id: str) -> TaoluDeduction:
        if not deduction_id:
            raise ValidationError("Missing deduction_id")
        deduction = self.db.get(TaoluDeduction, deduction_id)
        if deduction is None:
            raise NotFoundError("Deduction", deduction_id)
        if deduction.session is None:
            raise NotFoundError("Session", deduction.session_id)
        return deduction

    def _next_sequence(self, session_id: str) -> int:
        current = (
            self.db.query(func.max(TaoluDeduction.sequence))
            .filter(TaoluDeduction.session_id == session_id)
            .scalar()
        )
        return int(current or 0) + 1

    def _check_not_remediated(self, deduction: TaoluDeduction) -> None:
        remediation = (
            self.db.query(TaoluRemediation)
            .filter(TaoluRemediation.session_id == deduction.session_id)
            .first()
        )
        if remediation and deduction.id in (remediation.deduction_ids or []):
            raise AlreadyRefinedError(
                f"Deduction {deduction.id} is recorded as fixed in a completed remediation",
                {"deduction_id": deduction.id, "remediation_id": remediation.id},
            )

    # ---------------------------------------------------------
    # APPEND
    # ---------------------------------------------------------

    def log_deduction(
        self,
        session_id: str,
        section_number: Optional[int] = None,
        note: Optional[str] = None,
    ) -> TaoluDeduction:
        """
        Append one live, unassigned deduction.

        Lands on the session's active section unless an explicit
        section of the session is given.
        """
        for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
            session = self._require_session(session_id)
            if session.is_finished:
                raise AlreadyFinishedError(session.id, session.ended_at)

            if section_number is None:
                section = session.active_section
            elif section_number in (session.sections or []):
                section = int(section_number)
            else:
                raise InvalidSectionError(session.id, section_number, session.sections or [])

            deduction = TaoluDeduction(
                session_id=session.id,
                sequence=self._next_sequence(session.id),
                occurred_at=utc_now(),
                code_id=None,
                section_number=section,
                note=_clean_note(note),
                status=DeductionStatus.LIVE.value,
            )
            self.db.add(deduction)
            try:
                self.db.flush()
            except IntegrityError:
                self.db.rollback()
                logger.warning(
                    f"Sequence collision on append: session={session_id} attempt={attempt}"
                )
                continue

            commit_session(self.db)
            logger.info(
                f"Deduction logged: session={session.id} seq={deduction.sequence} section={section}"
            )
            return deduction

        raise DatabasePersistenceError(
            f"Could not append deduction to session {session_id} after {MAX_APPEND_ATTEMPTS} attempts"
        )

    # ---------------------------------------------------------
    # EDIT
    # ---------------------------------------------------------

    def assign_deduction(
        self,
        deduction_id: str,
        code_id: Any = UNSET,
        section_number: Any = UNSET,
        note: Any = UNSET,
        voided: Any = UNSET,
        actor: Optional[str] = None,
    ) -> TaoluDeduction:
        """
        Update the supplied fields of a deduction.

        An empty code_id clears the code. Fields left UNSET keep their
        stored value.
        """
        deduction = self._require_deduction(deduction_id)
        self._check_not_remediated(deduction)
        session = deduction.session

        code = None
        if code_id is not UNSET and code_id:
            code = self.catalog.require_code(code_id)
        if section_number is not UNSET and section_number not in (session.sections or []):
            raise InvalidSectionError(session.id, section_number, session.sections or [])

        changed = {}
        if code_id is not UNSET:
            deduction.code_id = code.id if code is not None else None
            changed["code_id"] = deduction.code_id

        if section_number is not UNSET:
            deduction.section_number = int(section_number)
            changed["section_number"] = deduction.section_number

        if note is not UNSET:
            deduction.note = _clean_note(note)
            changed["note"] = deduction.note

        if voided is not UNSET:
            deduction.status = (
                DeductionStatus.VOIDED.value if voided else DeductionStatus.LIVE.value
            )
            changed["voided"] = bool(voided)

        if not changed:
            return deduction

        deduction.assigned_by = actor
        deduction.assigned_at = utc_now()
        log_audit_event(
            self.db,
            event_type="deduction_updated",
            message=f"Deduction {deduction.id} updated",
            details={"deduction_id": deduction.id, "session_id": session.id, "changes": changed},
            actor=actor,
        )
        commit_session(self.db)

        logger.info(f"Deduction updated: id={deduction.id} fields={sorted(changed)}")
        return deduction

    def remove_deduction(self, deduction_id: str, actor: Optional[str] = None) -> None:
        """Hard delete. Irreversible."""
        deduction = self._require_deduction(deduction_id)
        self._check_not_remediated(deduction)
        session_id = deduction.session_id

        self.db.delete(deduction)
        log_audit_event(
            self.db,
            event_type="deduction_removed",
            message=f"Deduction {deduction_id} removed",
            details={"deduction_id": deduction_id, "session_id": session_id},
            actor=actor,
        )
        commit_session(self.db)

        logger.info(f"Deduction removed: id={deduction_id} session={session_id}")

    def void_unassigned(self, session_id: str, actor: Optional[str] = None) -> int:
        """Void every live deduction of the session that has no code."""
        session = self._require_session(session_id)
        pending = (
            self.db.query(TaoluDeduction)
            .filter(
                TaoluDeduction.session_id == session.id,
                TaoluDeduction.status == DeductionStatus.LIVE.value,
                TaoluDeduction.code_id.is_(None),
            )
            .all()
        )
        if not pending:
            return 0

        now = utc_now()
        for deduction in pending:
            deduction.status = DeductionStatus.VOIDED.value
            deduction.assigned_by = actor
            deduction.assigned_at = now

        log_audit_event(
            self.db,
            event_type="deductions_voided",
            message=f"Voided {len(pending)} unassigned deduction(s) in session {session.id}",
            details={"session_id": session.id, "deduction_ids": [d.id for d in pending]},
            actor=actor,
        )
        commit_session(self.db)

        logger.info(f"Unassigned deductions voided: session={session.id} count={len(pending)}")
        return len(pending)

    # ---------------------------------------------------------
    # QUERIES
    # ---------------------------------------------------------

    def list_deductions(self, session_id: str) -> List[TaoluDeduction]:
        """All stored deductions (live and voided), in append order."""
        session = self._require_session(session_id)
        return (
            self.db.query(TaoluDeduction)
            .filter(TaoluDeduction.session_id == session.id)
            .order_by(TaoluDeduction.occurred_at, TaoluDeduction.sequence)
            .all()
        )

    def live_deductions(self, session_id: str) -> List[TaoluDeduction]:
        return [d for d in self.list_deductions(session_id) if d.is_live]

    def live_count(self, session_id: str) -> int:
        return len(self.live_deductions(session_id))
