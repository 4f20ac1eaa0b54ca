"""
Session Manager.

============================================================
SESSION LIFECYCLE
============================================================

    create_sessions ──► OPEN ──► finish_session ──► FINISHED
                         │
                         └──► close_session (deleted)

- OPEN sessions accept section edits and live deductions.
- FINISHED is reached exactly once (ended_at stamped by a
  conditional update) and is immutable to this manager.
- The active section always belongs to the section set.

============================================================
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy import desc, update
from sqlalchemy.orm import Session

from database.engine import commit_session
from database.models_taolu import LedgerSource, TaoluForm, TaoluSession, utc_now

from .audit import log_audit_event
from .catalog import ReferenceCatalog
from .config import TaoluConfig, get_config
from .errors import (
    AlreadyFinishedError,
    InvalidSectionError,
    NotFoundError,
    ValidationError,
)
from .points import PointsLedger
from .reporting import FinishedSessionSummary, ReportingService

logger = logging.getLogger(__name__)


def normalize_sections(sections: Iterable, form: TaoluForm) -> List[int]:
    """
    Validate a section list against a form.

    Returns the sorted, de-duplicated section numbers.
    """
    if sections is None:
        raise ValidationError("Missing sections")

    numbers = set()
    for raw in sections:
        if isinstance(raw, bool):
            raise ValidationError(f"Invalid section number: {raw!r}")
        try:
            number = int(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid section number: {raw!r}")
        if number != raw and not isinstance(raw, str):
            raise ValidationError(f"Invalid section number: {raw!r}")
        numbers.add(number)

    if not numbers:
        raise ValidationError("Missing sections")

    out_of_range = sorted(n for n in numbers if n < 1 or n > form.sections_count)
    if out_of_range:
        raise ValidationError(
            f"Sections {out_of_range} outside 1..{form.sections_count} for form {form.name}",
            {"sections": out_of_range, "sections_count": form.sections_count},
        )

    return sorted(numbers)


class SessionManager:
    """Creates, edits, closes and finishes judging sessions."""

    def __init__(
        self,
        db: Session,
        catalog: Optional[ReferenceCatalog] = None,
        points: Optional[PointsLedger] = None,
        config: Optional[TaoluConfig] = None,
    ):
        self.db = db
        self.catalog = catalog or ReferenceCatalog(db)
        self.points = points or PointsLedger(db)
        self.config = config or get_config()
        self.reporting = ReportingService(db, catalog=self.catalog, config=self.config)

    # ---------------------------------------------------------
    # QUERIES
    # ---------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[TaoluSession]:
        if not session_id:
            return None
        return self.db.get(TaoluSession, session_id)

    def require_session(self, session_id: str) -> TaoluSession:
        session = self.get_session(session_id)
        if session is None:
            raise NotFoundError("Session", session_id)
        return session

    def list_open_sessions(self) -> List[TaoluSession]:
        return (
            self.db.query(TaoluSession)
            .filter(TaoluSession.ended_at.is_(None))
            .order_by(desc(TaoluSession.created_at))
            .all()
        )

    # ---------------------------------------------------------
    # CREATE
    # ---------------------------------------------------------

    def create_sessions(
        self,
        form_id: str,
        student_ids: List[str],
        sections: List[int],
        separate_sections: bool = False,
        coach_user_id: Optional[str] = None,
    ) -> List[TaoluSession]:
        """
        Create one session per student sharing form and sections.

        With separate_sections, one single-section session is created
        per (student, section) pair instead.
        """
        if not form_id:
            raise ValidationError("Missing taolu_form_id")
        students = [str(s).strip() for s in (student_ids or []) if str(s).strip()]
        if not students:
            raise ValidationError("Missing student_ids")

        form = self.catalog.require_form(form_id)
        section_list = normalize_sections(sections, form)

        if separate_sections:
            groups = [[section] for section in section_list]
        else:
            groups = [section_list]

        created = []
        for student_id in students:
            for group in groups:
                session = TaoluSession(
                    student_id=student_id,
                    taolu_form_id=form.id,
                    sections=list(group),
                    active_section=group[0],
                    separate_sections=bool(separate_sections),
                    coach_user_id=coach_user_id,
                )
                self.db.add(session)
                created.append(session)

        self.db.flush()
        log_audit_event(
            self.db,
            event_type="sessions_created",
            message=f"Created {len(created)} session(s) for form {form.name}",
            details={
                "taolu_form_id": form.id,
                "session_ids": [s.id for s in created],
                "sections": section_list,
            },
            actor=coach_user_id,
        )
        commit_session(self.db)

        logger.info(
            f"Created sessions: count={len(created)} form={form.id} "
            f"sections={section_list} separate={separate_sections}"
        )
        return created

    # ---------------------------------------------------------
    # EDIT
    # ---------------------------------------------------------

    def _require_open(self, session_id: str) -> TaoluSession:
        session = self.require_session(session_id)
        if session.is_finished:
            logger.warning(f"Rejected edit of finished session: {session_id}")
            raise AlreadyFinishedError(session.id, session.ended_at)
        return session

    def update_sections(self, session_id: str, sections: List[int]) -> TaoluSession:
        """Replace the section set; the active section follows if dropped."""
        if not session_id:
            raise ValidationError("Missing session_id")
        session = self._require_open(session_id)
        form = self.catalog.require_form(session.taolu_form_id)
        section_list = normalize_sections(sections, form)

        session.sections = section_list
        if session.active_section not in section_list:
            session.active_section = section_list[0]

        log_audit_event(
            self.db,
            event_type="session_sections_updated",
            message=f"Sections updated for session {session.id}",
            details={"session_id": session.id, "sections": section_list},
        )
        commit_session(self.db)

        logger.info(f"Session sections updated: id={session.id} sections={section_list}")
        return session

    def set_active_section(self, session_id: str, section: int) -> TaoluSession:
        session = self._require_open(session_id)
        if section not in (session.sections or []):
            raise InvalidSectionError(session.id, section, session.sections or [])

        session.active_section = int(section)
        commit_session(self.db)

        logger.debug(f"Active section set: session={session.id} section={section}")
        return session

    # ---------------------------------------------------------
    # CLOSE / FINISH
    # ---------------------------------------------------------

    def close_session(self, session_id: str, actor: Optional[str] = None) -> bool:
        """
        Delete an unfinished session and its deductions.

        Returns False when the session does not exist.
        """
        session = self.get_session(session_id)
        if session is None:
            logger.debug(f"Close of unknown session ignored: {session_id}")
            return False
        if session.is_finished:
            raise AlreadyFinishedError(session.id, session.ended_at)

        self.db.expire(session, ["deductions"])
        deduction_count = len(session.deductions)
        self.db.delete(session)
        log_audit_event(
            self.db,
            event_type="session_closed",
            message=f"Session {session_id} closed with {deduction_count} deduction(s) discarded",
            details={"session_id": session_id, "student_id": session.student_id},
            actor=actor,
        )
        commit_session(self.db)

        logger.info(f"Session closed: id={session_id} discarded_deductions={deduction_count}")
        return True

    def finish_session(self, session_id: str, actor: Optional[str] = None) -> FinishedSessionSummary:
        """
        Stamp ended_at exactly once and return the scored summary.

        The session's points are posted to the points ledger in the
        same transaction.
        """
        if not session_id:
            raise ValidationError("Missing session_id")
        session = self.require_session(session_id)
        if session.is_finished:
            raise AlreadyFinishedError(session.id, session.ended_at)

        ended_at = utc_now()
        result = self.db.execute(
            update(TaoluSession)
            .where(TaoluSession.id == session_id, TaoluSession.ended_at.is_(None))
            .values(ended_at=ended_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            self.db.refresh(session)
            logger.warning(f"Concurrent finish rejected: session={session_id}")
            raise AlreadyFinishedError(session.id, session.ended_at)

        session.ended_at = ended_at
        summary = self.reporting.session_summary(session)

        self.points.post(
            student_id=session.student_id,
            points=summary.points_earned,
            note=f"Taolu Tracker - {summary.form_name} - {summary.deductions_count} deductions",
            source_type=LedgerSource.SESSION_FINISH,
            source_id=session.id,
            created_by=actor,
        )
        log_audit_event(
            self.db,
            event_type="session_finished",
            message=f"Session {session.id} finished: {summary.points_earned} points",
            details={
                "session_id": session.id,
                "student_id": session.student_id,
                "deductions_count": summary.deductions_count,
                "points_earned": summary.points_earned,
            },
            actor=actor,
        )
        commit_session(self.db)

        logger.info(
            f"Session finished: id={session.id} deductions={summary.deductions_count} "
            f"points_earned={summary.points_earned}"
        )
        return summary
