"""
History/Aggregation Reporting.

Read-only views over finished sessions:
- finished session summaries (scored, with code samples and
  remediation status)
- lifetime code frequency per student
- per-student summary of forms, sections and codes
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from database.models_taolu import (
    DeductionCode,
    DeductionStatus,
    RefinementDeduction,
    TaoluDeduction,
    TaoluRemediation,
    TaoluSession,
)

from .catalog import ReferenceCatalog
from .config import TaoluConfig, get_config
from .errors import ValidationError
from .scoring import score_deductions

logger = logging.getLogger(__name__)

UNASSIGNED_LABEL = "Unassigned (needs review)"


# =============================================================
# HELPERS
# =============================================================

def effective_section(deduction: Any, session: TaoluSession) -> int:
    """Section a deduction counts against; 0 when it cannot be inferred."""
    if deduction.section_number is not None:
        return int(deduction.section_number)
    sections = session.sections or []
    if len(sections) == 1:
        return int(sections[0])
    return 0


def code_sort_key(code_number: Optional[str]):
    """Sort deduction codes numerically, unassigned last."""
    if not code_number:
        return (2, 0.0, "")
    try:
        return (0, float(code_number), code_number)
    except ValueError:
        return (1, 0.0, code_number)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def deduction_to_dict(deduction: TaoluDeduction, code: Optional[DeductionCode] = None) -> Dict[str, Any]:
    return {
        "id": deduction.id,
        "session_id": deduction.session_id,
        "sequence": deduction.sequence,
        "occurred_at": _iso(deduction.occurred_at),
        "code_id": deduction.code_id,
        "code_number": code.code_number if code else None,
        "code_name": code.name if code else None,
        "section_number": deduction.section_number,
        "note": deduction.note,
        "voided": deduction.voided,
        "assigned_by": deduction.assigned_by,
        "assigned_at": _iso(deduction.assigned_at),
    }


# =============================================================
# SUMMARY TYPE
# =============================================================

@dataclass
class FinishedSessionSummary:
    session_id: str
    student_id: str
    taolu_form_id: str
    form_name: str
    sections: List[int]
    deductions_count: int
    points_lost: int
    points_earned: int
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    deductions: List[Dict[str, Any]] = field(default_factory=list)
    deduction_samples: List[str] = field(default_factory=list)
    remediation_completed: bool = False
    remediation_points: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "student_id": self.student_id,
            "taolu_form_id": self.taolu_form_id,
            "form_name": self.form_name,
            "sections": list(self.sections),
            "deductions": list(self.deductions),
            "deductions_count": self.deductions_count,
            "deduction_samples": list(self.deduction_samples),
            "points_lost": self.points_lost,
            "points_earned": self.points_earned,
            "created_at": _iso(self.created_at),
            "ended_at": _iso(self.ended_at),
            "remediation_completed": self.remediation_completed,
            "remediation_points": self.remediation_points,
        }


# =============================================================
# REPORTING SERVICE
# =============================================================

class ReportingService:
    """Builds history and aggregation reports."""

    def __init__(
        self,
        db: Session,
        catalog: Optional[ReferenceCatalog] = None,
        config: Optional[TaoluConfig] = None,
    ):
        self.db = db
        self.catalog = catalog or ReferenceCatalog(db)
        self.config = config or get_config()

    def _deductions_by_session(self, session_ids: Iterable[str]) -> Dict[str, List[TaoluDeduction]]:
        ids = list(session_ids)
        grouped: Dict[str, List[TaoluDeduction]] = defaultdict(list)
        if not ids:
            return grouped
        rows = (
            self.db.query(TaoluDeduction)
            .filter(TaoluDeduction.session_id.in_(ids))
            .order_by(TaoluDeduction.occurred_at, TaoluDeduction.sequence)
            .all()
        )
        for row in rows:
            grouped[row.session_id].append(row)
        return grouped

    def _remediations_by_session(self, session_ids: Iterable[str]) -> Dict[str, TaoluRemediation]:
        ids = list(session_ids)
        if not ids:
            return {}
        rows = (
            self.db.query(TaoluRemediation)
            .filter(TaoluRemediation.session_id.in_(ids))
            .all()
        )
        return {row.session_id: row for row in rows}

    def _build_summaries(self, sessions: List[TaoluSession]) -> List[FinishedSessionSummary]:
        session_ids = [s.id for s in sessions]
        deductions = self._deductions_by_session(session_ids)
        remediations = self._remediations_by_session(session_ids)
        forms = self.catalog.forms_by_ids(s.taolu_form_id for s in sessions)
        codes = self.catalog.codes_by_ids(
            d.code_id for rows in deductions.values() for d in rows
        )
        sample_limit = self.config.reporting.sample_codes_per_session

        summaries = []
        for session in sessions:
            rows = deductions.get(session.id, [])
            score = score_deductions(rows, self.config.scoring)

            samples: List[str] = []
            for d in rows:
                code = codes.get(d.code_id) if d.code_id else None
                if d.voided or code is None or code.code_number in samples:
                    continue
                samples.append(code.code_number)
                if len(samples) >= sample_limit:
                    break

            form = forms.get(session.taolu_form_id)
            remediation = remediations.get(session.id)
            summaries.append(FinishedSessionSummary(
                session_id=session.id,
                student_id=session.student_id,
                taolu_form_id=session.taolu_form_id,
                form_name=form.name if form else "Unknown form",
                sections=list(session.sections or []),
                deductions_count=score.deductions_count,
                points_lost=score.points_lost,
                points_earned=score.points_earned,
                created_at=session.created_at,
                ended_at=session.ended_at,
                deductions=[deduction_to_dict(d, codes.get(d.code_id)) for d in rows],
                deduction_samples=samples,
                remediation_completed=remediation is not None,
                remediation_points=remediation.points_awarded if remediation else None,
            ))
        return summaries

    # ---------------------------------------------------------
    # SESSION SUMMARIES
    # ---------------------------------------------------------

    def session_summary(self, session: TaoluSession) -> FinishedSessionSummary:
        return self._build_summaries([session])[0]

    def finished_sessions(self, limit: Optional[int] = None) -> List[FinishedSessionSummary]:
        """Most recently finished sessions first."""
        cfg = self.config.reporting
        if limit is None:
            limit = cfg.default_history_limit
        limit = max(1, min(int(limit), cfg.max_history_limit))

        sessions = (
            self.db.query(TaoluSession)
            .filter(TaoluSession.ended_at.isnot(None))
            .order_by(desc(TaoluSession.ended_at))
            .limit(limit)
            .all()
        )
        logger.debug(f"Finished sessions loaded: count={len(sessions)} limit={limit}")
        return self._build_summaries(sessions)

    # ---------------------------------------------------------
    # CODE COUNTS
    # ---------------------------------------------------------

    def code_counts(self, student_id: str) -> Dict[str, int]:
        """Lifetime frequency of each code for a student."""
        if not student_id:
            raise ValidationError("Missing student_id")

        counts: Dict[str, int] = defaultdict(int)
        session_rows = (
            self.db.query(TaoluDeduction.code_id, func.count(TaoluDeduction.id))
            .join(TaoluSession, TaoluSession.id == TaoluDeduction.session_id)
            .filter(
                TaoluSession.student_id == student_id,
                TaoluDeduction.status == DeductionStatus.LIVE.value,
                TaoluDeduction.code_id.isnot(None),
            )
            .group_by(TaoluDeduction.code_id)
            .all()
        )
        for code_id, count in session_rows:
            counts[code_id] += int(count)

        retro_rows = (
            self.db.query(RefinementDeduction.code_id, func.count(RefinementDeduction.id))
            .filter(RefinementDeduction.student_id == student_id)
            .group_by(RefinementDeduction.code_id)
            .all()
        )
        for code_id, count in retro_rows:
            counts[code_id] += int(count)

        return dict(counts)

    # ---------------------------------------------------------
    # STUDENT SUMMARY
    # ---------------------------------------------------------

    def student_summary(
        self,
        student_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Session history plus code totals by form and section.

        Only finished sessions whose ended_at falls inside the optional
        range are included; totals count live, coded deductions.
        """
        if not student_id:
            raise ValidationError("Missing student_id")
        if start and end and start > end:
            raise ValidationError(
                "start_date must not be after end_date",
                {"start_date": _iso(start), "end_date": _iso(end)},
            )

        query = self.db.query(TaoluSession).filter(
            TaoluSession.student_id == student_id,
            TaoluSession.ended_at.isnot(None),
        )
        if start:
            query = query.filter(TaoluSession.ended_at >= start)
        if end:
            query = query.filter(TaoluSession.ended_at <= end)
        sessions = query.order_by(desc(TaoluSession.ended_at)).all()

        summaries = self._build_summaries(sessions)
        by_id = {s.id: s for s in sessions}
        deductions = self._deductions_by_session(by_id)

        form_code_totals: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        section_totals: Dict[str, Dict[str, Dict[str, int]]] = defaultdict(
            lambda: defaultdict(lambda: defaultdict(int))
        )
        section_notes: Dict[str, Dict[str, Dict[str, List[str]]]] = defaultdict(
            lambda: defaultdict(lambda: defaultdict(list))
        )

        for session_id, rows in deductions.items():
            session = by_id[session_id]
            form_id = session.taolu_form_id
            for d in rows:
                if d.voided or not d.code_id:
                    continue
                section = str(effective_section(d, session))
                form_code_totals[form_id][d.code_id] += 1
                section_totals[form_id][section][d.code_id] += 1
                if d.note:
                    section_notes[form_id][section][d.code_id].append(d.note)

        logger.debug(f"Student summary built: student={student_id} sessions={len(sessions)}")
        return {
            "student_id": student_id,
            "start_date": _iso(start),
            "end_date": _iso(end),
            "sessions": [s.to_dict() for s in summaries],
            "form_code_totals": _plain(form_code_totals),
            "form_section_code_totals": _plain(section_totals),
            "form_section_code_notes": _plain(section_notes),
        }


def _plain(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value
