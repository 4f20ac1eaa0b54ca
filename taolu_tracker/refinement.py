"""
Window Refinement Engine.

============================================================
WINDOW REFINEMENT
============================================================

A coach reviews every deduction a student collected over a
trailing window (7, 30 or 90 days), grouped into chips by
(form, section, code), and marks each chip fixed or missed.
Retroactive deductions may be added in the same round.

    net = fixed * FIXED_BONUS - missed * MISSED_PENALTY - new * NEW_PENALTY

Rounds are repeatable. A deduction credited as fixed in one round
is excluded from later summaries and cannot be credited again.

============================================================
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import desc, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.engine import commit_session
from database.models_taolu import (
    DeductionStatus,
    LedgerSource,
    RefinementChipCredit,
    RefinementDeduction,
    RefinementItem,
    RefinementItemStatus,
    RefinementRound,
    TaoluDeduction,
    TaoluSession,
    utc_now,
)

from .audit import log_audit_event
from .catalog import ReferenceCatalog
from .config import TaoluConfig, get_config
from .errors import AlreadyRefinedError, ValidationError
from .points import PointsLedger
from .reporting import UNASSIGNED_LABEL, code_sort_key, effective_section

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================
# SUMMARY TYPES
# =============================================================

@dataclass
class RefinementChip:
    chip_id: str
    code_id: Optional[str]
    code_number: Optional[str]
    code_name: str
    count: int
    deduction_ids: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    occurred_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chip_id": self.chip_id,
            "code_id": self.code_id,
            "code_number": self.code_number,
            "code_name": self.code_name,
            "count": self.count,
            "deduction_ids": list(self.deduction_ids),
            "notes": list(self.notes),
            "occurred_at": _iso(self.occurred_at),
        }


@dataclass
class RefinementSection:
    section_number: int
    chips: List[RefinementChip] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "section_number": self.section_number,
            "chips": [c.to_dict() for c in self.chips],
        }


@dataclass
class RefinementForm:
    taolu_form_id: str
    form_name: str
    sections: List[RefinementSection] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taolu_form_id": self.taolu_form_id,
            "form_name": self.form_name,
            "sections": [s.to_dict() for s in self.sections],
        }


@dataclass
class RefinementSummary:
    student_id: str
    window_days: int
    window_start: datetime
    window_end: datetime
    last_taolu_at: Optional[datetime] = None
    last_refinement_at: Optional[datetime] = None
    forms: List[RefinementForm] = field(default_factory=list)

    @property
    def chip_count(self) -> int:
        return sum(len(s.chips) for f in self.forms for s in f.sections)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "window_days": self.window_days,
            "window_start": _iso(self.window_start),
            "window_end": _iso(self.window_end),
            "last_taolu_at": _iso(self.last_taolu_at),
            "last_refinement_at": _iso(self.last_refinement_at),
            "forms": [f.to_dict() for f in self.forms],
        }


# =============================================================
# SUBMISSION TYPES
# =============================================================

@dataclass
class RefinementSelection:
    """Coach decision for one chip."""
    taolu_form_id: str
    section_number: int
    code_id: Optional[str] = None
    deduction_ids: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    fixed: bool = False
    included: bool = True


@dataclass
class NewDeduction:
    """Retroactive deduction added during review."""
    taolu_form_id: str
    section_number: int
    code_id: str
    note: Optional[str] = None


@dataclass
class RefinementResult:
    round_id: str
    fixed_count: int
    missed_count: int
    new_count: int
    points_fixed: int
    points_missed: int
    points_new: int
    net_points: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "fixed_count": self.fixed_count,
            "missed_count": self.missed_count,
            "new_count": self.new_count,
            "points_fixed": self.points_fixed,
            "points_missed": self.points_missed,
            "points_new": self.points_new,
            "net_points": self.net_points,
        }


# =============================================================
# ENGINE
# =============================================================

class WindowRefinementEngine:
    """Summarizes and scores window refinement rounds."""

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

    # ---------------------------------------------------------
    # HELPERS
    # ---------------------------------------------------------

    def _validate_window(self, window_days: Any) -> int:
        allowed = self.config.refinement.allowed_windows
        try:
            days = int(window_days)
        except (TypeError, ValueError):
            days = None
        if days not in allowed:
            raise ValidationError(
                f"window_days must be one of {list(allowed)}",
                {"window_days": window_days},
            )
        return days

    def _window(self, window_days: int, now: Optional[datetime]) -> Tuple[datetime, datetime]:
        end = now or utc_now()
        return end - timedelta(days=window_days), end

    def _credited_ids(self, student_id: str) -> Set[str]:
        rows = (
            self.db.query(RefinementChipCredit.deduction_id)
            .filter(RefinementChipCredit.student_id == student_id)
            .all()
        )
        return {row.deduction_id for row in rows}

    def _window_entries(self, student_id: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """Flatten session and retroactive deductions of the window."""
        entries = []

        sessions = (
            self.db.query(TaoluSession)
            .filter(
                TaoluSession.student_id == student_id,
                TaoluSession.ended_at.isnot(None),
                TaoluSession.ended_at >= start,
                TaoluSession.ended_at <= end,
            )
            .all()
        )
        by_id = {s.id: s for s in sessions}
        if by_id:
            rows = (
                self.db.query(TaoluDeduction)
                .filter(
                    TaoluDeduction.session_id.in_(list(by_id)),
                    TaoluDeduction.status == DeductionStatus.LIVE.value,
                )
                .all()
            )
            for d in rows:
                session = by_id[d.session_id]
                entries.append({
                    "id": d.id,
                    "taolu_form_id": session.taolu_form_id,
                    "section_number": effective_section(d, session),
                    "code_id": d.code_id,
                    "note": d.note,
                    "occurred_at": d.occurred_at,
                })

        retro = (
            self.db.query(RefinementDeduction)
            .filter(
                RefinementDeduction.student_id == student_id,
                RefinementDeduction.occurred_at >= start,
                RefinementDeduction.occurred_at <= end,
            )
            .all()
        )
        for r in retro:
            entries.append({
                "id": r.id,
                "taolu_form_id": r.taolu_form_id,
                "section_number": r.section_number,
                "code_id": r.code_id,
                "note": r.note,
                "occurred_at": r.occurred_at,
            })

        return entries

    def _check_selection_ids(
        self,
        student_id: str,
        included: List[RefinementSelection],
        start: datetime,
        end: datetime,
    ) -> List[str]:
        """
        Validate the deduction ids carried by included selections.

        Ids must be uncredited live entries of the student's window that
        belong to the selection's chip. Returns the fixed ids in
        selection order.
        """
        seen: Dict[str, int] = {}
        for index, selection in enumerate(included):
            ids = [i for i in selection.deduction_ids if i]
            if selection.fixed and not ids:
                raise ValidationError(
                    "Fixed selections need at least one deduction id",
                    {"taolu_form_id": selection.taolu_form_id, "section_number": selection.section_number},
                )
            for deduction_id in ids:
                if seen.setdefault(deduction_id, index) != index:
                    raise ValidationError(
                        "Deduction referenced by more than one selection",
                        {"deduction_id": deduction_id},
                    )

        fixed_ids = [i for s in included if s.fixed for i in dict.fromkeys(s.deduction_ids) if i]
        credited = self._credited_ids(student_id)
        already = sorted(set(fixed_ids) & credited)
        if already:
            logger.warning(f"Re-credit rejected: student={student_id} deductions={already}")
            raise AlreadyRefinedError(
                "Deductions were already credited in an earlier round",
                {"student_id": student_id, "deduction_ids": already},
            )

        eligible = {
            e["id"]: e for e in self._window_entries(student_id, start, end) if e["id"] not in credited
        }
        outside = sorted(i for i in seen if i not in eligible)
        if outside:
            raise ValidationError(
                "Deductions are not live in this student's window",
                {"student_id": student_id, "deduction_ids": outside},
            )

        for selection in included:
            chip = (selection.taolu_form_id, int(selection.section_number), selection.code_id or None)
            for deduction_id in selection.deduction_ids:
                if not deduction_id:
                    continue
                entry = eligible[deduction_id]
                if (entry["taolu_form_id"], entry["section_number"], entry["code_id"]) != chip:
                    raise ValidationError(
                        "Deduction does not match the selected chip",
                        {
                            "deduction_id": deduction_id,
                            "taolu_form_id": selection.taolu_form_id,
                            "section_number": selection.section_number,
                            "code_id": selection.code_id,
                        },
                    )
        return fixed_ids

    # ---------------------------------------------------------
    # SUMMARY
    # ---------------------------------------------------------

    def summarize(
        self,
        student_id: str,
        window_days: int,
        now: Optional[datetime] = None,
    ) -> RefinementSummary:
        """Group a student's window deductions into chips. Read-only."""
        if not student_id:
            raise ValidationError("Missing student_id")
        days = self._validate_window(window_days)
        start, end = self._window(days, now)

        credited = self._credited_ids(student_id)
        entries = [e for e in self._window_entries(student_id, start, end) if e["id"] not in credited]

        groups: Dict[Tuple[str, int, Optional[str]], List[Dict[str, Any]]] = defaultdict(list)
        for entry in entries:
            groups[(entry["taolu_form_id"], entry["section_number"], entry["code_id"])].append(entry)

        forms = self.catalog.forms_by_ids(key[0] for key in groups)
        codes = self.catalog.codes_by_ids(key[2] for key in groups)

        tree: Dict[str, Dict[int, List[RefinementChip]]] = defaultdict(lambda: defaultdict(list))
        for (form_id, section, code_id), rows in groups.items():
            rows.sort(key=lambda e: e["occurred_at"], reverse=True)
            code = codes.get(code_id) if code_id else None
            tree[form_id][section].append(RefinementChip(
                chip_id=f"{form_id}:{section}:{code_id or 'unassigned'}",
                code_id=code_id,
                code_number=code.code_number if code else None,
                code_name=code.name if code else UNASSIGNED_LABEL,
                count=len(rows),
                deduction_ids=[e["id"] for e in rows],
                notes=[e["note"] for e in rows if e["note"]],
                occurred_at=rows[0]["occurred_at"],
            ))

        result_forms = []
        for form_id, sections in tree.items():
            form = forms.get(form_id)
            result_forms.append(RefinementForm(
                taolu_form_id=form_id,
                form_name=form.name if form else "Unknown form",
                sections=[
                    RefinementSection(
                        section_number=number,
                        chips=sorted(chips, key=lambda c: code_sort_key(c.code_number)),
                    )
                    for number, chips in sorted(sections.items())
                ],
            ))
        result_forms.sort(key=lambda f: (f.form_name, f.taolu_form_id))

        last_taolu_at = (
            self.db.query(func.max(TaoluSession.ended_at))
            .filter(TaoluSession.student_id == student_id)
            .scalar()
        )
        last_refinement_at = (
            self.db.query(func.max(RefinementRound.created_at))
            .filter(RefinementRound.student_id == student_id)
            .scalar()
        )

        logger.debug(
            f"Refinement summary: student={student_id} window={days}d "
            f"deductions={len(entries)} chips={len(groups)}"
        )
        return RefinementSummary(
            student_id=student_id,
            window_days=days,
            window_start=start,
            window_end=end,
            last_taolu_at=last_taolu_at,
            last_refinement_at=last_refinement_at,
            forms=result_forms,
        )

    def summarize_many(
        self,
        student_ids: List[str],
        window_days: int,
        now: Optional[datetime] = None,
    ) -> List[RefinementSummary]:
        """Summaries for the students that have at least one chip."""
        ids = [s for s in (student_ids or []) if s]
        if not ids:
            raise ValidationError("Missing student_ids")
        days = self._validate_window(window_days)
        now = now or utc_now()

        summaries = []
        for student_id in dict.fromkeys(ids):
            summary = self.summarize(student_id, days, now=now)
            if summary.chip_count:
                summaries.append(summary)
        return summaries

    # ---------------------------------------------------------
    # SUBMIT
    # ---------------------------------------------------------

    def _validate_new_deduction(self, item: NewDeduction) -> None:
        if not item.taolu_form_id or item.section_number is None or not item.code_id:
            raise ValidationError(
                "New deductions need taolu_form_id, section_number and code_id",
                {"new_deduction": {
                    "taolu_form_id": item.taolu_form_id,
                    "section_number": item.section_number,
                    "code_id": item.code_id,
                }},
            )
        form = self.catalog.require_form(item.taolu_form_id)
        if not 1 <= int(item.section_number) <= form.sections_count:
            raise ValidationError(
                f"Section {item.section_number} outside 1..{form.sections_count} for form {form.name}",
                {"section_number": item.section_number},
            )
        self.catalog.require_code(item.code_id)

    def submit(
        self,
        student_id: str,
        window_days: int,
        selections: List[RefinementSelection],
        new_deductions: Optional[List[NewDeduction]] = None,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RefinementResult:
        """
        Score and persist one refinement round.

        Persists the round, its items, retroactive deductions and
        credits, then posts the net to the points ledger.
        """
        if not student_id:
            raise ValidationError("Missing student_id")
        days = self._validate_window(window_days)
        start, end = self._window(days, now)
        cfg = self.config.refinement

        included = [s for s in (selections or []) if s.included]
        new_items = list(new_deductions or [])

        for selection in included:
            if not selection.taolu_form_id or selection.section_number is None:
                raise ValidationError("Selections need taolu_form_id and section_number")
            self.catalog.require_form(selection.taolu_form_id)
            if selection.code_id:
                self.catalog.require_code(selection.code_id)
        for item in new_items:
            self._validate_new_deduction(item)

        fixed_ids = self._check_selection_ids(student_id, included, start, end)

        fixed_count = sum(1 for s in included if s.fixed)
        missed_count = len(included) - fixed_count
        new_count = len(new_items)
        points_fixed = fixed_count * cfg.fixed_bonus
        points_missed = missed_count * cfg.missed_penalty
        points_new = new_count * cfg.new_penalty
        net = points_fixed - points_missed - points_new

        round_ = RefinementRound(
            student_id=student_id,
            window_days=days,
            window_start=start,
            window_end=end,
            fixed_count=fixed_count,
            missed_count=missed_count,
            new_count=new_count,
            points_fixed=points_fixed,
            points_missed=points_missed,
            points_new=points_new,
            points_net=net,
            created_by=actor,
            created_at=end,
        )
        self.db.add(round_)
        self.db.flush()

        for selection in included:
            status = RefinementItemStatus.FIXED if selection.fixed else RefinementItemStatus.MISSED
            self.db.add(RefinementItem(
                round_id=round_.id,
                student_id=student_id,
                taolu_form_id=selection.taolu_form_id,
                section_number=int(selection.section_number),
                code_id=selection.code_id or None,
                status=status.value,
                deduction_ids=[i for i in selection.deduction_ids if i],
                note_samples=[n for n in selection.notes if n][:5],
            ))
            if selection.fixed:
                for deduction_id in dict.fromkeys(i for i in selection.deduction_ids if i):
                    self.db.add(RefinementChipCredit(
                        student_id=student_id,
                        deduction_id=deduction_id,
                        taolu_form_id=selection.taolu_form_id,
                        section_number=int(selection.section_number),
                        code_id=selection.code_id or None,
                        round_id=round_.id,
                        credited_at=end,
                    ))

        for item in new_items:
            self.db.add(RefinementDeduction(
                round_id=round_.id,
                student_id=student_id,
                taolu_form_id=item.taolu_form_id,
                section_number=int(item.section_number),
                code_id=item.code_id,
                note=(item.note or "").strip() or None,
                occurred_at=end,
            ))

        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"Concurrent credit rejected: student={student_id}")
            raise AlreadyRefinedError(
                "Deductions were already credited in a concurrent round",
                {"student_id": student_id, "deduction_ids": fixed_ids},
            )

        self.points.post(
            student_id=student_id,
            points=net,
            note=(
                f"Taolu refinement {days}d - fixed {fixed_count}, "
                f"missed {missed_count}, new {new_count}"
            ),
            source_type=LedgerSource.REFINEMENT,
            source_id=round_.id,
            created_by=actor,
        )
        log_audit_event(
            self.db,
            event_type="refinement_submitted",
            message=f"Refinement round {round_.id} for {student_id}: net {net:+d}",
            details={
                "round_id": round_.id,
                "student_id": student_id,
                "window_days": days,
                "fixed_count": fixed_count,
                "missed_count": missed_count,
                "new_count": new_count,
                "net_points": net,
            },
            actor=actor,
        )
        commit_session(self.db)

        logger.info(
            f"Refinement submitted: student={student_id} window={days}d fixed={fixed_count} "
            f"missed={missed_count} new={new_count} net={net}"
        )
        return RefinementResult(
            round_id=round_.id,
            fixed_count=fixed_count,
            missed_count=missed_count,
            new_count=new_count,
            points_fixed=points_fixed,
            points_missed=points_missed,
            points_new=points_new,
            net_points=net,
        )

    def list_rounds(self, student_id: str) -> List[RefinementRound]:
        return (
            self.db.query(RefinementRound)
            .filter(RefinementRound.student_id == student_id)
            .order_by(desc(RefinementRound.created_at))
            .all()
        )
