"""
Taolu Tracker Database Models.

Tables:
- taolu_age_groups / taolu_forms / taolu_deduction_codes: reference catalog (read-only)
- taolu_sessions: judging sessions (one student, one form, a subset of sections)
- taolu_deductions: append-log of infractions logged during a session
- taolu_remediations: single-session refinement results (one per session)
- taolu_refinement_rounds / _items / _deductions / _chip_credits: window refinement audit
- points_ledger: point deltas emitted for the external points economy
- taolu_audit_events: audit trail of state-changing operations
"""

from datetime import datetime
import enum
import uuid

from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, Boolean,
    DateTime, JSON, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database.engine import Base


# =============================================================
# HELPER FUNCTIONS
# =============================================================

def generate_uuid() -> str:
    """Generate a new UUID."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC timestamp (naive)."""
    return datetime.utcnow()


# =============================================================
# ENUMS
# =============================================================

class DeductionStatus(str, enum.Enum):
    """
    Lifecycle discriminant of a deduction.

    REMOVED is never stored: a removed deduction is physically deleted.
    """
    LIVE = "live"
    VOIDED = "voided"
    REMOVED = "removed"


class RefinementItemStatus(str, enum.Enum):
    FIXED = "fixed"
    MISSED = "missed"


class LedgerSource(str, enum.Enum):
    SESSION_FINISH = "taolu_tracker"
    REMEDIATION = "taolu_remediation"
    REFINEMENT = "taolu_refinement"


# =============================================================
# 1. REFERENCE CATALOG
# =============================================================

class AgeGroup(Base):
    """Competition age group. Read-only reference data."""
    __tablename__ = "taolu_age_groups"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(100), nullable=False)
    min_age = Column(Integer, nullable=True)
    max_age = Column(Integer, nullable=True)


class TaoluForm(Base):
    """A judged form. Immutable during any session's lifetime."""
    __tablename__ = "taolu_forms"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(200), nullable=False)
    sections_count = Column(Integer, nullable=False)
    age_group_id = Column(String(36), ForeignKey("taolu_age_groups.id"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class DeductionCode(Base):
    """Deduction code used to classify logged infractions."""
    __tablename__ = "taolu_deduction_codes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    code_number = Column(String(20), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    deduction_amount = Column(Integer, nullable=False, default=0)  # official value, unused by point math


# =============================================================
# 2. SESSIONS
# =============================================================

class TaoluSession(Base):
    """
    One judging run of one student performing one form.

    Finished exactly once (ended_at set); immutable to the session
    manager afterwards.
    """
    __tablename__ = "taolu_sessions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    student_id = Column(String(64), nullable=False, index=True)
    taolu_form_id = Column(String(36), ForeignKey("taolu_forms.id"), nullable=False)

    sections = Column(JSON, nullable=False)  # sorted list of section numbers
    active_section = Column(Integer, nullable=False)
    separate_sections = Column(Boolean, nullable=False, default=False)

    coach_user_id = Column(String(100), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)
    ended_at = Column(DateTime, nullable=True, index=True)

    deductions = relationship(
        "TaoluDeduction",
        back_populates="session",
        cascade="all, delete-orphan",
    )

    @property
    def is_finished(self) -> bool:
        return self.ended_at is not None

    __table_args__ = (
        Index("idx_taolu_sessions_student_ended", "student_id", "ended_at"),
    )


# =============================================================
# 3. DEDUCTIONS
# =============================================================

class TaoluDeduction(Base):
    """A single infraction logged during a session."""
    __tablename__ = "taolu_deductions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    session_id = Column(
        String(36), ForeignKey("taolu_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sequence = Column(BigInteger, nullable=False)  # per-session append order

    occurred_at = Column(DateTime, nullable=False, default=utc_now)
    code_id = Column(String(36), ForeignKey("taolu_deduction_codes.id"), nullable=True)
    section_number = Column(Integer, nullable=True)
    note = Column(Text, nullable=True)
    status = Column(String(10), nullable=False, default=DeductionStatus.LIVE.value)

    assigned_by = Column(String(100), nullable=True)
    assigned_at = Column(DateTime, nullable=True)

    session = relationship("TaoluSession", back_populates="deductions")

    @property
    def voided(self) -> bool:
        return self.status == DeductionStatus.VOIDED.value

    @property
    def is_live(self) -> bool:
        return self.status == DeductionStatus.LIVE.value

    __table_args__ = (
        UniqueConstraint("session_id", "sequence", name="uq_taolu_deductions_session_sequence"),
    )


# =============================================================
# 4. SINGLE-SESSION REMEDIATION
# =============================================================

class TaoluRemediation(Base):
    """Single-session refinement result. At most one per session."""
    __tablename__ = "taolu_remediations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    session_id = Column(String(36), ForeignKey("taolu_sessions.id"), nullable=False, unique=True)
    student_id = Column(String(64), nullable=False, index=True)
    taolu_form_id = Column(String(36), nullable=False)

    points_awarded = Column(Integer, nullable=False)
    deduction_ids = Column(JSON, nullable=False)  # ids marked fixed, snapshot

    completed_at = Column(DateTime, nullable=False, default=utc_now)
    created_by = Column(String(100), nullable=True)


# =============================================================
# 5. WINDOW REFINEMENT
# =============================================================

class RefinementRound(Base):
    """Immutable audit record of one window refinement submission."""
    __tablename__ = "taolu_refinement_rounds"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    student_id = Column(String(64), nullable=False, index=True)

    window_days = Column(Integer, nullable=False)
    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)

    fixed_count = Column(Integer, nullable=False, default=0)
    missed_count = Column(Integer, nullable=False, default=0)
    new_count = Column(Integer, nullable=False, default=0)

    points_fixed = Column(Integer, nullable=False, default=0)
    points_missed = Column(Integer, nullable=False, default=0)
    points_new = Column(Integer, nullable=False, default=0)
    points_net = Column(Integer, nullable=False, default=0)

    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    items = relationship("RefinementItem", back_populates="round", cascade="all, delete-orphan")


class RefinementItem(Base):
    """Per-chip decision recorded in a round."""
    __tablename__ = "taolu_refinement_items"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    round_id = Column(String(36), ForeignKey("taolu_refinement_rounds.id"), nullable=False, index=True)
    student_id = Column(String(64), nullable=False)
    taolu_form_id = Column(String(36), nullable=False)
    section_number = Column(Integer, nullable=False)
    code_id = Column(String(36), nullable=True)
    status = Column(String(10), nullable=False)  # fixed, missed
    deduction_ids = Column(JSON, nullable=False)
    note_samples = Column(JSON, nullable=True)

    round = relationship("RefinementRound", back_populates="items")


class RefinementDeduction(Base):
    """Retroactive deduction added by a coach during window refinement."""
    __tablename__ = "taolu_refinement_deductions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    round_id = Column(String(36), ForeignKey("taolu_refinement_rounds.id"), nullable=False, index=True)
    student_id = Column(String(64), nullable=False, index=True)
    taolu_form_id = Column(String(36), ForeignKey("taolu_forms.id"), nullable=False)
    section_number = Column(Integer, nullable=False)
    code_id = Column(String(36), ForeignKey("taolu_deduction_codes.id"), nullable=False)
    note = Column(Text, nullable=True)
    occurred_at = Column(DateTime, nullable=False, default=utc_now)


class RefinementChipCredit(Base):
    """Marks a deduction as already credited with a fixed bonus."""
    __tablename__ = "taolu_refinement_chip_credits"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    student_id = Column(String(64), nullable=False, index=True)
    deduction_id = Column(String(36), nullable=False, unique=True)
    taolu_form_id = Column(String(36), nullable=False)
    section_number = Column(Integer, nullable=False)
    code_id = Column(String(36), nullable=True)
    round_id = Column(String(36), ForeignKey("taolu_refinement_rounds.id"), nullable=False)
    credited_at = Column(DateTime, nullable=False, default=utc_now)


# =============================================================
# 6. POINTS LEDGER
# =============================================================

class LedgerEntry(Base):
    """Point delta emitted to the external points economy."""
    __tablename__ = "points_ledger"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    student_id = Column(String(64), nullable=False, index=True)
    points = Column(Integer, nullable=False)
    note = Column(String(200), nullable=False)
    category = Column(String(50), nullable=False)
    source_type = Column(String(50), nullable=False)
    source_id = Column(String(36), nullable=False)
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("source_type", "source_id", name="uq_points_ledger_source"),
    )


# =============================================================
# 7. AUDIT EVENTS
# =============================================================

class AuditEvent(Base):
    """Audit trail of state-changing operations."""
    __tablename__ = "taolu_audit_events"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False, index=True)
    severity = Column(String(20), nullable=False, default="info")
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    actor = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)


# =============================================================
# EXPORTS
# =============================================================

__all__ = [
    "generate_uuid",
    "utc_now",
    "DeductionStatus",
    "RefinementItemStatus",
    "LedgerSource",
    "AgeGroup",
    "TaoluForm",
    "DeductionCode",
    "TaoluSession",
    "TaoluDeduction",
    "TaoluRemediation",
    "RefinementRound",
    "RefinementItem",
    "RefinementDeduction",
    "RefinementChipCredit",
    "LedgerEntry",
    "AuditEvent",
]
