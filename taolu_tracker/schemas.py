"""
Pydantic Schemas for the Taolu Tracker API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================
# SESSION SCHEMAS
# =============================================================

class SessionCreate(BaseModel):
    """Start judging one form for one or more students."""
    taolu_form_id: str
    student_ids: List[str]
    sections: List[int]
    separate_sections: bool = False


class SessionSectionsUpdate(BaseModel):
    session_id: str
    sections: List[int]


class SessionRef(BaseModel):
    session_id: str


class ActiveSectionUpdate(BaseModel):
    session_id: str
    section_number: int


class SessionResponse(BaseModel):
    id: str
    student_id: str
    taolu_form_id: str
    sections: List[int]
    active_section: int
    separate_sections: bool = False
    coach_user_id: Optional[str] = None
    created_at: datetime
    ended_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SessionEnvelope(BaseModel):
    ok: bool = True
    session: SessionResponse


class SessionListEnvelope(BaseModel):
    ok: bool = True
    sessions: List[SessionResponse]


class SessionCloseEnvelope(BaseModel):
    ok: bool = True
    closed: bool


# =============================================================
# DEDUCTION SCHEMAS
# =============================================================

class DeductionCreate(BaseModel):
    """A judge tap. Lands on the active section unless one is given."""
    session_id: str
    section_number: Optional[int] = None
    note: Optional[str] = None


class DeductionAssign(BaseModel):
    """
    Partial update of a deduction.

    Only fields present in the request body are written.
    """
    deduction_id: str
    code_id: Optional[str] = None
    section_number: Optional[int] = None
    note: Optional[str] = None
    voided: Optional[bool] = None


class DeductionRef(BaseModel):
    deduction_id: str


class DeductionResponse(BaseModel):
    id: str
    session_id: str
    sequence: int
    occurred_at: datetime
    code_id: Optional[str] = None
    section_number: Optional[int] = None
    note: Optional[str] = None
    voided: bool = False
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DeductionEnvelope(BaseModel):
    ok: bool = True
    deduction: DeductionResponse


class DeductionListEnvelope(BaseModel):
    ok: bool = True
    deductions: List[DeductionResponse]


class VoidUnassignedEnvelope(BaseModel):
    ok: bool = True
    voided_count: int


class DeductionRemoveEnvelope(BaseModel):
    ok: bool = True
    removed: bool


# =============================================================
# REMEDIATION SCHEMAS
# =============================================================

class RemediationSubmit(BaseModel):
    session_id: str
    deduction_ids: List[str] = Field(default_factory=list)


class RemediationResponse(BaseModel):
    id: str
    session_id: str
    student_id: str
    taolu_form_id: str
    points_awarded: int
    deduction_ids: List[str]
    completed_at: datetime
    created_by: Optional[str] = None

    class Config:
        from_attributes = True


class RemediationEnvelope(BaseModel):
    ok: bool = True
    remediation: Optional[RemediationResponse] = None


# =============================================================
# WINDOW REFINEMENT SCHEMAS
# =============================================================

class RefinementSummaryRequest(BaseModel):
    student_ids: List[str]
    window_days: int = 7


class RefinementSelectionSchema(BaseModel):
    """Coach decision for one chip."""
    taolu_form_id: str
    section_number: int
    code_id: Optional[str] = None
    deduction_ids: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)
    fixed: bool = False
    included: bool = True


class NewDeductionSchema(BaseModel):
    taolu_form_id: Optional[str] = None
    section_number: Optional[int] = None
    code_id: Optional[str] = None
    note: Optional[str] = None


class RefinementSubmit(BaseModel):
    student_id: str
    window_days: int = 7
    selections: List[RefinementSelectionSchema] = Field(default_factory=list)
    new_deductions: List[NewDeductionSchema] = Field(default_factory=list)


class RefinementRoundResponse(BaseModel):
    round_id: str
    fixed_count: int
    missed_count: int
    new_count: int
    points_fixed: int
    points_missed: int
    points_new: int
    net_points: int


class RefinementRoundEnvelope(BaseModel):
    ok: bool = True
    round: RefinementRoundResponse


# =============================================================
# REPORT SCHEMAS
# =============================================================

class FinishedSessionResponse(BaseModel):
    """Scored summary of a finished session."""
    session_id: str
    student_id: str
    taolu_form_id: str
    form_name: str
    sections: List[int]
    deductions: List[Dict[str, Any]] = Field(default_factory=list)
    deductions_count: int
    deduction_samples: List[str] = Field(default_factory=list)
    points_lost: int
    points_earned: int
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    remediation_completed: bool = False
    remediation_points: Optional[int] = None


class FinishEnvelope(BaseModel):
    ok: bool = True
    session: FinishedSessionResponse


class FinishedSessionListEnvelope(BaseModel):
    ok: bool = True
    sessions: List[FinishedSessionResponse]


class CodeCountsEnvelope(BaseModel):
    ok: bool = True
    counts: Dict[str, int]
