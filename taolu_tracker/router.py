"""
FastAPI Router for Taolu Tracker Endpoints.

Provides REST API for live judging and coaching review:
- Manage judging sessions and their sections
- Log, assign, void and remove deductions
- Finish sessions and list scored history
- Single-session remediation and window refinement
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from database.engine import get_session
from taolu_tracker.errors import TaoluError
from taolu_tracker.ledger import UNSET, DeductionLedger
from taolu_tracker.refinement import NewDeduction, RefinementSelection, WindowRefinementEngine
from taolu_tracker.remediation import RemediationService
from taolu_tracker.reporting import ReportingService
from taolu_tracker.schemas import (
    ActiveSectionUpdate,
    CodeCountsEnvelope,
    DeductionAssign,
    DeductionCreate,
    DeductionEnvelope,
    DeductionListEnvelope,
    DeductionRef,
    DeductionRemoveEnvelope,
    DeductionResponse,
    FinishEnvelope,
    FinishedSessionListEnvelope,
    FinishedSessionResponse,
    RefinementRoundEnvelope,
    RefinementRoundResponse,
    RefinementSubmit,
    RefinementSummaryRequest,
    RemediationEnvelope,
    RemediationResponse,
    RemediationSubmit,
    SessionCloseEnvelope,
    SessionCreate,
    SessionEnvelope,
    SessionListEnvelope,
    SessionRef,
    SessionResponse,
    SessionSectionsUpdate,
    VoidUnassignedEnvelope,
)
from taolu_tracker.sessions import SessionManager

router = APIRouter(prefix="/taolu", tags=["Taolu Tracker"])


# =============================================================
# HELPER: Database dependency
# =============================================================

def get_db():
    db = get_session()
    try:
        yield db
    finally:
        db.close()


# =============================================================
# HELPER: Get service instances
# =============================================================

def get_session_manager(db: Session = Depends(get_db)) -> SessionManager:
    return SessionManager(db)


def get_deduction_ledger(db: Session = Depends(get_db)) -> DeductionLedger:
    return DeductionLedger(db)


def get_remediation_service(db: Session = Depends(get_db)) -> RemediationService:
    return RemediationService(db)


def get_refinement_engine(db: Session = Depends(get_db)) -> WindowRefinementEngine:
    return WindowRefinementEngine(db)


def get_reporting_service(db: Session = Depends(get_db)) -> ReportingService:
    return ReportingService(db)


def _http_error(e: TaoluError) -> HTTPException:
    return HTTPException(status_code=e.http_status, detail=e.to_dict())


# =============================================================
# SESSION ENDPOINTS
# =============================================================

@router.post("/sessions", response_model=SessionListEnvelope)
def create_sessions(
    payload: SessionCreate,
    user_id: str = Query("system", description="ID of the acting coach"),
    manager: SessionManager = Depends(get_session_manager),
):
    """
    Start judging sessions.

    One session per student; with separate_sections, one per
    student and section.
    """
    try:
        sessions = manager.create_sessions(
            form_id=payload.taolu_form_id,
            student_ids=payload.student_ids,
            sections=payload.sections,
            separate_sections=payload.separate_sections,
            coach_user_id=user_id,
        )
    except TaoluError as e:
        raise _http_error(e)
    return SessionListEnvelope(sessions=[SessionResponse.model_validate(s) for s in sessions])


@router.get("/sessions", response_model=SessionListEnvelope)
def list_open_sessions(manager: SessionManager = Depends(get_session_manager)):
    """Sessions still being judged, most recent first."""
    sessions = manager.list_open_sessions()
    return SessionListEnvelope(sessions=[SessionResponse.model_validate(s) for s in sessions])


@router.patch("/sessions", response_model=SessionEnvelope)
def update_sections(
    payload: SessionSectionsUpdate,
    manager: SessionManager = Depends(get_session_manager),
):
    try:
        session = manager.update_sections(payload.session_id, payload.sections)
    except TaoluError as e:
        raise _http_error(e)
    return SessionEnvelope(session=SessionResponse.model_validate(session))


@router.delete("/sessions", response_model=SessionCloseEnvelope)
def close_session(
    payload: SessionRef,
    user_id: str = Query("system"),
    manager: SessionManager = Depends(get_session_manager),
):
    """Discard an unfinished session and its deductions."""
    try:
        closed = manager.close_session(payload.session_id, actor=user_id)
    except TaoluError as e:
        raise _http_error(e)
    return SessionCloseEnvelope(closed=closed)


@router.post("/sessions/active-section", response_model=SessionEnvelope)
def set_active_section(
    payload: ActiveSectionUpdate,
    manager: SessionManager = Depends(get_session_manager),
):
    try:
        session = manager.set_active_section(payload.session_id, payload.section_number)
    except TaoluError as e:
        raise _http_error(e)
    return SessionEnvelope(session=SessionResponse.model_validate(session))


@router.post("/finish", response_model=FinishEnvelope)
def finish_session(
    payload: SessionRef,
    user_id: str = Query("system"),
    manager: SessionManager = Depends(get_session_manager),
):
    """
    Finish a session exactly once.

    Returns the scored summary; a second call fails with 409.
    """
    try:
        summary = manager.finish_session(payload.session_id, actor=user_id)
    except TaoluError as e:
        raise _http_error(e)
    return FinishEnvelope(session=FinishedSessionResponse(**summary.to_dict()))


# =============================================================
# DEDUCTION ENDPOINTS
# =============================================================

@router.post("/deductions", response_model=DeductionEnvelope)
def log_deduction(
    payload: DeductionCreate,
    ledger: DeductionLedger = Depends(get_deduction_ledger),
):
    try:
        deduction = ledger.log_deduction(
            payload.session_id,
            section_number=payload.section_number,
            note=payload.note,
        )
    except TaoluError as e:
        raise _http_error(e)
    return DeductionEnvelope(deduction=DeductionResponse.model_validate(deduction))


@router.get("/deductions", response_model=DeductionListEnvelope)
def list_deductions(
    session_id: str = Query(..., description="Session to list"),
    ledger: DeductionLedger = Depends(get_deduction_ledger),
):
    """Live and voided deductions in append order."""
    try:
        deductions = ledger.list_deductions(session_id)
    except TaoluError as e:
        raise _http_error(e)
    return DeductionListEnvelope(
        deductions=[DeductionResponse.model_validate(d) for d in deductions]
    )


@router.patch("/deductions", response_model=VoidUnassignedEnvelope)
def void_unassigned(
    payload: SessionRef,
    user_id: str = Query("system"),
    ledger: DeductionLedger = Depends(get_deduction_ledger),
):
    """Void every live deduction that still has no code."""
    try:
        count = ledger.void_unassigned(payload.session_id, actor=user_id)
    except TaoluError as e:
        raise _http_error(e)
    return VoidUnassignedEnvelope(voided_count=count)


@router.post("/deductions/assign", response_model=DeductionEnvelope)
def assign_deduction(
    payload: DeductionAssign,
    user_id: str = Query("system"),
    ledger: DeductionLedger = Depends(get_deduction_ledger),
):
    """
    Assign a code, move section, edit the note or toggle void.

    Only fields present in the body are written.
    """
    supplied = payload.model_fields_set
    try:
        deduction = ledger.assign_deduction(
            payload.deduction_id,
            code_id=payload.code_id if "code_id" in supplied else UNSET,
            section_number=(
                payload.section_number
                if "section_number" in supplied and payload.section_number is not None
                else UNSET
            ),
            note=payload.note if "note" in supplied else UNSET,
            voided=(
                payload.voided
                if "voided" in supplied and payload.voided is not None
                else UNSET
            ),
            actor=user_id,
        )
    except TaoluError as e:
        raise _http_error(e)
    return DeductionEnvelope(deduction=DeductionResponse.model_validate(deduction))


@router.delete("/deductions/assign", response_model=DeductionRemoveEnvelope)
def remove_deduction(
    payload: DeductionRef,
    user_id: str = Query("system"),
    ledger: DeductionLedger = Depends(get_deduction_ledger),
):
    try:
        ledger.remove_deduction(payload.deduction_id, actor=user_id)
    except TaoluError as e:
        raise _http_error(e)
    return DeductionRemoveEnvelope(removed=True)


# =============================================================
# REPORT ENDPOINTS
# =============================================================

@router.get("/finished-sessions", response_model=FinishedSessionListEnvelope)
def list_finished_sessions(
    limit: Optional[int] = Query(None, description="Max sessions (1..500, default 200)"),
    reporting: ReportingService = Depends(get_reporting_service),
):
    summaries = reporting.finished_sessions(limit=limit)
    return FinishedSessionListEnvelope(
        sessions=[FinishedSessionResponse(**s.to_dict()) for s in summaries]
    )


@router.get("/student-code-counts", response_model=CodeCountsEnvelope)
def student_code_counts(
    student_id: str = Query("", description="Student to count codes for"),
    reporting: ReportingService = Depends(get_reporting_service),
):
    try:
        counts = reporting.code_counts(student_id)
    except TaoluError as e:
        raise _http_error(e)
    return CodeCountsEnvelope(counts=counts)


@router.get("/student-summary")
def student_summary(
    student_id: str = Query("", description="Student to summarize"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    reporting: ReportingService = Depends(get_reporting_service),
):
    try:
        summary = reporting.student_summary(student_id, start=start_date, end=end_date)
    except TaoluError as e:
        raise _http_error(e)
    return {"ok": True, **summary}


# =============================================================
# REMEDIATION ENDPOINTS
# =============================================================

@router.get("/remediations", response_model=RemediationEnvelope)
def get_remediation(
    session_id: str = Query(...),
    service: RemediationService = Depends(get_remediation_service),
):
    remediation = service.get_remediation(session_id)
    return RemediationEnvelope(
        remediation=RemediationResponse.model_validate(remediation) if remediation else None
    )


@router.post("/remediations", response_model=RemediationEnvelope)
def submit_remediation(
    payload: RemediationSubmit,
    user_id: str = Query("system"),
    service: RemediationService = Depends(get_remediation_service),
):
    """Record the one-time refinement of a finished session."""
    try:
        remediation = service.submit_remediation(
            payload.session_id, payload.deduction_ids, actor=user_id
        )
    except TaoluError as e:
        raise _http_error(e)
    return RemediationEnvelope(remediation=RemediationResponse.model_validate(remediation))


# =============================================================
# WINDOW REFINEMENT ENDPOINTS
# =============================================================

@router.post("/refinement/summary")
def refinement_summary(
    payload: RefinementSummaryRequest,
    engine: WindowRefinementEngine = Depends(get_refinement_engine),
):
    """Chips per student for the trailing window."""
    try:
        summaries = engine.summarize_many(payload.student_ids, payload.window_days)
    except TaoluError as e:
        raise _http_error(e)
    return {"ok": True, "students": [s.to_dict() for s in summaries]}


@router.post("/refinement/submit", response_model=RefinementRoundEnvelope)
def refinement_submit(
    payload: RefinementSubmit,
    user_id: str = Query("system"),
    engine: WindowRefinementEngine = Depends(get_refinement_engine),
):
    """
    Score and persist a refinement round.

    net = fixed * 5 - missed * 5 - new * 3
    """
    selections = [RefinementSelection(**s.model_dump()) for s in payload.selections]
    new_deductions = [NewDeduction(**n.model_dump()) for n in payload.new_deductions]
    try:
        result = engine.submit(
            payload.student_id,
            payload.window_days,
            selections,
            new_deductions,
            actor=user_id,
        )
    except TaoluError as e:
        raise _http_error(e)
    return RefinementRoundEnvelope(round=RefinementRoundResponse(**result.to_dict()))
