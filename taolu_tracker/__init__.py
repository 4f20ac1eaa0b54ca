"""
Taolu Tracker Package.

Session tracking, deduction logging and refinement scoring for live
taolu (martial-arts forms) judging and post-event coaching review.

Core Principles:
- Judges append deductions in real time, one per tap
- A session finishes exactly once and is scored from its live deductions
- A finished session may be refined once; windows may be refined repeatedly
- Every state change is logged and auditable

Modules:
- config: point values and reporting limits
- errors: error taxonomy mapped to HTTP status codes
- catalog: read-only forms, codes and age groups
- sessions: session lifecycle
- ledger: deduction append/assign/void/remove
- scoring: session point math
- remediation: single-session refinement
- refinement: window refinement
- reporting: history and aggregation reports
- points: points ledger sink
- router: FastAPI endpoints

Usage:
    from taolu_tracker.sessions import SessionManager
    from taolu_tracker.router import router as taolu_router
"""

from taolu_tracker.config import TaoluConfig, get_config, reset_config
from taolu_tracker.errors import (
    TaoluError,
    ValidationError,
    NotFoundError,
    AlreadyFinishedError,
    AlreadyRefinedError,
    InvalidSectionError,
    is_retryable,
)
from taolu_tracker.catalog import ReferenceCatalog
from taolu_tracker.points import PointsLedger
from taolu_tracker.scoring import SessionScore, points_lost, points_earned, score_deductions
from taolu_tracker.sessions import SessionManager
from taolu_tracker.ledger import UNSET, DeductionLedger
from taolu_tracker.remediation import RemediationService
from taolu_tracker.refinement import (
    WindowRefinementEngine,
    RefinementSelection,
    NewDeduction,
    RefinementResult,
    RefinementSummary,
)
from taolu_tracker.reporting import FinishedSessionSummary, ReportingService

__all__ = [
    # Config
    "TaoluConfig",
    "get_config",
    "reset_config",
    # Errors
    "TaoluError",
    "ValidationError",
    "NotFoundError",
    "AlreadyFinishedError",
    "AlreadyRefinedError",
    "InvalidSectionError",
    "is_retryable",
    # Services
    "ReferenceCatalog",
    "PointsLedger",
    "SessionManager",
    "DeductionLedger",
    "UNSET",
    "RemediationService",
    "WindowRefinementEngine",
    "ReportingService",
    # Scoring
    "SessionScore",
    "points_lost",
    "points_earned",
    "score_deductions",
    # Types
    "RefinementSelection",
    "NewDeduction",
    "RefinementResult",
    "RefinementSummary",
    "FinishedSessionSummary",
]
