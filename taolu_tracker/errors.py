"""
Taolu Tracker - Error Taxonomy.

============================================================
ERROR CATEGORIES
============================================================
1. Validation Errors - malformed or missing input
2. Not Found Errors - unknown session/deduction/student
3. State Errors - already finished / already refined
4. Section Errors - section not in the session's set

RETRYABLE vs NON-RETRYABLE:
- Taxonomy errors are never retried automatically; they need
  explicit caller action.
- Persistence errors are transient and may be retried.

============================================================
"""

from datetime import datetime
from typing import Any, Dict, Optional

from database.engine import DatabasePersistenceError


class TaoluError(Exception):
    """Base exception for all tracker errors."""

    code: str = "TAOLU_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.utcnow()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class ValidationError(TaoluError):
    """Malformed or missing input."""

    code = "VALIDATION"
    http_status = 400


class NotFoundError(TaoluError):
    """Referenced session, deduction or student does not exist."""

    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            f"{entity} not found: {entity_id}",
            {"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class AlreadyFinishedError(TaoluError):
    """Session has already transitioned to finished."""

    code = "ALREADY_FINISHED"
    http_status = 409

    def __init__(self, session_id: str, ended_at: Optional[datetime] = None) -> None:
        super().__init__(
            f"Session already finished: {session_id}",
            {
                "session_id": session_id,
                "ended_at": ended_at.isoformat() if ended_at else None,
            },
        )
        self.session_id = session_id
        self.ended_at = ended_at


class AlreadyRefinedError(TaoluError):
    """Refinement already completed for this scope."""

    code = "ALREADY_REFINED"
    http_status = 409


class InvalidSectionError(TaoluError):
    """Section is not part of the session's section set."""

    code = "INVALID_SECTION"
    http_status = 400

    def __init__(self, session_id: str, section: Any, sections: list) -> None:
        super().__init__(
            f"Section {section} is not in session {session_id} sections {sections}",
            {"session_id": session_id, "section": section, "sections": list(sections)},
        )


def is_retryable(error: BaseException) -> bool:
    """Whether a failed operation may be retried as-is."""
    if isinstance(error, TaoluError):
        return False
    return isinstance(error, DatabasePersistenceError)


__all__ = [
    "TaoluError",
    "ValidationError",
    "NotFoundError",
    "AlreadyFinishedError",
    "AlreadyRefinedError",
    "InvalidSectionError",
    "is_retryable",
]
