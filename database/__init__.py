"""
Database Package Initialization.

============================================================
TAOLU TRACKER PERSISTENCE LAYER
============================================================

SQLAlchemy engine/session management and the ORM models for
judging sessions, the deduction ledger, refinement records,
the points ledger and the audit trail.

All transactions are explicit with commit/rollback.

============================================================
"""

from .engine import (
    Base,
    create_database_engine,
    get_engine,
    get_session,
    get_session_factory,
    reset_engine,
    commit_session,
    initialize_database,
    create_all_tables,
    DatabasePersistenceError,
    DatabaseConnectionError,
    DatabaseInitializationError,
)

from .models_taolu import (
    DeductionStatus,
    RefinementItemStatus,
    LedgerSource,
    AgeGroup,
    TaoluForm,
    DeductionCode,
    TaoluSession,
    TaoluDeduction,
    TaoluRemediation,
    RefinementRound,
    RefinementItem,
    RefinementDeduction,
    RefinementChipCredit,
    LedgerEntry,
    AuditEvent,
)

__all__ = [
    # Engine & session
    "Base",
    "create_database_engine",
    "get_engine",
    "get_session",
    "get_session_factory",
    "reset_engine",
    "commit_session",
    "initialize_database",
    "create_all_tables",
    # Exceptions
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
    # Models
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
