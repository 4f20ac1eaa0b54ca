"""
Points Ledger sink.

The tracker only emits point deltas. Each delta is keyed by its
source (finished session, remediation, refinement round) so the
same source never posts twice; balance recomputation happens
outside this service.
"""

import logging
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from database.models_taolu import LedgerEntry, LedgerSource

logger = logging.getLogger(__name__)

NOTE_MAX_LENGTH = 200


class PointsLedger:
    """Posts point deltas for students."""

    def __init__(self, db: Session):
        self.db = db

    def find(self, source_type: LedgerSource, source_id: str) -> Optional[LedgerEntry]:
        return (
            self.db.query(LedgerEntry)
            .filter(
                LedgerEntry.source_type == source_type.value,
                LedgerEntry.source_id == source_id,
            )
            .first()
        )

    def post(
        self,
        student_id: str,
        points: int,
        note: str,
        source_type: LedgerSource,
        source_id: str,
        category: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Stage a ledger entry in the caller's unit of work.

        Returns the existing entry when the source already posted.
        """
        existing = self.find(source_type, source_id)
        if existing is not None:
            logger.info(
                f"Ledger entry already posted: source={source_type.value}:{source_id} "
                f"points={existing.points}"
            )
            return existing

        entry = LedgerEntry(
            student_id=student_id,
            points=int(points),
            note=note[:NOTE_MAX_LENGTH],
            category=category or source_type.value,
            source_type=source_type.value,
            source_id=source_id,
            created_by=created_by,
        )
        self.db.add(entry)
        self.db.flush()

        logger.info(
            f"Ledger entry posted: student={student_id} points={points:+d} "
            f"source={source_type.value}:{source_id}"
        )
        return entry

    def entries_for_student(self, student_id: str) -> List[LedgerEntry]:
        return (
            self.db.query(LedgerEntry)
            .filter(LedgerEntry.student_id == student_id)
            .order_by(LedgerEntry.created_at)
            .all()
        )

    def balance_delta(self, student_id: str) -> int:
        """Sum of every delta emitted for a student."""
        total = (
            self.db.query(func.coalesce(func.sum(LedgerEntry.points), 0))
            .filter(LedgerEntry.student_id == student_id)
            .scalar()
        )
        return int(total or 0)
