"""
Scoring Engine.

Pure functions over a session's live deduction count. Scores are
recomputed from the ledger on demand and never stored.

Scores are NOT clamped: a session with more than five live
deductions earns a negative score.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from .config import ScoringConfig, get_config


@dataclass(frozen=True)
class SessionScore:
    deductions_count: int
    points_lost: int
    points_earned: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deductions_count": self.deductions_count,
            "points_lost": self.points_lost,
            "points_earned": self.points_earned,
        }


def _scoring(config: Optional[ScoringConfig]) -> ScoringConfig:
    return config or get_config().scoring


def points_lost(n: int, config: Optional[ScoringConfig] = None) -> int:
    """Points lost for n live deductions."""
    return n * _scoring(config).deduction_value


def points_earned(n: int, config: Optional[ScoringConfig] = None) -> int:
    """Points earned for n live deductions. May be negative."""
    return _scoring(config).start_points - points_lost(n, config)


def live_count(deductions: Iterable[Any]) -> int:
    """Count deductions that are not voided."""
    return sum(1 for d in deductions if not getattr(d, "voided", False))


def score_deductions(deductions: Iterable[Any], config: Optional[ScoringConfig] = None) -> SessionScore:
    n = live_count(deductions)
    return SessionScore(
        deductions_count=n,
        points_lost=points_lost(n, config),
        points_earned=points_earned(n, config),
    )
