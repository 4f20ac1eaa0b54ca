"""
Tests for session scoring and configuration.
"""

import pytest
from types import SimpleNamespace

from taolu_tracker.config import ScoringConfig, TaoluConfig, get_config
from taolu_tracker.errors import (
    AlreadyFinishedError,
    NotFoundError,
    ValidationError,
    is_retryable,
)
from database.engine import DatabasePersistenceError
from taolu_tracker.scoring import (
    live_count,
    points_earned,
    points_lost,
    score_deductions,
)


# =============================================================
# TEST: Point Formula
# =============================================================

class TestPointFormula:
    """points_lost = 2n, points_earned = 10 - 2n."""

    @pytest.mark.parametrize("n", [0, 1, 3, 5, 6, 12])
    def test_formula_holds(self, n):
        assert points_lost(n) == 2 * n
        assert points_earned(n) == 10 - 2 * n

    def test_score_is_not_clamped(self):
        assert points_earned(7) == -4

    def test_custom_config(self):
        config = ScoringConfig(deduction_value=1, start_points=20)
        assert points_lost(4, config) == 4
        assert points_earned(4, config) == 16


class TestScoreDeductions:
    """Voided deductions never count."""

    def test_voided_excluded(self):
        deductions = [
            SimpleNamespace(voided=False),
            SimpleNamespace(voided=True),
            SimpleNamespace(voided=False),
            SimpleNamespace(voided=False),
        ]
        assert live_count(deductions) == 3

        score = score_deductions(deductions)
        assert score.to_dict() == {
            "deductions_count": 3,
            "points_lost": 6,
            "points_earned": 4,
        }

    def test_empty_session_scores_full(self):
        score = score_deductions([])
        assert score.deductions_count == 0
        assert score.points_earned == 10


# =============================================================
# TEST: Configuration
# =============================================================

class TestConfig:

    def test_defaults(self):
        config = TaoluConfig()
        assert config.scoring.deduction_value == 2
        assert config.refinement.fixed_bonus == 5
        assert config.refinement.missed_penalty == 5
        assert config.refinement.new_penalty == 3
        assert config.to_dict()["refinement"]["allowed_windows"] == [7, 30, 90]

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("TAOLU_NEW_PENALTY", "4")
        config = TaoluConfig.from_env()
        assert config.refinement.new_penalty == 4
        assert config.scoring.start_points == 10

    def test_get_config_is_cached(self):
        assert get_config() is get_config()


# =============================================================
# TEST: Error Taxonomy
# =============================================================

class TestErrors:

    def test_http_status_mapping(self):
        assert ValidationError("bad").http_status == 400
        assert NotFoundError("Session", "x").http_status == 404
        assert AlreadyFinishedError("x").http_status == 409

    def test_to_dict(self):
        data = NotFoundError("Session", "abc").to_dict()
        assert data["code"] == "NOT_FOUND"
        assert data["details"] == {"entity": "Session", "id": "abc"}
        assert data["error_type"] == "NotFoundError"

    def test_retryability(self):
        assert is_retryable(AlreadyFinishedError("x")) is False
        assert is_retryable(DatabasePersistenceError("lost connection")) is True
        assert is_retryable(RuntimeError("other")) is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
