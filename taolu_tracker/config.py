"""
Taolu Tracker - Configuration.

============================================================
PURPOSE
============================================================
Point-economy constants, reporting limits and server settings
for the tracker.

Every value has a default matching the academy's scoring
rules; point values can be overridden from the environment
(loaded from .env by the database engine).

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


# ============================================================
# SCORING CONFIGURATION
# ============================================================

@dataclass
class ScoringConfig:
    """
    Session scoring.

    points_earned = start_points - live_deductions * deduction_value
    """

    deduction_value: int = 2
    """Points lost per live deduction."""

    start_points: int = 10
    """Points a session starts from."""

    remediation_points_per_fix: int = 1
    """Points awarded per deduction fixed in a single-session refinement."""


# ============================================================
# REFINEMENT CONFIGURATION
# ============================================================

@dataclass
class RefinementConfig:
    """
    Window refinement.

    net = fixed * fixed_bonus - missed * missed_penalty - new * new_penalty
    """

    fixed_bonus: int = 5
    missed_penalty: int = 5
    new_penalty: int = 3

    allowed_windows: Tuple[int, ...] = (7, 30, 90)
    """Trailing windows (days) a coach may refine over."""


# ============================================================
# REPORTING CONFIGURATION
# ============================================================

@dataclass
class ReportingConfig:
    sample_codes_per_session: int = 3
    default_history_limit: int = 200
    max_history_limit: int = 500


# ============================================================
# SERVER CONFIGURATION
# ============================================================

@dataclass
class ServerConfig:
    """HTTP server settings used by run_api."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    reload: bool = False
    """Auto-reload on code changes; only in development."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class TaoluConfig:
    """Master configuration for the tracker."""

    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    refinement: RefinementConfig = field(default_factory=RefinementConfig)
    reporting: ReportingConfig = field(default_factory=ReportingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> "TaoluConfig":
        """Build configuration with environment overrides applied."""
        return cls(
            scoring=ScoringConfig(
                deduction_value=_env_int("TAOLU_DEDUCTION_VALUE", 2),
                start_points=_env_int("TAOLU_START_POINTS", 10),
            ),
            refinement=RefinementConfig(
                fixed_bonus=_env_int("TAOLU_FIXED_BONUS", 5),
                missed_penalty=_env_int("TAOLU_MISSED_PENALTY", 5),
                new_penalty=_env_int("TAOLU_NEW_PENALTY", 3),
            ),
            server=ServerConfig(
                host=os.getenv("TAOLU_API_HOST", "0.0.0.0"),
                port=_env_int("TAOLU_API_PORT", _env_int("PORT", 8000)),
                log_level=os.getenv("TAOLU_LOG_LEVEL", "info").lower(),
                reload=os.getenv("ENVIRONMENT", "production") == "development",
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scoring": {
                "deduction_value": self.scoring.deduction_value,
                "start_points": self.scoring.start_points,
                "remediation_points_per_fix": self.scoring.remediation_points_per_fix,
            },
            "refinement": {
                "fixed_bonus": self.refinement.fixed_bonus,
                "missed_penalty": self.refinement.missed_penalty,
                "new_penalty": self.refinement.new_penalty,
                "allowed_windows": list(self.refinement.allowed_windows),
            },
            "reporting": {
                "sample_codes_per_session": self.reporting.sample_codes_per_session,
                "default_history_limit": self.reporting.default_history_limit,
                "max_history_limit": self.reporting.max_history_limit,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
                "reload": self.server.reload,
            },
        }


_config: Optional[TaoluConfig] = None


def get_config() -> TaoluConfig:
    """Get the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = TaoluConfig.from_env()
    return _config


def reset_config() -> None:
    """Forget the cached configuration."""
    global _config
    _config = None
