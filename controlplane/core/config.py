"""Control plane settings and configuration."""

from __future__ import annotations

from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Control plane settings loaded from environment variables."""

    APP_NAME: str = "autonomy-control-plane"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Global security posture at startup
    DEFAULT_SECURITY_MODE: Literal["monitor", "enforce", "supervised", "lockdown"] = (
        "enforce"
    )
    DEFAULT_THREAT_LEVEL: Literal["green", "yellow", "orange", "red", "black"] = "green"

    # Decision gate rate limiting, per (actor, action)
    GATE_RATE_LIMIT_REQUESTS: int = 60
    GATE_RATE_LIMIT_WINDOW_SEC: int = 60
    RATE_LIMIT_BACKEND: Literal["memory", "redis"] = "memory"
    REDIS_URL: str | None = None

    # Override registry policy
    OVERRIDE_MIN_JUSTIFICATION_LENGTH: int = 20
    OVERRIDE_MIN_DURATION_MINUTES: int = 1
    OVERRIDE_MIN_DELIBERATION_SEC: int = 30
    OVERRIDE_COLLUSION_THRESHOLD: float = 0.8
    OVERRIDE_COLLUSION_MIN_APPROVALS: int = 5
    OVERRIDE_COLLUSION_WINDOW_HOURS: int = 24
    OVERRIDE_FLOOD_PER_HOUR: int = 20
    OVERRIDE_REJECT_ON_COLLUSION: bool = False

    # Execution plan defaults. Every threshold must stay non-zero.
    PLAN_MAX_CONCURRENT: int = 1
    PLAN_DELAY_BETWEEN_MS: int = 1000
    PLAN_MAX_RISK_SCORE: float = 0.6
    PLAN_MAX_AFFECTED_CONTENT: int = 50
    PLAN_ROLLBACK_ON_ERROR_RATE: float = 0.2
    PLAN_ROLLBACK_ON_METRIC_DROP: float = 0.15
    PLAN_TIMEOUT_MS: int = 300_000

    # Rollback
    ROLLBACK_COMPLEXITY_THRESHOLD: int = 5
    AUTO_ROLLBACK_ON_SIGNAL: bool = True

    # Audit
    AUDIT_MAX_ENTRIES: int = 10_000

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def _check_safety_net(self) -> "Settings":
        positive = {
            "PLAN_MAX_CONCURRENT": self.PLAN_MAX_CONCURRENT,
            "PLAN_DELAY_BETWEEN_MS": self.PLAN_DELAY_BETWEEN_MS,
            "PLAN_MAX_AFFECTED_CONTENT": self.PLAN_MAX_AFFECTED_CONTENT,
            "PLAN_TIMEOUT_MS": self.PLAN_TIMEOUT_MS,
            "GATE_RATE_LIMIT_REQUESTS": self.GATE_RATE_LIMIT_REQUESTS,
            "GATE_RATE_LIMIT_WINDOW_SEC": self.GATE_RATE_LIMIT_WINDOW_SEC,
            "AUDIT_MAX_ENTRIES": self.AUDIT_MAX_ENTRIES,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0, got {value}")

        ratios = {
            "PLAN_MAX_RISK_SCORE": self.PLAN_MAX_RISK_SCORE,
            "PLAN_ROLLBACK_ON_ERROR_RATE": self.PLAN_ROLLBACK_ON_ERROR_RATE,
            "PLAN_ROLLBACK_ON_METRIC_DROP": self.PLAN_ROLLBACK_ON_METRIC_DROP,
            "OVERRIDE_COLLUSION_THRESHOLD": self.OVERRIDE_COLLUSION_THRESHOLD,
        }
        for name, value in ratios.items():
            if not 0 < value <= 1:
                raise ValueError(f"{name} must be in (0, 1], got {value}")

        if self.RATE_LIMIT_BACKEND == "redis" and not self.REDIS_URL:
            raise ValueError("RATE_LIMIT_BACKEND=redis requires REDIS_URL")
        return self


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Return the process settings instance."""
    return settings
