"""Settings validation and plan config defaults."""

import pytest

from controlplane.core.config import Settings
from controlplane.governance import PlanConfig


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.DEFAULT_SECURITY_MODE == "enforce"
        assert settings.PLAN_MAX_CONCURRENT == 1
        assert settings.PLAN_DELAY_BETWEEN_MS == 1000
        assert settings.PLAN_MAX_RISK_SCORE == 0.6
        assert settings.AUTO_ROLLBACK_ON_SIGNAL is True

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("PLAN_MAX_CONCURRENT", "4")
        monkeypatch.setenv("DEFAULT_THREAT_LEVEL", "yellow")
        settings = Settings()
        assert settings.PLAN_MAX_CONCURRENT == 4
        assert settings.DEFAULT_THREAT_LEVEL == "yellow"

    @pytest.mark.parametrize("field", ["PLAN_MAX_CONCURRENT", "PLAN_DELAY_BETWEEN_MS", "PLAN_TIMEOUT_MS"])
    def test_zero_thresholds_rejected(self, field):
        with pytest.raises(ValueError, match=field):
            Settings(**{field: 0})

    @pytest.mark.parametrize("value", [0, 1.5, -0.1])
    def test_ratio_out_of_range_rejected(self, value):
        with pytest.raises(ValueError, match="PLAN_ROLLBACK_ON_ERROR_RATE"):
            Settings(PLAN_ROLLBACK_ON_ERROR_RATE=value)

    def test_redis_backend_requires_url(self):
        with pytest.raises(ValueError, match="REDIS_URL"):
            Settings(RATE_LIMIT_BACKEND="redis")

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValueError):
            Settings(DEFAULT_SECURITY_MODE="panic")


class TestPlanConfig:
    def test_from_settings(self):
        config = PlanConfig.from_settings(Settings(PLAN_MAX_RISK_SCORE=0.4, PLAN_TIMEOUT_MS=5000))
        assert config.max_risk_score == 0.4
        assert config.timeout_ms == 5000
        assert config.validate() == []

    def test_validate_reports_every_problem(self):
        problems = PlanConfig(max_concurrent=0, delay_between_ms=-1, max_risk_score=2.0).validate()
        assert len(problems) == 3
        assert any("max_concurrent" in p for p in problems)
        assert any("max_risk_score" in p for p in problems)
