"""
Unit tests for engine settings.
"""

import pytest
from pydantic import ValidationError

from amlguard.config import Settings
from amlguard.schemas.records import RiskLevel


class TestSettings:
    """Tests for settings loading and validation."""

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.reporting_threshold == 10000
        assert settings.risk_bands().level_for(70) == RiskLevel.HIGH
        assert "Panama" in settings.high_risk_jurisdictions
        assert not settings.is_production

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("AMLGUARD_REPORTING_THRESHOLD", "15000")
        monkeypatch.setenv("AMLGUARD_LOG_LEVEL", "debug")
        monkeypatch.setenv("AMLGUARD_HIGH_RISK_JURISDICTIONS", '[" Panama ", "Belize"]')

        settings = Settings(_env_file=None)

        assert settings.reporting_threshold == 15000
        assert settings.log_level == "DEBUG"
        assert settings.high_risk_jurisdictions == ["Panama", "Belize"]

    def test_unknown_log_level(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_level="LOUD")

    def test_bands_must_increase(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, risk_band_medium=70, risk_band_high=40)

    def test_small_threshold_below_reporting(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, small_transaction_threshold=20000)

    @pytest.mark.parametrize(
        "field", ["structuring_window_days", "max_traversal_depth", "min_volume_samples"]
    )
    def test_positive_limits(self, field):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

    def test_structuring_band_range(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, structuring_band=1.2)

    def test_timeout_positive(self):
        assert Settings(_env_file=None, run_timeout_seconds=2.5).run_timeout_seconds == 2.5
        with pytest.raises(ValidationError):
            Settings(_env_file=None, run_timeout_seconds=0)
