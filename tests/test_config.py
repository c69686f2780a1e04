"""Tests for configuration management service."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from polymarket_insider_scoring.config import (
    CalibratorSettings,
    RollingVolumeSettings,
    Settings,
    TradeSizeSettings,
    VolumeSpikeSettings,
    WinRateSettings,
    clear_settings_cache,
    get_settings,
)

if TYPE_CHECKING:
    from collections.abc import Iterator


@pytest.fixture(autouse=True)
def clear_cache() -> Iterator[None]:
    """Clear settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


class TestRollingVolumeSettings:
    """Tests for RollingVolumeSettings."""

    def test_defaults(self) -> None:
        """Test default tracker settings."""
        with patch.dict(os.environ, {}, clear=True):
            settings = RollingVolumeSettings()
            assert settings.max_data_points == 10_000
            assert settings.max_age_minutes == 1440
            assert settings.primary_window == "5m"
            assert settings.min_data_density == 0.5

    def test_env_override(self) -> None:
        """Test environment variables use the group prefix."""
        with patch.dict(
            os.environ,
            {"ROLLING_VOLUME_PRIMARY_WINDOW": "1h", "ROLLING_VOLUME_MAX_DATA_POINTS": "50"},
        ):
            settings = RollingVolumeSettings()
            assert settings.primary_window == "1h"
            assert settings.max_data_points == 50

    def test_invalid_window_raises(self) -> None:
        """Test unknown window names are rejected."""
        with pytest.raises(ValidationError):
            RollingVolumeSettings(primary_window="2m")

    def test_density_bounds(self) -> None:
        """Test density must be a fraction."""
        with pytest.raises(ValidationError):
            RollingVolumeSettings(min_data_density=1.5)


class TestVolumeSpikeSettings:
    """Tests for VolumeSpikeSettings."""

    def test_defaults(self) -> None:
        """Test default spike thresholds."""
        with patch.dict(os.environ, {}, clear=True):
            settings = VolumeSpikeSettings()
            assert settings.low_z_score == 2.0
            assert settings.critical_z_score == 4.0
            assert settings.cooldown_seconds == 60
            assert settings.min_consecutive_points == 3

    def test_z_scores_must_increase(self) -> None:
        """Test z-score tiers must be strictly increasing."""
        with pytest.raises(ValidationError, match="z-score thresholds must be strictly increasing"):
            VolumeSpikeSettings(medium_z_score=1.5)

    def test_percentage_must_exceed_one(self) -> None:
        """Test percentage tiers are ratios above baseline."""
        with pytest.raises(ValidationError, match="greater than 1.0"):
            VolumeSpikeSettings(low_percentage=0.9)

    def test_requires_a_strategy(self) -> None:
        """Test at least one detection strategy must be enabled."""
        with pytest.raises(ValidationError, match="at least one detection strategy"):
            VolumeSpikeSettings(use_z_score_detection=False, use_percentage_detection=False)

    def test_env_override(self) -> None:
        """Test environment variables use the group prefix."""
        with patch.dict(os.environ, {"VOLUME_SPIKE_COOLDOWN_SECONDS": "5"}):
            assert VolumeSpikeSettings().cooldown_seconds == 5


class TestTradeSizeSettings:
    """Tests for TradeSizeSettings."""

    def test_defaults(self) -> None:
        """Test default trade size thresholds."""
        with patch.dict(os.environ, {}, clear=True):
            settings = TradeSizeSettings()
            assert settings.method == "COMBINED"
            assert settings.whale_trade_usd == 100_000
            assert settings.min_trades_for_reliable_stats == 30
            assert settings.exact_percentiles is False

    def test_absolute_tiers_must_increase(self) -> None:
        """Test absolute USD tiers must be strictly increasing."""
        with pytest.raises(ValidationError, match="absolute USD"):
            TradeSizeSettings(very_large_trade_usd=200_000)

    def test_invalid_method_raises(self) -> None:
        """Test unknown methods are rejected."""
        with (
            patch.dict(os.environ, {"TRADE_SIZE_METHOD": "MEDIAN"}),
            pytest.raises(ValidationError),
        ):
            TradeSizeSettings()


class TestWinRateSettings:
    """Tests for WinRateSettings."""

    def test_defaults(self) -> None:
        """Test default win rate settings."""
        with patch.dict(os.environ, {}, clear=True):
            settings = WinRateSettings()
            assert settings.min_positions_for_analysis == 5
            assert settings.min_positions_for_high_confidence == 20
            assert settings.streak_anomaly_threshold == 10

    def test_high_confidence_not_below_minimum(self) -> None:
        """Test high-confidence sample size cannot be below the minimum."""
        with pytest.raises(ValidationError, match="min_positions_for_high_confidence"):
            WinRateSettings(min_positions_for_analysis=10, min_positions_for_high_confidence=5)


class TestCalibratorSettings:
    """Tests for CalibratorSettings."""

    def test_defaults(self) -> None:
        """Test default calibrator settings."""
        with patch.dict(os.environ, {}, clear=True):
            settings = CalibratorSettings()
            assert settings.min_samples_for_calibration == 100
            assert settings.current_threshold == 50
            assert settings.enable_auto_adjustment is True

    def test_threshold_bounds(self) -> None:
        """Test threshold must be a 0-100 score."""
        with pytest.raises(ValidationError):
            CalibratorSettings(current_threshold=150)


class TestSettings:
    """Tests for main Settings class."""

    def test_groups_loaded(self) -> None:
        """Test nested groups read their own prefixes."""
        with patch.dict(
            os.environ,
            {"TRADE_SIZE_WHALE_TRADE_USD": "250000", "CALIBRATOR_CURRENT_THRESHOLD": "60"},
        ):
            settings = Settings()
            assert settings.trade_size.whale_trade_usd == 250_000
            assert settings.calibrator.current_threshold == 60

    def test_default_log_level(self) -> None:
        """Test default log level is INFO."""
        with patch.dict(os.environ, {}, clear=True):
            assert Settings().log_level == "INFO"

    def test_invalid_log_level_raises(self) -> None:
        """Test invalid log level raises validation error."""
        with (
            patch.dict(os.environ, {"LOG_LEVEL": "TRACE"}),
            pytest.raises(ValidationError),
        ):
            Settings()

    def test_get_logging_level(self) -> None:
        """Test get_logging_level returns numeric level."""
        with patch.dict(os.environ, {"LOG_LEVEL": "WARNING"}):
            assert Settings().get_logging_level() == logging.WARNING

    def test_summary(self) -> None:
        """Test summary renders the headline thresholds."""
        with patch.dict(os.environ, {}, clear=True):
            summary = Settings().summary()
            assert summary["log_level"] == "INFO"
            trade_size = summary["trade_size"]
            assert isinstance(trade_size, dict)
            assert trade_size["method"] == "COMBINED"


class TestGetSettings:
    """Tests for get_settings singleton."""

    def test_returns_same_instance(self) -> None:
        """Test get_settings returns cached instance."""
        assert get_settings() is get_settings()

    def test_clear_cache_allows_reload(self) -> None:
        """Test clear_settings_cache allows reloading settings."""
        with patch.dict(os.environ, {"LOG_LEVEL": "INFO"}):
            settings1 = get_settings()
            assert settings1.log_level == "INFO"

        clear_settings_cache()

        with patch.dict(os.environ, {"LOG_LEVEL": "DEBUG"}):
            settings2 = get_settings()
            assert settings2.log_level == "DEBUG"
            assert settings1 is not settings2
