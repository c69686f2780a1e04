"""Configuration management service with Pydantic Settings.

This module provides the configuration structs for every scoring
component. Each group loads from environment variables under its own
prefix, validates its thresholds at construction and can also be built
directly by the host with keyword arguments.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

WindowName = Literal["1m", "5m", "15m", "1h", "4h", "24h"]
ThresholdMethodName = Literal["PERCENTILE", "Z_SCORE", "ABSOLUTE", "COMBINED"]


def _require_increasing(values: list[float], label: str) -> None:
    for lower, upper in zip(values, values[1:], strict=False):
        if upper <= lower:
            raise ValueError(f"{label} thresholds must be strictly increasing")


class RollingVolumeSettings(BaseSettings):
    """Rolling volume tracker settings."""

    model_config = SettingsConfigDict(env_prefix="ROLLING_VOLUME_")

    max_data_points: int = Field(
        default=10_000,
        ge=1,
        description="Maximum samples retained per market",
    )
    max_age_minutes: float = Field(
        default=24 * 60,
        gt=0,
        description="Samples older than this (relative to the newest) are evicted",
    )
    data_point_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Expected spacing between samples, used for density",
    )
    min_data_density: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Minimum fraction of expected samples for a reliable window",
    )
    breach_z_score_threshold: float = Field(
        default=2.0,
        gt=0,
        description="Z-score at which a new sample notifies breach observers",
    )
    primary_window: WindowName = Field(
        default="5m",
        description="Window used for breach checks and summaries",
    )


class VolumeSpikeSettings(BaseSettings):
    """Volume spike detector settings."""

    model_config = SettingsConfigDict(env_prefix="VOLUME_SPIKE_")

    low_z_score: float = Field(default=2.0, gt=0)
    medium_z_score: float = Field(default=2.5, gt=0)
    high_z_score: float = Field(default=3.0, gt=0)
    critical_z_score: float = Field(default=4.0, gt=0)

    low_percentage: float = Field(default=1.5, description="Ratio of volume to baseline")
    medium_percentage: float = Field(default=2.0)
    high_percentage: float = Field(default=3.0)
    critical_percentage: float = Field(default=5.0)

    use_z_score_detection: bool = True
    use_percentage_detection: bool = True

    primary_window: WindowName = Field(default="5m", description="Baseline window")
    min_data_density: float = Field(default=0.3, ge=0.0, le=1.0)
    cooldown_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Suppression period after a reported spike, per market",
    )
    min_consecutive_points: int = Field(
        default=3,
        ge=1,
        description="Consecutive spike readings that make a spike SUSTAINED",
    )
    max_gap_minutes: float = Field(
        default=2.0,
        gt=0,
        description="Largest gap between spike readings that continues an episode",
    )
    min_sustained_duration_minutes: float = Field(default=0.0, ge=0)
    sudden_change_seconds: float = Field(default=30.0, ge=0)
    spike_frequency_window_minutes: float = Field(default=60.0, gt=0)
    max_recent_spikes: int = Field(default=100, ge=1)

    @field_validator("low_percentage")
    @classmethod
    def validate_low_percentage(cls, v: float) -> float:
        """Percentage tiers are ratios above the baseline."""
        if v <= 1.0:
            raise ValueError("percentage thresholds must be greater than 1.0")
        return v

    @model_validator(mode="after")
    def validate_tiers(self) -> VolumeSpikeSettings:
        """Validate tier ordering and that a strategy is enabled."""
        _require_increasing(
            [self.low_z_score, self.medium_z_score, self.high_z_score, self.critical_z_score],
            "z-score",
        )
        _require_increasing(
            [
                self.low_percentage,
                self.medium_percentage,
                self.high_percentage,
                self.critical_percentage,
            ],
            "percentage",
        )
        if not (self.use_z_score_detection or self.use_percentage_detection):
            raise ValueError("at least one detection strategy must be enabled")
        return self


class TradeSizeSettings(BaseSettings):
    """Trade size analyzer settings."""

    model_config = SettingsConfigDict(env_prefix="TRADE_SIZE_")

    method: ThresholdMethodName = Field(
        default="COMBINED",
        description="Statistical classification method",
    )

    large_trade_usd: float = Field(default=10_000.0, gt=0)
    very_large_trade_usd: float = Field(default=50_000.0, gt=0)
    whale_trade_usd: float = Field(
        default=100_000.0,
        gt=0,
        description="Absolute whale threshold, applies with no market history",
    )

    large_percentile: float = Field(default=90.0, ge=0, le=100)
    very_large_percentile: float = Field(default=95.0, ge=0, le=100)
    whale_percentile: float = Field(default=99.0, ge=0, le=100)

    large_z_score: float = Field(default=2.0, gt=0)
    very_large_z_score: float = Field(default=3.0, gt=0)
    whale_z_score: float = Field(default=4.0, gt=0)

    low_severity_z_score: float = Field(default=2.0, gt=0)
    medium_severity_z_score: float = Field(default=2.5, gt=0)
    high_severity_z_score: float = Field(default=3.0, gt=0)
    critical_severity_z_score: float = Field(default=4.0, gt=0)

    min_trades_for_reliable_stats: int = Field(default=30, ge=1)
    reservoir_size: int = Field(default=1_000, ge=1)
    exact_percentiles: bool = Field(
        default=False,
        description="Keep every trade size for exact percentiles instead of a reservoir",
    )
    alert_cooldown_seconds: float = Field(default=300.0, ge=0)
    recent_window_minutes: float = Field(default=60.0, gt=0)
    max_recent_events: int = Field(default=100, ge=1)

    @model_validator(mode="after")
    def validate_tiers(self) -> TradeSizeSettings:
        """Validate that every tier family is strictly increasing."""
        _require_increasing(
            [self.large_trade_usd, self.very_large_trade_usd, self.whale_trade_usd],
            "absolute USD",
        )
        _require_increasing(
            [self.large_percentile, self.very_large_percentile, self.whale_percentile],
            "percentile",
        )
        _require_increasing(
            [self.large_z_score, self.very_large_z_score, self.whale_z_score],
            "category z-score",
        )
        _require_increasing(
            [
                self.low_severity_z_score,
                self.medium_severity_z_score,
                self.high_severity_z_score,
                self.critical_severity_z_score,
            ],
            "severity z-score",
        )
        return self


class WinRateSettings(BaseSettings):
    """Win rate tracker settings."""

    model_config = SettingsConfigDict(env_prefix="WIN_RATE_")

    min_positions_for_analysis: int = Field(default=5, ge=1)
    min_positions_for_high_confidence: int = Field(default=20, ge=1)
    exceptional_win_rate_threshold: float = Field(default=85.0, ge=0, le=100)
    potential_insider_win_rate_threshold: float = Field(default=80.0, ge=0, le=100)
    min_high_conviction_for_insider: int = Field(default=5, ge=1)
    high_conviction_win_rate_threshold: float = Field(default=90.0, ge=0, le=100)
    specialization_min_positions: int = Field(default=5, ge=1)
    specialization_win_rate_threshold: float = Field(default=80.0, ge=0, le=100)
    specialization_min_share: float = Field(
        default=0.5,
        gt=0,
        le=1,
        description="Share of a wallet's positions a category needs to count as a specialty",
    )
    streak_anomaly_threshold: int = Field(default=10, ge=2)
    trend_min_positions: int = Field(default=10, ge=2)
    trend_margin: float = Field(default=5.0, ge=0)
    max_positions_per_wallet: int = Field(default=10_000, ge=1)

    @model_validator(mode="after")
    def validate_sample_sizes(self) -> WinRateSettings:
        """High-confidence sample size cannot be below the analysis minimum."""
        if self.min_positions_for_high_confidence < self.min_positions_for_analysis:
            raise ValueError(
                "min_positions_for_high_confidence must be >= min_positions_for_analysis"
            )
        return self


class CalibratorSettings(BaseSettings):
    """Historical score calibrator settings."""

    model_config = SettingsConfigDict(env_prefix="CALIBRATOR_")

    min_samples_for_calibration: int = Field(default=100, ge=1)
    min_samples_per_bucket: int = Field(default=5, ge=1)
    current_threshold: float = Field(
        default=50.0,
        ge=0,
        le=100,
        description="Score at or above which a wallet counts as flagged",
    )
    enable_auto_adjustment: bool = True
    max_outcome_age_hours: float = Field(default=24 * 30, gt=0)
    max_outcomes_to_store: int = Field(default=10_000, ge=1)
    brier_recalibration_threshold: float = Field(default=0.25, gt=0, le=1)
    max_brier_history: int = Field(default=100, ge=1)


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv. The host constructs this once and
    hands each group to the component it configures.

    Example:
        ```python
        from polymarket_insider_scoring.config import get_settings
        from polymarket_insider_scoring.detector import TradeSizeAnalyzer

        settings = get_settings()
        analyzer = TradeSizeAnalyzer(settings=settings.trade_size)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Nested configuration groups
    rolling_volume: RollingVolumeSettings = Field(default_factory=RollingVolumeSettings)
    volume_spike: VolumeSpikeSettings = Field(default_factory=VolumeSpikeSettings)
    trade_size: TradeSizeSettings = Field(default_factory=TradeSizeSettings)
    win_rate: WinRateSettings = Field(default_factory=WinRateSettings)
    calibrator: CalibratorSettings = Field(default_factory=CalibratorSettings)

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def summary(self) -> dict[str, str | dict[str, str]]:
        """Get a flat summary of the key thresholds for startup logging.

        Returns:
            Dictionary of the headline settings rendered as strings.
        """
        return {
            "rolling_volume": {
                "primary_window": self.rolling_volume.primary_window,
                "min_data_density": str(self.rolling_volume.min_data_density),
            },
            "volume_spike": {
                "z_scores": (
                    f"{self.volume_spike.low_z_score}/{self.volume_spike.medium_z_score}/"
                    f"{self.volume_spike.high_z_score}/{self.volume_spike.critical_z_score}"
                ),
                "cooldown_seconds": str(self.volume_spike.cooldown_seconds),
            },
            "trade_size": {
                "method": self.trade_size.method,
                "whale_trade_usd": str(self.trade_size.whale_trade_usd),
            },
            "win_rate": {
                "min_positions_for_analysis": str(self.win_rate.min_positions_for_analysis),
            },
            "calibrator": {
                "min_samples_for_calibration": str(
                    self.calibrator.min_samples_for_calibration
                ),
                "current_threshold": str(self.calibrator.current_threshold),
            },
            "log_level": self.log_level,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
