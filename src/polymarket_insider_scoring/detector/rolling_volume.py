"""Rolling-window volume tracking per market.

This module keeps a bounded time series of volume samples for every
market and answers "what is normal volume right now" over several
window sizes. Windows with too few samples are reported but flagged as
unreliable so consumers do not alarm on thin or new markets.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum

import numpy as np

from polymarket_insider_scoring.config import RollingVolumeSettings
from polymarket_insider_scoring.detector.concurrency import KeyedLocks, ObserverList
from polymarket_insider_scoring.detector.models import (
    TrackerClosedError,
    VolumeSample,
    as_utc,
    normalize_market_id,
    utc_now,
)
from polymarket_insider_scoring.detector.stats import z_score
from polymarket_insider_scoring.metrics import VOLUME_SAMPLES_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_MULTIPLIER = 2.0
ABNORMAL_Z_SCORE = 2.0


class RollingWindow(str, Enum):
    """Supported rolling window sizes."""

    ONE_MINUTE = "1m"
    FIVE_MINUTES = "5m"
    FIFTEEN_MINUTES = "15m"
    ONE_HOUR = "1h"
    FOUR_HOURS = "4h"
    TWENTY_FOUR_HOURS = "24h"

    @property
    def minutes(self) -> float:
        """Window length in minutes."""
        return _WINDOW_MINUTES[self]

    @property
    def duration(self) -> timedelta:
        """Window length as a timedelta."""
        return timedelta(minutes=self.minutes)


_WINDOW_MINUTES = {
    RollingWindow.ONE_MINUTE: 1.0,
    RollingWindow.FIVE_MINUTES: 5.0,
    RollingWindow.FIFTEEN_MINUTES: 15.0,
    RollingWindow.ONE_HOUR: 60.0,
    RollingWindow.FOUR_HOURS: 240.0,
    RollingWindow.TWENTY_FOUR_HOURS: 1440.0,
}


@dataclass(frozen=True)
class WindowStatistics:
    """Volume statistics for one market over one window.

    Attributes:
        window: The window these statistics describe.
        mean: Mean volume per sample.
        std_dev: Population standard deviation of sample volumes.
        sample_count: Number of samples inside the window.
        total_volume: Sum of sample volumes.
        average_volume_per_minute: total_volume divided by window minutes.
        percentiles: p50/p90/p95/p99 of sample volumes.
        density: Fraction of expected samples present (capped at 1.0).
        is_reliable: Whether density meets the configured minimum.
        coefficient_of_variation: std_dev / mean (0.0 when mean is zero).
        volume_velocity: Change in volume per minute between window halves.
        min_volume: Smallest sample volume.
        max_volume: Largest sample volume.
        window_start: Exclusive start of the window.
        window_end: Inclusive end of the window.
    """

    window: RollingWindow
    mean: float
    std_dev: float
    sample_count: int
    total_volume: float
    average_volume_per_minute: float
    percentiles: dict[str, float]
    density: float
    is_reliable: bool
    coefficient_of_variation: float
    volume_velocity: float
    min_volume: float
    max_volume: float
    window_start: datetime
    window_end: datetime

    def to_dict(self) -> dict[str, object]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "window": self.window.value,
            "mean": self.mean,
            "std_dev": self.std_dev,
            "sample_count": self.sample_count,
            "total_volume": self.total_volume,
            "average_volume_per_minute": self.average_volume_per_minute,
            "percentiles": dict(self.percentiles),
            "density": self.density,
            "is_reliable": self.is_reliable,
            "coefficient_of_variation": self.coefficient_of_variation,
            "volume_velocity": self.volume_velocity,
            "min_volume": self.min_volume,
            "max_volume": self.max_volume,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
        }


@dataclass(frozen=True)
class RollingAveragesResult:
    """Rolling statistics for every tracked window of one market."""

    market_id: str
    window_results: dict[RollingWindow, WindowStatistics]
    data_point_count: int
    calculated_at: datetime

    def get(self, window: RollingWindow) -> WindowStatistics | None:
        """Return statistics for ``window`` if it is tracked."""
        return self.window_results.get(window)


@dataclass(frozen=True)
class VolumeBreach:
    """Notification that a new sample sits far from its market's baseline."""

    market_id: str
    window: RollingWindow
    volume: float
    z_score: float
    baseline_mean: float
    baseline_std_dev: float
    timestamp: datetime


@dataclass
class VolumeTrackerSummary:
    """Summary across every tracked market."""

    total_markets: int
    total_data_points: int
    top_markets_by_volume: list[tuple[str, float]] = field(default_factory=list)
    abnormal_markets: list[tuple[str, float]] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utc_now)


class RollingVolumeTracker:
    """Tracks per-market volume samples and derives rolling statistics.

    Samples are held in a per-market ring buffer bounded by both count
    and age. Statistics are computed lazily from a snapshot of the
    buffer, so reads never observe a half-applied write.

    Example:
        ```python
        tracker = RollingVolumeTracker()
        tracker.add_volume("market-1", 1250.0)
        averages = tracker.get_rolling_averages("market-1")
        five_min = averages.get(RollingWindow.FIVE_MINUTES)
        ```
    """

    def __init__(
        self,
        *,
        settings: RollingVolumeSettings | None = None,
        windows: Iterable[RollingWindow] | None = None,
    ) -> None:
        """Initialize the tracker.

        Args:
            settings: Tracker settings (defaults loaded from environment).
            windows: Windows to compute (default: all supported windows).
        """
        self.settings = settings or RollingVolumeSettings()
        self.windows: tuple[RollingWindow, ...] = tuple(windows or RollingWindow)
        self.primary_window = RollingWindow(self.settings.primary_window)
        self.on_threshold_breach: ObserverList[VolumeBreach] = ObserverList("threshold_breach")

        self._samples: dict[str, deque[VolumeSample]] = {}
        self._markets_lock = threading.Lock()
        self._locks = KeyedLocks()
        self._closed = False

    def _ensure_open(self) -> None:
        if self._closed:
            raise TrackerClosedError("RollingVolumeTracker has been closed")

    def _buffer(self, market_id: str) -> deque[VolumeSample] | None:
        with self._markets_lock:
            return self._samples.get(market_id)

    def _ensure_buffer(self, market_id: str) -> deque[VolumeSample]:
        with self._markets_lock:
            buffer = self._samples.get(market_id)
            if buffer is None:
                buffer = deque(maxlen=self.settings.max_data_points)
                self._samples[market_id] = buffer
            return buffer

    def _snapshot(self, market_id: str) -> list[VolumeSample] | None:
        buffer = self._buffer(market_id)
        if buffer is None:
            return None
        with self._locks.hold(market_id):
            return list(buffer)

    def add_volume(
        self,
        market_id: str,
        volume: float,
        *,
        timestamp: datetime | None = None,
        trade_count: int = 1,
    ) -> VolumeSample | None:
        """Append a volume sample for a market.

        Negative or non-finite volume is clamped to zero. The oldest
        samples are evicted once the count or age bound is exceeded.

        Args:
            market_id: Market identifier.
            volume: Volume observed in the sample interval.
            timestamp: Sample time (default: now).
            trade_count: Number of trades in the sample.

        Returns:
            The stored sample, or None if the market id was empty.
        """
        self._ensure_open()
        market = normalize_market_id(market_id)
        if market is None:
            logger.warning("Ignoring volume sample with empty market id")
            return None

        clean_volume = float(volume) if volume is not None and math.isfinite(volume) else 0.0
        clean_volume = max(0.0, clean_volume)
        sample = VolumeSample(
            market_id=market,
            volume=clean_volume,
            timestamp=as_utc(timestamp),
            trade_count=max(0, int(trade_count)),
        )

        buffer = self._ensure_buffer(market)
        with self._locks.hold(market):
            baseline: WindowStatistics | None = None
            if len(self.on_threshold_breach) > 0 and buffer:
                baseline = self._window_stats(list(buffer), self.primary_window, sample.timestamp)

            buffer.append(sample)
            self._evict_expired(buffer)

            if baseline is not None and baseline.is_reliable and baseline.std_dev > 0:
                score = z_score(sample.volume, baseline.mean, baseline.std_dev)
                if abs(score) >= self.settings.breach_z_score_threshold:
                    logger.info(
                        "Volume threshold breach: market=%s volume=%.2f z=%.2f",
                        market[:10],
                        sample.volume,
                        score,
                    )
                    self.on_threshold_breach.notify(
                        VolumeBreach(
                            market_id=market,
                            window=self.primary_window,
                            volume=sample.volume,
                            z_score=score,
                            baseline_mean=baseline.mean,
                            baseline_std_dev=baseline.std_dev,
                            timestamp=sample.timestamp,
                        )
                    )

        VOLUME_SAMPLES_TOTAL.inc()
        logger.debug(
            "Recorded volume sample: market=%s volume=%.2f points=%d",
            market[:10],
            sample.volume,
            len(buffer),
        )
        return sample

    def _evict_expired(self, buffer: deque[VolumeSample]) -> None:
        cutoff = buffer[-1].timestamp - timedelta(minutes=self.settings.max_age_minutes)
        while buffer and buffer[0].timestamp < cutoff:
            buffer.popleft()

    def _window_stats(
        self,
        samples: Sequence[VolumeSample],
        window: RollingWindow,
        as_of: datetime,
    ) -> WindowStatistics:
        """Compute statistics for one window from a snapshot of samples."""
        start = as_of - window.duration
        in_window = [s for s in samples if start < s.timestamp <= as_of]
        volumes = np.array([s.volume for s in in_window], dtype=float)
        count = int(volumes.size)

        expected = (window.minutes * 60.0) / self.settings.data_point_interval_seconds
        density = min(1.0, count / expected) if expected > 0 else 0.0
        is_reliable = count > 0 and density >= self.settings.min_data_density

        if count == 0:
            return WindowStatistics(
                window=window,
                mean=0.0,
                std_dev=0.0,
                sample_count=0,
                total_volume=0.0,
                average_volume_per_minute=0.0,
                percentiles={"p50": 0.0, "p90": 0.0, "p95": 0.0, "p99": 0.0},
                density=0.0,
                is_reliable=False,
                coefficient_of_variation=0.0,
                volume_velocity=0.0,
                min_volume=0.0,
                max_volume=0.0,
                window_start=start,
                window_end=as_of,
            )

        mean = float(volumes.mean())
        std_dev = float(volumes.std())
        total = float(volumes.sum())
        p50, p90, p95, p99 = (float(v) for v in np.percentile(volumes, [50, 90, 95, 99]))

        midpoint = start + window.duration / 2
        first_half = sum(s.volume for s in in_window if s.timestamp <= midpoint)
        second_half = total - first_half
        velocity = (second_half - first_half) / (window.minutes / 2)

        return WindowStatistics(
            window=window,
            mean=mean,
            std_dev=std_dev,
            sample_count=count,
            total_volume=total,
            average_volume_per_minute=total / window.minutes,
            percentiles={"p50": p50, "p90": p90, "p95": p95, "p99": p99},
            density=density,
            is_reliable=is_reliable,
            coefficient_of_variation=std_dev / mean if mean > 0 else 0.0,
            volume_velocity=velocity,
            min_volume=float(volumes.min()),
            max_volume=float(volumes.max()),
            window_start=start,
            window_end=as_of,
        )

    def get_rolling_averages(
        self,
        market_id: str,
        *,
        as_of: datetime | None = None,
    ) -> RollingAveragesResult | None:
        """Compute statistics for every tracked window of a market.

        Args:
            market_id: Market identifier.
            as_of: Reference time for the window ends (default: now).

        Returns:
            RollingAveragesResult, or None if the market is unknown.
        """
        market = normalize_market_id(market_id)
        if market is None:
            return None
        samples = self._snapshot(market)
        if samples is None:
            return None

        reference = as_utc(as_of)
        return RollingAveragesResult(
            market_id=market,
            window_results={w: self._window_stats(samples, w, reference) for w in self.windows},
            data_point_count=len(samples),
            calculated_at=reference,
        )

    def get_window_statistics(
        self,
        market_id: str,
        window: RollingWindow,
        *,
        as_of: datetime | None = None,
    ) -> WindowStatistics | None:
        """Compute statistics for a single window of a market."""
        market = normalize_market_id(market_id)
        if market is None:
            return None
        samples = self._snapshot(market)
        if samples is None:
            return None
        return self._window_stats(samples, window, as_utc(as_of))

    def get_batch_rolling_averages(
        self,
        market_ids: Iterable[str],
        *,
        as_of: datetime | None = None,
    ) -> dict[str, RollingAveragesResult]:
        """Compute rolling averages for several markets, skipping unknown ones."""
        results: dict[str, RollingAveragesResult] = {}
        for market_id in market_ids:
            result = self.get_rolling_averages(market_id, as_of=as_of)
            if result is not None:
                results[result.market_id] = result
        return results

    def get_current_average(
        self,
        market_id: str,
        window: RollingWindow | None = None,
        *,
        as_of: datetime | None = None,
    ) -> float:
        """Return the mean sample volume in a window (0.0 if unknown)."""
        stats = self.get_window_statistics(market_id, window or self.primary_window, as_of=as_of)
        return stats.mean if stats is not None else 0.0

    def calculate_z_score(
        self,
        market_id: str,
        volume: float,
        window: RollingWindow | None = None,
        *,
        as_of: datetime | None = None,
    ) -> float | None:
        """Return the z-score of ``volume`` against a window's baseline.

        Returns None when the market is unknown or the window is unreliable.
        """
        stats = self.get_window_statistics(market_id, window or self.primary_window, as_of=as_of)
        if stats is None or not stats.is_reliable:
            return None
        return z_score(volume, stats.mean, stats.std_dev)

    def is_volume_above_threshold(
        self,
        market_id: str,
        volume: float,
        *,
        multiplier: float = DEFAULT_THRESHOLD_MULTIPLIER,
        window: RollingWindow | None = None,
        as_of: datetime | None = None,
    ) -> bool:
        """Return True if ``volume`` exceeds ``multiplier`` times the mean."""
        stats = self.get_window_statistics(market_id, window or self.primary_window, as_of=as_of)
        if stats is None or not stats.is_reliable or stats.mean <= 0:
            return False
        return volume > stats.mean * multiplier

    def is_volume_below_threshold(
        self,
        market_id: str,
        volume: float,
        *,
        multiplier: float = DEFAULT_THRESHOLD_MULTIPLIER,
        window: RollingWindow | None = None,
        as_of: datetime | None = None,
    ) -> bool:
        """Return True if ``volume`` is below the mean divided by ``multiplier``."""
        stats = self.get_window_statistics(market_id, window or self.primary_window, as_of=as_of)
        if stats is None or not stats.is_reliable or stats.mean <= 0:
            return False
        return volume < stats.mean / multiplier

    def get_summary(
        self, *, top_n: int = 10, as_of: datetime | None = None
    ) -> VolumeTrackerSummary:
        """Summarize every tracked market.

        Top markets are ranked by hourly average volume per minute. A
        market is abnormal when its latest sample sits at least two
        standard deviations from the primary window mean.
        """
        reference = as_utc(as_of)
        by_volume: list[tuple[str, float]] = []
        abnormal: list[tuple[str, float]] = []
        total_points = 0

        for market in self.get_tracked_markets():
            samples = self._snapshot(market)
            if not samples:
                continue
            total_points += len(samples)
            hourly = self._window_stats(samples, RollingWindow.ONE_HOUR, reference)
            by_volume.append((market, hourly.average_volume_per_minute))

            primary = self._window_stats(samples, self.primary_window, reference)
            if primary.is_reliable and primary.std_dev > 0:
                latest = z_score(samples[-1].volume, primary.mean, primary.std_dev)
                if abs(latest) >= ABNORMAL_Z_SCORE:
                    abnormal.append((market, latest))

        by_volume.sort(key=lambda item: item[1], reverse=True)
        abnormal.sort(key=lambda item: abs(item[1]), reverse=True)
        return VolumeTrackerSummary(
            total_markets=len(by_volume),
            total_data_points=total_points,
            top_markets_by_volume=by_volume[:top_n],
            abnormal_markets=abnormal,
            generated_at=reference,
        )

    def get_tracked_markets(self) -> list[str]:
        """Return ids of every market with at least one retained sample."""
        with self._markets_lock:
            return [m for m, buffer in self._samples.items() if buffer]

    def is_tracking_market(self, market_id: str) -> bool:
        """Return True if the market has retained samples."""
        market = normalize_market_id(market_id)
        return market is not None and bool(self._snapshot(market))

    def get_data_point_count(self, market_id: str) -> int:
        """Return the number of retained samples for a market."""
        market = normalize_market_id(market_id)
        samples = self._snapshot(market) if market else None
        return len(samples) if samples else 0

    def clear_market(self, market_id: str) -> bool:
        """Drop every sample for a market. Returns False if it was unknown."""
        self._ensure_open()
        market = normalize_market_id(market_id)
        if market is None:
            return False
        with self._markets_lock:
            removed = self._samples.pop(market, None)
        self._locks.discard(market)
        if removed is not None:
            logger.info("Cleared volume samples for market=%s", market[:10])
        return removed is not None

    def clear_all(self) -> None:
        """Drop every sample for every market."""
        self._ensure_open()
        with self._markets_lock:
            self._samples.clear()
        self._locks.clear()
        logger.info("Cleared all rolling volume data")

    def export_market_data(self, market_id: str) -> list[dict[str, object]]:
        """Serialize a market's samples for an external store."""
        market = normalize_market_id(market_id)
        samples = self._snapshot(market) if market else None
        return [s.to_dict() for s in samples or []]

    def import_market_data(
        self,
        market_id: str,
        samples: Iterable[VolumeSample | dict[str, object]],
    ) -> int:
        """Replace a market's samples with previously exported data.

        Args:
            market_id: Market identifier.
            samples: VolumeSample objects or dicts from export_market_data.

        Returns:
            Number of samples retained after bounds are applied.
        """
        self._ensure_open()
        market = normalize_market_id(market_id)
        if market is None:
            return 0

        parsed: list[VolumeSample] = []
        for raw in samples:
            if isinstance(raw, VolumeSample):
                parsed.append(replace(raw, market_id=market, timestamp=as_utc(raw.timestamp)))
                continue
            timestamp = raw["timestamp"]
            parsed.append(
                VolumeSample(
                    market_id=market,
                    volume=max(0.0, float(raw["volume"])),  # type: ignore[arg-type]
                    timestamp=as_utc(
                        datetime.fromisoformat(timestamp)
                        if isinstance(timestamp, str)
                        else timestamp  # type: ignore[arg-type]
                    ),
                    trade_count=int(raw.get("trade_count", 1)),  # type: ignore[call-overload]
                )
            )
        parsed.sort(key=lambda s: s.timestamp)

        with self._markets_lock:
            buffer: deque[VolumeSample] = deque(maxlen=self.settings.max_data_points)
            self._samples[market] = buffer
        with self._locks.hold(market):
            buffer.extend(parsed)
            if buffer:
                self._evict_expired(buffer)
            retained = len(buffer)

        logger.info("Imported %d volume samples for market=%s", retained, market[:10])
        return retained

    def close(self) -> None:
        """Release all state; later mutating calls raise TrackerClosedError."""
        with self._markets_lock:
            self._samples.clear()
        self._locks.clear()
        self._closed = True
