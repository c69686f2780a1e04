"""Volume spike detection against rolling baselines.

This module classifies an instantaneous volume reading as a spike when
it departs from the market's rolling baseline, either by z-score or by
ratio to the baseline mean. It tracks spike persistence per market so a
run of consecutive spike readings is recognised as a sustained regime
change rather than a single outlier tick.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import Counter, deque
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum

from polymarket_insider_scoring.config import VolumeSpikeSettings
from polymarket_insider_scoring.detector.concurrency import KeyedLocks, ObserverList
from polymarket_insider_scoring.detector.models import (
    Severity,
    SpikeDirection,
    as_utc,
    normalize_market_id,
)
from polymarket_insider_scoring.detector.rolling_volume import (
    RollingVolumeTracker,
    RollingWindow,
)
from polymarket_insider_scoring.metrics import SPIKES_DETECTED_TOTAL, SUSTAINED_SPIKES_TOTAL

logger = logging.getLogger(__name__)


class VolumeSpikeType(str, Enum):
    """How a spike developed."""

    MOMENTARY = "MOMENTARY"
    SUDDEN = "SUDDEN"
    GRADUAL = "GRADUAL"
    SUSTAINED = "SUSTAINED"


@dataclass
class SpikeState:
    """Spike persistence state for one market.

    Attributes:
        in_spike: Whether the market is inside a spike episode.
        consecutive_points: Spike readings in the current episode.
        first_spike_at: First reading of the current episode.
        last_spike_at: Most recent spike reading.
        direction: Direction of the current episode.
        peak_volume: Largest volume seen in the current episode.
        last_reported_at: When a spike was last reported (cooldown anchor).
        last_check_at: When the market was last checked with a reliable baseline.
        sustained_notified: Whether this episode already fired a sustained event.
        recent_spike_times: Reported spike times inside the frequency window.
    """

    in_spike: bool = False
    consecutive_points: int = 0
    first_spike_at: datetime | None = None
    last_spike_at: datetime | None = None
    direction: SpikeDirection | None = None
    peak_volume: float = 0.0
    last_reported_at: datetime | None = None
    last_check_at: datetime | None = None
    sustained_notified: bool = False
    recent_spike_times: list[datetime] = field(default_factory=list)

    def copy(self) -> SpikeState:
        """Return an independent snapshot."""
        return replace(self, recent_spike_times=list(self.recent_spike_times))

    def duration_minutes(self, now: datetime) -> float:
        """Minutes since the current episode started."""
        if self.first_spike_at is None:
            return 0.0
        return (now - self.first_spike_at).total_seconds() / 60.0


@dataclass(frozen=True)
class VolumeSpikeEvent:
    """A reported volume spike."""

    event_id: str
    market_id: str
    spike_type: VolumeSpikeType
    severity: Severity
    direction: SpikeDirection
    window: RollingWindow
    current_volume: float
    baseline_volume: float
    baseline_std_dev: float
    z_score: float | None
    percentage_of_baseline: float | None
    detected_at: datetime
    start_time: datetime
    duration_minutes: float
    consecutive_points: int
    peak_volume: float
    spikes_last_hour: int
    is_recurring: bool
    data_reliability: float

    def to_dict(self) -> dict[str, object]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "event_id": self.event_id,
            "market_id": self.market_id,
            "spike_type": self.spike_type.value,
            "severity": self.severity.value,
            "direction": self.direction.value,
            "window": self.window.value,
            "current_volume": self.current_volume,
            "baseline_volume": self.baseline_volume,
            "baseline_std_dev": self.baseline_std_dev,
            "z_score": self.z_score,
            "percentage_of_baseline": self.percentage_of_baseline,
            "detected_at": self.detected_at.isoformat(),
            "start_time": self.start_time.isoformat(),
            "duration_minutes": self.duration_minutes,
            "consecutive_points": self.consecutive_points,
            "peak_volume": self.peak_volume,
            "spikes_last_hour": self.spikes_last_hour,
            "is_recurring": self.is_recurring,
            "data_reliability": self.data_reliability,
        }


@dataclass(frozen=True)
class SpikeEnded:
    """Notification that a market's spike episode is over."""

    market_id: str
    duration_minutes: float
    consecutive_points: int
    peak_volume: float
    ended_at: datetime


@dataclass(frozen=True)
class SpikeDetectionResult:
    """Outcome of checking one volume reading.

    Attributes:
        market_id: Normalized market id.
        is_spike: True if a spike was reported for this reading.
        current_volume: The reading checked.
        baseline_mean: Mean per-sample volume of the baseline window.
        baseline_std_dev: Standard deviation of the baseline window.
        baseline_reliable: Whether the baseline had enough data.
        z_score: Z-score of the reading (None when std dev is zero).
        percentage_of_baseline: Ratio of the reading to the baseline mean.
        severity: Severity reached, even when suppressed by cooldown.
        direction: UP or DOWN relative to the baseline mean.
        suppressed: True when a spike reading fell inside the cooldown.
        spike_event: The reported event, if any.
        checked_at: Reading time.
        window: Baseline window used.
    """

    market_id: str
    is_spike: bool
    current_volume: float
    baseline_mean: float
    baseline_std_dev: float
    baseline_reliable: bool
    z_score: float | None
    percentage_of_baseline: float | None
    severity: Severity | None
    direction: SpikeDirection | None
    suppressed: bool
    spike_event: VolumeSpikeEvent | None
    checked_at: datetime
    window: RollingWindow


@dataclass(frozen=True)
class BatchSpikeDetectionResult:
    """Results of checking several markets at once."""

    results: dict[str, SpikeDetectionResult]
    spikes_detected: list[str]
    processing_time_ms: float


@dataclass
class SpikeDetectorSummary:
    """Aggregate view over recently reported spikes."""

    total_spikes: int
    by_severity: dict[Severity, int]
    by_type: dict[VolumeSpikeType, int]
    by_direction: dict[SpikeDirection, int]
    markets_in_spike: list[str]
    most_active_markets: list[tuple[str, int]]


class VolumeSpikeDetector:
    """Detects volume spikes relative to the rolling volume baseline.

    Two independent strategies may be enabled: a z-score against the
    baseline window's per-sample mean and standard deviation, and a
    ratio of the reading to the baseline mean (with inverse tiers for
    dips). A reading is a spike if either enabled strategy reaches its
    lowest tier; severity is the higher of the two.

    Cooldown and persistence are tracked per market only. The detector
    never records readings into the tracker; the caller decides whether
    a checked reading also becomes part of the baseline.

    Example:
        ```python
        tracker = RollingVolumeTracker()
        detector = VolumeSpikeDetector(tracker)
        detector.on_spike.subscribe(lambda event: print(event.severity))
        result = detector.detect_spike("market-1", 25_000.0)
        ```
    """

    def __init__(
        self,
        tracker: RollingVolumeTracker,
        *,
        settings: VolumeSpikeSettings | None = None,
    ) -> None:
        """Initialize the detector.

        Args:
            tracker: Rolling volume tracker providing the baseline.
            settings: Detector settings (defaults loaded from environment).
        """
        self.tracker = tracker
        self.settings = settings or VolumeSpikeSettings()
        self.window = RollingWindow(self.settings.primary_window)

        self.on_spike: ObserverList[VolumeSpikeEvent] = ObserverList("spike")
        self.on_sustained_spike: ObserverList[VolumeSpikeEvent] = ObserverList("sustained_spike")
        self.on_spike_ended: ObserverList[SpikeEnded] = ObserverList("spike_ended")

        self._states: dict[str, SpikeState] = {}
        self._states_lock = threading.Lock()
        self._locks = KeyedLocks()
        self._recent_spikes: deque[VolumeSpikeEvent] = deque(
            maxlen=self.settings.max_recent_spikes
        )
        self._recent_lock = threading.Lock()

    def _z_severity(self, z: float) -> Severity | None:
        magnitude = abs(z)
        s = self.settings
        if magnitude >= s.critical_z_score:
            return Severity.CRITICAL
        if magnitude >= s.high_z_score:
            return Severity.HIGH
        if magnitude >= s.medium_z_score:
            return Severity.MEDIUM
        if magnitude >= s.low_z_score:
            return Severity.LOW
        return None

    def _percentage_severity(self, ratio: float) -> Severity | None:
        s = self.settings
        tiers = [
            (s.critical_percentage, Severity.CRITICAL),
            (s.high_percentage, Severity.HIGH),
            (s.medium_percentage, Severity.MEDIUM),
            (s.low_percentage, Severity.LOW),
        ]
        for threshold, severity in tiers:
            if ratio >= threshold:
                return severity
        # Dips use the inverse tiers
        if ratio > 0:
            for threshold, severity in tiers:
                if ratio <= 1.0 / threshold:
                    return severity
        return None

    def _state(self, market_id: str) -> SpikeState:
        with self._states_lock:
            state = self._states.get(market_id)
            if state is None:
                state = SpikeState()
                self._states[market_id] = state
            return state

    def _spike_type(
        self, state: SpikeState, now: datetime, previous_check: datetime | None
    ) -> VolumeSpikeType:
        s = self.settings
        if (
            state.consecutive_points >= s.min_consecutive_points
            and state.duration_minutes(now) >= s.min_sustained_duration_minutes
        ):
            return VolumeSpikeType.SUSTAINED
        if state.consecutive_points <= 2 and previous_check is not None:
            if (now - previous_check).total_seconds() < s.sudden_change_seconds:
                return VolumeSpikeType.SUDDEN
        if 2 < state.consecutive_points < s.min_consecutive_points:
            return VolumeSpikeType.GRADUAL
        return VolumeSpikeType.MOMENTARY

    def _advance_episode(
        self,
        state: SpikeState,
        volume: float,
        now: datetime,
        direction: SpikeDirection,
    ) -> None:
        max_gap = timedelta(minutes=self.settings.max_gap_minutes)
        restart = (
            not state.in_spike
            or state.last_spike_at is None
            or now - state.last_spike_at > max_gap
            or state.direction is not direction
        )
        if restart:
            state.in_spike = True
            state.consecutive_points = 1
            state.first_spike_at = now
            state.peak_volume = volume
            state.direction = direction
            state.sustained_notified = False
        else:
            state.consecutive_points += 1
            state.peak_volume = max(state.peak_volume, volume)
        state.last_spike_at = now

    def _end_episode(self, market_id: str, state: SpikeState, now: datetime) -> None:
        ended = SpikeEnded(
            market_id=market_id,
            duration_minutes=state.duration_minutes(now),
            consecutive_points=state.consecutive_points,
            peak_volume=state.peak_volume,
            ended_at=now,
        )
        state.in_spike = False
        state.consecutive_points = 0
        state.first_spike_at = None
        state.peak_volume = 0.0
        state.direction = None
        state.sustained_notified = False

        logger.info(
            "Volume spike ended: market=%s duration=%.1fmin points=%d",
            market_id[:10],
            ended.duration_minutes,
            ended.consecutive_points,
        )
        self.on_spike_ended.notify(ended)

    def detect_spike(
        self,
        market_id: str,
        volume: float,
        *,
        timestamp: datetime | None = None,
        bypass_cooldown: bool = False,
    ) -> SpikeDetectionResult:
        """Check whether a volume reading is a spike.

        Args:
            market_id: Market identifier.
            volume: Instantaneous volume reading.
            timestamp: Reading time (default: now).
            bypass_cooldown: Report the spike even inside the cooldown.

        Returns:
            SpikeDetectionResult describing the reading.
        """
        now = as_utc(timestamp)
        market = normalize_market_id(market_id) or ""
        stats = (
            self.tracker.get_window_statistics(market, self.window, as_of=now) if market else None
        )

        if stats is None or not stats.is_reliable or stats.density < self.settings.min_data_density:
            return SpikeDetectionResult(
                market_id=market,
                is_spike=False,
                current_volume=volume,
                baseline_mean=stats.mean if stats else 0.0,
                baseline_std_dev=stats.std_dev if stats else 0.0,
                baseline_reliable=False,
                z_score=None,
                percentage_of_baseline=None,
                severity=None,
                direction=None,
                suppressed=False,
                spike_event=None,
                checked_at=now,
                window=self.window,
            )

        z = (volume - stats.mean) / stats.std_dev if stats.std_dev > 0 else None
        ratio = volume / stats.mean if stats.mean > 0 else None

        severity: Severity | None = None
        if self.settings.use_z_score_detection and z is not None:
            severity = self._z_severity(z)
        if self.settings.use_percentage_detection and ratio is not None:
            severity = Severity.highest(severity, self._percentage_severity(ratio))

        direction = SpikeDirection.UP if volume > stats.mean else SpikeDirection.DOWN

        with self._locks.hold(market):
            state = self._state(market)
            previous_check = state.last_check_at
            state.last_check_at = now

            if severity is None:
                if state.in_spike:
                    self._end_episode(market, state, now)
                return SpikeDetectionResult(
                    market_id=market,
                    is_spike=False,
                    current_volume=volume,
                    baseline_mean=stats.mean,
                    baseline_std_dev=stats.std_dev,
                    baseline_reliable=True,
                    z_score=z,
                    percentage_of_baseline=ratio,
                    severity=None,
                    direction=direction,
                    suppressed=False,
                    spike_event=None,
                    checked_at=now,
                    window=self.window,
                )

            self._advance_episode(state, volume, now, direction)
            spike_type = self._spike_type(state, now, previous_check)
            sustained_due = spike_type is VolumeSpikeType.SUSTAINED and not state.sustained_notified
            if sustained_due:
                state.sustained_notified = True

            in_cooldown = (
                not bypass_cooldown
                and state.last_reported_at is not None
                and (now - state.last_reported_at).total_seconds() < self.settings.cooldown_seconds
            )

            frequency_window = timedelta(minutes=self.settings.spike_frequency_window_minutes)
            if not in_cooldown:
                state.last_reported_at = now
                state.recent_spike_times.append(now)
            state.recent_spike_times = [
                t for t in state.recent_spike_times if now - t < frequency_window
            ]

            event = VolumeSpikeEvent(
                event_id=str(uuid.uuid4()),
                market_id=market,
                spike_type=spike_type,
                severity=severity,
                direction=direction,
                window=self.window,
                current_volume=volume,
                baseline_volume=stats.mean,
                baseline_std_dev=stats.std_dev,
                z_score=z,
                percentage_of_baseline=ratio,
                detected_at=now,
                start_time=state.first_spike_at or now,
                duration_minutes=state.duration_minutes(now),
                consecutive_points=state.consecutive_points,
                peak_volume=state.peak_volume,
                spikes_last_hour=len(state.recent_spike_times),
                is_recurring=len(state.recent_spike_times) > 1,
                data_reliability=stats.density,
            )

            if sustained_due:
                SUSTAINED_SPIKES_TOTAL.inc()
                logger.info(
                    "Sustained volume spike: market=%s points=%d duration=%.1fmin",
                    market[:10],
                    state.consecutive_points,
                    event.duration_minutes,
                )
                self.on_sustained_spike.notify(event)

            if in_cooldown:
                logger.debug(
                    "Spike suppressed by cooldown: market=%s severity=%s",
                    market[:10],
                    severity.value,
                )
                return SpikeDetectionResult(
                    market_id=market,
                    is_spike=False,
                    current_volume=volume,
                    baseline_mean=stats.mean,
                    baseline_std_dev=stats.std_dev,
                    baseline_reliable=True,
                    z_score=z,
                    percentage_of_baseline=ratio,
                    severity=severity,
                    direction=direction,
                    suppressed=True,
                    spike_event=None,
                    checked_at=now,
                    window=self.window,
                )

            with self._recent_lock:
                self._recent_spikes.appendleft(event)
            SPIKES_DETECTED_TOTAL.labels(severity=severity.value, direction=direction.value).inc()
            logger.info(
                "Volume spike detected: market=%s severity=%s direction=%s type=%s z=%s",
                market[:10],
                severity.value,
                direction.value,
                spike_type.value,
                f"{z:.2f}" if z is not None else "n/a",
            )
            self.on_spike.notify(event)

        return SpikeDetectionResult(
            market_id=market,
            is_spike=True,
            current_volume=volume,
            baseline_mean=stats.mean,
            baseline_std_dev=stats.std_dev,
            baseline_reliable=True,
            z_score=z,
            percentage_of_baseline=ratio,
            severity=severity,
            direction=direction,
            suppressed=False,
            spike_event=event,
            checked_at=now,
            window=self.window,
        )

    def batch_detect_spikes(
        self,
        readings: Iterable[tuple[str, float]],
        *,
        timestamp: datetime | None = None,
        bypass_cooldown: bool = False,
    ) -> BatchSpikeDetectionResult:
        """Check one reading for each of several markets."""
        started = time.perf_counter()
        results: dict[str, SpikeDetectionResult] = {}
        spikes: list[str] = []
        for market_id, volume in readings:
            result = self.detect_spike(
                market_id,
                volume,
                timestamp=timestamp,
                bypass_cooldown=bypass_cooldown,
            )
            results[result.market_id] = result
            if result.is_spike:
                spikes.append(result.market_id)
        return BatchSpikeDetectionResult(
            results=results,
            spikes_detected=spikes,
            processing_time_ms=(time.perf_counter() - started) * 1000.0,
        )

    def is_in_spike_state(self, market_id: str) -> bool:
        """Return True if the market is inside a spike episode."""
        state = self.get_spike_state(market_id)
        return state is not None and state.in_spike

    def get_spike_state(self, market_id: str) -> SpikeState | None:
        """Return a snapshot of the market's spike state, or None."""
        market = normalize_market_id(market_id)
        if market is None:
            return None
        with self._states_lock:
            state = self._states.get(market)
        if state is None:
            return None
        with self._locks.hold(market):
            return state.copy()

    def get_recent_spikes(self, limit: int | None = None) -> list[VolumeSpikeEvent]:
        """Return recently reported spikes, newest first."""
        with self._recent_lock:
            events = list(self._recent_spikes)
        return events[:limit] if limit is not None else events

    def get_market_spikes(self, market_id: str, limit: int | None = None) -> list[VolumeSpikeEvent]:
        """Return recently reported spikes for one market, newest first."""
        market = normalize_market_id(market_id)
        events = [e for e in self.get_recent_spikes() if e.market_id == market]
        return events[:limit] if limit is not None else events

    def get_summary(self, *, top_n: int = 10) -> SpikeDetectorSummary:
        """Summarize recently reported spikes and current spike states."""
        events = self.get_recent_spikes()
        by_market = Counter(e.market_id for e in events)
        with self._states_lock:
            markets = list(self._states)
        in_spike = [m for m in markets if self.is_in_spike_state(m)]
        return SpikeDetectorSummary(
            total_spikes=len(events),
            by_severity={s: sum(1 for e in events if e.severity is s) for s in Severity},
            by_type={t: sum(1 for e in events if e.spike_type is t) for t in VolumeSpikeType},
            by_direction={
                d: sum(1 for e in events if e.direction is d) for d in SpikeDirection
            },
            markets_in_spike=sorted(in_spike),
            most_active_markets=by_market.most_common(top_n),
        )

    def clear_market(self, market_id: str) -> bool:
        """Forget spike state and recent events for a market."""
        market = normalize_market_id(market_id)
        if market is None:
            return False
        with self._states_lock:
            removed = self._states.pop(market, None)
        self._locks.discard(market)
        with self._recent_lock:
            kept = [e for e in self._recent_spikes if e.market_id != market]
            self._recent_spikes.clear()
            self._recent_spikes.extend(kept)
        return removed is not None

    def clear_all(self) -> None:
        """Forget every market's spike state and all recent events."""
        with self._states_lock:
            self._states.clear()
        self._locks.clear()
        with self._recent_lock:
            self._recent_spikes.clear()
        logger.info("Cleared all volume spike state")
