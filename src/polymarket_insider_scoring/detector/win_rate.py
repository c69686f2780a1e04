"""Win rate tracking and insider pattern detection for wallets.

Every analysis is recomputed from the wallet's full set of resolved
positions, so upserts and corrections never leave drifted aggregates
behind.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum

from polymarket_insider_scoring.config import WinRateSettings
from polymarket_insider_scoring.detector.concurrency import KeyedLocks
from polymarket_insider_scoring.detector.models import (
    PositionOutcome,
    ResolvedPosition,
    as_utc,
    normalize_address,
)
from polymarket_insider_scoring.metrics import ANALYSIS_LATENCY, POSITIONS_TRACKED

logger = logging.getLogger(__name__)

# Suspicion score component weights
WEIGHT_WIN_RATE = 0.30
WEIGHT_HIGH_CONVICTION = 0.25
WEIGHT_CATEGORY = 0.15
WEIGHT_TREND = 0.10
WEIGHT_STREAKS = 0.10
WEIGHT_ANOMALIES = 0.10

SHORT_TIMEFRAME_HOURS = 24.0
RECENT_STREAK_POSITIONS = 20
TOP_CATEGORY_MIN_POSITIONS = 3
MAX_TOP_CATEGORIES = 5


class WinRateWindow(str, Enum):
    """Lookback windows for win rate statistics."""

    DAY = "DAY"
    WEEK = "WEEK"
    MONTH = "MONTH"
    QUARTER = "QUARTER"
    YEAR = "YEAR"
    ALL_TIME = "ALL_TIME"

    @property
    def duration(self) -> timedelta | None:
        """Window length, or None for ALL_TIME."""
        return _WINDOW_DURATIONS[self]


_WINDOW_DURATIONS = {
    WinRateWindow.DAY: timedelta(days=1),
    WinRateWindow.WEEK: timedelta(days=7),
    WinRateWindow.MONTH: timedelta(days=30),
    WinRateWindow.QUARTER: timedelta(days=90),
    WinRateWindow.YEAR: timedelta(days=365),
    WinRateWindow.ALL_TIME: None,
}


class WinRateCategory(str, Enum):
    """Classification of a wallet's all-time win rate."""

    UNKNOWN = "UNKNOWN"
    VERY_LOW = "VERY_LOW"
    LOW = "LOW"
    AVERAGE = "AVERAGE"
    ABOVE_AVERAGE = "ABOVE_AVERAGE"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"
    EXCEPTIONAL = "EXCEPTIONAL"


class WinRateSuspicionLevel(str, Enum):
    """How suspicious a wallet's trading success looks."""

    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class WinRateAnomalyType(str, Enum):
    """Behavioral anomalies raised by the tracker."""

    EXCEPTIONAL_WIN_RATE = "exceptional_win_rate"
    SUDDEN_IMPROVEMENT = "sudden_improvement"
    HIGH_CONVICTION_ACCURACY = "high_conviction_accuracy"
    CATEGORY_SPECIALIZATION = "category_specialization"
    SHORT_TIMEFRAME_ACCURACY = "short_timeframe_accuracy"
    PERFECT_TIMING = "perfect_timing"


CATEGORY_DESCRIPTIONS = {
    WinRateCategory.UNKNOWN: "Unknown - insufficient data for analysis",
    WinRateCategory.VERY_LOW: "Very low win rate (below 30%)",
    WinRateCategory.LOW: "Low win rate (30-45%)",
    WinRateCategory.AVERAGE: "Average win rate (45-55%)",
    WinRateCategory.ABOVE_AVERAGE: "Above average win rate (55-65%)",
    WinRateCategory.HIGH: "High win rate (65-75%)",
    WinRateCategory.VERY_HIGH: "Very high win rate (75-85%)",
    WinRateCategory.EXCEPTIONAL: "Exceptional win rate (85%+) - potential insider",
}

SUSPICION_DESCRIPTIONS = {
    WinRateSuspicionLevel.NONE: "No suspicious patterns detected",
    WinRateSuspicionLevel.LOW: "Slightly above average performance",
    WinRateSuspicionLevel.MEDIUM: "Notable performance worth monitoring",
    WinRateSuspicionLevel.HIGH: "Suspicious performance patterns",
    WinRateSuspicionLevel.CRITICAL: "Highly suspicious - likely insider activity",
}


@dataclass(frozen=True)
class WindowStats:
    """Win/loss statistics for one lookback window."""

    window: WinRateWindow
    total_positions: int
    wins: int
    losses: int
    breakevens: int
    win_rate: float
    win_rate_excluding_breakeven: float
    total_win_profit: float
    total_loss: float
    net_pnl: float
    avg_win_profit: float
    avg_loss: float
    profit_factor: float
    avg_roi: float
    window_start: datetime | None
    window_end: datetime


@dataclass(frozen=True)
class CategoryWinRate:
    """Win rate within one market category."""

    category: str
    total_positions: int
    wins: int
    win_rate: float
    net_pnl: float
    avg_roi: float
    share: float


@dataclass(frozen=True)
class StreakInfo:
    """Win and loss streaks, ignoring breakeven positions."""

    current_streak_type: str
    current_streak_length: int
    longest_win_streak: int
    longest_loss_streak: int
    recent_streak_changes: int


@dataclass(frozen=True)
class WinRateTrend:
    """Recent versus historical win rate."""

    direction: str
    magnitude: float
    significance: float
    recent_win_rate: float
    historical_win_rate: float


@dataclass(frozen=True)
class WinRateDataPoint:
    """Cumulative win rate after one resolved position."""

    date: datetime
    win_rate: float
    cumulative_wins: int
    cumulative_total: int


@dataclass(frozen=True)
class WinRateAnomaly:
    """A behavioral anomaly with a 0-100 severity."""

    type: WinRateAnomalyType
    severity: float
    description: str
    data: dict[str, object]


@dataclass(frozen=True)
class WinRateResult:
    """Full win rate analysis of one wallet.

    Attributes:
        wallet_address: Normalized wallet address.
        category: All-time win rate classification.
        suspicion_level: Level derived from the suspicion score and sample size.
        suspicion_score: Weighted 0-100 suspicion score.
        window_stats: Statistics per lookback window.
        category_win_rates: Per-category breakdown, largest first.
        top_categories: Best-performing categories with enough positions.
        streaks: Streak information.
        trend: Recent versus historical win rate.
        history: Cumulative win rate per resolved position.
        anomalies: Detected anomalies, most severe first.
        total_positions: Number of positions analyzed.
        data_quality: 0-100 confidence in the sample size.
        is_potential_insider: Whether the wallet matches an insider pattern.
        analyzed_at: Reference time of the analysis.
    """

    wallet_address: str
    category: WinRateCategory
    suspicion_level: WinRateSuspicionLevel
    suspicion_score: int
    window_stats: dict[WinRateWindow, WindowStats]
    category_win_rates: list[CategoryWinRate]
    top_categories: list[str]
    streaks: StreakInfo
    trend: WinRateTrend
    history: list[WinRateDataPoint]
    anomalies: list[WinRateAnomaly]
    total_positions: int
    data_quality: int
    is_potential_insider: bool
    analyzed_at: datetime

    @property
    def all_time(self) -> WindowStats:
        """All-time window statistics."""
        return self.window_stats[WinRateWindow.ALL_TIME]

    def has_anomaly(self, anomaly_type: WinRateAnomalyType) -> bool:
        """Return True if an anomaly of this type was raised."""
        return any(a.type is anomaly_type for a in self.anomalies)


@dataclass(frozen=True)
class BatchWinRateResult:
    """Results of analyzing several wallets."""

    results: dict[str, WinRateResult]
    skipped: list[str]
    processing_time_ms: float


@dataclass
class WinRateTrackerSummary:
    """Aggregate view over all tracked wallets."""

    total_wallets: int
    total_positions: int
    exceptional_win_rate_count: int
    potential_insider_count: int
    average_win_rate: float
    category_distribution: dict[WinRateCategory, int]


def _rate(wins: int, total: int) -> float:
    return wins / total * 100.0 if total else 0.0


def _window_stats(
    positions: list[ResolvedPosition],
    window: WinRateWindow,
    as_of: datetime,
) -> WindowStats:
    duration = window.duration
    start = as_of - duration if duration is not None else None
    members = [p for p in positions if start is None or p.exit_ts >= start]

    wins = [p for p in members if p.is_win]
    losses = [p for p in members if p.is_loss]
    breakevens = len(members) - len(wins) - len(losses)

    total_win_profit = sum(max(0.0, p.realized_pnl) for p in wins)
    total_loss = abs(sum(min(0.0, p.realized_pnl) for p in losses))
    if total_loss > 0:
        profit_factor = total_win_profit / total_loss
    elif wins:
        profit_factor = math.inf
    else:
        profit_factor = 0.0

    return WindowStats(
        window=window,
        total_positions=len(members),
        wins=len(wins),
        losses=len(losses),
        breakevens=breakevens,
        win_rate=_rate(len(wins), len(members)),
        win_rate_excluding_breakeven=_rate(len(wins), len(wins) + len(losses)),
        total_win_profit=total_win_profit,
        total_loss=total_loss,
        net_pnl=sum(p.realized_pnl for p in members),
        avg_win_profit=total_win_profit / len(wins) if wins else 0.0,
        avg_loss=total_loss / len(losses) if losses else 0.0,
        profit_factor=profit_factor,
        avg_roi=sum(p.roi for p in members) / len(members) if members else 0.0,
        window_start=start,
        window_end=as_of,
    )


def _category_win_rates(positions: list[ResolvedPosition]) -> list[CategoryWinRate]:
    grouped: dict[str, list[ResolvedPosition]] = {}
    for position in positions:
        grouped.setdefault(position.category or "unknown", []).append(position)

    total = len(positions)
    rates = [
        CategoryWinRate(
            category=category,
            total_positions=len(members),
            wins=sum(1 for p in members if p.is_win),
            win_rate=_rate(sum(1 for p in members if p.is_win), len(members)),
            net_pnl=sum(p.realized_pnl for p in members),
            avg_roi=sum(p.roi for p in members) / len(members),
            share=len(members) / total,
        )
        for category, members in grouped.items()
    ]
    rates.sort(key=lambda c: c.total_positions, reverse=True)
    return rates


def _streaks(ordered: list[ResolvedPosition]) -> StreakInfo:
    win_run = loss_run = 0
    longest_win = longest_loss = 0
    for position in ordered:
        if position.is_win:
            win_run += 1
            loss_run = 0
            longest_win = max(longest_win, win_run)
        elif position.is_loss:
            loss_run += 1
            win_run = 0
            longest_loss = max(longest_loss, loss_run)

    changes = 0
    previous: PositionOutcome | None = None
    for position in ordered[-RECENT_STREAK_POSITIONS:]:
        if position.outcome is PositionOutcome.BREAKEVEN:
            continue
        if previous is not None and previous is not position.outcome:
            changes += 1
        previous = position.outcome

    if win_run:
        current_type, current_length = "win", win_run
    elif loss_run:
        current_type, current_length = "loss", loss_run
    else:
        current_type, current_length = "none", 0

    return StreakInfo(
        current_streak_type=current_type,
        current_streak_length=current_length,
        longest_win_streak=longest_win,
        longest_loss_streak=longest_loss,
        recent_streak_changes=changes,
    )


def _history(ordered: list[ResolvedPosition]) -> list[WinRateDataPoint]:
    history = []
    wins = 0
    for index, position in enumerate(ordered, start=1):
        if position.is_win:
            wins += 1
        history.append(
            WinRateDataPoint(
                date=position.exit_ts,
                win_rate=_rate(wins, index),
                cumulative_wins=wins,
                cumulative_total=index,
            )
        )
    return history


def _data_quality(count: int) -> int:
    for minimum, quality in ((100, 100), (50, 80), (20, 60), (10, 40), (5, 20)):
        if count >= minimum:
            return quality
    return 0


class WinRateTracker:
    """Tracks resolved positions per wallet and flags unusual success.

    Positions are upserted by ``position_id``; re-submitting an id replaces
    the earlier record entirely. Each wallet's positions are guarded by a
    per-wallet lock and analyses run on a copied snapshot, so an analysis
    never observes a half-applied update.

    Example:
        ```python
        tracker = WinRateTracker()
        tracker.add_positions(positions)
        result = tracker.analyze("0xabc...")
        if result and result.is_potential_insider:
            ...
        ```
    """

    def __init__(self, *, settings: WinRateSettings | None = None) -> None:
        self.settings = settings or WinRateSettings()
        self._positions: dict[str, dict[str, ResolvedPosition]] = {}
        self._state_lock = threading.Lock()
        self._locks = KeyedLocks()
        self._position_total = 0
        self._total_lock = threading.Lock()

    def _adjust_total(self, delta: int) -> None:
        with self._total_lock:
            self._position_total += delta
            total = self._position_total
        POSITIONS_TRACKED.set(total)

    def add_position(self, position: ResolvedPosition) -> bool:
        """Insert or replace a resolved position.

        Args:
            position: Position to store. Its wallet address is normalized.

        Returns:
            True if stored, False if the address or outcome is malformed.
        """
        wallet = normalize_address(position.wallet_address)
        if wallet is None:
            logger.warning("Ignoring position with invalid wallet: %s", position.position_id)
            return False
        try:
            raw_outcome = getattr(position.outcome, "value", position.outcome)
            outcome = PositionOutcome(str(raw_outcome).upper())
        except ValueError:
            logger.warning(
                "Ignoring position with invalid outcome: id=%s outcome=%s",
                position.position_id,
                position.outcome,
            )
            return False

        normalized = replace(
            position,
            wallet_address=wallet,
            outcome=outcome,
            entry_ts=as_utc(position.entry_ts),
            exit_ts=as_utc(position.exit_ts),
        )
        with self._locks.hold(wallet):
            with self._state_lock:
                positions = self._positions.setdefault(wallet, {})
            before = len(positions)
            positions[normalized.position_id] = normalized

            overflow = len(positions) - self.settings.max_positions_per_wallet
            if overflow > 0:
                oldest = sorted(positions.values(), key=lambda p: p.exit_ts)[:overflow]
                for stale in oldest:
                    del positions[stale.position_id]
                logger.debug("Evicted %d old positions for wallet %s", overflow, wallet[:10])
            delta = len(positions) - before

        if delta:
            self._adjust_total(delta)
        return True

    def add_positions(self, positions: Iterable[ResolvedPosition]) -> int:
        """Add several positions; returns how many were stored."""
        return sum(1 for p in positions if self.add_position(p))

    def _snapshot(self, wallet: str) -> list[ResolvedPosition]:
        with self._locks.hold(wallet):
            with self._state_lock:
                positions = self._positions.get(wallet)
            return list(positions.values()) if positions else []

    def analyze(
        self, wallet_address: str, *, as_of: datetime | None = None
    ) -> WinRateResult | None:
        """Analyze a wallet's win rate.

        Args:
            wallet_address: Wallet to analyze.
            as_of: Reference time for the lookback windows (default: now).

        Returns:
            WinRateResult, or None for a malformed or untracked wallet.
        """
        wallet = normalize_address(wallet_address)
        if wallet is None:
            return None
        positions = self._snapshot(wallet)
        if not positions:
            return None

        with ANALYSIS_LATENCY.labels(component="win_rate").time():
            return self._compute(wallet, positions, as_utc(as_of))

    def _compute(
        self,
        wallet: str,
        positions: list[ResolvedPosition],
        as_of: datetime,
    ) -> WinRateResult:
        s = self.settings
        ordered = sorted(positions, key=lambda p: p.exit_ts)
        window_stats = {w: _window_stats(positions, w, as_of) for w in WinRateWindow}
        all_time = window_stats[WinRateWindow.ALL_TIME]

        categories = _category_win_rates(positions)
        top = sorted(
            (c for c in categories if c.total_positions >= TOP_CATEGORY_MIN_POSITIONS),
            key=lambda c: (c.win_rate, c.total_positions),
            reverse=True,
        )
        streaks = _streaks(ordered)
        trend = self._trend(ordered)
        anomalies = self._anomalies(positions, all_time, categories, streaks, trend)

        if len(positions) < s.min_positions_for_analysis:
            category = WinRateCategory.UNKNOWN
        else:
            category = self._categorize(all_time.win_rate)

        score, level, insider = self._suspicion(
            positions, all_time, categories, streaks, trend, anomalies
        )

        return WinRateResult(
            wallet_address=wallet,
            category=category,
            suspicion_level=level,
            suspicion_score=score,
            window_stats=window_stats,
            category_win_rates=categories,
            top_categories=[c.category for c in top[:MAX_TOP_CATEGORIES]],
            streaks=streaks,
            trend=trend,
            history=_history(ordered),
            anomalies=anomalies,
            total_positions=len(positions),
            data_quality=_data_quality(len(positions)),
            is_potential_insider=insider,
            analyzed_at=as_of,
        )

    @staticmethod
    def _categorize(win_rate: float) -> WinRateCategory:
        tiers = (
            (85.0, WinRateCategory.EXCEPTIONAL),
            (75.0, WinRateCategory.VERY_HIGH),
            (65.0, WinRateCategory.HIGH),
            (55.0, WinRateCategory.ABOVE_AVERAGE),
            (45.0, WinRateCategory.AVERAGE),
            (30.0, WinRateCategory.LOW),
        )
        for threshold, category in tiers:
            if win_rate >= threshold:
                return category
        return WinRateCategory.VERY_LOW

    def _trend(self, ordered: list[ResolvedPosition]) -> WinRateTrend:
        if len(ordered) < self.settings.trend_min_positions:
            return WinRateTrend("stable", 0.0, 0.0, 0.0, 0.0)

        split = int(len(ordered) * 0.7)
        historical, recent = ordered[:split], ordered[split:]
        historical_rate = _rate(sum(1 for p in historical if p.is_win), len(historical))
        recent_rate = _rate(sum(1 for p in recent if p.is_win), len(recent))
        magnitude = abs(recent_rate - historical_rate)
        significance = min(1.0, min(len(historical), len(recent)) / 20 * (magnitude / 20))

        margin = self.settings.trend_margin
        if recent_rate > historical_rate + margin:
            direction = "improving"
        elif recent_rate < historical_rate - margin:
            direction = "declining"
        else:
            direction = "stable"
        return WinRateTrend(direction, magnitude, significance, recent_rate, historical_rate)

    def _anomalies(
        self,
        positions: list[ResolvedPosition],
        all_time: WindowStats,
        categories: list[CategoryWinRate],
        streaks: StreakInfo,
        trend: WinRateTrend,
    ) -> list[WinRateAnomaly]:
        s = self.settings
        anomalies: list[WinRateAnomaly] = []

        if (
            all_time.win_rate >= s.exceptional_win_rate_threshold
            and all_time.total_positions >= s.min_positions_for_analysis
        ):
            anomalies.append(
                WinRateAnomaly(
                    type=WinRateAnomalyType.EXCEPTIONAL_WIN_RATE,
                    severity=min(
                        100.0, (all_time.win_rate - s.exceptional_win_rate_threshold) * 5 + 50
                    ),
                    description=(
                        f"Exceptionally high win rate of {all_time.win_rate:.1f}% "
                        f"across {all_time.total_positions} positions"
                    ),
                    data={
                        "win_rate": all_time.win_rate,
                        "total_positions": all_time.total_positions,
                    },
                )
            )

        if trend.direction == "improving" and trend.magnitude > 15 and trend.significance > 0.5:
            anomalies.append(
                WinRateAnomaly(
                    type=WinRateAnomalyType.SUDDEN_IMPROVEMENT,
                    severity=min(100.0, trend.magnitude * 2 + trend.significance * 30),
                    description=(
                        f"Win rate improved from {trend.historical_win_rate:.1f}% "
                        f"to {trend.recent_win_rate:.1f}%"
                    ),
                    data={
                        "historical_win_rate": trend.historical_win_rate,
                        "recent_win_rate": trend.recent_win_rate,
                        "magnitude": trend.magnitude,
                    },
                )
            )

        high_conviction = [p for p in positions if p.is_high_conviction]
        if len(high_conviction) >= s.min_high_conviction_for_insider:
            hc_rate = _rate(sum(1 for p in high_conviction if p.is_win), len(high_conviction))
            # Ties with the baseline count
            if hc_rate >= s.high_conviction_win_rate_threshold and hc_rate >= all_time.win_rate:
                anomalies.append(
                    WinRateAnomaly(
                        type=WinRateAnomalyType.HIGH_CONVICTION_ACCURACY,
                        severity=min(
                            100.0, (hc_rate - s.high_conviction_win_rate_threshold) * 3 + 60
                        ),
                        description=(
                            f"High conviction trades have {hc_rate:.1f}% win rate "
                            f"across {len(high_conviction)} trades"
                        ),
                        data={
                            "high_conviction_win_rate": hc_rate,
                            "high_conviction_count": len(high_conviction),
                            "baseline_win_rate": all_time.win_rate,
                        },
                    )
                )

        for cat in categories:
            if (
                cat.total_positions >= s.specialization_min_positions
                and cat.win_rate >= s.specialization_win_rate_threshold
                and cat.win_rate >= all_time.win_rate
                and cat.share >= s.specialization_min_share
            ):
                anomalies.append(
                    WinRateAnomaly(
                        type=WinRateAnomalyType.CATEGORY_SPECIALIZATION,
                        severity=min(100.0, (cat.win_rate - 70) * 3 + 30),
                        description=(
                            f"High win rate of {cat.win_rate:.1f}% in {cat.category} "
                            f"category ({cat.total_positions} positions)"
                        ),
                        data={
                            "category": cat.category,
                            "win_rate": cat.win_rate,
                            "positions": cat.total_positions,
                            "share": cat.share,
                        },
                    )
                )

        short = [
            p
            for p in positions
            if p.time_to_resolution_hours is not None
            and p.time_to_resolution_hours <= SHORT_TIMEFRAME_HOURS
        ]
        if len(short) >= 5:
            short_rate = _rate(sum(1 for p in short if p.is_win), len(short))
            if short_rate >= 80:
                anomalies.append(
                    WinRateAnomaly(
                        type=WinRateAnomalyType.SHORT_TIMEFRAME_ACCURACY,
                        severity=min(100.0, (short_rate - 70) * 3 + 50),
                        description=(
                            f"{short_rate:.1f}% win rate on trades made within 24 hours "
                            f"of resolution ({len(short)} positions)"
                        ),
                        data={
                            "short_timeframe_win_rate": short_rate,
                            "short_timeframe_count": len(short),
                        },
                    )
                )

        if streaks.longest_win_streak >= s.streak_anomaly_threshold:
            anomalies.append(
                WinRateAnomaly(
                    type=WinRateAnomalyType.PERFECT_TIMING,
                    severity=min(100.0, streaks.longest_win_streak * 5.0),
                    description=(
                        f"Longest win streak of {streaks.longest_win_streak} consecutive wins"
                    ),
                    data={"longest_win_streak": streaks.longest_win_streak},
                )
            )

        anomalies.sort(key=lambda a: a.severity, reverse=True)
        return anomalies

    def _suspicion(
        self,
        positions: list[ResolvedPosition],
        all_time: WindowStats,
        categories: list[CategoryWinRate],
        streaks: StreakInfo,
        trend: WinRateTrend,
        anomalies: list[WinRateAnomaly],
    ) -> tuple[int, WinRateSuspicionLevel, bool]:
        s = self.settings
        if len(positions) < s.min_positions_for_analysis:
            return 0, WinRateSuspicionLevel.NONE, False

        win_rate = all_time.win_rate
        if win_rate >= 90:
            win_rate_score = 100.0
        elif win_rate >= 80:
            win_rate_score = 70.0
        elif win_rate >= 70:
            win_rate_score = 40.0
        elif win_rate >= 60:
            win_rate_score = 20.0
        else:
            win_rate_score = 0.0

        high_conviction = [p for p in positions if p.is_high_conviction]
        hc_rate = _rate(sum(1 for p in high_conviction if p.is_win), len(high_conviction))
        hc_score = 0.0
        if len(high_conviction) >= 5:
            if hc_rate >= 90:
                hc_score = 100.0
            elif hc_rate >= 80:
                hc_score = 60.0
            elif hc_rate >= 70:
                hc_score = 30.0

        category_rates = [c.win_rate for c in categories if c.total_positions >= 5]
        category_score = 0.0
        if any(r >= 85 for r in category_rates):
            category_score = 80.0
        elif any(r >= 75 for r in category_rates):
            category_score = 50.0
        elif any(r >= 65 for r in category_rates):
            category_score = 25.0

        trend_score = 0.0
        if trend.direction == "improving" and trend.magnitude > 20:
            trend_score = min(80.0, trend.magnitude * 2)

        streak_score = 0.0
        if streaks.longest_win_streak >= 15:
            streak_score = 80.0
        elif streaks.longest_win_streak >= 10:
            streak_score = 50.0
        elif streaks.longest_win_streak >= 7:
            streak_score = 25.0

        anomaly_score = min(100.0, sum(a.severity for a in anomalies) / 3)

        score = (
            win_rate_score * WEIGHT_WIN_RATE
            + hc_score * WEIGHT_HIGH_CONVICTION
            + category_score * WEIGHT_CATEGORY
            + trend_score * WEIGHT_TREND
            + streak_score * WEIGHT_STREAKS
            + anomaly_score * WEIGHT_ANOMALIES
        )

        if score >= 80:
            level = WinRateSuspicionLevel.CRITICAL
        elif score >= 60:
            level = WinRateSuspicionLevel.HIGH
        elif score >= 40:
            level = WinRateSuspicionLevel.MEDIUM
        elif score >= 20:
            level = WinRateSuspicionLevel.LOW
        else:
            level = WinRateSuspicionLevel.NONE

        # Thin histories never rise above MEDIUM
        if len(positions) < s.min_positions_for_high_confidence and level in (
            WinRateSuspicionLevel.HIGH,
            WinRateSuspicionLevel.CRITICAL,
        ):
            level = WinRateSuspicionLevel.MEDIUM

        insider = (
            win_rate >= s.potential_insider_win_rate_threshold
            and len(positions) >= s.min_positions_for_high_confidence
        ) or (
            len(high_conviction) >= s.min_high_conviction_for_insider
            and hc_rate >= s.high_conviction_win_rate_threshold
        )
        return round(score), level, insider

    # Bulk queries

    def batch_analyze(
        self,
        wallet_addresses: Iterable[str],
        *,
        as_of: datetime | None = None,
    ) -> BatchWinRateResult:
        """Analyze several wallets; untracked or malformed ones are skipped."""
        started = time.perf_counter()
        results: dict[str, WinRateResult] = {}
        skipped: list[str] = []
        for address in wallet_addresses:
            result = self.analyze(address, as_of=as_of)
            if result is None:
                skipped.append(address)
            else:
                results[result.wallet_address] = result
        return BatchWinRateResult(
            results=results,
            skipped=skipped,
            processing_time_ms=(time.perf_counter() - started) * 1000.0,
        )

    def has_unusually_high_win_rate(self, wallet_address: str) -> bool:
        """Return True if the wallet's suspicion level is HIGH or CRITICAL."""
        result = self.analyze(wallet_address)
        return result is not None and result.suspicion_level in (
            WinRateSuspicionLevel.HIGH,
            WinRateSuspicionLevel.CRITICAL,
        )

    def _analyze_all(self) -> list[WinRateResult]:
        results = []
        for wallet in self.get_tracked_wallets():
            result = self.analyze(wallet)
            if result is not None:
                results.append(result)
        return results

    def get_high_win_rate_wallets(self, min_rate: float = 70.0) -> list[WinRateResult]:
        """Return analyzable wallets with an all-time win rate of at least ``min_rate``."""
        results = [
            r
            for r in self._analyze_all()
            if r.total_positions >= self.settings.min_positions_for_analysis
            and r.all_time.win_rate >= min_rate
        ]
        results.sort(key=lambda r: r.all_time.win_rate, reverse=True)
        return results

    def get_potential_insiders(self) -> list[WinRateResult]:
        """Return wallets matching an insider pattern, most suspicious first."""
        results = [r for r in self._analyze_all() if r.is_potential_insider]
        results.sort(key=lambda r: r.suspicion_score, reverse=True)
        return results

    def get_summary(self) -> WinRateTrackerSummary:
        """Summarize every tracked wallet."""
        results = self._analyze_all()
        distribution = Counter(r.category for r in results)
        analyzable = [
            r for r in results if r.total_positions >= self.settings.min_positions_for_analysis
        ]
        return WinRateTrackerSummary(
            total_wallets=len(results),
            total_positions=sum(r.total_positions for r in results),
            exceptional_win_rate_count=distribution.get(WinRateCategory.EXCEPTIONAL, 0),
            potential_insider_count=sum(1 for r in results if r.is_potential_insider),
            average_win_rate=(
                sum(r.all_time.win_rate for r in analyzable) / len(analyzable)
                if analyzable
                else 0.0
            ),
            category_distribution={c: distribution.get(c, 0) for c in WinRateCategory},
        )

    def get_position_count(self, wallet_address: str) -> int:
        """Return how many positions are stored for a wallet."""
        wallet = normalize_address(wallet_address)
        if wallet is None:
            return 0
        return len(self._snapshot(wallet))

    def get_tracked_wallets(self) -> list[str]:
        """Return every wallet with stored positions."""
        with self._state_lock:
            return [w for w, p in self._positions.items() if p]

    def clear_wallet(self, wallet_address: str) -> bool:
        """Forget a wallet's positions."""
        wallet = normalize_address(wallet_address)
        if wallet is None:
            return False
        with self._locks.hold(wallet):
            with self._state_lock:
                removed = self._positions.pop(wallet, None)
        self._locks.discard(wallet)
        if removed:
            self._adjust_total(-len(removed))
        return removed is not None

    def clear_all(self) -> None:
        """Forget every wallet."""
        with self._state_lock:
            self._positions.clear()
        self._locks.clear()
        with self._total_lock:
            self._position_total = 0
        POSITIONS_TRACKED.set(0)
        logger.info("Cleared all win rate state")
