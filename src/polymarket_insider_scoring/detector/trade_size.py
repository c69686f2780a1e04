"""Trade size classification against absolute and market-relative tiers.

Classifies each trade as NORMAL, LARGE, VERY_LARGE or WHALE. Absolute
USD tiers always apply, so a whale is recognised on a market with no
history. Once a market has enough trades, statistical tiers (z-score
and/or percentile rank of the trade against the market's prior trades)
apply as well, and the more severe category wins.
"""

from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from collections import Counter, deque
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum

from polymarket_insider_scoring.config import TradeSizeSettings
from polymarket_insider_scoring.detector.concurrency import KeyedLocks, ObserverList
from polymarket_insider_scoring.detector.models import (
    Severity,
    Trade,
    as_utc,
    normalize_address,
    normalize_market_id,
    utc_now,
)
from polymarket_insider_scoring.detector.stats import (
    Reservoir,
    RunningStats,
    percentile_rank,
    z_score,
)
from polymarket_insider_scoring.metrics import LARGE_TRADES_TOTAL

logger = logging.getLogger(__name__)

SNAPSHOT_PERCENTILES = (10.0, 25.0, 50.0, 75.0, 90.0, 95.0, 99.0)


class TradeSizeCategory(str, Enum):
    """Size category of a trade, ordered from smallest to largest."""

    NORMAL = "NORMAL"
    LARGE = "LARGE"
    VERY_LARGE = "VERY_LARGE"
    WHALE = "WHALE"

    @property
    def rank(self) -> int:
        """Position of this category in the ordering."""
        return _CATEGORY_ORDER.index(self)


_CATEGORY_ORDER = [
    TradeSizeCategory.NORMAL,
    TradeSizeCategory.LARGE,
    TradeSizeCategory.VERY_LARGE,
    TradeSizeCategory.WHALE,
]

# Minimum severity for a flagged category
_CATEGORY_SEVERITY_FLOOR = {
    TradeSizeCategory.LARGE: Severity.LOW,
    TradeSizeCategory.VERY_LARGE: Severity.MEDIUM,
    TradeSizeCategory.WHALE: Severity.HIGH,
}


class ThresholdMethod(str, Enum):
    """Statistical method used once a market has reliable history."""

    PERCENTILE = "PERCENTILE"
    Z_SCORE = "Z_SCORE"
    ABSOLUTE = "ABSOLUTE"
    COMBINED = "COMBINED"


@dataclass(frozen=True)
class ThresholdExceeded:
    """The tier that produced a trade's category."""

    method: ThresholdMethod
    threshold: float
    value: float


@dataclass
class MarketSizeStats:
    """Running trade size statistics for one market."""

    running: RunningStats
    reservoir: Reservoir
    first_trade_at: datetime | None = None
    last_trade_at: datetime | None = None


@dataclass(frozen=True)
class MarketSizeStatsSnapshot:
    """Point-in-time copy of a market's trade size statistics."""

    market_id: str
    trade_count: int
    mean: float
    std_dev: float
    min_size: float
    max_size: float
    total_volume: float
    percentiles: dict[str, float]
    is_reliable: bool
    first_trade_at: datetime | None
    last_trade_at: datetime | None

    @property
    def median(self) -> float:
        return self.percentiles.get("p50", 0.0)


@dataclass(frozen=True)
class TradeSizeAnalysis:
    """Classification of a single trade.

    Attributes:
        trade: The analyzed trade.
        category: Final size category.
        severity: Severity of a flagged trade (None when NORMAL).
        z_score: Z-score against prior market trades (0.0 without history).
        percentile_rank: Percentage of prior retained trades below this size.
        is_flagged: True when the category is above NORMAL.
        stats_reliable: Whether statistical tiers were applied.
        is_valid: False for malformed input; such trades are not recorded.
        times_median: Size as a multiple of the prior median (0.0 if unknown).
        times_average: Size as a multiple of the prior mean (0.0 if unknown).
        exceeded_threshold: The tier that produced the category, if flagged.
        analyzed_at: When the analysis ran.
    """

    trade: Trade
    category: TradeSizeCategory
    severity: Severity | None
    z_score: float
    percentile_rank: float
    is_flagged: bool
    stats_reliable: bool
    is_valid: bool
    times_median: float
    times_average: float
    exceeded_threshold: ThresholdExceeded | None
    analyzed_at: datetime


@dataclass(frozen=True)
class LargeTradeEvent:
    """Notification for a flagged trade."""

    event_id: str
    trade: Trade
    category: TradeSizeCategory
    severity: Severity
    z_score: float
    percentile_rank: float
    times_median: float
    detected_at: datetime
    market_average_usd: float
    market_median_usd: float
    market_trade_count: int
    wallet_recent_large_trade_count: int
    market_recent_large_trade_count: int
    is_repeat_large_trader: bool

    def to_dict(self) -> dict[str, object]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "event_id": self.event_id,
            "trade": self.trade.to_dict(),
            "category": self.category.value,
            "severity": self.severity.value,
            "z_score": self.z_score,
            "percentile_rank": self.percentile_rank,
            "times_median": self.times_median,
            "detected_at": self.detected_at.isoformat(),
            "market_average_usd": self.market_average_usd,
            "market_median_usd": self.market_median_usd,
            "market_trade_count": self.market_trade_count,
            "wallet_recent_large_trade_count": self.wallet_recent_large_trade_count,
            "market_recent_large_trade_count": self.market_recent_large_trade_count,
            "is_repeat_large_trader": self.is_repeat_large_trader,
        }


@dataclass(frozen=True)
class RecentLargeTrade:
    """Entry in a wallet's or market's recent large trade list."""

    trade_id: str
    market_id: str
    wallet_address: str
    size_usd: float
    severity: Severity
    timestamp: datetime


@dataclass
class WalletLargeTradeStats:
    """Large trade history for one wallet."""

    wallet_address: str
    total_large_trades: int = 0
    by_severity: dict[Severity, int] = field(default_factory=lambda: {s: 0 for s in Severity})
    total_large_trade_volume_usd: float = 0.0
    average_large_trade_size_usd: float = 0.0
    recent_large_trades: list[RecentLargeTrade] = field(default_factory=list)
    first_large_trade_at: datetime | None = None
    last_large_trade_at: datetime | None = None


@dataclass
class MarketLargeTradeStats:
    """Large trade history for one market."""

    market_id: str
    total_large_trades: int = 0
    by_severity: dict[Severity, int] = field(default_factory=lambda: {s: 0 for s in Severity})
    total_large_trade_volume_usd: float = 0.0
    unique_large_traders: int = 0
    recent_large_trades: list[RecentLargeTrade] = field(default_factory=list)


@dataclass(frozen=True)
class BatchTradeSizeResult:
    """Results of analyzing several trades in order."""

    results: list[TradeSizeAnalysis]
    flagged_count: int
    by_category: dict[TradeSizeCategory, int]
    processing_time_ms: float


@dataclass
class TradeSizeSummary:
    """Aggregate view over the analyzer's state."""

    total_markets: int
    total_trades: int
    total_large_trades: int
    by_category: dict[TradeSizeCategory, int]
    top_markets: list[tuple[str, int]]
    top_whale_wallets: list[tuple[str, int]]
    recent_events: list[LargeTradeEvent]


def _copy_wallet_stats(stats: WalletLargeTradeStats) -> WalletLargeTradeStats:
    return WalletLargeTradeStats(
        wallet_address=stats.wallet_address,
        total_large_trades=stats.total_large_trades,
        by_severity=dict(stats.by_severity),
        total_large_trade_volume_usd=stats.total_large_trade_volume_usd,
        average_large_trade_size_usd=stats.average_large_trade_size_usd,
        recent_large_trades=list(stats.recent_large_trades),
        first_large_trade_at=stats.first_large_trade_at,
        last_large_trade_at=stats.last_large_trade_at,
    )


def _copy_market_large_stats(stats: MarketLargeTradeStats) -> MarketLargeTradeStats:
    return MarketLargeTradeStats(
        market_id=stats.market_id,
        total_large_trades=stats.total_large_trades,
        by_severity=dict(stats.by_severity),
        total_large_trade_volume_usd=stats.total_large_trade_volume_usd,
        unique_large_traders=stats.unique_large_traders,
        recent_large_trades=list(stats.recent_large_trades),
    )


class TradeSizeAnalyzer:
    """Classifies trade sizes and keeps per-market and per-wallet aggregates.

    Each trade is scored against the market's statistics from before the
    trade, then folded into them: Welford running mean and variance plus
    a bounded reservoir of recent sizes for percentile ranks.

    Flagged trades are always counted in the large-trade aggregates.
    Observer notifications are throttled per (market, wallet) pair by
    ``alert_cooldown_seconds`` so a burst of related fills alerts once.

    Example:
        ```python
        analyzer = TradeSizeAnalyzer()
        analyzer.on_whale_trade.subscribe(handle_whale)
        analysis = analyzer.analyze_trade(trade)
        if analysis.is_flagged:
            ...
        ```
    """

    def __init__(self, *, settings: TradeSizeSettings | None = None) -> None:
        """Initialize the analyzer.

        Args:
            settings: Analyzer settings (defaults loaded from environment).
        """
        self.settings = settings or TradeSizeSettings()
        self.method = ThresholdMethod(self.settings.method)

        self.on_large_trade: ObserverList[LargeTradeEvent] = ObserverList("large_trade")
        self.on_whale_trade: ObserverList[LargeTradeEvent] = ObserverList("whale_trade")

        self._market_stats: dict[str, MarketSizeStats] = {}
        self._market_large: dict[str, MarketLargeTradeStats] = {}
        self._wallet_large: dict[str, WalletLargeTradeStats] = {}
        self._state_lock = threading.Lock()
        self._market_locks = KeyedLocks()
        self._wallet_locks = KeyedLocks()

        self._last_alert: dict[tuple[str, str], datetime] = {}
        self._alert_lock = threading.Lock()
        self._recent_events: deque[LargeTradeEvent] = deque(maxlen=self.settings.max_recent_events)
        self._category_counts: Counter[TradeSizeCategory] = Counter()
        self._events_lock = threading.Lock()

    # Classification

    def _absolute_category(self, size: float) -> tuple[TradeSizeCategory, ThresholdExceeded | None]:
        s = self.settings
        tiers = [
            (s.whale_trade_usd, TradeSizeCategory.WHALE),
            (s.very_large_trade_usd, TradeSizeCategory.VERY_LARGE),
            (s.large_trade_usd, TradeSizeCategory.LARGE),
        ]
        for threshold, category in tiers:
            if size >= threshold:
                return category, ThresholdExceeded(ThresholdMethod.ABSOLUTE, threshold, size)
        return TradeSizeCategory.NORMAL, None

    def _percentile_category(
        self, rank: float
    ) -> tuple[TradeSizeCategory, ThresholdExceeded | None]:
        s = self.settings
        tiers = [
            (s.whale_percentile, TradeSizeCategory.WHALE),
            (s.very_large_percentile, TradeSizeCategory.VERY_LARGE),
            (s.large_percentile, TradeSizeCategory.LARGE),
        ]
        for threshold, category in tiers:
            if rank >= threshold:
                return category, ThresholdExceeded(ThresholdMethod.PERCENTILE, threshold, rank)
        return TradeSizeCategory.NORMAL, None

    def _z_category(self, z: float) -> tuple[TradeSizeCategory, ThresholdExceeded | None]:
        s = self.settings
        tiers = [
            (s.whale_z_score, TradeSizeCategory.WHALE),
            (s.very_large_z_score, TradeSizeCategory.VERY_LARGE),
            (s.large_z_score, TradeSizeCategory.LARGE),
        ]
        for threshold, category in tiers:
            if z >= threshold:
                return category, ThresholdExceeded(ThresholdMethod.Z_SCORE, threshold, z)
        return TradeSizeCategory.NORMAL, None

    def _z_severity(self, z: float) -> Severity | None:
        s = self.settings
        if z >= s.critical_severity_z_score:
            return Severity.CRITICAL
        if z >= s.high_severity_z_score:
            return Severity.HIGH
        if z >= s.medium_severity_z_score:
            return Severity.MEDIUM
        if z >= s.low_severity_z_score:
            return Severity.LOW
        return None

    def _classify(
        self,
        size: float,
        z: float,
        rank: float,
        reliable: bool,
    ) -> tuple[TradeSizeCategory, Severity | None, ThresholdExceeded | None]:
        candidates = [self._absolute_category(size)]
        if reliable:
            if self.method in (ThresholdMethod.PERCENTILE, ThresholdMethod.COMBINED):
                candidates.append(self._percentile_category(rank))
            if self.method in (ThresholdMethod.Z_SCORE, ThresholdMethod.COMBINED):
                candidates.append(self._z_category(z))

        # Absolute wins ties, then percentile, then z-score
        category, exceeded = candidates[0]
        for candidate, candidate_exceeded in candidates[1:]:
            if candidate.rank > category.rank:
                category, exceeded = candidate, candidate_exceeded

        if category is TradeSizeCategory.NORMAL:
            return category, None, None

        severity = Severity.highest(
            self._z_severity(z) if reliable else None,
            _CATEGORY_SEVERITY_FLOOR[category],
        )
        return category, severity, exceeded

    # Market statistics

    def _market_entry(self, market_id: str) -> MarketSizeStats | None:
        with self._state_lock:
            return self._market_stats.get(market_id)

    def _ensure_market_entry(self, market_id: str) -> MarketSizeStats:
        with self._state_lock:
            entry = self._market_stats.get(market_id)
            if entry is None:
                entry = MarketSizeStats(
                    running=RunningStats(),
                    reservoir=Reservoir(
                        self.settings.reservoir_size,
                        exact=self.settings.exact_percentiles,
                    ),
                )
                self._market_stats[market_id] = entry
            return entry

    def _snapshot(self, market_id: str, entry: MarketSizeStats) -> MarketSizeStatsSnapshot:
        running = entry.running
        computed = entry.reservoir.percentiles(*SNAPSHOT_PERCENTILES)
        return MarketSizeStatsSnapshot(
            market_id=market_id,
            trade_count=running.count,
            mean=running.mean,
            std_dev=running.std_dev,
            min_size=running.minimum,
            max_size=running.maximum,
            total_volume=running.total,
            percentiles={f"p{int(p)}": v for p, v in computed.items()},
            is_reliable=running.count >= self.settings.min_trades_for_reliable_stats,
            first_trade_at=entry.first_trade_at,
            last_trade_at=entry.last_trade_at,
        )

    # Analysis

    def _invalid_result(self, trade: Trade, now: datetime) -> TradeSizeAnalysis:
        return TradeSizeAnalysis(
            trade=trade,
            category=TradeSizeCategory.NORMAL,
            severity=None,
            z_score=0.0,
            percentile_rank=50.0,
            is_flagged=False,
            stats_reliable=False,
            is_valid=False,
            times_median=0.0,
            times_average=0.0,
            exceeded_threshold=None,
            analyzed_at=now,
        )

    def analyze_trade(self, trade: Trade, *, bypass_cooldown: bool = False) -> TradeSizeAnalysis:
        """Classify a trade and fold it into the market statistics.

        Args:
            trade: Trade to analyze.
            bypass_cooldown: Notify observers even inside the alert cooldown.

        Returns:
            TradeSizeAnalysis for the trade. Malformed trades (negative or
            non-finite size, bad address, empty market id) yield a result
            with ``is_valid=False`` and are not recorded.
        """
        now = utc_now()
        market = normalize_market_id(trade.market_id)
        wallet = normalize_address(trade.wallet_address)
        size = trade.size_usd
        if market is None or wallet is None or not math.isfinite(size) or size < 0:
            logger.warning(
                "Ignoring invalid trade: id=%s market=%s size=%s",
                trade.trade_id,
                trade.market_id,
                size,
            )
            return self._invalid_result(trade, now)

        if trade.timestamp.tzinfo is None:
            trade = replace(trade, timestamp=as_utc(trade.timestamp))

        with self._market_locks.hold(market):
            entry = self._ensure_market_entry(market)
            prior = self._snapshot(market, entry)
            sorted_sizes = entry.reservoir.sorted_values()

            reliable = prior.is_reliable
            z = z_score(size, prior.mean, prior.std_dev) if prior.trade_count else 0.0
            rank = percentile_rank(sorted_sizes, size)
            category, severity, exceeded = self._classify(size, z, rank, reliable)

            entry.running.update(size)
            entry.reservoir.add(size)
            if entry.first_trade_at is None:
                entry.first_trade_at = trade.timestamp
            entry.last_trade_at = trade.timestamp

        analysis = TradeSizeAnalysis(
            trade=trade,
            category=category,
            severity=severity,
            z_score=z,
            percentile_rank=rank,
            is_flagged=category is not TradeSizeCategory.NORMAL,
            stats_reliable=reliable,
            is_valid=True,
            times_median=size / prior.median if prior.median > 0 else 0.0,
            times_average=size / prior.mean if prior.mean > 0 else 0.0,
            exceeded_threshold=exceeded,
            analyzed_at=now,
        )

        with self._events_lock:
            self._category_counts[category] += 1

        if analysis.is_flagged and severity is not None:
            self._track_large_trade(trade, market, wallet, severity)
            LARGE_TRADES_TOTAL.labels(category=category.value).inc()
            if self._can_alert(market, wallet, trade.timestamp, bypass_cooldown):
                self._emit(analysis, prior, market, wallet, severity)

        return analysis

    def analyze_trades(
        self,
        trades: Iterable[Trade],
        *,
        bypass_cooldown: bool = False,
    ) -> BatchTradeSizeResult:
        """Analyze trades in the given order."""
        started = time.perf_counter()
        results = [self.analyze_trade(t, bypass_cooldown=bypass_cooldown) for t in trades]
        counts = Counter(r.category for r in results if r.is_valid)
        return BatchTradeSizeResult(
            results=results,
            flagged_count=sum(1 for r in results if r.is_flagged),
            by_category={c: counts.get(c, 0) for c in TradeSizeCategory},
            processing_time_ms=(time.perf_counter() - started) * 1000.0,
        )

    def _track_large_trade(
        self, trade: Trade, market: str, wallet: str, severity: Severity
    ) -> None:
        window = timedelta(minutes=self.settings.recent_window_minutes)
        ts = trade.timestamp
        entry = RecentLargeTrade(
            trade_id=trade.trade_id,
            market_id=market,
            wallet_address=wallet,
            size_usd=trade.size_usd,
            severity=severity,
            timestamp=ts,
        )

        with self._wallet_locks.hold(wallet):
            with self._state_lock:
                stats = self._wallet_large.setdefault(wallet, WalletLargeTradeStats(wallet))
            stats.total_large_trades += 1
            stats.by_severity[severity] += 1
            stats.total_large_trade_volume_usd += trade.size_usd
            stats.average_large_trade_size_usd = (
                stats.total_large_trade_volume_usd / stats.total_large_trades
            )
            if stats.first_large_trade_at is None:
                stats.first_large_trade_at = ts
            stats.last_large_trade_at = ts
            stats.recent_large_trades.append(entry)
            stats.recent_large_trades = [
                t for t in stats.recent_large_trades if ts - t.timestamp < window
            ]

        with self._market_locks.hold(market):
            with self._state_lock:
                market_stats = self._market_large.setdefault(market, MarketLargeTradeStats(market))
            market_stats.total_large_trades += 1
            market_stats.by_severity[severity] += 1
            market_stats.total_large_trade_volume_usd += trade.size_usd
            market_stats.recent_large_trades.append(entry)
            market_stats.recent_large_trades = [
                t for t in market_stats.recent_large_trades if ts - t.timestamp < window
            ]
            market_stats.unique_large_traders = len(
                {t.wallet_address for t in market_stats.recent_large_trades}
            )

    def _can_alert(self, market: str, wallet: str, ts: datetime, bypass_cooldown: bool) -> bool:
        key = (market, wallet)
        with self._alert_lock:
            last = self._last_alert.get(key)
            if (
                not bypass_cooldown
                and last is not None
                and (ts - last).total_seconds() < self.settings.alert_cooldown_seconds
            ):
                return False
            self._last_alert[key] = ts
            return True

    def _emit(
        self,
        analysis: TradeSizeAnalysis,
        prior: MarketSizeStatsSnapshot,
        market: str,
        wallet: str,
        severity: Severity,
    ) -> None:
        wallet_stats = self.get_wallet_large_trade_stats(wallet)
        market_stats = self.get_market_large_trade_stats(market)
        event = LargeTradeEvent(
            event_id=str(uuid.uuid4()),
            trade=analysis.trade,
            category=analysis.category,
            severity=severity,
            z_score=analysis.z_score,
            percentile_rank=analysis.percentile_rank,
            times_median=analysis.times_median,
            detected_at=analysis.analyzed_at,
            market_average_usd=prior.mean,
            market_median_usd=prior.median,
            market_trade_count=prior.trade_count,
            wallet_recent_large_trade_count=(
                len(wallet_stats.recent_large_trades) if wallet_stats else 0
            ),
            market_recent_large_trade_count=(
                len(market_stats.recent_large_trades) if market_stats else 0
            ),
            is_repeat_large_trader=bool(wallet_stats and wallet_stats.total_large_trades > 1),
        )
        with self._events_lock:
            self._recent_events.appendleft(event)

        logger.info(
            "Large trade detected: wallet=%s market=%s size=$%.0f category=%s severity=%s",
            wallet[:10],
            market[:10],
            analysis.trade.size_usd,
            analysis.category.value,
            severity.value,
        )
        self.on_large_trade.notify(event)
        if analysis.category is TradeSizeCategory.WHALE:
            self.on_whale_trade.notify(event)

    # Queries

    def get_market_stats(self, market_id: str) -> MarketSizeStatsSnapshot | None:
        """Return a snapshot of a market's trade size statistics."""
        market = normalize_market_id(market_id)
        if market is None:
            return None
        entry = self._market_entry(market)
        if entry is None:
            return None
        with self._market_locks.hold(market):
            return self._snapshot(market, entry)

    def get_wallet_large_trade_stats(self, wallet_address: str) -> WalletLargeTradeStats | None:
        """Return a copy of a wallet's large trade aggregates."""
        wallet = normalize_address(wallet_address)
        if wallet is None:
            return None
        with self._wallet_locks.hold(wallet):
            stats = self._wallet_large.get(wallet)
            return _copy_wallet_stats(stats) if stats else None

    def get_market_large_trade_stats(self, market_id: str) -> MarketLargeTradeStats | None:
        """Return a copy of a market's large trade aggregates."""
        market = normalize_market_id(market_id)
        if market is None:
            return None
        with self._market_locks.hold(market):
            stats = self._market_large.get(market)
            return _copy_market_large_stats(stats) if stats else None

    def get_percentile_rank(self, market_id: str, size_usd: float) -> float | None:
        """Return where ``size_usd`` ranks among a market's retained trades."""
        market = normalize_market_id(market_id)
        entry = self._market_entry(market) if market else None
        if entry is None:
            return None
        with self._market_locks.hold(market):
            return percentile_rank(entry.reservoir.sorted_values(), size_usd)

    def get_z_score(self, market_id: str, size_usd: float) -> float | None:
        """Return the z-score of ``size_usd``, or None without reliable stats."""
        stats = self.get_market_stats(market_id)
        if stats is None or not stats.is_reliable:
            return None
        return z_score(size_usd, stats.mean, stats.std_dev)

    def is_outlier_trade(self, market_id: str, size_usd: float) -> bool:
        """Return True if a trade of this size would be flagged in the market.

        Without reliable market statistics only the absolute tiers apply.
        """
        market = normalize_market_id(market_id)
        entry = self._market_entry(market) if market else None
        if entry is None:
            return size_usd >= self.settings.large_trade_usd
        with self._market_locks.hold(market):
            stats = self._snapshot(market, entry)
            rank = percentile_rank(entry.reservoir.sorted_values(), size_usd)
        z = z_score(size_usd, stats.mean, stats.std_dev)
        category, _, _ = self._classify(size_usd, z, rank, stats.is_reliable)
        return category is not TradeSizeCategory.NORMAL

    def get_recent_large_trades(self, limit: int | None = None) -> list[LargeTradeEvent]:
        """Return recently emitted large trade events, newest first."""
        with self._events_lock:
            events = list(self._recent_events)
        return events[:limit] if limit is not None else events

    def get_summary(self, *, top_n: int = 10) -> TradeSizeSummary:
        """Summarize the analyzer's aggregates."""
        with self._state_lock:
            market_ids = list(self._market_stats)
            wallet_ids = list(self._wallet_large)
            large_market_ids = list(self._market_large)

        total_trades = 0
        for market in market_ids:
            stats = self.get_market_stats(market)
            total_trades += stats.trade_count if stats else 0

        market_counts = []
        for market in large_market_ids:
            stats = self.get_market_large_trade_stats(market)
            if stats:
                market_counts.append((market, stats.total_large_trades))
        wallet_counts = []
        for wallet in wallet_ids:
            stats = self.get_wallet_large_trade_stats(wallet)
            if stats:
                wallet_counts.append((wallet, stats.total_large_trades))

        market_counts.sort(key=lambda item: item[1], reverse=True)
        wallet_counts.sort(key=lambda item: item[1], reverse=True)

        with self._events_lock:
            counts = dict(self._category_counts)
        return TradeSizeSummary(
            total_markets=len(market_ids),
            total_trades=total_trades,
            total_large_trades=sum(count for _, count in market_counts),
            by_category={c: counts.get(c, 0) for c in TradeSizeCategory},
            top_markets=market_counts[:top_n],
            top_whale_wallets=wallet_counts[:top_n],
            recent_events=self.get_recent_large_trades(top_n),
        )

    # Reset

    def clear_market(self, market_id: str) -> bool:
        """Forget a market's statistics and large trade aggregates."""
        market = normalize_market_id(market_id)
        if market is None:
            return False
        with self._market_locks.hold(market):
            with self._state_lock:
                removed = self._market_stats.pop(market, None)
                removed_large = self._market_large.pop(market, None)
        with self._alert_lock:
            for key in [k for k in self._last_alert if k[0] == market]:
                del self._last_alert[key]
        self._market_locks.discard(market)
        return removed is not None or removed_large is not None

    def clear_wallet(self, wallet_address: str) -> bool:
        """Forget a wallet's large trade aggregates."""
        wallet = normalize_address(wallet_address)
        if wallet is None:
            return False
        with self._wallet_locks.hold(wallet):
            with self._state_lock:
                removed = self._wallet_large.pop(wallet, None)
        with self._alert_lock:
            for key in [k for k in self._last_alert if k[1] == wallet]:
                del self._last_alert[key]
        self._wallet_locks.discard(wallet)
        return removed is not None

    def clear_all(self) -> None:
        """Forget all statistics, aggregates and recent events."""
        with self._state_lock:
            self._market_stats.clear()
            self._market_large.clear()
            self._wallet_large.clear()
        self._market_locks.clear()
        self._wallet_locks.clear()
        with self._alert_lock:
            self._last_alert.clear()
        with self._events_lock:
            self._recent_events.clear()
            self._category_counts.clear()
        logger.info("Cleared all trade size state")
