"""Tests for the TradeSizeAnalyzer module."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from polymarket_insider_scoring.config import TradeSizeSettings
from polymarket_insider_scoring.detector.models import Severity, Trade
from polymarket_insider_scoring.detector.trade_size import (
    ThresholdMethod,
    TradeSizeAnalyzer,
    TradeSizeCategory,
)

BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
WALLET = "0x" + "a" * 40
OTHER_WALLET = "0x" + "b" * 40


def make_trade(
    size_usd: float,
    *,
    market_id: str = "market-1",
    wallet_address: str = WALLET,
    seconds: float = 0,
    trade_id: str | None = None,
) -> Trade:
    """Create a trade at an offset from the base time."""
    return Trade(
        trade_id=trade_id or f"t-{size_usd}-{seconds}",
        market_id=market_id,
        wallet_address=wallet_address,
        size_usd=size_usd,
        price=0.5,
        timestamp=BASE_TIME + timedelta(seconds=seconds),
    )


def seed_market(analyzer: TradeSizeAnalyzer, count: int = 100, market_id: str = "market-1") -> None:
    """Feed sizes 100, 101, ... into a market from a distinct wallet."""
    for i in range(count):
        analyzer.analyze_trade(
            make_trade(100.0 + i, market_id=market_id, wallet_address=OTHER_WALLET, seconds=i)
        )


@pytest.fixture
def analyzer() -> TradeSizeAnalyzer:
    """Create an analyzer with default thresholds."""
    return TradeSizeAnalyzer(settings=TradeSizeSettings())


class TestAbsoluteThresholds:
    """Tests for USD tiers without market history."""

    @pytest.mark.parametrize(
        ("size", "category", "severity"),
        [
            (500.0, TradeSizeCategory.NORMAL, None),
            (20_000.0, TradeSizeCategory.LARGE, Severity.LOW),
            (60_000.0, TradeSizeCategory.VERY_LARGE, Severity.MEDIUM),
            (150_000.0, TradeSizeCategory.WHALE, Severity.HIGH),
        ],
    )
    def test_tiers(
        self,
        analyzer: TradeSizeAnalyzer,
        size: float,
        category: TradeSizeCategory,
        severity: Severity | None,
    ) -> None:
        """Test each absolute tier and its severity floor."""
        result = analyzer.analyze_trade(make_trade(size))

        assert result.is_valid
        assert result.category is category
        assert result.severity is severity
        assert result.is_flagged is (category is not TradeSizeCategory.NORMAL)
        assert result.stats_reliable is False

    def test_exceeded_threshold(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test the crossed threshold is reported."""
        result = analyzer.analyze_trade(make_trade(150_000.0))

        assert result.exceeded_threshold is not None
        assert result.exceeded_threshold.method is ThresholdMethod.ABSOLUTE
        assert result.exceeded_threshold.threshold == 100_000.0


class TestStatisticalThresholds:
    """Tests for percentile and z-score tiers."""

    def test_outlier_against_history(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test a trade far above the market distribution is a whale."""
        seed_market(analyzer)

        result = analyzer.analyze_trade(make_trade(1_000.0, seconds=200))

        assert result.stats_reliable is True
        assert result.category is TradeSizeCategory.WHALE
        assert result.severity is Severity.CRITICAL
        assert result.percentile_rank == 100.0
        assert result.z_score > 4.0
        assert result.times_average == pytest.approx(1_000.0 / 149.5)
        assert result.exceeded_threshold is not None
        assert result.exceeded_threshold.method is ThresholdMethod.PERCENTILE

    def test_scored_against_prior_stats(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test a trade is folded in only after it is scored."""
        seed_market(analyzer)
        analyzer.analyze_trade(make_trade(1_000.0, seconds=200))

        stats = analyzer.get_market_stats("market-1")

        assert stats is not None
        assert stats.trade_count == 101
        assert stats.max_size == 1_000.0

    def test_unreliable_history_ignored(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test statistical tiers need enough trades."""
        seed_market(analyzer, count=10)

        result = analyzer.analyze_trade(make_trade(1_000.0, seconds=200))

        assert result.stats_reliable is False
        assert result.category is TradeSizeCategory.NORMAL
        assert result.severity is None

    def test_z_score_method_ignores_percentile(self) -> None:
        """Test the Z_SCORE method does not use percentile tiers."""
        z_only = TradeSizeAnalyzer(settings=TradeSizeSettings(method="Z_SCORE"))
        combined = TradeSizeAnalyzer(settings=TradeSizeSettings(method="COMBINED"))
        seed_market(z_only)
        seed_market(combined)

        z_result = z_only.analyze_trade(make_trade(220.0, seconds=200))
        combined_result = combined.analyze_trade(make_trade(220.0, seconds=200))

        assert z_result.category is TradeSizeCategory.LARGE
        assert z_result.severity is Severity.LOW
        assert combined_result.category is TradeSizeCategory.WHALE

    def test_percentile_method_ignores_z_score(self) -> None:
        """Test the PERCENTILE method does not use z-score tiers."""
        analyzer = TradeSizeAnalyzer(settings=TradeSizeSettings(method="PERCENTILE"))
        seed_market(analyzer)

        result = analyzer.analyze_trade(make_trade(150.0, seconds=200))

        assert result.category is TradeSizeCategory.NORMAL
        assert result.percentile_rank == pytest.approx(50.0)


class TestInvalidTrades:
    """Tests for malformed input."""

    @pytest.mark.parametrize(
        "trade",
        [
            make_trade(-1.0),
            make_trade(float("nan")),
            make_trade(float("inf")),
            make_trade(100.0, wallet_address="not-an-address"),
            make_trade(100.0, market_id=""),
        ],
    )
    def test_invalid_not_recorded(self, analyzer: TradeSizeAnalyzer, trade: Trade) -> None:
        """Test malformed trades are rejected without raising."""
        result = analyzer.analyze_trade(trade)

        assert result.is_valid is False
        assert result.category is TradeSizeCategory.NORMAL
        assert result.percentile_rank == 50.0
        assert analyzer.get_market_stats("market-1") is None

    def test_rejection_logged_as_warning(
        self, analyzer: TradeSizeAnalyzer, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test a rejected trade is reported at warning level."""
        with caplog.at_level(
            logging.WARNING, logger="polymarket_insider_scoring.detector.trade_size"
        ):
            analyzer.analyze_trade(make_trade(-5.0, trade_id="bad-size"))

        assert any(
            r.levelno == logging.WARNING and "bad-size" in r.getMessage() for r in caplog.records
        )


class TestLargeTradeTracking:
    """Tests for large trade aggregates and notifications."""

    def test_observers_and_cooldown(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test alerts are throttled per market and wallet while counts are not."""
        large = MagicMock()
        whale = MagicMock()
        analyzer.on_large_trade.subscribe(large)
        analyzer.on_whale_trade.subscribe(whale)

        analyzer.analyze_trade(make_trade(150_000.0, seconds=0, trade_id="a"))
        analyzer.analyze_trade(make_trade(150_000.0, seconds=10, trade_id="b"))
        analyzer.analyze_trade(
            make_trade(150_000.0, market_id="market-2", seconds=20, trade_id="c")
        )

        assert large.call_count == 2
        assert whale.call_count == 2
        stats = analyzer.get_wallet_large_trade_stats(WALLET)
        assert stats is not None
        assert stats.total_large_trades == 3
        assert stats.by_severity[Severity.HIGH] == 3
        assert stats.average_large_trade_size_usd == pytest.approx(150_000.0)

    def test_bypass_cooldown(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test bypass_cooldown notifies every flagged trade."""
        large = MagicMock()
        analyzer.on_large_trade.subscribe(large)

        analyzer.analyze_trade(make_trade(20_000.0, seconds=0), bypass_cooldown=True)
        analyzer.analyze_trade(make_trade(20_000.0, seconds=1), bypass_cooldown=True)

        assert large.call_count == 2
        event = large.call_args[0][0]
        assert event.is_repeat_large_trader is True
        assert event.wallet_recent_large_trade_count == 2

    def test_large_trade_not_whale(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test whale observers only see whale trades."""
        whale = MagicMock()
        analyzer.on_whale_trade.subscribe(whale)

        analyzer.analyze_trade(make_trade(20_000.0))

        whale.assert_not_called()

    def test_market_unique_traders(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test distinct wallets are counted per market."""
        analyzer.analyze_trade(make_trade(20_000.0, seconds=0))
        analyzer.analyze_trade(make_trade(20_000.0, wallet_address=OTHER_WALLET, seconds=5))

        stats = analyzer.get_market_large_trade_stats("market-1")

        assert stats is not None
        assert stats.total_large_trades == 2
        assert stats.unique_large_traders == 2
        assert stats.total_large_trade_volume_usd == pytest.approx(40_000.0)

    def test_recent_window_prunes(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test old entries leave the recent list but not the totals."""
        analyzer.analyze_trade(make_trade(20_000.0, seconds=0))
        analyzer.analyze_trade(make_trade(20_000.0, seconds=2 * 3600))

        stats = analyzer.get_wallet_large_trade_stats(WALLET)

        assert stats is not None
        assert stats.total_large_trades == 2
        assert len(stats.recent_large_trades) == 1

    def test_naive_trade_timestamps_treated_as_utc(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test trades without a timezone mix with aware trades in cooldowns and windows."""
        large = MagicMock()
        analyzer.on_large_trade.subscribe(large)
        naive = Trade(
            trade_id="naive",
            market_id="market-1",
            wallet_address=WALLET,
            size_usd=20_000.0,
            price=0.5,
            timestamp=BASE_TIME.replace(tzinfo=None),
        )

        analyzer.analyze_trade(naive)
        analyzer.analyze_trade(make_trade(20_000.0, seconds=30, trade_id="aware"))

        assert large.call_count == 1
        stats = analyzer.get_wallet_large_trade_stats(WALLET)
        assert stats is not None
        assert len(stats.recent_large_trades) == 2
        assert stats.first_large_trade_at == BASE_TIME

    def test_stats_are_copies(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test returned aggregates do not alias internal state."""
        analyzer.analyze_trade(make_trade(20_000.0))
        stats = analyzer.get_wallet_large_trade_stats(WALLET)
        assert stats is not None
        stats.total_large_trades = 99

        fresh = analyzer.get_wallet_large_trade_stats(WALLET)
        assert fresh is not None
        assert fresh.total_large_trades == 1


class TestQueries:
    """Tests for query helpers."""

    def test_percentile_rank(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test rank against retained sizes."""
        seed_market(analyzer)

        assert analyzer.get_percentile_rank("market-1", 150.0) == pytest.approx(50.0)
        assert analyzer.get_percentile_rank("unknown", 150.0) is None

    def test_z_score(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test z-score needs reliable stats."""
        seed_market(analyzer, count=10, market_id="thin")
        seed_market(analyzer)

        assert analyzer.get_z_score("thin", 500.0) is None
        z = analyzer.get_z_score("market-1", 149.5)
        assert z == pytest.approx(0.0, abs=1e-9)

    def test_is_outlier_trade(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test outlier checks with and without history."""
        assert analyzer.is_outlier_trade("unknown", 10_000.0)
        assert not analyzer.is_outlier_trade("unknown", 9_999.0)

        seed_market(analyzer)
        assert analyzer.is_outlier_trade("market-1", 1_000.0)
        assert not analyzer.is_outlier_trade("market-1", 120.0)

    def test_market_stats_snapshot(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test the market statistics snapshot."""
        seed_market(analyzer)

        stats = analyzer.get_market_stats("MARKET-1")

        assert stats is not None
        assert stats.trade_count == 100
        assert stats.mean == pytest.approx(149.5)
        assert stats.min_size == 100.0
        assert stats.median == pytest.approx(149.5)
        assert stats.is_reliable


class TestBatchSummaryAndReset:
    """Tests for batch analysis, summary and reset."""

    def test_analyze_trades(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test batch results keep input order and count categories."""
        trades = [
            make_trade(100.0),
            make_trade(20_000.0, seconds=1),
            make_trade(150_000.0, seconds=2),
        ]

        batch = analyzer.analyze_trades(trades)

        assert [r.trade for r in batch.results] == trades
        assert batch.flagged_count == 2
        assert batch.by_category[TradeSizeCategory.WHALE] == 1
        assert batch.by_category[TradeSizeCategory.NORMAL] == 1

    def test_summary(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test summary totals."""
        seed_market(analyzer, count=5)
        analyzer.analyze_trade(make_trade(150_000.0, seconds=100))

        summary = analyzer.get_summary()

        assert summary.total_markets == 1
        assert summary.total_trades == 6
        assert summary.total_large_trades == 1
        assert summary.by_category[TradeSizeCategory.WHALE] == 1
        assert summary.top_whale_wallets == [(WALLET, 1)]
        assert len(summary.recent_events) == 1

    def test_clear_market_and_wallet(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test per-key reset."""
        analyzer.analyze_trade(make_trade(20_000.0))

        assert analyzer.clear_market("market-1") is True
        assert analyzer.get_market_stats("market-1") is None
        assert analyzer.clear_wallet(WALLET) is True
        assert analyzer.clear_wallet(WALLET) is False

    def test_clear_all(self, analyzer: TradeSizeAnalyzer) -> None:
        """Test full reset."""
        analyzer.analyze_trade(make_trade(150_000.0))
        analyzer.clear_all()

        summary = analyzer.get_summary()
        assert summary.total_markets == 0
        assert summary.recent_events == []
