"""Tests for the HistoricalScoreCalibrator module."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest

from polymarket_insider_scoring.config import CalibratorSettings
from polymarket_insider_scoring.detector.calibrator import (
    AdjustmentType,
    CalibrationImportError,
    CalibrationQuality,
    HistoricalScoreCalibrator,
    ScoreBucket,
)
from polymarket_insider_scoring.detector.models import OutcomeType


def wallet(index: int) -> str:
    """Return a distinct valid wallet address."""
    return f"0x{index:040x}"


def outcome_for(score: float, positive: bool, threshold: float = 50.0) -> OutcomeType:
    """Map ground truth to the outcome implied by an alert threshold."""
    flagged = score >= threshold
    if positive:
        return OutcomeType.TRUE_POSITIVE if flagged else OutcomeType.FALSE_NEGATIVE
    return OutcomeType.FALSE_POSITIVE if flagged else OutcomeType.TRUE_NEGATIVE


def record_group(
    calibrator: HistoricalScoreCalibrator,
    score: float,
    total: int,
    positives: int,
    *,
    offset: int = 0,
) -> list[tuple[float, bool]]:
    """Record ``total`` outcomes at one score; returns (score, label) pairs."""
    samples = []
    for i in range(total):
        positive = i < positives
        calibrator.record_outcome(wallet(offset + i), score, outcome_for(score, positive))
        samples.append((score, positive))
    return samples


def brier(samples: list[tuple[float, bool]], mapping: Any = None) -> float:
    """Mean squared error of (optionally mapped) scores as probabilities."""
    total = 0.0
    for score, positive in samples:
        value = mapping(score) if mapping else score
        total += (value / 100.0 - float(positive)) ** 2
    return total / len(samples)


@pytest.fixture
def calibrator() -> HistoricalScoreCalibrator:
    """Create a calibrator with default settings."""
    return HistoricalScoreCalibrator(settings=CalibratorSettings())


@pytest.fixture
def calibrated_five_groups(calibrator: HistoricalScoreCalibrator) -> HistoricalScoreCalibrator:
    """Five groups of 100 whose positive rate equals their score."""
    for group, score in enumerate((10, 30, 50, 70, 90)):
        record_group(calibrator, score, 100, score, offset=group * 100)
    return calibrator


class TestScoreBucket:
    """Tests for ScoreBucket."""

    def test_bounds(self) -> None:
        """Test bucket edges and midpoints."""
        assert ScoreBucket.B0_10.min_score == 0.0
        assert ScoreBucket.B40_50.midpoint == 45.0
        assert ScoreBucket.B90_100.max_score == 100.0

    @pytest.mark.parametrize(
        ("score", "bucket"),
        [
            (0.0, ScoreBucket.B0_10),
            (9.99, ScoreBucket.B0_10),
            (10.0, ScoreBucket.B10_20),
            (100.0, ScoreBucket.B90_100),
        ],
    )
    def test_for_score(self, score: float, bucket: ScoreBucket) -> None:
        """Test lower edges are inclusive and 100 lands in the top bucket."""
        assert ScoreBucket.for_score(score) is bucket


class TestRecordOutcome:
    """Tests for storing and updating outcomes."""

    def test_record(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test a record is stored with a clamped score."""
        record = calibrator.record_outcome(wallet(1), 150.0, metadata={"source": "test"})

        assert record is not None
        assert record.original_score == 100.0
        assert record.outcome is OutcomeType.UNKNOWN
        assert record.outcome_determined_at is None
        assert record.metadata == {"source": "test"}
        assert calibrator.get_wallet_outcomes(wallet(1)) == [record]

    def test_invalid_wallet(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test malformed addresses are not stored."""
        assert calibrator.record_outcome("bogus", 50.0) is None
        assert calibrator.get_all_outcomes() == []

    def test_update_prefers_pending(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test updates resolve the newest pending record first."""
        first = calibrator.record_outcome(wallet(1), 40.0)
        second = calibrator.record_outcome(wallet(1), 60.0)
        assert first is not None and second is not None

        updated = calibrator.update_outcome(wallet(1), OutcomeType.TRUE_POSITIVE)
        assert updated is not None
        assert updated.record_id == second.record_id
        assert updated.outcome_determined_at is not None

        updated = calibrator.update_outcome(wallet(1), OutcomeType.TRUE_NEGATIVE)
        assert updated is not None
        assert updated.record_id == first.record_id

        updated = calibrator.update_outcome(wallet(1), OutcomeType.FALSE_POSITIVE)
        assert updated is not None
        assert updated.record_id == second.record_id

    def test_update_unknown_wallet(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test updating a wallet without records."""
        assert calibrator.update_outcome(wallet(9), OutcomeType.TRUE_POSITIVE) is None

    def test_update_by_id(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test updating a specific record."""
        record = calibrator.record_outcome(wallet(1), 70.0)
        assert record is not None

        updated = calibrator.update_outcome_by_id(record.record_id, OutcomeType.FALSE_NEGATIVE)

        assert updated is not None
        assert updated.outcome is OutcomeType.FALSE_NEGATIVE
        assert calibrator.update_outcome_by_id("missing", OutcomeType.TRUE_POSITIVE) is None

    def test_ring_buffer(self) -> None:
        """Test the oldest records are evicted past the cap."""
        calibrator = HistoricalScoreCalibrator(settings=CalibratorSettings(max_outcomes_to_store=3))
        for i in range(5):
            calibrator.record_outcome(wallet(i), float(i))

        assert [r.original_score for r in calibrator.get_all_outcomes()] == [2.0, 3.0, 4.0]


class TestCalculateCalibration:
    """Tests for a calibration run."""

    def test_insufficient_data(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test too few known outcomes leave scores untouched."""
        record_group(calibrator, 80, 10, 2)

        result = calibrator.calculate_calibration()

        assert result.quality is CalibrationQuality.INSUFFICIENT_DATA
        assert result.is_calibrated is False
        assert result.optimized_threshold == 50
        assert [r.type for r in result.recommendations] == [AdjustmentType.NONE]
        assert calibrator.calibrate_score(80.0) == 80.0

    def test_unknown_outcomes_penalized(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test pending records count as maximal error."""
        calibrator.record_outcome(wallet(1), 50.0)

        result = calibrator.calculate_calibration()

        assert result.brier_score == 1.0
        assert result.sample_count == 0
        assert result.total_records == 1
        assert result.outcome_counts[OutcomeType.UNKNOWN] == 1

    def test_empty(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test an empty calibrator reports the worst Brier score."""
        result = calibrator.calculate_calibration()

        assert result.brier_score == 1.0
        assert result.auc_roc == 0.5

    def test_well_calibrated(self, calibrated_five_groups: HistoricalScoreCalibrator) -> None:
        """Test metrics for scores that match observed rates."""
        result = calibrated_five_groups.calculate_calibration()

        assert result.is_calibrated is True
        assert result.sample_count == 500
        assert result.brier_score == pytest.approx(0.17)
        assert result.expected_calibration_error == pytest.approx(0.0, abs=1e-9)
        assert result.quality is CalibrationQuality.GOOD
        assert result.precision == pytest.approx(0.7)
        assert result.recall == pytest.approx(0.84)
        assert result.false_positive_rate == pytest.approx(0.36)
        assert result.auc_roc > 0.5
        assert result.optimized_threshold == 31
        assert result.recommendations == []

    def test_reliability_curve(self, calibrated_five_groups: HistoricalScoreCalibrator) -> None:
        """Test per-bucket statistics."""
        result = calibrated_five_groups.calculate_calibration()
        by_bucket = {b.bucket: b for b in result.reliability_curve}

        populated = by_bucket[ScoreBucket.B30_40]
        assert populated.sample_count == 100
        assert populated.positive_count == 30
        assert populated.actual_positive_rate == pytest.approx(0.3)
        assert not populated.outside_confidence_interval

        empty = by_bucket[ScoreBucket.B20_30]
        assert empty.sample_count == 0
        assert empty.confidence_interval is None

    def test_adjustment_curve_monotone(
        self, calibrated_five_groups: HistoricalScoreCalibrator
    ) -> None:
        """Test the correction curve never decreases."""
        result = calibrated_five_groups.calculate_calibration()
        values = [result.score_adjustment_curve[b] for b in ScoreBucket]

        assert values == sorted(values)
        assert result.score_adjustment_curve[ScoreBucket.B30_40] == pytest.approx(30.0)

    def test_calibrate_score(self, calibrated_five_groups: HistoricalScoreCalibrator) -> None:
        """Test scores are mapped through the learned curve."""
        calibrated_five_groups.calculate_calibration()

        assert calibrated_five_groups.calibrate_score(35.0) == pytest.approx(30.0)
        low = calibrated_five_groups.calibrate_score(-10.0)
        assert low <= calibrated_five_groups.calibrate_score(50.0)
        previous = -1.0
        for raw in range(0, 101, 5):
            adjusted = calibrated_five_groups.calibrate_score(float(raw))
            assert 0.0 <= adjusted <= 100.0
            assert adjusted >= previous
            previous = adjusted

    def test_poor_calibration_recommends(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test confident false alarms produce POOR quality and advice."""
        recalibrate = MagicMock()
        completed = MagicMock()
        calibrator.on_recalibration_recommended.subscribe(recalibrate)
        calibrator.on_calibration_completed.subscribe(completed)
        record_group(calibrator, 90, 100, 0)

        result = calibrator.calculate_calibration()

        assert result.quality is CalibrationQuality.POOR
        assert result.auc_roc == 0.5
        assert [r.type for r in result.recommendations] == [
            AdjustmentType.RECALIBRATE_BUCKETS,
            AdjustmentType.INCREASE_THRESHOLD,
            AdjustmentType.DECREASE_THRESHOLD,
        ]
        completed.assert_called_once_with(result)
        recalibrate.assert_called_once_with(result)

    def test_no_recalibration_event_when_disabled(self) -> None:
        """Test auto adjustment can be switched off."""
        calibrator = HistoricalScoreCalibrator(
            settings=CalibratorSettings(enable_auto_adjustment=False)
        )
        recalibrate = MagicMock()
        calibrator.on_recalibration_recommended.subscribe(recalibrate)
        record_group(calibrator, 90, 100, 0)

        calibrator.calculate_calibration()

        recalibrate.assert_not_called()

    def test_old_records_ignored(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test records older than the maximum age are left out."""
        calibrator.record_outcome(
            wallet(1),
            50.0,
            OutcomeType.TRUE_POSITIVE,
            scored_at=datetime.now(UTC) - timedelta(days=40),
        )
        calibrator.record_outcome(wallet(2), 50.0, OutcomeType.TRUE_POSITIVE)

        result = calibrator.calculate_calibration()

        assert result.total_records == 1

    def test_naive_scored_at_treated_as_utc(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test records scored with a timezone-less time still calibrate."""
        naive_now = datetime.now(UTC).replace(tzinfo=None)
        record = calibrator.record_outcome(
            wallet(1), 50.0, OutcomeType.TRUE_POSITIVE, scored_at=naive_now - timedelta(hours=1)
        )
        calibrator.record_outcome(
            wallet(2),
            50.0,
            OutcomeType.TRUE_POSITIVE,
            scored_at=naive_now - timedelta(days=40),
        )

        result = calibrator.calculate_calibration()

        assert record is not None
        assert record.scored_at.tzinfo is not None
        assert result.total_records == 1
        assert calibrator.get_summary().total_outcomes == 2

    def test_brier_history(self, calibrated_five_groups: HistoricalScoreCalibrator) -> None:
        """Test each run is appended to the Brier history."""
        calibrated_five_groups.calculate_calibration()
        calibrated_five_groups.calculate_calibration()

        history = calibrated_five_groups.get_brier_history()

        assert len(history) == 2
        assert history[-1].sample_count == 500

    def test_repeated_rounds_improve_brier(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test the curve lowers Brier score and stays stable as data grows."""
        samples: list[tuple[float, bool]] = []
        calibrated_scores = []
        for round_index in range(3):
            for group, raw in enumerate(range(5, 100, 10)):
                positives = round(20 * (raw / 100) ** 2)
                offset = round_index * 1_000 + group * 20
                samples.extend(record_group(calibrator, raw, 20, positives, offset=offset))

            result = calibrator.calculate_calibration()
            assert result.is_calibrated

            raw_brier = brier(samples)
            adjusted_brier = brier(samples, calibrator.calibrate_score)
            assert adjusted_brier < raw_brier
            calibrated_scores.append(adjusted_brier)

        for earlier, later in zip(calibrated_scores, calibrated_scores[1:]):
            assert later <= earlier + 1e-6


class TestSummaryAndReset:
    """Tests for summary and reset."""

    def test_summary(self, calibrated_five_groups: HistoricalScoreCalibrator) -> None:
        """Test summary after a run."""
        calibrated_five_groups.calculate_calibration()

        summary = calibrated_five_groups.get_summary()

        assert summary.total_outcomes == 500
        assert summary.by_outcome[OutcomeType.TRUE_POSITIVE] == 210
        assert summary.current_quality is CalibrationQuality.GOOD
        assert summary.current_brier_score == pytest.approx(0.17)
        assert summary.hours_since_calibration is not None

    def test_summary_before_calibration(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test summary with no runs."""
        summary = calibrator.get_summary()

        assert summary.current_quality is CalibrationQuality.INSUFFICIENT_DATA
        assert summary.last_calibration_at is None

    def test_clear_outcomes(self, calibrated_five_groups: HistoricalScoreCalibrator) -> None:
        """Test clearing drops records and the learned curve."""
        calibrated_five_groups.calculate_calibration()
        calibrated_five_groups.clear_outcomes()

        assert calibrated_five_groups.get_all_outcomes() == []
        assert calibrated_five_groups.get_last_calibration() is None
        assert calibrated_five_groups.calibrate_score(35.0) == 35.0


class TestPersistence:
    """Tests for export and import."""

    def test_round_trip(self, calibrated_five_groups: HistoricalScoreCalibrator) -> None:
        """Test an exported calibrator can be restored elsewhere."""
        calibrated_five_groups.calculate_calibration()
        exported = calibrated_five_groups.export_data()

        restored = HistoricalScoreCalibrator(settings=CalibratorSettings())
        assert restored.import_data(exported) == 500

        assert restored.calibrate_score(35.0) == calibrated_five_groups.calibrate_score(35.0)
        assert len(restored.get_brier_history()) == 1
        assert restored.get_all_outcomes()[0].record_id == exported["outcomes"][0]["record_id"]

    def test_export_without_curve(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test export before any calibrated run."""
        exported = calibrator.export_data()

        assert exported["version"] == 1
        assert exported["outcomes"] == []
        assert exported["adjustment_curve"] is None

    def test_import_replaces_state(self, calibrator: HistoricalScoreCalibrator) -> None:
        """Test import discards existing records."""
        calibrator.record_outcome(wallet(1), 10.0)
        payload = {
            "outcomes": [
                {
                    "wallet_address": wallet(2),
                    "original_score": 40.0,
                    "outcome": "TRUE_POSITIVE",
                    "scored_at": "2026-01-01T00:00:00",
                }
            ]
        }

        assert calibrator.import_data(payload) == 1

        records = calibrator.get_all_outcomes()
        assert [r.wallet_address for r in records] == [wallet(2)]
        assert records[0].scored_at.tzinfo is not None

    @pytest.mark.parametrize(
        "payload",
        [
            {"outcomes": "nope"},
            {
                "outcomes": [
                    {
                        "wallet_address": "bogus",
                        "original_score": 1,
                        "scored_at": "2026-01-01T00:00:00+00:00",
                    }
                ]
            },
            {"outcomes": [], "adjustment_curve": {"0-10": 5.0}},
            {
                "outcomes": [],
                "adjustment_curve": {b.value: 100.0 - b.midpoint for b in ScoreBucket},
            },
        ],
    )
    def test_import_rejects_malformed(
        self, calibrator: HistoricalScoreCalibrator, payload: dict[str, Any]
    ) -> None:
        """Test malformed payloads raise and leave state untouched."""
        calibrator.record_outcome(wallet(1), 10.0)

        with pytest.raises(CalibrationImportError):
            calibrator.import_data(payload)

        assert len(calibrator.get_all_outcomes()) == 1
