"""Historical calibration of suspicion scores against confirmed outcomes.

Scores handed out by the detectors are stored together with the ground
truth once it is known. A calibration run measures how well the scores
predicted that truth (Brier score, reliability curve, expected
calibration error, AUC and threshold metrics) and learns a monotonic
correction curve that ``calibrate_score`` applies to future scores.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter, deque
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import numpy as np
from pydantic import BaseModel, Field, ValidationError
from sklearn.isotonic import IsotonicRegression
from sklearn.metrics import roc_auc_score

from polymarket_insider_scoring.config import CalibratorSettings
from polymarket_insider_scoring.detector.concurrency import ObserverList
from polymarket_insider_scoring.detector.models import (
    DetectorError,
    OutcomeType,
    as_utc,
    normalize_address,
    utc_now,
)
from polymarket_insider_scoring.metrics import (
    ANALYSIS_LATENCY,
    CALIBRATION_BRIER_SCORE,
    CALIBRATION_RUNS_TOTAL,
)

logger = logging.getLogger(__name__)

CONFIDENCE_Z = 1.96
LOG_LOSS_EPSILON = 1e-15
EXPORT_VERSION = 1


class CalibrationImportError(DetectorError):
    """Raised when an exported calibration payload cannot be imported."""


class CalibrationQuality(str, Enum):
    """Overall calibration quality tier."""

    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"

    @property
    def rank(self) -> int:
        return _QUALITY_ORDER.index(self)


_QUALITY_ORDER = [
    CalibrationQuality.EXCELLENT,
    CalibrationQuality.GOOD,
    CalibrationQuality.FAIR,
    CalibrationQuality.POOR,
    CalibrationQuality.INSUFFICIENT_DATA,
]


class ScoreBucket(str, Enum):
    """Ten equal-width score buckets over 0-100."""

    B0_10 = "0-10"
    B10_20 = "10-20"
    B20_30 = "20-30"
    B30_40 = "30-40"
    B40_50 = "40-50"
    B50_60 = "50-60"
    B60_70 = "60-70"
    B70_80 = "70-80"
    B80_90 = "80-90"
    B90_100 = "90-100"

    @property
    def position(self) -> int:
        return _BUCKETS.index(self)

    @property
    def min_score(self) -> float:
        return self.position * 10.0

    @property
    def max_score(self) -> float:
        return self.min_score + 10.0

    @property
    def midpoint(self) -> float:
        return self.min_score + 5.0

    @classmethod
    def for_score(cls, score: float) -> ScoreBucket:
        """Return the bucket containing a 0-100 score (100 falls in the top bucket)."""
        return _BUCKETS[min(int(score // 10), len(_BUCKETS) - 1)]


_BUCKETS = list(ScoreBucket)
_MIDPOINTS = np.array([b.midpoint for b in _BUCKETS])


class AdjustmentType(str, Enum):
    """Kinds of recommended calibration adjustments."""

    NONE = "NONE"
    INCREASE_SENSITIVITY = "INCREASE_SENSITIVITY"
    DECREASE_SENSITIVITY = "DECREASE_SENSITIVITY"
    INCREASE_THRESHOLD = "INCREASE_THRESHOLD"
    DECREASE_THRESHOLD = "DECREASE_THRESHOLD"
    RECALIBRATE_BUCKETS = "RECALIBRATE_BUCKETS"


OUTCOME_DESCRIPTIONS = {
    OutcomeType.TRUE_POSITIVE: "Correctly identified suspicious activity",
    OutcomeType.FALSE_POSITIVE: "Incorrectly flagged normal activity as suspicious",
    OutcomeType.TRUE_NEGATIVE: "Correctly identified normal activity",
    OutcomeType.FALSE_NEGATIVE: "Missed suspicious activity (not detected)",
    OutcomeType.UNKNOWN: "Outcome not yet determined",
}

QUALITY_DESCRIPTIONS = {
    CalibrationQuality.EXCELLENT: "Excellent calibration - scores accurately predict outcomes",
    CalibrationQuality.GOOD: "Good calibration - scores reasonably predict outcomes",
    CalibrationQuality.FAIR: "Fair calibration - some adjustment may improve accuracy",
    CalibrationQuality.POOR: "Poor calibration - significant adjustment recommended",
    CalibrationQuality.INSUFFICIENT_DATA: "Not enough historical data for calibration",
}

ADJUSTMENT_DESCRIPTIONS = {
    AdjustmentType.NONE: "No adjustment needed",
    AdjustmentType.INCREASE_SENSITIVITY: "Increase sensitivity to catch more true positives",
    AdjustmentType.DECREASE_SENSITIVITY: "Decrease sensitivity to reduce false positives",
    AdjustmentType.INCREASE_THRESHOLD: "Raise threshold to reduce alerts",
    AdjustmentType.DECREASE_THRESHOLD: "Lower threshold to capture more activity",
    AdjustmentType.RECALIBRATE_BUCKETS: "Recalibrate score bucket mappings",
}


def _clamp_score(score: float) -> float:
    if not np.isfinite(score):
        return 0.0
    return float(min(100.0, max(0.0, score)))


@dataclass(frozen=True)
class OutcomeRecord:
    """A scored wallet and, once known, its ground truth."""

    record_id: str
    wallet_address: str
    original_score: float
    outcome: OutcomeType
    scored_at: datetime
    outcome_determined_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def predicted_probability(self) -> float:
        return self.original_score / 100.0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "record_id": self.record_id,
            "wallet_address": self.wallet_address,
            "original_score": self.original_score,
            "outcome": self.outcome.value,
            "scored_at": self.scored_at.isoformat(),
            "outcome_determined_at": (
                self.outcome_determined_at.isoformat() if self.outcome_determined_at else None
            ),
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class BucketStats:
    """Reliability statistics for one score bucket.

    ``confidence_interval`` is None for an empty bucket.
    """

    bucket: ScoreBucket
    sample_count: int
    positive_count: int
    avg_predicted_probability: float
    actual_positive_rate: float
    calibration_error: float
    confidence_interval: tuple[float, float] | None

    @property
    def outside_confidence_interval(self) -> bool:
        """True when the predicted rate falls outside the observed rate's interval."""
        if self.confidence_interval is None:
            return False
        lower, upper = self.confidence_interval
        return not lower <= self.avg_predicted_probability <= upper


@dataclass(frozen=True)
class SuggestedChange:
    parameter: str
    current_value: float
    suggested_value: float
    expected_improvement: str


@dataclass(frozen=True)
class AdjustmentRecommendation:
    """A suggested change to thresholds or bucket mappings."""

    type: AdjustmentType
    description: str
    reason: str
    suggested_changes: list[SuggestedChange]
    confidence: int
    priority: int


@dataclass(frozen=True)
class BrierHistoryEntry:
    brier_score: float
    sample_count: int
    calculated_at: datetime


@dataclass(frozen=True)
class CalibrationResult:
    """Metrics and corrections from one calibration run.

    Attributes:
        quality: Overall quality tier.
        brier_score: Mean squared error over all records (UNKNOWN counts as 1).
        log_loss: Cross-entropy over records with known outcomes.
        expected_calibration_error: Sample-weighted mean bucket gap.
        max_calibration_error: Largest gap of any non-empty bucket.
        auc_roc: Area under the ROC curve (0.5 with a single class).
        precision: Precision at the current threshold.
        recall: Recall at the current threshold.
        f1_score: F1 at the current threshold.
        true_positive_rate: Same as recall.
        false_positive_rate: False positive rate at the current threshold.
        reliability_curve: One entry per score bucket.
        sample_count: Records with a known outcome.
        total_records: All records inside the age limit.
        outcome_counts: Records per outcome type.
        recommendations: Suggested adjustments, highest priority first.
        optimized_threshold: Integer threshold maximising F1.
        score_adjustment_curve: Calibrated score at each bucket midpoint.
        is_calibrated: Whether enough known outcomes were available.
        calibrated_at: When the run completed.
    """

    quality: CalibrationQuality
    brier_score: float
    log_loss: float
    expected_calibration_error: float
    max_calibration_error: float
    auc_roc: float
    precision: float
    recall: float
    f1_score: float
    true_positive_rate: float
    false_positive_rate: float
    reliability_curve: list[BucketStats]
    sample_count: int
    total_records: int
    outcome_counts: dict[OutcomeType, int]
    recommendations: list[AdjustmentRecommendation]
    optimized_threshold: float
    score_adjustment_curve: dict[ScoreBucket, float]
    is_calibrated: bool
    calibrated_at: datetime


@dataclass
class CalibrationSummary:
    """Aggregate view of the calibrator's state."""

    total_outcomes: int
    by_outcome: dict[OutcomeType, int]
    current_quality: CalibrationQuality
    current_brier_score: float | None
    brier_history: list[BrierHistoryEntry]
    active_recommendations: int
    last_calibration_at: datetime | None
    hours_since_calibration: float | None


class _OutcomePayload(BaseModel):
    record_id: str | None = None
    wallet_address: str
    original_score: float
    outcome: OutcomeType = OutcomeType.UNKNOWN
    scored_at: datetime
    outcome_determined_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class _BrierPayload(BaseModel):
    brier_score: float = Field(ge=0, le=1)
    sample_count: int = Field(ge=0)
    calculated_at: datetime


class _ExportPayload(BaseModel):
    version: int = EXPORT_VERSION
    outcomes: list[_OutcomePayload]
    brier_history: list[_BrierPayload] = Field(default_factory=list)
    adjustment_curve: dict[ScoreBucket, float] | None = None


def _quality_tier(value: float, excellent: float, good: float, fair: float) -> CalibrationQuality:
    if value < excellent:
        return CalibrationQuality.EXCELLENT
    if value < good:
        return CalibrationQuality.GOOD
    if value < fair:
        return CalibrationQuality.FAIR
    return CalibrationQuality.POOR


def _confusion(
    scores: np.ndarray, labels: np.ndarray, threshold: float
) -> tuple[int, int, int, int]:
    flagged = scores >= threshold
    tp = int(np.sum(flagged & labels))
    fp = int(np.sum(flagged & ~labels))
    fn = int(np.sum(~flagged & labels))
    tn = int(np.sum(~flagged & ~labels))
    return tp, fp, fn, tn


def _f1(precision: float, recall: float) -> float:
    if precision + recall == 0:
        return 0.0
    return 2 * precision * recall / (precision + recall)


class HistoricalScoreCalibrator:
    """Measures and corrects the calibration of suspicion scores.

    Outcome records live in a bounded ring buffer guarded by a single
    lock. ``calculate_calibration`` copies the records once and derives
    every metric of the run from that copy.

    Example:
        ```python
        calibrator = HistoricalScoreCalibrator()
        calibrator.record_outcome(wallet, 72.0)
        ...
        calibrator.update_outcome(wallet, OutcomeType.TRUE_POSITIVE)
        result = calibrator.calculate_calibration()
        adjusted = calibrator.calibrate_score(65.0)
        ```
    """

    def __init__(self, *, settings: CalibratorSettings | None = None) -> None:
        """Initialize the calibrator.

        Args:
            settings: Calibrator settings (defaults loaded from environment).
        """
        self.settings = settings or CalibratorSettings()

        self.on_calibration_completed: ObserverList[CalibrationResult] = ObserverList(
            "calibration_completed"
        )
        self.on_recalibration_recommended: ObserverList[CalibrationResult] = ObserverList(
            "recalibration_recommended"
        )

        self._records: deque[OutcomeRecord] = deque(maxlen=self.settings.max_outcomes_to_store)
        self._records_lock = threading.RLock()

        self._calibration_lock = threading.Lock()
        self._last_calibration: CalibrationResult | None = None
        self._curve: np.ndarray | None = None
        self._brier_history: deque[BrierHistoryEntry] = deque(
            maxlen=self.settings.max_brier_history
        )

    # Outcome recording

    def record_outcome(
        self,
        wallet_address: str,
        score: float,
        outcome: OutcomeType = OutcomeType.UNKNOWN,
        *,
        scored_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> OutcomeRecord | None:
        """Store a scored wallet.

        Args:
            wallet_address: Wallet that was scored.
            score: Suspicion score; clamped to 0-100.
            outcome: Ground truth, if already known.
            scored_at: When the score was produced (default: now).
            metadata: Free-form context stored with the record.

        Returns:
            The stored record, or None for a malformed address.
        """
        wallet = normalize_address(wallet_address)
        if wallet is None:
            logger.warning("Ignoring outcome for invalid wallet: %s", wallet_address)
            return None

        now = utc_now()
        record = OutcomeRecord(
            record_id=str(uuid.uuid4()),
            wallet_address=wallet,
            original_score=_clamp_score(score),
            outcome=outcome,
            scored_at=as_utc(scored_at) if scored_at is not None else now,
            outcome_determined_at=now if outcome.is_known else None,
            metadata=dict(metadata or {}),
        )
        with self._records_lock:
            if len(self._records) == self._records.maxlen:
                logger.debug("Outcome buffer full, evicting oldest record")
            self._records.append(record)
        return record

    def _replace_at(self, index: int, outcome: OutcomeType) -> OutcomeRecord:
        updated = replace(
            self._records[index],
            outcome=outcome,
            outcome_determined_at=utc_now() if outcome.is_known else None,
        )
        self._records[index] = updated
        return updated

    def update_outcome(self, wallet_address: str, outcome: OutcomeType) -> OutcomeRecord | None:
        """Set the ground truth for a wallet's most recent pending record.

        Falls back to the wallet's most recent record when none is pending.

        Returns:
            The updated record, or None if the wallet has no records.
        """
        wallet = normalize_address(wallet_address)
        if wallet is None:
            return None
        with self._records_lock:
            latest: int | None = None
            for index in range(len(self._records) - 1, -1, -1):
                record = self._records[index]
                if record.wallet_address != wallet:
                    continue
                if latest is None:
                    latest = index
                if record.outcome is OutcomeType.UNKNOWN:
                    return self._replace_at(index, outcome)
            if latest is None:
                return None
            return self._replace_at(latest, outcome)

    def update_outcome_by_id(self, record_id: str, outcome: OutcomeType) -> OutcomeRecord | None:
        """Set the ground truth for a specific record."""
        with self._records_lock:
            for index, record in enumerate(self._records):
                if record.record_id == record_id:
                    return self._replace_at(index, outcome)
        return None

    def _snapshot(self) -> list[OutcomeRecord]:
        cutoff = utc_now() - timedelta(hours=self.settings.max_outcome_age_hours)
        with self._records_lock:
            return [r for r in self._records if r.scored_at >= cutoff]

    # Calibration

    def calculate_calibration(self) -> CalibrationResult:
        """Run a calibration pass over the stored outcomes."""
        with ANALYSIS_LATENCY.labels(component="calibrator").time():
            result = self._calculate(self._snapshot())

        with self._calibration_lock:
            self._last_calibration = result
            self._curve = (
                np.array([result.score_adjustment_curve[b] for b in _BUCKETS])
                if result.is_calibrated
                else None
            )
            self._brier_history.append(
                BrierHistoryEntry(
                    brier_score=result.brier_score,
                    sample_count=result.sample_count,
                    calculated_at=result.calibrated_at,
                )
            )

        CALIBRATION_RUNS_TOTAL.labels(quality=result.quality.value).inc()
        CALIBRATION_BRIER_SCORE.set(result.brier_score)
        logger.info(
            "Calibration completed: quality=%s brier=%.4f ece=%.4f samples=%d",
            result.quality.value,
            result.brier_score,
            result.expected_calibration_error,
            result.sample_count,
        )

        self.on_calibration_completed.notify(result)
        if result.quality is CalibrationQuality.POOR and self.settings.enable_auto_adjustment:
            logger.warning("Recalibration recommended: brier=%.4f", result.brier_score)
            self.on_recalibration_recommended.notify(result)
        return result

    def _calculate(self, records: list[OutcomeRecord]) -> CalibrationResult:
        s = self.settings
        counts = Counter(r.outcome for r in records)
        known = [r for r in records if r.outcome.is_known]

        if records:
            errors = [
                (r.predicted_probability - float(r.outcome.is_actual_positive)) ** 2
                if r.outcome.is_known
                else 1.0
                for r in records
            ]
            brier = float(np.mean(errors))
        else:
            brier = 1.0

        scores = np.array([r.original_score for r in known], dtype=float)
        probs = scores / 100.0
        labels = np.array([r.outcome.is_actual_positive for r in known], dtype=bool)

        if known:
            clipped = np.clip(probs, LOG_LOSS_EPSILON, 1 - LOG_LOSS_EPSILON)
            log_loss = float(-np.mean(labels * np.log(clipped) + (~labels) * np.log(1 - clipped)))
        else:
            log_loss = 0.0

        curve = self._reliability_curve(known)
        populated = [b for b in curve if b.sample_count > 0]
        ece = (
            sum(b.sample_count * b.calibration_error for b in populated) / len(known)
            if known
            else 0.0
        )
        max_ce = max((b.calibration_error for b in populated), default=0.0)

        auc = 0.5
        if known and labels.any() and not labels.all():
            auc = float(roc_auc_score(labels, probs))

        tp, fp, fn, tn = _confusion(scores, labels, s.current_threshold)
        precision = tp / (tp + fp) if tp + fp else 0.0
        recall = tp / (tp + fn) if tp + fn else 0.0
        fpr = fp / (fp + tn) if fp + tn else 0.0

        is_calibrated = len(known) >= s.min_samples_for_calibration
        if is_calibrated:
            quality = max(
                _quality_tier(brier, 0.1, 0.2, 0.3),
                _quality_tier(ece, 0.05, 0.1, 0.2),
                key=lambda q: q.rank,
            )
            optimized = self._optimize_threshold(scores, labels)
        else:
            quality = CalibrationQuality.INSUFFICIENT_DATA
            optimized = s.current_threshold

        return CalibrationResult(
            quality=quality,
            brier_score=brier,
            log_loss=log_loss,
            expected_calibration_error=ece,
            max_calibration_error=max_ce,
            auc_roc=auc,
            precision=precision,
            recall=recall,
            f1_score=_f1(precision, recall),
            true_positive_rate=recall,
            false_positive_rate=fpr,
            reliability_curve=curve,
            sample_count=len(known),
            total_records=len(records),
            outcome_counts={o: counts.get(o, 0) for o in OutcomeType},
            recommendations=self._recommendations(brier, precision, recall, fpr, curve, len(known)),
            optimized_threshold=optimized,
            score_adjustment_curve=self._adjustment_curve(curve),
            is_calibrated=is_calibrated,
            calibrated_at=utc_now(),
        )

    def _reliability_curve(self, known: list[OutcomeRecord]) -> list[BucketStats]:
        grouped: dict[ScoreBucket, list[OutcomeRecord]] = {b: [] for b in _BUCKETS}
        for record in known:
            grouped[ScoreBucket.for_score(record.original_score)].append(record)

        curve = []
        for bucket, members in grouped.items():
            n = len(members)
            if n == 0:
                curve.append(BucketStats(bucket, 0, 0, bucket.midpoint / 100.0, 0.0, 0.0, None))
                continue
            positives = sum(1 for r in members if r.outcome.is_actual_positive)
            predicted = sum(r.predicted_probability for r in members) / n
            actual = positives / n
            margin = CONFIDENCE_Z * np.sqrt(actual * (1 - actual) / n)
            curve.append(
                BucketStats(
                    bucket=bucket,
                    sample_count=n,
                    positive_count=positives,
                    avg_predicted_probability=predicted,
                    actual_positive_rate=actual,
                    calibration_error=abs(predicted - actual),
                    confidence_interval=(
                        float(max(0.0, actual - margin)),
                        float(min(1.0, actual + margin)),
                    ),
                )
            )
        return curve

    @staticmethod
    def _optimize_threshold(scores: np.ndarray, labels: np.ndarray) -> float:
        thresholds = np.arange(0, 101)
        flagged = scores[None, :] >= thresholds[:, None]
        tp = (flagged & labels).sum(axis=1)
        fp = (flagged & ~labels).sum(axis=1)
        fn = (~flagged & labels).sum(axis=1)
        denominator = 2 * tp + fp + fn
        f1 = np.divide(2 * tp, denominator, out=np.zeros(len(thresholds)), where=denominator > 0)
        # argmax returns the first, i.e. lowest, maximising threshold
        return float(thresholds[int(np.argmax(f1))])

    def _adjustment_curve(self, curve: list[BucketStats]) -> dict[ScoreBucket, float]:
        values = np.array([b.midpoint for b in _BUCKETS], dtype=float)
        reliable = [b for b in curve if b.sample_count >= self.settings.min_samples_per_bucket]
        if reliable:
            model = IsotonicRegression(y_min=0.0, y_max=1.0, increasing=True)
            fitted = model.fit_transform(
                [b.bucket.position for b in reliable],
                [b.actual_positive_rate for b in reliable],
                sample_weight=[b.sample_count for b in reliable],
            )
            for stats, rate in zip(reliable, fitted, strict=True):
                values[stats.bucket.position] = rate * 100.0
        values = np.clip(np.maximum.accumulate(values), 0.0, 100.0)
        return {b: float(v) for b, v in zip(_BUCKETS, values, strict=True)}

    def _recommendations(
        self,
        brier: float,
        precision: float,
        recall: float,
        fpr: float,
        curve: list[BucketStats],
        sample_count: int,
    ) -> list[AdjustmentRecommendation]:
        s = self.settings
        if sample_count < s.min_samples_for_calibration:
            return [
                AdjustmentRecommendation(
                    type=AdjustmentType.NONE,
                    description="Gather more outcome data",
                    reason=(
                        f"Only {sample_count} samples available, need "
                        f"{s.min_samples_for_calibration} for reliable calibration"
                    ),
                    suggested_changes=[],
                    confidence=100,
                    priority=1,
                )
            ]

        recommendations = []
        if fpr > 0.3 and precision < 0.5:
            recommendations.append(
                AdjustmentRecommendation(
                    type=AdjustmentType.INCREASE_THRESHOLD,
                    description="Reduce false positives by raising threshold",
                    reason=(
                        f"High false positive rate ({fpr * 100:.1f}%) with low precision "
                        f"({precision * 100:.1f}%)"
                    ),
                    suggested_changes=[
                        SuggestedChange(
                            parameter="threshold",
                            current_value=s.current_threshold,
                            suggested_value=min(80.0, s.current_threshold + 10),
                            expected_improvement="Reduce false alerts by ~20%",
                        )
                    ],
                    confidence=75,
                    priority=2,
                )
            )

        if recall < 0.5:
            recommendations.append(
                AdjustmentRecommendation(
                    type=AdjustmentType.DECREASE_THRESHOLD,
                    description="Capture more true positives by lowering threshold",
                    reason=f"Low recall ({recall * 100:.1f}%) - missing potential insider activity",
                    suggested_changes=[
                        SuggestedChange(
                            parameter="threshold",
                            current_value=s.current_threshold,
                            suggested_value=max(30.0, s.current_threshold - 10),
                            expected_improvement="Capture ~20% more true positives",
                        )
                    ],
                    confidence=70,
                    priority=3,
                )
            )

        reliable = [b for b in curve if b.sample_count >= s.min_samples_per_bucket]
        miscalibrated = [b for b in reliable if b.outside_confidence_interval]
        if brier > s.brier_recalibration_threshold or miscalibrated:
            worst = sorted(reliable, key=lambda b: b.calibration_error, reverse=True)[:3]
            if worst:
                recommendations.append(
                    AdjustmentRecommendation(
                        type=AdjustmentType.RECALIBRATE_BUCKETS,
                        description="Recalibrate score buckets for better accuracy",
                        reason=(
                            f"Poor calibration (Brier score: {brier:.3f}). Worst buckets: "
                            + ", ".join(b.bucket.value for b in worst)
                        ),
                        suggested_changes=[
                            SuggestedChange(
                                parameter=f"bucket_{b.bucket.value}",
                                current_value=b.bucket.midpoint,
                                suggested_value=round(b.actual_positive_rate * 100.0, 2),
                                expected_improvement=(
                                    f"Reduce bucket calibration error by "
                                    f"{b.calibration_error * 100:.1f}%"
                                ),
                            )
                            for b in worst
                        ],
                        confidence=80,
                        priority=1,
                    )
                )

        recommendations.sort(key=lambda r: r.priority)
        return recommendations

    def calibrate_score(self, raw_score: float) -> float:
        """Map a raw score through the learned correction curve.

        Before a calibrated run the score is only clamped to 0-100. The
        curve is non-decreasing, so a higher raw score never maps below
        a lower one.
        """
        score = _clamp_score(raw_score)
        with self._calibration_lock:
            curve = self._curve
        if curve is None:
            return score
        adjusted = float(np.interp(score, _MIDPOINTS, curve))
        return round(_clamp_score(adjusted), 2)

    # Queries

    def get_wallet_outcomes(self, wallet_address: str) -> list[OutcomeRecord]:
        """Return a wallet's records, oldest first."""
        wallet = normalize_address(wallet_address)
        if wallet is None:
            return []
        with self._records_lock:
            return [r for r in self._records if r.wallet_address == wallet]

    def get_all_outcomes(self) -> list[OutcomeRecord]:
        """Return every stored record, oldest first."""
        with self._records_lock:
            return list(self._records)

    def get_last_calibration(self) -> CalibrationResult | None:
        with self._calibration_lock:
            return self._last_calibration

    def get_brier_history(self) -> list[BrierHistoryEntry]:
        with self._calibration_lock:
            return list(self._brier_history)

    def get_summary(self) -> CalibrationSummary:
        """Summarize stored outcomes and the most recent calibration."""
        records = self.get_all_outcomes()
        counts = Counter(r.outcome for r in records)
        with self._calibration_lock:
            last = self._last_calibration
            history = list(self._brier_history)[-10:]

        hours_since = None
        if last is not None:
            hours_since = (utc_now() - last.calibrated_at).total_seconds() / 3600.0
        return CalibrationSummary(
            total_outcomes=len(records),
            by_outcome={o: counts.get(o, 0) for o in OutcomeType},
            current_quality=last.quality if last else CalibrationQuality.INSUFFICIENT_DATA,
            current_brier_score=last.brier_score if last else None,
            brier_history=history,
            active_recommendations=len(last.recommendations) if last else 0,
            last_calibration_at=last.calibrated_at if last else None,
            hours_since_calibration=hours_since,
        )

    def clear_outcomes(self) -> None:
        """Forget every outcome and calibration; scores pass through unchanged again."""
        with self._records_lock:
            self._records.clear()
        with self._calibration_lock:
            self._last_calibration = None
            self._curve = None
            self._brier_history.clear()
        logger.info("Cleared all calibration outcomes")

    # Persistence

    def export_data(self) -> dict[str, Any]:
        """Serialize outcomes, Brier history and the adjustment curve."""
        records = self.get_all_outcomes()
        with self._calibration_lock:
            history = list(self._brier_history)
            curve = self._curve
        return {
            "version": EXPORT_VERSION,
            "exported_at": utc_now().isoformat(),
            "outcomes": [r.to_dict() for r in records],
            "brier_history": [
                {
                    "brier_score": h.brier_score,
                    "sample_count": h.sample_count,
                    "calculated_at": h.calculated_at.isoformat(),
                }
                for h in history
            ],
            "adjustment_curve": (
                {b.value: float(v) for b, v in zip(_BUCKETS, curve, strict=True)}
                if curve is not None
                else None
            ),
        }

    def import_data(self, data: Mapping[str, Any]) -> int:
        """Replace the calibrator's state with an exported payload.

        Args:
            data: Payload produced by ``export_data``.

        Returns:
            Number of imported records.

        Raises:
            CalibrationImportError: If the payload is malformed.
        """
        try:
            payload = _ExportPayload.model_validate(data)
        except ValidationError as exc:
            raise CalibrationImportError(f"Invalid calibration payload: {exc}") from exc

        records = []
        for item in payload.outcomes:
            wallet = normalize_address(item.wallet_address)
            if wallet is None:
                raise CalibrationImportError(f"Invalid wallet address: {item.wallet_address}")
            records.append(
                OutcomeRecord(
                    record_id=item.record_id or str(uuid.uuid4()),
                    wallet_address=wallet,
                    original_score=_clamp_score(item.original_score),
                    outcome=item.outcome,
                    scored_at=as_utc(item.scored_at),
                    outcome_determined_at=(
                        as_utc(item.outcome_determined_at)
                        if item.outcome_determined_at is not None
                        else None
                    ),
                    metadata=item.metadata,
                )
            )

        curve = None
        if payload.adjustment_curve is not None:
            if set(payload.adjustment_curve) != set(_BUCKETS):
                raise CalibrationImportError("Adjustment curve must cover every score bucket")
            curve = np.array([payload.adjustment_curve[b] for b in _BUCKETS], dtype=float)
            if np.any(np.diff(curve) < 0):
                raise CalibrationImportError("Adjustment curve must be non-decreasing")

        with self._records_lock:
            self._records.clear()
            self._records.extend(records)
        with self._calibration_lock:
            self._last_calibration = None
            self._curve = curve
            self._brier_history.clear()
            self._brier_history.extend(
                BrierHistoryEntry(h.brier_score, h.sample_count, as_utc(h.calculated_at))
                for h in payload.brier_history
            )

        logger.info("Imported %d calibration outcomes", len(records))
        return len(records)
