"""Detection layer - volume, trade size, win rate and calibration scoring."""

from polymarket_insider_scoring.detector.calibrator import (
    CalibrationImportError,
    CalibrationQuality,
    CalibrationResult,
    HistoricalScoreCalibrator,
    OutcomeRecord,
    ScoreBucket,
)
from polymarket_insider_scoring.detector.models import (
    DetectorError,
    OutcomeType,
    PositionOutcome,
    ResolvedPosition,
    Severity,
    SpikeDirection,
    Trade,
    TrackerClosedError,
    VolumeSample,
)
from polymarket_insider_scoring.detector.rolling_volume import (
    RollingAveragesResult,
    RollingVolumeTracker,
    RollingWindow,
    WindowStatistics,
)
from polymarket_insider_scoring.detector.trade_size import (
    LargeTradeEvent,
    ThresholdMethod,
    TradeSizeAnalysis,
    TradeSizeAnalyzer,
    TradeSizeCategory,
)
from polymarket_insider_scoring.detector.volume_spike import (
    SpikeDetectionResult,
    SpikeState,
    VolumeSpikeDetector,
    VolumeSpikeEvent,
    VolumeSpikeType,
)
from polymarket_insider_scoring.detector.win_rate import (
    WinRateCategory,
    WinRateResult,
    WinRateSuspicionLevel,
    WinRateTracker,
    WinRateWindow,
)

__all__ = [
    "CalibrationImportError",
    "CalibrationQuality",
    "CalibrationResult",
    "DetectorError",
    "HistoricalScoreCalibrator",
    "LargeTradeEvent",
    "OutcomeRecord",
    "OutcomeType",
    "PositionOutcome",
    "ResolvedPosition",
    "RollingAveragesResult",
    "RollingVolumeTracker",
    "RollingWindow",
    "ScoreBucket",
    "Severity",
    "SpikeDetectionResult",
    "SpikeDirection",
    "SpikeState",
    "ThresholdMethod",
    "TrackerClosedError",
    "Trade",
    "TradeSizeAnalysis",
    "TradeSizeAnalyzer",
    "TradeSizeCategory",
    "VolumeSample",
    "VolumeSpikeDetector",
    "VolumeSpikeEvent",
    "VolumeSpikeType",
    "WinRateCategory",
    "WinRateResult",
    "WinRateSuspicionLevel",
    "WinRateTracker",
    "WindowStatistics",
]
