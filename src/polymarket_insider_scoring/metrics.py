"""Prometheus metrics for the scoring core.

Metrics are registered in the default registry at import time. The core
never starts an exporter; the host decides whether to expose them.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

VOLUME_SAMPLES_TOTAL = Counter(
    "insider_scoring_volume_samples_total",
    "Total number of volume samples recorded",
)

SPIKES_DETECTED_TOTAL = Counter(
    "insider_scoring_spikes_detected_total",
    "Total number of reported volume spikes",
    ["severity", "direction"],
)

SUSTAINED_SPIKES_TOTAL = Counter(
    "insider_scoring_sustained_spikes_total",
    "Total number of spike episodes that became sustained",
)

LARGE_TRADES_TOTAL = Counter(
    "insider_scoring_large_trades_total",
    "Total number of trades classified above NORMAL",
    ["category"],
)

POSITIONS_TRACKED = Gauge(
    "insider_scoring_positions_tracked",
    "Resolved positions currently held by the win rate tracker",
)

CALIBRATION_RUNS_TOTAL = Counter(
    "insider_scoring_calibration_runs_total",
    "Total number of calibration runs",
    ["quality"],
)

CALIBRATION_BRIER_SCORE = Gauge(
    "insider_scoring_calibration_brier_score",
    "Brier score from the most recent calibration run",
)

ANALYSIS_LATENCY = Histogram(
    "insider_scoring_analysis_latency_seconds",
    "Time spent in read-heavy recompute operations",
    ["component"],
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)
