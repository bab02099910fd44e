"""
Metrics Collection for the Fiscal Import Pipeline

Collects and exposes metrics for:
- File outcomes (committed, skipped duplicates, failures, awaiting review)
- Batch lifecycle (started, completed, cancelled)
- Stage processing times (average, p95)

Metrics are in-memory only; the ledger is the durable record of imports.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Optional, Any


# =============================================================================
# Metric Data Classes
# =============================================================================

@dataclass
class OutcomeMetrics:
    """Per-file terminal outcomes."""
    files: int = 0
    by_state: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    by_error: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class BatchMetrics:
    """Batch lifecycle counts."""
    started: int = 0
    completed: int = 0
    cancelled: int = 0


@dataclass
class TimingMetrics:
    """Processing time metrics."""
    # Raw timing samples (keep last N for percentile calculations)
    samples: List[float] = field(default_factory=list)
    max_samples: int = 1000

    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, stage: str = None):
        """Add a timing sample."""
        self.samples.append(duration_ms)
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]

        if stage:
            self.by_stage[stage].append(duration_ms)
            if len(self.by_stage[stage]) > self.max_samples:
                self.by_stage[stage] = self.by_stage[stage][-self.max_samples:]

    def get_average(self, stage: str = None) -> float:
        """Get average processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str = None) -> float:
        """Get 95th percentile processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class MetricsCollector:
    """
    Thread-safe metrics collector for the import pipeline.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_file_outcome("COMMITTED")
        metrics.record_processing_time("extract", 12.5)
    """

    _instance: Optional["MetricsCollector"] = None
    _lock = Lock()

    def __init__(self):
        self.outcomes = OutcomeMetrics()
        self.batches = BatchMetrics()
        self.timings = TimingMetrics()
        self._lock = Lock()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def reset(self):
        """Drop all collected values."""
        with self._lock:
            self.outcomes = OutcomeMetrics()
            self.batches = BatchMetrics()
            self.timings = TimingMetrics()

    # =========================================================================
    # Outcomes
    # =========================================================================

    def record_file_outcome(self, state: str, error_kind: str = None):
        """Record the terminal state of one file."""
        with self._lock:
            self.outcomes.files += 1
            self.outcomes.by_state[state] += 1
            if error_kind:
                self.outcomes.by_error[error_kind] += 1

    def record_batch_started(self):
        with self._lock:
            self.batches.started += 1

    def record_batch_completed(self, cancelled: bool = False):
        with self._lock:
            if cancelled:
                self.batches.cancelled += 1
            else:
                self.batches.completed += 1

    # =========================================================================
    # Timing Metrics
    # =========================================================================

    def record_processing_time(self, stage: str, duration_ms: float):
        """Record a processing time sample."""
        with self._lock:
            self.timings.add_sample(duration_ms, stage)

    def get_timing_stats(self, stage: str = None) -> Dict[str, float]:
        """Get timing statistics for a stage."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, []) if stage else self.timings.samples),
            }

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "files": {
                    "total": self.outcomes.files,
                    "by_state": dict(self.outcomes.by_state),
                    "by_error": dict(self.outcomes.by_error),
                },
                "batches": {
                    "started": self.batches.started,
                    "completed": self.batches.completed,
                    "cancelled": self.batches.cancelled,
                },
                "timings": {
                    "overall": {
                        "average_ms": self.timings.get_average(),
                        "p95_ms": self.timings.get_p95(),
                    },
                    "by_stage": {
                        stage: {
                            "average_ms": self.timings.get_average(stage),
                            "p95_ms": self.timings.get_p95(stage),
                        }
                        for stage in self.timings.by_stage.keys()
                    },
                },
            }


# =============================================================================
# Module-level convenience functions
# =============================================================================

def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.instance()


def record_file_outcome(state: str, error_kind: str = None):
    """Record the terminal state of one file."""
    get_metrics().record_file_outcome(state, error_kind)


def record_processing_time(stage: str, duration_ms: float):
    """Record a processing time sample."""
    get_metrics().record_processing_time(stage, duration_ms)
