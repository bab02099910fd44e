"""
Observability Module for the Fiscal Import Pipeline

Provides:
- Structured logging with correlation IDs
- Metrics collection (file outcomes, batches, stage timings)
"""

from core.observability.metrics import (
    MetricsCollector,
    get_metrics,
    record_file_outcome,
    record_processing_time,
)

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    with_correlation,
    log_stage,
    log_file_outcome,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "record_file_outcome",
    "record_processing_time",
    # Logging
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "with_correlation",
    "log_stage",
    "log_file_outcome",
]
