"""
Observability - structured logs, Prometheus metrics and OpenTelemetry traces.
"""

from paysync.observability.logging import log_context, setup_logging
from paysync.observability.metrics import metrics, track_provider_call
from paysync.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "log_context",
    "metrics",
    "setup_logging",
    "setup_tracing",
    "trace_operation",
    "track_provider_call",
]
