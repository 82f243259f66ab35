"""Prometheus metrics instrumentation for the Lark event connector.

Metrics exported:
- leave_helper_events_total: Counter of received events by type and status
- leave_helper_handler_steps_total: Counter of handler step results
- leave_helper_handler_latency_seconds: Histogram of handler latency
- leave_helper_errors_total: Counter of errors by type
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

from leave_helper.handlers import HandlerOutcome

events_total = Counter(
    "leave_helper_events_total",
    "Total number of Lark events received",
    labelnames=["event_type", "status"],
)

handler_steps_total = Counter(
    "leave_helper_handler_steps_total",
    "Total number of handler step results",
    labelnames=["handler", "step", "status"],
)

handler_latency_seconds = Histogram(
    "leave_helper_handler_latency_seconds",
    "Latency of leave event handlers in seconds",
    labelnames=["handler"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

errors_total = Counter(
    "leave_helper_errors_total",
    "Total number of errors by type",
    labelnames=["error_type", "operation"],
)


class LeaveHelperMetrics:
    """Convenience wrapper that records connector metrics with consistent labels."""

    def record_event(self, event_type: str, status: str) -> None:
        """Record an inbound event.

        Args:
            event_type: Lark event type, or ``"unknown"``
            status: ``"handled"``, ``"ignored"`` or ``"rejected"``
        """
        events_total.labels(event_type=event_type, status=status).inc()

    def record_outcome(self, outcome: HandlerOutcome, latency: float | None = None) -> None:
        """Record each step of a handler outcome, plus failures as errors."""
        for step in outcome.steps:
            handler_steps_total.labels(
                handler=outcome.handler,
                step=step.step,
                status=str(step.status),
            ).inc()
            if step.error is not None:
                self.record_error(error_type=get_error_type(step.error), operation=step.step)

        if latency is not None:
            handler_latency_seconds.labels(handler=outcome.handler).observe(latency)

    def record_error(self, error_type: str, operation: str) -> None:
        errors_total.labels(error_type=error_type, operation=operation).inc()


def get_error_type(exc: Exception) -> str:
    """Map an exception to an error type label."""
    exc_type = type(exc).__name__

    if exc_type == "CalendarRequestError":
        return "calendar_error"
    if exc_type == "CorrelationStoreError":
        return "store_error"
    if exc_type == "TimeParseError":
        return "time_parse_error"
    if exc_type == "DecodeError":
        return "decode_error"
    if "Timeout" in exc_type:
        return "timeout"
    if "ConnectionError" in exc_type or "ConnectError" in exc_type:
        return "connection_error"
    if "ValueError" in exc_type or "ValidationError" in exc_type:
        return "validation_error"

    return exc_type.lower()
