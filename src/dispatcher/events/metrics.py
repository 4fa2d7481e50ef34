"""Prometheus metrics for dispatcher observability.

Metrics are exposed at the ``/metrics`` endpoint in Prometheus format.

Metrics Defined:
- dispatcher_issues_admitted_total: Issues selected for a container
- dispatcher_failures_total: Failed container creation attempts
- dispatcher_escalations_total: Issues rejected after exhausting retries
- dispatcher_completions_total: Issues confirmed DONE
- dispatcher_lifecycle_transitions_total: Label transitions by target label
- dispatcher_tick_duration_seconds: Duration of polling sub-cycles

Source:
- src/dispatcher/events/models.py (DispatchEvent, EventType)
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from src.dispatcher.events.emitter import EventEmitter
from src.dispatcher.events.models import DispatchEvent, EventType


logger = logging.getLogger(__name__)


# Polling sub-cycles span HTTP calls, provisioning and readiness waits
DEFAULT_TICK_BUCKETS = (
    0.1,
    0.5,
    1.0,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
)


class DispatcherMetrics:
    """Container for all dispatcher Prometheus metrics.

    Supports a custom registry for testing.

    Example:
        >>> metrics = DispatcherMetrics(registry=CollectorRegistry())
        >>> metrics.issues_admitted_total.labels(project_id="10").inc()
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.issues_admitted_total = Counter(
            "dispatcher_issues_admitted_total",
            "Total number of issues selected for a container",
            labelnames=["project_id"],
            registry=self.registry,
        )

        self.failures_total = Counter(
            "dispatcher_failures_total",
            "Total number of failed container creation attempts",
            labelnames=["project_id"],
            registry=self.registry,
        )

        self.escalations_total = Counter(
            "dispatcher_escalations_total",
            "Total number of issues rejected after exhausting retries",
            labelnames=["project_id"],
            registry=self.registry,
        )

        self.completions_total = Counter(
            "dispatcher_completions_total",
            "Total number of issues confirmed done",
            labelnames=["project_id"],
            registry=self.registry,
        )

        self.lifecycle_transitions_total = Counter(
            "dispatcher_lifecycle_transitions_total",
            "Total number of lifecycle label transitions",
            labelnames=["to_label"],
            registry=self.registry,
        )

        self.tick_duration_seconds = Histogram(
            "dispatcher_tick_duration_seconds",
            "Time spent in a polling sub-cycle in seconds",
            labelnames=["cycle"],
            buckets=DEFAULT_TICK_BUCKETS,
            registry=self.registry,
        )

    def record_tick_duration(self, cycle: str, duration_seconds: float) -> None:
        self.tick_duration_seconds.labels(cycle=cycle).observe(duration_seconds)


_default_metrics: Optional[DispatcherMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> DispatcherMetrics:
    """Get the metrics instance for the default registry, or a new one for
    a custom registry."""
    global _default_metrics

    if registry is not None:
        return DispatcherMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = DispatcherMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus text output for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    Example:
        >>> emitter = MetricsEventEmitter(registry=CollectorRegistry())
        >>> await emitter.emit(DispatchEvent(event_type=EventType.COMPLETION, issue_id=1))
    """

    def __init__(
        self,
        metrics: Optional[DispatcherMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> DispatcherMetrics:
        return self._metrics

    async def emit(self, event: DispatchEvent) -> None:
        project = str(event.project_id) if event.project_id is not None else "unknown"
        try:
            if event.event_type == EventType.ADMISSION:
                self._metrics.issues_admitted_total.labels(project_id=project).inc()
            elif event.event_type in (EventType.RETRY_SCHEDULED, EventType.ERROR):
                self._metrics.failures_total.labels(project_id=project).inc()
            elif event.event_type == EventType.ESCALATION:
                self._metrics.failures_total.labels(project_id=project).inc()
                self._metrics.escalations_total.labels(project_id=project).inc()
            elif event.event_type == EventType.COMPLETION:
                self._metrics.completions_total.labels(project_id=project).inc()
            elif event.event_type == EventType.STATE_TRANSITION:
                to_label = event.details.get("to_label", "unknown")
                self._metrics.lifecycle_transitions_total.labels(
                    to_label=to_label
                ).inc()
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "issue_id": event.issue_id,
                    "error": str(e),
                },
            )
