"""Unit tests for dispatch event emitters and Prometheus metrics."""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from src.dispatcher.events.emitter import (
    CompositeEventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from src.dispatcher.events.metrics import (
    DispatcherMetrics,
    MetricsEventEmitter,
    generate_metrics_output,
)
from src.dispatcher.events.models import DispatchEvent, EventType


def run_async(coro):
    return asyncio.run(coro)


def _event(event_type: EventType, **details) -> DispatchEvent:
    return DispatchEvent(event_type=event_type, issue_id=101, project_id=10, details=details)


@pytest.fixture
def registry():
    return CollectorRegistry()


class TestMetricsEventEmitter:
    def _value(self, registry, name, **labels):
        return registry.get_sample_value(name, labels) or 0.0

    def test_counts_by_event_type(self, registry):
        emitter = MetricsEventEmitter(registry=registry)

        run_async(emitter.emit(_event(EventType.ADMISSION, issue_iid=7)))
        run_async(emitter.emit(_event(EventType.RETRY_SCHEDULED, attempt=1)))
        run_async(emitter.emit(_event(EventType.ESCALATION, attempt=3)))
        run_async(emitter.emit(_event(EventType.COMPLETION, container_id="m-1")))
        run_async(emitter.emit(_event(EventType.STATE_TRANSITION, to_label="WIP")))

        assert self._value(registry, "dispatcher_issues_admitted_total", project_id="10") == 1
        assert self._value(registry, "dispatcher_failures_total", project_id="10") == 2
        assert self._value(registry, "dispatcher_escalations_total", project_id="10") == 1
        assert self._value(registry, "dispatcher_completions_total", project_id="10") == 1
        assert self._value(
            registry, "dispatcher_lifecycle_transitions_total", to_label="WIP"
        ) == 1

    def test_unknown_project(self, registry):
        emitter = MetricsEventEmitter(registry=registry)

        run_async(emitter.emit(DispatchEvent(event_type=EventType.ERROR, issue_id=1)))

        assert self._value(registry, "dispatcher_failures_total", project_id="unknown") == 1

    def test_tick_duration(self, registry):
        metrics = DispatcherMetrics(registry=registry)

        metrics.record_tick_duration("sweep", 0.3)

        assert registry.get_sample_value(
            "dispatcher_tick_duration_seconds_count", {"cycle": "sweep"}
        ) == 1
        assert b"dispatcher_tick_duration_seconds" in generate_metrics_output(registry)


class TestLoggingEventEmitter:
    def test_levels(self, caplog):
        emitter = LoggingEventEmitter(logger_name="dispatch-test")

        with caplog.at_level(logging.INFO, logger="dispatch-test"):
            run_async(emitter.emit(_event(EventType.ADMISSION)))
            run_async(emitter.emit(_event(EventType.ESCALATION, attempt=3)))
            run_async(emitter.emit(_event(EventType.ERROR, stage="task_execution")))

        assert [record.levelno for record in caplog.records] == [
            logging.INFO,
            logging.WARNING,
            logging.ERROR,
        ]
        assert caplog.records[1].attempt == 3
        assert caplog.records[0].issue_id == 101


class TestCompositeEventEmitter:
    def test_failing_child_does_not_block_others(self):
        broken = AsyncMock()
        broken.emit.side_effect = RuntimeError("sink down")
        healthy = AsyncMock()
        composite = CompositeEventEmitter([broken, healthy])

        run_async(composite.emit(_event(EventType.COMPLETION)))

        healthy.emit.assert_awaited_once()

    def test_close_closes_children(self):
        child = AsyncMock()
        composite = CompositeEventEmitter()
        composite.add_emitter(child)

        run_async(composite.close())

        child.close.assert_awaited_once()
        assert composite.emitters == [child]


class TestCreateEventEmitter:
    def test_defaults_to_logging(self):
        assert isinstance(create_event_emitter(), LoggingEventEmitter)

    def test_single_sink(self):
        assert isinstance(
            create_event_emitter([EventSinkType.LOGGING]), LoggingEventEmitter
        )

    def test_multiple_sinks(self):
        emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])

        assert isinstance(emitter, CompositeEventEmitter)
        assert [type(e) for e in emitter.emitters] == [LoggingEventEmitter, MetricsEventEmitter]

    def test_null_emitter_discards(self):
        run_async(NullEventEmitter().emit(_event(EventType.ERROR)))
