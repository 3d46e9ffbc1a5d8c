"""
Tests for observability: metrics, Prometheus export, tracing and
structured logging.
"""

import asyncio
import json
import logging

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from prometheus_client.parser import text_string_to_metric_families

from vertector_redisobj import ObjectNotFoundError, RedisObjectStore, Tracer
from vertector_redisobj.logging_utils import (
    PerformanceLogger,
    StructuredFormatter,
    log_with_context,
    operation_var,
    request_id_var,
    setup_production_logging,
)
from vertector_redisobj.observability import EnhancedMetrics, PercentileTracker
from records import NestedWithOwnKey, Root, make_root


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def tracer(span_exporter):
    """Tracer that records spans in memory instead of the global provider."""
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    tracer = Tracer(service_name="test")
    tracer._tracer = provider.get_tracer("test")
    return tracer


# ============================================================================
# Metrics
# ============================================================================

@pytest.mark.unit
class TestPercentileTracker:
    """Test sliding-window percentiles."""

    def test_empty(self):
        """Test an empty tracker reports zeros."""
        stats = PercentileTracker().get_stats()
        assert stats["count"] == 0
        assert stats["p50"] == 0.0

    def test_single_sample(self):
        """Test one sample is every percentile."""
        tracker = PercentileTracker()
        tracker.record(7.0)
        assert tracker.get_percentiles() == {"p50": 7.0, "p95": 7.0, "p99": 7.0}

    def test_percentiles(self):
        """Test percentiles over a uniform range."""
        tracker = PercentileTracker()
        for value in range(1, 101):
            tracker.record(float(value))

        stats = tracker.get_stats()
        assert stats["count"] == 100
        assert stats["min"] == 1.0
        assert stats["max"] == 100.0
        assert 49.0 <= stats["p50"] <= 51.0
        assert 94.0 <= stats["p95"] <= 96.0

    def test_window(self):
        """Test old samples fall out of the window."""
        tracker = PercentileTracker(window_size=3)
        for value in (100.0, 1.0, 2.0, 3.0):
            tracker.record(value)
        assert tracker.get_stats()["max"] == 3.0


@pytest.mark.unit
class TestEnhancedMetrics:
    """Test metric aggregation and export."""

    def test_queries_and_errors(self):
        """Test operation and error accounting."""
        metrics = EnhancedMetrics()
        metrics.record_query("write", 2.0)
        metrics.record_query("write", 4.0, success=False, error_type="RedisCommandError")
        metrics.record_query("read", 1.0)

        stats = metrics.get_all_stats()
        assert stats["operations"]["total"] == 3
        assert stats["operations"]["by_type"] == {"write": 2, "read": 1}
        assert stats["errors"]["by_type"] == {"write": 1}
        assert stats["errors"]["rate"] == pytest.approx(1 / 3)
        assert stats["latencies"]["write"]["max"] == 4.0

    def test_freshness_and_pipelines(self):
        """Test cache and pipeline accounting."""
        metrics = EnhancedMetrics()
        metrics.record_freshness(hits=3, misses=1)
        metrics.record_pipeline("write", 12)
        metrics.record_compilation()

        stats = metrics.get_all_stats()
        assert stats["cache"] == {"hits": 3, "misses": 1, "hit_rate": 0.75}
        assert stats["pipelines"] == {"count": 1, "commands": 12}
        assert stats["plans"]["compilations"] == 1

    def test_prometheus(self):
        """Test Prometheus exposition of every metric family."""
        metrics = EnhancedMetrics()
        metrics.record_query("read", 5.0, success=False, error_type="InvalidFieldTypeError")
        metrics.record_freshness(hits=1, misses=0)

        text = metrics.export_prometheus()
        samples = {
            (sample.name, tuple(sorted(sample.labels.items()))): sample.value
            for family in text_string_to_metric_families(text)
            for sample in family.samples
        }
        assert samples[("redisobj_operations_total", (("operation", "read"),))] == 1.0
        assert samples[(
            "redisobj_errors_total",
            (("error_type", "InvalidFieldTypeError"), ("operation", "read")),
        )] == 1.0
        assert samples[("redisobj_freshness_checks_total", (("outcome", "hit"),))] == 1.0
        assert "# TYPE redisobj_operation_latency_seconds histogram" in text

    def test_registries_are_private(self):
        """Test two metric sets do not share a registry."""
        first, second = EnhancedMetrics(), EnhancedMetrics()
        first.record_query("write", 1.0)
        assert 'operation="write"' not in second.export_prometheus()

    def test_reset(self):
        """Test reset clears counters and the registry."""
        metrics = EnhancedMetrics()
        metrics.record_query("write", 1.0)
        metrics.reset()

        assert metrics.get_all_stats()["operations"]["total"] == 0
        assert 'operation="write"' not in metrics.export_prometheus()


# ============================================================================
# Tracing
# ============================================================================

@pytest.mark.unit
class TestTracer:
    """Test span creation."""

    def test_disabled(self):
        """Test a disabled tracer yields no span."""
        with Tracer(enabled=False).span("noop") as span:
            assert span is None

    def test_span_ok(self, tracer, span_exporter):
        """Test a successful span carries attributes and OK status."""
        with tracer.span("redisobj.test", {"redisobj.record_type": "Root", "obj": object()}):
            pass

        (span,) = span_exporter.get_finished_spans()
        assert span.name == "redisobj.test"
        assert span.attributes["redisobj.record_type"] == "Root"
        assert isinstance(span.attributes["obj"], str)
        assert span.status.status_code is StatusCode.OK

    def test_span_error(self, tracer, span_exporter):
        """Test a failing span records the exception."""
        with pytest.raises(ValueError):
            with tracer.span("redisobj.fail"):
                raise ValueError("boom")

        (span,) = span_exporter.get_finished_spans()
        assert span.status.status_code is StatusCode.ERROR
        assert span.events[0].name == "exception"

    def test_store_spans(self, tracer, span_exporter, redis_client):
        """Test store calls are traced with their command count."""
        store = RedisObjectStore(redis_client, enable_tracing=True)
        store.tracer = tracer

        store.write(make_root())
        with pytest.raises(ObjectNotFoundError):
            store.read(Root(Id="ghost", Child=NestedWithOwnKey(Id="c1")))

        write_span, read_span = span_exporter.get_finished_spans()
        assert write_span.name == "redisobj.write"
        assert write_span.attributes["redisobj.record_type"] == "Root"
        assert write_span.attributes["redisobj.commands"] == 10
        assert read_span.name == "redisobj.read"
        assert read_span.status.status_code is StatusCode.ERROR


# ============================================================================
# Logging
# ============================================================================

def _record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("redisobj.test", logging.INFO, __file__, 1, message, None, None)
    for name, value in extra.items():
        setattr(record, name, value)
    return record


@pytest.mark.unit
class TestStructuredFormatter:
    """Test JSON log formatting."""

    def test_basic_fields(self):
        """Test the standard fields are present."""
        data = json.loads(StructuredFormatter().format(_record()))
        assert data["level"] == "INFO"
        assert data["logger"] == "redisobj.test"
        assert data["message"] == "hello"
        assert "request_id" not in data

    def test_extra_fields(self):
        """Test extra attributes are emitted."""
        data = json.loads(StructuredFormatter().format(_record(record_type="Root", duration_ms=1.5)))
        assert data["record_type"] == "Root"
        assert data["duration_ms"] == 1.5

    def test_context_variables(self):
        """Test request and operation context are included."""
        request_token = request_id_var.set("req-1")
        operation_token = operation_var.set("write")
        try:
            data = json.loads(StructuredFormatter().format(_record()))
        finally:
            request_id_var.reset(request_token)
            operation_var.reset(operation_token)

        assert data["request_id"] == "req-1"
        assert data["operation"] == "write"


@pytest.mark.unit
class TestPerformanceLogger:
    """Test operation timing logs."""

    def test_success(self, caplog):
        """Test start and completion are logged with a duration."""
        logger = logging.getLogger("redisobj.test.perf")
        with caplog.at_level(logging.DEBUG, logger="redisobj.test.perf"):
            with PerformanceLogger("write", logger, record_type="Root") as perf:
                assert operation_var.get() == "write"

        assert operation_var.get() == ""
        assert perf.duration_ms is not None
        events = [r.event for r in caplog.records]
        assert events == ["operation_start", "operation_completed"]
        assert caplog.records[-1].record_type == "Root"

    def test_failure(self, caplog):
        """Test failures are logged at ERROR with the error type."""
        logger = logging.getLogger("redisobj.test.perf")
        with caplog.at_level(logging.DEBUG, logger="redisobj.test.perf"):
            with pytest.raises(KeyError):
                with PerformanceLogger("read", logger):
                    raise KeyError("missing")

        failed = caplog.records[-1]
        assert failed.levelno == logging.ERROR
        assert failed.event == "operation_failed"
        assert failed.error_type == "KeyError"

    def test_async(self, caplog):
        """Test the async form logs the same events."""
        logger = logging.getLogger("redisobj.test.perf")

        async def run():
            async with PerformanceLogger("write", logger):
                await asyncio.sleep(0)

        with caplog.at_level(logging.DEBUG, logger="redisobj.test.perf"):
            asyncio.run(run())

        assert [r.event for r in caplog.records] == ["operation_start", "operation_completed"]

    def test_expected_error(self, caplog):
        """Test expected exceptions log as completions, not failures."""
        logger = logging.getLogger("redisobj.test.perf")
        with caplog.at_level(logging.DEBUG, logger="redisobj.test.perf"):
            with pytest.raises(ObjectNotFoundError):
                with PerformanceLogger("read", logger, expected=(ObjectNotFoundError,)):
                    raise ObjectNotFoundError(key="{redisobj:Root:ghost}")

        done = caplog.records[-1]
        assert done.levelno == logging.DEBUG
        assert done.event == "operation_completed"
        assert done.error_type == "ObjectNotFoundError"

    def test_store_not_found_not_logged_as_failure(self, redis_client, caplog):
        """Test a read of a missing record produces no ERROR records."""
        store = RedisObjectStore(redis_client)
        with caplog.at_level(logging.DEBUG, logger="vertector_redisobj"):
            with pytest.raises(ObjectNotFoundError):
                store.read(Root(Id="ghost", Child=NestedWithOwnKey(Id="c1")))

        assert caplog.records
        assert all(r.levelno < logging.ERROR for r in caplog.records)

    def test_log_with_context(self, caplog):
        """Test context fields are attached to the record."""
        logger = logging.getLogger("redisobj.test.ctx")
        with caplog.at_level(logging.INFO, logger="redisobj.test.ctx"):
            log_with_context(logger, "info", "stored", key="{redisobj:Root:u1}")

        assert caplog.records[0].key == "{redisobj:Root:u1}"


@pytest.mark.unit
class TestSetupProductionLogging:
    """Test root logger configuration."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json(self):
        """Test JSON output replaces existing handlers."""
        setup_production_logging(level="warning", format="json")

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)

    def test_text(self):
        """Test plain text output."""
        setup_production_logging(format="text")

        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1
        assert not isinstance(root.handlers[0].formatter, StructuredFormatter)
