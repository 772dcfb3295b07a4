"""Tests for logging setup and in-process metrics."""

import pytest
import structlog

from context_engine.infrastructure.observability.logging import MetricsCollector, setup_logging

from tests.factories import build_settings


class TestMetricsCollector:

    def test_latency_summary(self):
        """Latencies are summarized by count, average and bounds."""
        metrics = MetricsCollector()
        metrics.record_latency("generate_context_json", 10.0)
        metrics.record_latency("generate_context_json", 30.0)

        summary = metrics.get_metrics_summary()["latency.generate_context_json"]

        assert summary == {"count": 2, "avg": 20.0, "min": 10.0, "max": 30.0}

    def test_counters_and_reset(self):
        """Counters accumulate until reset."""
        metrics = MetricsCollector()
        metrics.increment_counter("operations.destroy_session")
        metrics.increment_counter("operations.destroy_session", 2)

        assert metrics.get_metrics_summary() == {"operations.destroy_session": 3}

        metrics.reset()
        assert metrics.get_metrics_summary() == {}

    def test_time_operation(self):
        """Completed blocks record a latency and an operation count."""
        metrics = MetricsCollector()

        with metrics.time_operation("create_session"):
            pass

        summary = metrics.get_metrics_summary()
        assert summary["operations.create_session"] == 1
        assert summary["latency.create_session"]["count"] == 1

    def test_failed_operation_is_not_recorded(self):
        """Blocks that raise leave the metrics untouched."""
        metrics = MetricsCollector()

        with pytest.raises(ValueError):
            with metrics.time_operation("create_session"):
                raise ValueError("boom")

        assert metrics.get_metrics_summary() == {}


class TestSetupLogging:

    @pytest.mark.parametrize("log_format", ["json", "console"])
    def test_setup_logging(self, log_format):
        """Both renderers can be configured and used."""
        try:
            setup_logging(build_settings(log_level="DEBUG", log_format=log_format))
            structlog.contextvars.bind_contextvars(workflow_id="wf-log")
            structlog.get_logger("tests").info("configured", log_format=log_format)
        finally:
            structlog.contextvars.clear_contextvars()
            structlog.reset_defaults()
