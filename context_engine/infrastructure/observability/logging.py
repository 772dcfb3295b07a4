import structlog
import logging
import sys
import time
from contextlib import contextmanager
from typing import Dict, Any, Iterator, Optional
from datetime import datetime
import os

from context_engine.infrastructure.config.settings import EngineSettings, get_settings


def setup_logging(settings: Optional[EngineSettings] = None) -> None:
    """Configure structlog from engine settings.

    The engine never calls this itself; the host process does, once, before
    creating a ContextEngine.
    """

    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        add_engine_context,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=settings.service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
    )


def add_engine_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach the workflow ID bound by the host, if any"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.utcnow().isoformat()

    workflow_id = structlog.contextvars.get_contextvars().get("workflow_id")
    if workflow_id and "workflow_id" not in event_dict:
        event_dict["workflow_id"] = workflow_id

    return event_dict


class ContextLogger:
    """Specialized logger for context engine operations"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_context_update(
        self,
        session_id: str,
        context_type: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log a mutation of session-owned context"""

        self.logger.info(
            "context_update",
            session_id=session_id,
            context_type=context_type,
            action=action,
            details=details or {}
        )

    def log_session_transition(
        self,
        session_id: str,
        from_status: Optional[str],
        to_status: str,
        workflow_id: Optional[str] = None
    ):
        self.logger.info(
            "session_transition",
            session_id=session_id,
            workflow_id=workflow_id,
            from_status=from_status,
            to_status=to_status
        )

    def log_context_generated(
        self,
        session_id: str,
        artifact: str,
        target_step: int,
        size: int,
        duration_ms: Optional[float] = None,
        trimmed: bool = False
    ):
        """Log generation of an output artifact with its serialized size"""

        self.logger.info(
            "context_generated",
            session_id=session_id,
            artifact=artifact,
            target_step=target_step,
            size=size,
            duration_ms=round(duration_ms, 3) if duration_ms is not None else None,
            trimmed=trimmed
        )


metrics_logger = structlog.get_logger("context_engine.metrics")


class MetricsCollector:
    """Per-engine operation latencies and counters"""

    def __init__(self):
        self.latencies: Dict[str, Dict[str, float]] = {}
        self.counters: Dict[str, int] = {}

    @contextmanager
    def time_operation(self, operation: str) -> Iterator[None]:
        """Time a block; only completed operations are recorded"""

        started = time.perf_counter()
        yield
        self.record_latency(operation, (time.perf_counter() - started) * 1000)
        self.increment_counter(f"operations.{operation}")

    def record_latency(self, operation: str, duration_ms: float):
        stats = self.latencies.setdefault(
            operation, {"count": 0, "total": 0.0, "min": duration_ms, "max": duration_ms}
        )
        stats["count"] += 1
        stats["total"] += duration_ms
        stats["min"] = min(stats["min"], duration_ms)
        stats["max"] = max(stats["max"], duration_ms)

        metrics_logger.debug("operation_latency", operation=operation, duration_ms=duration_ms)

    def increment_counter(self, name: str, value: int = 1):
        self.counters[name] = self.counters.get(name, 0) + value

    def get_metrics_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            f"latency.{operation}": {
                "count": stats["count"],
                "avg": stats["total"] / stats["count"],
                "min": stats["min"],
                "max": stats["max"],
            }
            for operation, stats in self.latencies.items()
        }
        summary.update(self.counters)
        return summary

    def reset(self):
        self.latencies.clear()
        self.counters.clear()
