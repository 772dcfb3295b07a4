"""Context engine for a browser-automation agent."""

from context_engine.domain.context.context_manager import ContextEngine
from context_engine.domain.context.task_log_store import TaskLogStore
from context_engine.domain.errors import ContextEngineError, ErrorKind, ErrorSeverity
from context_engine.infrastructure.config.settings import EngineSettings, get_settings
from context_engine.infrastructure.observability.logging import setup_logging

__all__ = [
    "ContextEngine",
    "TaskLogStore",
    "ContextEngineError",
    "ErrorKind",
    "ErrorSeverity",
    "EngineSettings",
    "get_settings",
    "setup_logging",
]
