"""Lightweight per-context task log.

Hosts that only need "what did the agent do on step N" use this instead of a
full engine session. Everything is synchronous and in-process.
"""

from typing import Dict, Any, List, Optional, Union
import copy
from datetime import datetime
import structlog

from context_engine.domain.errors import ErrorKind, InvalidTaskLogStep, TaskLogError
from context_engine.domain.models.task_log import ContextData, ScreenshotDescription, TaskLogMemoryStats
from context_engine.infrastructure.config.settings import EngineSettings

logger = structlog.get_logger(__name__)


class TaskLogStore:
    """Task logs and screenshot descriptions keyed by context and step"""

    def __init__(self, settings: Optional[EngineSettings] = None):
        settings = settings or EngineSettings()
        self.max_contexts = settings.max_contexts
        self.max_logs_per_step = settings.max_logs_per_step
        self.contexts: Dict[str, ContextData] = {}

    def create_context(self, context_id: str) -> None:
        if not context_id or not isinstance(context_id, str):
            raise TaskLogError(
                "Context ID must be a non-empty string",
                context_id=context_id,
                operation="create_context",
                code="INVALID_CONTEXT_ID",
            )

        if context_id in self.contexts:
            raise TaskLogError(
                f"Context with ID '{context_id}' already exists",
                context_id=context_id,
                operation="create_context",
                code="CONTEXT_EXISTS",
            )

        if len(self.contexts) >= self.max_contexts:
            raise TaskLogError(
                f"Maximum number of contexts ({self.max_contexts}) exceeded",
                context_id=context_id,
                operation="create_context",
                kind=ErrorKind.RESOURCE_LIMIT,
                code="MAX_CONTEXTS_EXCEEDED",
            )

        self.contexts[context_id] = ContextData(context_id=context_id)
        logger.debug("Task log context created", context_id=context_id)

    def set_steps(self, context_id: str, steps: List[str]) -> None:
        """Replace the step list; all logs are reset"""

        context = self._require_context(context_id, "set_steps")

        if not isinstance(steps, list):
            raise TaskLogError(
                "Steps must be an array",
                context_id=context_id,
                operation="set_steps",
                code="INVALID_STEPS_FORMAT",
            )

        context.steps = list(steps)
        context.step_logs = {i: [] for i in range(len(steps))}
        context.screenshot_descriptions = {i: [] for i in range(len(steps))}
        context.last_updated = datetime.utcnow()

    def log_task(self, context_id: str, step_id: int, task: Any) -> None:
        context = self._require_context(context_id, "log_task")
        self._validate_step(context, step_id, "log_task")

        logs = context.step_logs[step_id]
        if len(logs) >= self.max_logs_per_step:
            raise TaskLogError(
                f"Maximum number of logs per step ({self.max_logs_per_step}) exceeded for step {step_id}",
                context_id=context_id,
                step_id=step_id,
                operation="log_task",
                kind=ErrorKind.RESOURCE_LIMIT,
                code="MAX_LOGS_EXCEEDED",
            )

        logs.append(copy.deepcopy(task))
        context.last_updated = datetime.utcnow()

    def add_screenshot_description(
        self, context_id: str, step_id: int, description: Union[ScreenshotDescription, Dict[str, Any]]
    ) -> None:
        context = self._require_context(context_id, "add_screenshot_description")
        self._validate_step(context, step_id, "add_screenshot_description")

        if isinstance(description, dict):
            description = ScreenshotDescription.model_validate(description)

        context.screenshot_descriptions.setdefault(step_id, []).append(description.model_copy(deep=True))
        context.last_updated = datetime.utcnow()

    def get_step_context(self, context_id: str, step_id: int) -> List[Any]:
        context = self._require_context(context_id, "get_step_context")
        self._validate_step(context, step_id, "get_step_context")
        return copy.deepcopy(context.step_logs[step_id])

    def get_step_screenshot_descriptions(self, context_id: str, step_id: int) -> List[ScreenshotDescription]:
        context = self._require_context(context_id, "get_step_screenshot_descriptions")
        self._validate_step(context, step_id, "get_step_screenshot_descriptions")
        return [d.model_copy(deep=True) for d in context.screenshot_descriptions.get(step_id, [])]

    def get_full_context(self, context_id: str) -> ContextData:
        context = self._require_context(context_id, "get_full_context")
        return context.model_copy(deep=True)

    def get_context_ids(self) -> List[str]:
        return list(self.contexts.keys())

    def context_exists(self, context_id: str) -> bool:
        return context_id in self.contexts

    def get_config(self) -> Dict[str, int]:
        return {"max_contexts": self.max_contexts, "max_logs_per_step": self.max_logs_per_step}

    def get_memory_stats(self) -> TaskLogMemoryStats:
        total_steps = sum(len(c.steps) for c in self.contexts.values())
        total_logs = sum(len(logs) for c in self.contexts.values() for logs in c.step_logs.values())

        return TaskLogMemoryStats(
            total_contexts=len(self.contexts),
            total_steps=total_steps,
            total_logs=total_logs,
            avg_logs_per_step=round(total_logs / total_steps, 2) if total_steps else 0.0,
        )

    def clear_all_contexts(self) -> None:
        self.contexts.clear()

    def _require_context(self, context_id: str, operation: str) -> ContextData:
        context = self.contexts.get(context_id)
        if context is None:
            raise TaskLogError(
                f"Context with ID '{context_id}' does not exist",
                context_id=context_id,
                operation=operation,
                code="CONTEXT_NOT_FOUND",
            )
        return context

    @staticmethod
    def _validate_step(context: ContextData, step_id: int, operation: str) -> None:
        if not isinstance(step_id, int) or isinstance(step_id, bool) or step_id < 0:
            raise InvalidTaskLogStep(
                "Step ID must be a non-negative integer",
                context_id=context.context_id,
                step_id=step_id if isinstance(step_id, int) else None,
                operation=operation,
            )

        if step_id >= len(context.steps):
            raise InvalidTaskLogStep(
                f"Step {step_id} does not exist in context '{context.context_id}'. "
                f"Available steps: 0-{len(context.steps) - 1}",
                context_id=context.context_id,
                step_id=step_id,
                operation=operation,
            )
