from typing import Dict, List, Any, Optional
from datetime import datetime
import re
import structlog

from context_engine.domain.context.base_component import ContextComponent
from context_engine.domain.errors import (
    ErrorKind,
    InvalidSteps,
    StepExecutionNotFound,
    TemporalOrderingViolation,
)
from context_engine.domain.models.context_output import StepProgress, StepStatistics
from context_engine.domain.models.context_session import ContextSession, StepExecution, StepStatus
from context_engine.infrastructure.observability.logging import ContextLogger

logger = structlog.get_logger(__name__)


class StepManager(ContextComponent):
    """Defines a session's steps and tracks each step's execution window"""

    def __init__(self, settings, storage):
        super().__init__(settings, storage)
        self.context_logger = ContextLogger(__name__)

    def validate_steps(self, steps: Any) -> None:
        """Raise InvalidSteps describing the first problem with a step list"""

        if not isinstance(steps, list):
            raise InvalidSteps("Steps must be provided as a list", details={"type": type(steps).__name__})

        if not steps:
            raise InvalidSteps("Steps list cannot be empty", code="EMPTY_STEPS_ARRAY")

        if len(steps) > self.settings.max_steps_per_session:
            raise InvalidSteps(
                f"Too many steps ({len(steps)}). Maximum allowed: {self.settings.max_steps_per_session}",
                code="TOO_MANY_STEPS",
                kind=ErrorKind.RESOURCE_LIMIT,
                details={"count": len(steps), "max_steps": self.settings.max_steps_per_session},
            )

        for i, step in enumerate(steps):
            if not isinstance(step, str):
                raise InvalidSteps(
                    f"Step at index {i} must be a string",
                    code="INVALID_STEP_TYPE",
                    step_index=i,
                )
            if not step.strip():
                raise InvalidSteps(
                    f"Step at index {i} cannot be empty",
                    code="EMPTY_STEP_CONTENT",
                    step_index=i,
                )
            if len(step) > self.settings.max_step_length:
                raise InvalidSteps(
                    f"Step at index {i} is too long ({len(step)} characters). "
                    f"Maximum allowed: {self.settings.max_step_length}",
                    code="STEP_TOO_LONG",
                    step_index=i,
                )

    async def set_steps(self, session: ContextSession, steps: List[str]) -> None:
        """Replace the step list; all per-step state of the session is dropped"""

        self.validate_steps(steps)

        had_steps = bool(session.steps)
        session.steps = list(steps)
        session.reset_derived_state()
        session.metadata["total_steps"] = len(steps)
        session.metadata["steps_initialized_at"] = datetime.utcnow().isoformat()
        session.touch()

        await self._persist(
            self.storage.clear_session_data(session.session_id), "clear_session_data", session.session_id
        )
        await self._persist(self.storage.save_session(session), "save_session", session.session_id)

        self.context_logger.log_context_update(
            session.session_id, "steps", "reset" if had_steps else "set", {"total_steps": len(steps)}
        )

    def get_steps(self, session: ContextSession) -> List[str]:
        return list(session.steps)

    def get_step_by_index(self, session: ContextSession, step_index: int) -> Optional[str]:
        if 0 <= step_index < len(session.steps):
            return session.steps[step_index]
        return None

    def get_total_steps(self, session: ContextSession) -> int:
        return len(session.steps)

    # Step executions

    async def add_step_execution(self, session: ContextSession, execution: StepExecution) -> None:
        self.validate_step_index(session, execution.step_index)

        if execution.end_time and execution.end_time < execution.start_time:
            raise TemporalOrderingViolation(
                "Step end time cannot be before start time",
                session_id=session.session_id,
                step_index=execution.step_index,
                details={
                    "start_time": execution.start_time.isoformat(),
                    "end_time": execution.end_time.isoformat(),
                },
            )

        previous = [e for e in session.step_executions if e.step_index < execution.step_index]
        if previous:
            last = max(previous, key=lambda e: e.step_index)
            if execution.start_time < last.start_time:
                raise TemporalOrderingViolation(
                    "Step execution must start after the previous step started",
                    code="CHRONOLOGICAL_ORDER_VIOLATION",
                    session_id=session.session_id,
                    step_index=execution.step_index,
                    details={
                        "previous_step": last.step_index,
                        "previous_start": last.start_time.isoformat(),
                        "start_time": execution.start_time.isoformat(),
                    },
                )

        existing = session.get_step_execution(execution.step_index)
        if existing:
            session.step_executions.remove(existing)
        session.step_executions.append(execution.model_copy(deep=True))
        session.sort_step_executions()
        session.touch()

        await self._persist(self.storage.save_session(session), "save_session", session.session_id)

    async def update_step_execution(
        self, session: ContextSession, step_index: int, updates: Dict[str, Any]
    ) -> StepExecution:
        """Apply field updates to an existing step execution"""

        self.validate_step_index(session, step_index)
        execution = session.get_step_execution(step_index)
        if not execution:
            raise StepExecutionNotFound(
                f"No execution recorded for step {step_index}",
                session_id=session.session_id,
                step_index=step_index,
            )

        updated = execution.model_copy(update=updates)
        if updated.end_time and updated.end_time < updated.start_time:
            raise TemporalOrderingViolation(
                "Step end time cannot be before start time",
                session_id=session.session_id,
                step_index=step_index,
            )

        session.step_executions[session.step_executions.index(execution)] = updated
        session.touch()
        await self._persist(self.storage.save_session(session), "save_session", session.session_id)

        return updated.model_copy(deep=True)

    def get_step_execution(self, session: ContextSession, step_index: int) -> Optional[StepExecution]:
        execution = session.get_step_execution(step_index)
        return execution.model_copy(deep=True) if execution else None

    def get_step_executions(self, session: ContextSession) -> List[StepExecution]:
        return [e.model_copy(deep=True) for e in session.step_executions]

    def get_current_step_index(self, session: ContextSession) -> int:
        """Index of the active step, or the first step without an execution"""

        for execution in session.step_executions:
            if execution.status == StepStatus.ACTIVE:
                return execution.step_index

        executed = {e.step_index for e in session.step_executions}
        for i in range(len(session.steps)):
            if i not in executed:
                return i

        return max(len(session.steps) - 1, 0)

    def get_step_progress(self, session: ContextSession) -> StepProgress:
        total = len(session.steps)
        completed = len([e for e in session.step_executions if e.status == StepStatus.COMPLETED])
        return StepProgress(
            completed=completed,
            total=total,
            percentage=round(completed / total * 100, 2) if total else 0.0,
        )

    # Status transitions

    async def start_step(self, session: ContextSession, step_index: int) -> StepExecution:
        self.validate_step_index(session, step_index)

        execution = session.get_step_execution(step_index)
        if execution:
            execution.status = StepStatus.ACTIVE
            execution.start_time = datetime.utcnow()
            execution.end_time = None
        else:
            execution = StepExecution(
                step_index=step_index,
                step_name=session.steps[step_index],
                status=StepStatus.ACTIVE,
            )
            session.step_executions.append(execution)
            session.sort_step_executions()

        session.touch()
        await self._persist(self.storage.save_session(session), "save_session", session.session_id)
        self.context_logger.log_context_update(session.session_id, "step", "start", {"step_index": step_index})

        return execution.model_copy(deep=True)

    async def complete_step(self, session: ContextSession, step_index: int) -> StepExecution:
        return await self._finish_step(session, step_index, StepStatus.COMPLETED)

    async def fail_step(self, session: ContextSession, step_index: int, reason: Optional[str] = None) -> StepExecution:
        execution = await self._finish_step(session, step_index, StepStatus.FAILED, persist=False)
        session.metadata["last_failed_step"] = step_index
        session.metadata["last_failure_reason"] = reason or "Unknown failure"
        await self._persist(self.storage.save_session(session), "save_session", session.session_id)
        return execution

    async def _finish_step(
        self, session: ContextSession, step_index: int, status: StepStatus, persist: bool = True
    ) -> StepExecution:
        self.validate_step_index(session, step_index)

        execution = session.get_step_execution(step_index)
        if not execution:
            raise StepExecutionNotFound(
                f"Step {step_index} has not been started",
                session_id=session.session_id,
                step_index=step_index,
            )

        execution.status = status
        execution.end_time = datetime.utcnow()
        session.touch()

        if persist:
            await self._persist(self.storage.save_session(session), "save_session", session.session_id)

        self.context_logger.log_context_update(
            session.session_id, "step", status.value, {"step_index": step_index}
        )
        return execution.model_copy(deep=True)

    # Queries

    def get_step_statistics(self, session: ContextSession) -> StepStatistics:
        counts = {status: 0 for status in StepStatus}
        for execution in session.step_executions:
            counts[execution.status] += 1

        durations = [
            (e.end_time - e.start_time).total_seconds() * 1000
            for e in session.step_executions
            if e.end_time
        ]

        executed = len(session.step_executions)
        return StepStatistics(
            total_steps=len(session.steps),
            pending_steps=counts[StepStatus.PENDING] + max(len(session.steps) - executed, 0),
            active_steps=counts[StepStatus.ACTIVE],
            completed_steps=counts[StepStatus.COMPLETED],
            failed_steps=counts[StepStatus.FAILED],
            average_duration=sum(durations) / len(durations) if durations else 0.0,
        )

    def find_steps_by_pattern(self, session: ContextSession, pattern: str) -> List[Dict[str, Any]]:
        """Case-insensitive regex search over step names"""

        regex = re.compile(pattern, re.IGNORECASE)
        return [
            {"index": i, "step": step}
            for i, step in enumerate(session.steps)
            if regex.search(step)
        ]
