"""Tests for step definition and step execution tracking."""

from datetime import datetime, timedelta

import pytest

from context_engine.domain.context.state.step_manager import StepManager
from context_engine.domain.errors import (
    ErrorKind,
    InvalidStepIndex,
    InvalidSteps,
    StepExecutionNotFound,
    TemporalOrderingViolation,
)
from context_engine.domain.models.context_session import StepExecution, StepStatus
from context_engine.domain.models.working_memory import ElementDiscoveryUpdate

from tests.factories import build_settings, make_command, make_discovery, make_investigation, make_result


class TestStepValidation:

    @pytest.mark.parametrize(
        "steps, code",
        [
            ("not a list", "INVALID_STEPS_FORMAT"),
            ([], "EMPTY_STEPS_ARRAY"),
            (["ok", 3], "INVALID_STEP_TYPE"),
            (["ok", "   "], "EMPTY_STEP_CONTENT"),
            (["x" * 1001], "STEP_TOO_LONG"),
        ],
    )
    def test_invalid_steps_rejected(self, step_manager, steps, code):
        """Malformed step lists raise InvalidSteps with a specific code."""
        with pytest.raises(InvalidSteps) as exc_info:
            step_manager.validate_steps(steps)

        assert exc_info.value.code == code

    def test_too_many_steps_is_resource_limit(self, storage):
        """Exceeding the step cap is reported as a resource limit."""
        manager = StepManager(build_settings(max_steps_per_session=2), storage)

        with pytest.raises(InvalidSteps) as exc_info:
            manager.validate_steps(["a", "b", "c"])

        assert exc_info.value.code == "TOO_MANY_STEPS"
        assert exc_info.value.kind == ErrorKind.RESOURCE_LIMIT


class TestSetSteps:

    @pytest.mark.asyncio
    async def test_set_steps_records_metadata(self, session, step_manager):
        """Steps are stored with their count in the session metadata."""
        assert step_manager.get_steps(session) == session.steps
        assert step_manager.get_total_steps(session) == 3
        assert session.metadata["total_steps"] == 3
        assert "steps_initialized_at" in session.metadata

    @pytest.mark.asyncio
    async def test_get_steps_returns_copy(self, session, step_manager):
        """Mutating the returned list leaves the session untouched."""
        steps = step_manager.get_steps(session)
        steps.append("injected")

        assert len(session.steps) == 3

    @pytest.mark.asyncio
    async def test_redefining_steps_resets_derived_state(
        self, session, step_manager, tracker, ledger, discoveries, memory_manager, storage
    ):
        """A second set_steps clears executions, investigations, discoveries and memory."""
        await tracker.add_execution_event(session, 0, make_command(), make_result())
        await ledger.add_investigation_result(session, 0, make_investigation())
        await discoveries.add_page_element_discovery(session, 1, make_discovery())
        await memory_manager.update_working_memory(session, 0, ElementDiscoveryUpdate(selector="#a", confidence=0.9))

        await step_manager.set_steps(session, ["new first", "new second"])

        assert session.steps == ["new first", "new second"]
        assert session.step_executions == []
        assert session.investigations == {}
        assert session.element_discoveries == {}
        assert session.working_memory is None
        assert await storage.load_investigation_results(session.session_id, 0) == []
        assert await storage.load_working_memory(session.session_id) is None
        assert await storage.load_session(session.session_id) is not None

    @pytest.mark.asyncio
    async def test_get_step_by_index(self, session, step_manager):
        """Out-of-range lookups return None instead of raising."""
        assert step_manager.get_step_by_index(session, 2) == "Click the submit button"
        assert step_manager.get_step_by_index(session, 3) is None
        assert step_manager.get_step_by_index(session, -1) is None


class TestStepExecutions:

    @pytest.mark.asyncio
    async def test_end_before_start_rejected(self, session, step_manager):
        """An execution that ends before it starts is refused."""
        now = datetime.utcnow()
        execution = StepExecution(
            step_index=0, step_name="a", start_time=now, end_time=now - timedelta(seconds=1)
        )

        with pytest.raises(TemporalOrderingViolation) as exc_info:
            await step_manager.add_step_execution(session, execution)

        assert exc_info.value.code == "TEMPORAL_ORDERING_VIOLATION"

    @pytest.mark.asyncio
    async def test_start_before_previous_step_rejected(self, session, step_manager):
        """A step cannot start before the step preceding it."""
        now = datetime.utcnow()
        await step_manager.add_step_execution(session, StepExecution(step_index=0, step_name="a", start_time=now))

        with pytest.raises(TemporalOrderingViolation) as exc_info:
            await step_manager.add_step_execution(
                session, StepExecution(step_index=1, step_name="b", start_time=now - timedelta(minutes=1))
            )

        assert exc_info.value.code == "CHRONOLOGICAL_ORDER_VIOLATION"

    @pytest.mark.asyncio
    async def test_executions_kept_sorted_by_step_index(self, session, step_manager):
        """Executions added out of order are stored by step index."""
        start = datetime.utcnow()
        await step_manager.add_step_execution(session, StepExecution(step_index=2, step_name="c", start_time=start))
        await step_manager.add_step_execution(
            session, StepExecution(step_index=0, step_name="a", start_time=start - timedelta(minutes=5))
        )

        assert [e.step_index for e in step_manager.get_step_executions(session)] == [0, 2]

    @pytest.mark.asyncio
    async def test_add_step_execution_stores_a_copy(self, session, step_manager):
        """Later changes to the caller's object do not leak into the session."""
        execution = StepExecution(step_index=0, step_name="a")
        await step_manager.add_step_execution(session, execution)

        execution.status = StepStatus.FAILED

        assert step_manager.get_step_execution(session, 0).status == StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_invalid_step_index(self, session, step_manager):
        """Executions for steps outside the list are rejected."""
        with pytest.raises(InvalidStepIndex) as exc_info:
            await step_manager.add_step_execution(session, StepExecution(step_index=3, step_name="x"))

        assert "Valid range: 0-2" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_update_missing_execution(self, session, step_manager):
        """Updating a step that never ran raises StepExecutionNotFound."""
        with pytest.raises(StepExecutionNotFound):
            await step_manager.update_step_execution(session, 1, {"status": StepStatus.COMPLETED})

    @pytest.mark.asyncio
    async def test_update_step_execution(self, session, step_manager):
        """Field updates are applied to the stored execution."""
        await step_manager.start_step(session, 0)

        updated = await step_manager.update_step_execution(session, 0, {"step_name": "renamed"})

        assert updated.step_name == "renamed"
        assert step_manager.get_step_execution(session, 0).step_name == "renamed"


class TestStepTransitions:

    @pytest.mark.asyncio
    async def test_start_complete_fail_flow(self, session, step_manager):
        """Steps move through active, completed and failed states."""
        started = await step_manager.start_step(session, 0)
        assert started.status == StepStatus.ACTIVE
        assert step_manager.get_current_step_index(session) == 0

        completed = await step_manager.complete_step(session, 0)
        assert completed.status == StepStatus.COMPLETED
        assert completed.end_time is not None
        assert step_manager.get_current_step_index(session) == 1

        await step_manager.start_step(session, 1)
        failed = await step_manager.fail_step(session, 1, "element not found")
        assert failed.status == StepStatus.FAILED
        assert session.metadata["last_failed_step"] == 1
        assert session.metadata["last_failure_reason"] == "element not found"

    @pytest.mark.asyncio
    async def test_finishing_unstarted_step_fails(self, session, step_manager):
        """A step must be started before it can be completed."""
        with pytest.raises(StepExecutionNotFound):
            await step_manager.complete_step(session, 2)

    @pytest.mark.asyncio
    async def test_progress_and_statistics(self, session, step_manager):
        """Progress and statistics count steps by status."""
        await step_manager.start_step(session, 0)
        await step_manager.complete_step(session, 0)
        await step_manager.start_step(session, 1)

        progress = step_manager.get_step_progress(session)
        assert progress.completed == 1
        assert progress.total == 3
        assert progress.percentage == 33.33

        stats = step_manager.get_step_statistics(session)
        assert stats.completed_steps == 1
        assert stats.active_steps == 1
        assert stats.pending_steps == 1
        assert stats.average_duration >= 0

    @pytest.mark.asyncio
    async def test_find_steps_by_pattern(self, session, step_manager):
        """Step names are searched case-insensitively."""
        matches = step_manager.find_steps_by_pattern(session, "SUBMIT|login")

        assert matches == [
            {"index": 0, "step": "Open the login page"},
            {"index": 2, "step": "Click the submit button"},
        ]
