"""Tests for the context engine facade."""

import pytest

from context_engine.domain.context.context_manager import ContextEngine
from context_engine.domain.errors import SessionNotFound
from context_engine.domain.models.context_session import CommandAction, SessionStatus
from context_engine.domain.models.investigation import InvestigationType
from context_engine.infrastructure.storage.storage_adapter import MemoryStorageAdapter

from tests.factories import STEPS, WORKFLOW_ID, build_settings, make_command, make_discovery, make_investigation, make_result


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_initialize_and_destroy(self, settings, storage):
        """Initialization reports storage health and starts the cleanup task."""
        engine = ContextEngine(settings, storage)

        health = await engine.initialize()

        assert health.is_healthy
        assert engine.registry._cleanup_task is not None
        await engine.destroy()

    @pytest.mark.asyncio
    async def test_initialize_with_unreachable_storage(self, settings):
        """Unhealthy storage is reported but the cleanup task still starts."""

        class UnreachableStorage(MemoryStorageAdapter):
            async def list_sessions(self):
                raise RuntimeError("connection refused")

        engine = ContextEngine(settings, UnreachableStorage())

        health = await engine.initialize()

        assert not health.is_healthy
        assert health.errors[0]["code"] == "STORAGE_HEALTH_CHECK_FAILED"
        assert engine.registry._cleanup_task is not None
        await engine.destroy()
        assert engine.registry._cleanup_task is None

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, engine):
        """Operations on unknown workflows raise SessionNotFound."""
        with pytest.raises(SessionNotFound):
            engine.get_steps("missing")

        with pytest.raises(SessionNotFound):
            await engine.generate_context_json("missing", 0)

        assert engine.get_session("missing") is None

    @pytest.mark.asyncio
    async def test_session_accessors(self, engine):
        """Session reads go through the registry and return copies."""
        session = engine.get_session(WORKFLOW_ID)
        session.steps.clear()

        assert engine.session_exists(WORKFLOW_ID)
        assert engine.get_session_status(WORKFLOW_ID) == SessionStatus.ACTIVE
        assert engine.get_steps(WORKFLOW_ID) == STEPS

    @pytest.mark.asyncio
    async def test_destroy_session(self, engine):
        await engine.destroy_session(WORKFLOW_ID)

        assert not engine.session_exists(WORKFLOW_ID)


class TestDiscoveryKnowledge:

    @pytest.mark.asyncio
    async def test_discovery_feeds_working_memory(self, engine):
        """Discoveries become element knowledge when both features are on."""
        stored = await engine.add_page_element_discovery(
            WORKFLOW_ID, 2, make_discovery(selector="#submit", confidence=0.8)
        )

        knowledge = engine.get_working_memory(WORKFLOW_ID).known_elements["#submit"]

        assert stored.selector == "#submit"
        assert engine.get_page_elements_discovered(WORKFLOW_ID, 2)[0].discovery_id == stored.discovery_id
        assert knowledge.reliability == 0.8
        assert knowledge.element_type == "button"
        assert knowledge.discovery_history == ["screenshot_analysis (confidence: 0.8)"]
        assert [e.selector for e in engine.get_reliable_elements(WORKFLOW_ID)] == ["#submit"]

    @pytest.mark.asyncio
    async def test_discovery_without_element_knowledge(self):
        """With element knowledge disabled discoveries stay out of memory."""
        engine = ContextEngine(build_settings(element_knowledge_enabled=False), MemoryStorageAdapter())
        await engine.create_session(WORKFLOW_ID)
        await engine.set_steps(WORKFLOW_ID, list(STEPS))

        await engine.add_page_element_discovery(WORKFLOW_ID, 0, make_discovery())

        assert len(engine.get_page_elements_discovered(WORKFLOW_ID, 0)) == 1
        assert engine.get_working_memory(WORKFLOW_ID).known_elements == {}


class TestContextFlow:

    @pytest.mark.asyncio
    async def test_end_to_end_context(self, engine):
        """Events, investigations and summaries flow into generated contexts."""
        await engine.start_step(WORKFLOW_ID, 0)
        await engine.add_execution_event(
            WORKFLOW_ID, 0, make_command(CommandAction.OPEN_PAGE), make_result(dom="<title>Login</title>"),
            reasoning="Open the page",
        )
        await engine.complete_step(WORKFLOW_ID, 0)
        await engine.add_investigation_result(WORKFLOW_ID, 1, make_investigation())

        context = await engine.generate_context_json(WORKFLOW_ID, 1)
        filtered = await engine.generate_filtered_context(WORKFLOW_ID, 1, {"max_history_steps": 5})
        investigation = await engine.generate_investigation_context(WORKFLOW_ID, 1)
        quality = await engine.analyze_context_quality(WORKFLOW_ID, 1)

        assert context.completed_steps == 1
        assert [item.executor_method for item in context.execution_flow] == ["PENDING", "OPEN_PAGE"]
        assert filtered.target_step == 1
        assert len(investigation.current_investigations) == 1
        assert quality.quality in ("low", "medium", "high")
        assert engine.get_most_effective_investigation_type(WORKFLOW_ID, 1) == InvestigationType.SCREENSHOT_ANALYSIS

    @pytest.mark.asyncio
    async def test_generated_contexts_carry_workflow_id(self, engine):
        """Every generated artifact names the linked workflow, not the internal session."""
        session = engine.get_session(WORKFLOW_ID)

        context = await engine.generate_context_json(WORKFLOW_ID, 0)
        filtered = await engine.generate_filtered_context(WORKFLOW_ID, 0)
        investigation = await engine.generate_investigation_context(WORKFLOW_ID, 0)

        assert session.session_id != WORKFLOW_ID
        assert context.session_id == WORKFLOW_ID
        assert filtered.session_id == WORKFLOW_ID
        assert investigation.session_id == WORKFLOW_ID


class TestAnalyticsAndMaintenance:

    @pytest.mark.asyncio
    async def test_analytics_report(self, engine):
        """The report aggregates every component and the operation metrics."""
        await engine.add_investigation_result(WORKFLOW_ID, 0, make_investigation())
        await engine.add_investigation_result(WORKFLOW_ID, 0, make_investigation(success=False))

        report = engine.generate_analytics_report(WORKFLOW_ID)

        assert set(report) == {
            "session", "steps", "events", "investigations", "discoveries", "working_memory", "metrics", "generated_at",
        }
        assert report["session"]["linked_workflow_id"] == WORKFLOW_ID
        assert report["investigations"] == {"total": 2, "successful": 1, "success_rate": 0.5}
        assert report["discoveries"]["total"] == 0
        assert report["working_memory"] is None
        assert report["metrics"]["operations.create_session"] == 1
        assert report["metrics"]["operations.add_investigation_result"] == 2

    @pytest.mark.asyncio
    async def test_optimize_storage(self):
        """Stored DOMs above the threshold are compressed on demand."""
        engine = ContextEngine(
            build_settings(compression_enabled=False, dom_compression_threshold=10), MemoryStorageAdapter()
        )
        await engine.create_session(WORKFLOW_ID)
        await engine.set_steps(WORKFLOW_ID, list(STEPS))
        await engine.add_execution_event(
            WORKFLOW_ID, 0, make_command(), make_result(dom="<div>   <p>x</p>   </div>")
        )

        result = await engine.optimize_storage(WORKFLOW_ID)

        assert result == {
            "dom_savings": 6,
            "investigation_savings": 0,
            "optimized_investigations": 0,
            "expired_working_memory": False,
        }
        assert engine.get_latest_page_dom(WORKFLOW_ID, 0) == "<div><p>x</p></div>"
