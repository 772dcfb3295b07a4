"""Tests for the working memory manager."""

from datetime import datetime, timedelta

import pytest

from context_engine.domain.context.memory.working_memory import WorkingMemoryManager
from context_engine.domain.errors import InvalidWorkingMemoryUpdate, UnknownUpdateType, WorkingMemoryDisabled
from context_engine.domain.models.investigation import InvestigationType
from context_engine.domain.models.working_memory import (
    ElementDiscoveryUpdate,
    InvestigationPreferenceUpdate,
    PageInsight,
    PageInsightUpdate,
    PatternLearningUpdate,
    VariableExtractionUpdate,
)

from tests.factories import build_settings


def element(selector: str, confidence: float, **kwargs) -> ElementDiscoveryUpdate:
    return ElementDiscoveryUpdate(selector=selector, confidence=confidence, source="screenshot_analysis", **kwargs)


class TestElementKnowledge:

    @pytest.mark.asyncio
    async def test_reliability_blends_with_learning_rate(self, session, memory_manager):
        """A confident observation nudges reliability by the learning rate."""
        await memory_manager.update_working_memory(session, 0, element("#submit", 0.5, purpose="submit form"))

        await memory_manager.update_working_memory(session, 1, element("#submit", 1.0))

        knowledge = memory_manager.get_element_knowledge(session, "#submit")
        assert knowledge.reliability == pytest.approx(0.55)
        assert knowledge.purpose == "submit form"
        assert knowledge.discovery_history == [
            "screenshot_analysis (confidence: 0.5)",
            "screenshot_analysis (confidence: 1.0)",
        ]

    @pytest.mark.asyncio
    async def test_alternative_selectors_are_merged(self, session, memory_manager):
        """New alternatives are appended without duplicates."""
        await memory_manager.update_working_memory(session, 0, element("#a", 0.8, alternative_selectors=["button.a"]))
        await memory_manager.update_working_memory(
            session, 0, element("#a", 0.8, alternative_selectors=["button.a", "[name=a]"])
        )

        assert memory_manager.get_element_knowledge(session, "#a").alternative_selectors == ["button.a", "[name=a]"]

    @pytest.mark.asyncio
    async def test_lowest_reliability_is_evicted(self, session, storage):
        """Over capacity, the least reliable element is dropped."""
        manager = WorkingMemoryManager(build_settings(max_known_elements=2), storage)

        await manager.update_working_memory(session, 0, element("#a", 0.9))
        await manager.update_working_memory(session, 0, element("#b", 0.3))
        await manager.update_working_memory(session, 0, element("#c", 0.6))

        assert set(manager.get_working_memory(session).known_elements) == {"#a", "#c"}

    @pytest.mark.asyncio
    async def test_blank_selector_rejected(self, session, memory_manager):
        """Element updates need a selector."""
        with pytest.raises(InvalidWorkingMemoryUpdate) as exc_info:
            await memory_manager.update_working_memory(session, 0, element("  ", 0.5))

        assert exc_info.value.code == "INVALID_ELEMENT_DATA"

    @pytest.mark.asyncio
    async def test_reliable_elements(self, session, memory_manager):
        """Only elements at or above the threshold are reliable, best first."""
        await memory_manager.update_working_memory(session, 0, element("#a", 0.75))
        await memory_manager.update_working_memory(session, 0, element("#b", 0.95))
        await memory_manager.update_working_memory(session, 0, element("#c", 0.2))

        assert [e.selector for e in memory_manager.get_reliable_elements(session)] == ["#b", "#a"]
        assert len(memory_manager.get_reliable_elements(session, min_reliability=0.1)) == 3


class TestUpdateDispatch:

    @pytest.mark.asyncio
    async def test_dict_updates_are_parsed(self, session, memory_manager):
        """Raw mappings are dispatched on their update type."""
        await memory_manager.update_working_memory(
            session, 0, {"update_type": "variable_extraction", "name": "order_id", "value": "A-17", "confidence": 0.9}
        )

        variable = memory_manager.get_variable_context(session, "order_id")
        assert variable.value == "A-17"
        assert variable.reliability == 0.9
        assert variable.extraction_method == "unknown"

    @pytest.mark.parametrize("update", [{"update_type": "telepathy"}, {"selector": "#a"}])
    @pytest.mark.asyncio
    async def test_unknown_update_type(self, session, memory_manager, update):
        """Unknown or missing update types are rejected."""
        with pytest.raises(UnknownUpdateType) as exc_info:
            await memory_manager.update_working_memory(session, 0, update)

        assert exc_info.value.code == "UNKNOWN_UPDATE_TYPE"

    @pytest.mark.asyncio
    async def test_invalid_payload_for_known_type(self, session, memory_manager):
        """A known type with bad fields is an invalid update, not an unknown one."""
        with pytest.raises(InvalidWorkingMemoryUpdate) as exc_info:
            await memory_manager.update_working_memory(
                session, 0, {"update_type": "element_discovery", "selector": "#a", "confidence": 3}
            )

        assert not isinstance(exc_info.value, UnknownUpdateType)

    @pytest.mark.asyncio
    async def test_blank_variable_name(self, session, memory_manager):
        """Variable updates need a name."""
        with pytest.raises(InvalidWorkingMemoryUpdate) as exc_info:
            await memory_manager.update_working_memory(session, 0, VariableExtractionUpdate(name=""))

        assert exc_info.value.code == "INVALID_VARIABLE_DATA"

    @pytest.mark.asyncio
    async def test_disabled_working_memory(self, session, storage):
        """Updates fail when working memory is switched off."""
        manager = WorkingMemoryManager(build_settings(working_memory_enabled=False), storage)

        with pytest.raises(WorkingMemoryDisabled):
            await manager.update_working_memory(session, 0, element("#a", 0.5))

    @pytest.mark.asyncio
    async def test_page_insight_replaces_current(self, session, memory_manager):
        """The latest insight becomes the current page insight."""
        insight = PageInsight(step_index=1, page_url="https://example.com/login", complexity="low")

        await memory_manager.update_working_memory(session, 1, PageInsightUpdate(insight=insight))

        assert memory_manager.get_current_page_insight(session).page_url == "https://example.com/login"

    @pytest.mark.asyncio
    async def test_update_returns_copy_and_persists(self, session, memory_manager, storage):
        """Returned state is detached and the stored state is current."""
        returned = await memory_manager.update_working_memory(session, 0, element("#a", 0.8))
        returned.known_elements.clear()

        assert memory_manager.get_element_knowledge(session, "#a") is not None
        stored = await storage.load_working_memory(session.session_id)
        assert "#a" in stored.known_elements


class TestPatternLearning:

    @pytest.mark.asyncio
    async def test_success_rate_is_running_mean(self, session, memory_manager):
        """A repeated success moves the rate to the mean of outcomes."""
        update = PatternLearningUpdate(pattern="click #submit", context="login", success=True, confidence=0.5)

        await memory_manager.update_working_memory(session, 0, update)
        await memory_manager.update_working_memory(session, 0, update)

        patterns = memory_manager.get_successful_patterns(session, "login")
        assert len(patterns) == 1
        assert patterns[0].usage_count == 2
        assert patterns[0].success_rate == pytest.approx(0.75)

    @pytest.mark.asyncio
    async def test_failure_reasons_are_deduplicated(self, session, memory_manager):
        """Failure reasons accumulate without repeats."""
        await memory_manager.update_working_memory(
            session, 0,
            PatternLearningUpdate(pattern="click #go", context="checkout", success=False, failure_reasons=["timeout"]),
        )
        await memory_manager.update_working_memory(
            session, 0,
            PatternLearningUpdate(
                pattern="click #go", context="checkout", success=False,
                failure_reasons=["timeout", "element hidden"], avoidance_strategy="scroll first",
            ),
        )

        failures = memory_manager.get_failure_patterns(session)
        assert len(failures) == 1
        assert failures[0].failure_reasons == ["timeout", "element hidden"]
        assert failures[0].avoidance_strategy == "scroll first"

    @pytest.mark.asyncio
    async def test_failure_patterns_capped(self, session, storage):
        """Only the most recent failure patterns are kept."""
        manager = WorkingMemoryManager(build_settings(max_failure_patterns=2), storage)

        for name in ("a", "b", "c"):
            await manager.update_working_memory(
                session, 0, PatternLearningUpdate(pattern=name, context="x", success=False)
            )

        assert len(manager.get_failure_patterns(session)) == 2


class TestMemoryLifecycle:

    @pytest.mark.asyncio
    async def test_clear_keeps_preferences(self, session, memory_manager):
        """Clearing resets knowledge but not investigation preferences."""
        await memory_manager.update_working_memory(session, 0, element("#a", 0.8))
        await memory_manager.update_working_memory(
            session, 0, InvestigationPreferenceUpdate(preferred_order=[InvestigationType.TEXT_EXTRACTION])
        )

        await memory_manager.clear_working_memory(session)

        memory = memory_manager.get_working_memory(session)
        assert memory.known_elements == {}
        assert memory.investigation_preferences.preferred_order == [InvestigationType.TEXT_EXTRACTION]

    @pytest.mark.asyncio
    async def test_expire_stale_memory(self, session, memory_manager):
        """Memory older than its TTL is cleared."""
        await memory_manager.update_working_memory(session, 0, element("#a", 0.8))
        assert not await memory_manager.expire_stale_memory(session)

        session.working_memory.last_updated = datetime.utcnow() - timedelta(hours=2)

        assert await memory_manager.expire_stale_memory(session)
        assert memory_manager.get_working_memory(session).known_elements == {}

    @pytest.mark.asyncio
    async def test_navigation_pattern_reinforced(self, session, memory_manager):
        """Seeing the same URL pattern again raises its reliability."""
        await memory_manager.update_navigation_pattern(session, "/login", ["open", "type", "submit"])
        pattern = await memory_manager.update_navigation_pattern(session, "/login", [])

        assert pattern.reliability == pytest.approx(0.6)
        assert pattern.navigation_steps == ["open", "type", "submit"]

    @pytest.mark.asyncio
    async def test_statistics_and_reload(self, session, memory_manager):
        """Statistics reflect content; load restores the persisted state."""
        await memory_manager.update_working_memory(session, 0, element("#a", 0.9))
        await memory_manager.update_working_memory(session, 0, VariableExtractionUpdate(name="token", value="x"))

        stats = memory_manager.get_memory_statistics(session)
        assert stats.total_elements == 1
        assert stats.reliable_elements == 1
        assert stats.total_variables == 1

        session.working_memory = None
        restored = await memory_manager.load_working_memory(session)
        assert "#a" in restored.known_elements
