"""Tests for filtered context generation and context summaries."""

import pytest

from context_engine.domain.context.context_filter import ContextFilter, context_size
from context_engine.domain.errors import InvalidFilterOptions, InvalidStepIndex, TargetStepOutOfRange
from context_engine.domain.models.context_output import (
    ContextFilterOptions,
    FilteredContextJson,
    InvestigationPhase,
    InvestigationStrategy,
    SummarizationLevel,
)
from context_engine.domain.models.context_session import CommandAction, StepExecution
from context_engine.domain.models.investigation import InvestigationPriority, InvestigationType
from context_engine.domain.models.working_memory import (
    ElementDiscoveryUpdate,
    ElementKnowledge,
    FailurePattern,
    PageInsight,
    SuccessPattern,
    WorkingMemoryState,
)

from tests.factories import build_settings, make_command, make_discovery, make_result

CONFIDENT = {"confidence": 0.9}
BUTTONS_DOM = "<html><title>Shop</title><body>" + "<button>Buy</button>" * 6 + "<form><input></form></body></html>"


def options(**overrides) -> ContextFilterOptions:
    return ContextFilterOptions(**{"confidence_threshold": 0.5, **overrides})


class TestFilterOptions:

    def test_defaults_come_from_settings(self, storage):
        """Missing options are filled from the engine settings."""
        context_filter = ContextFilter(
            build_settings(default_confidence_threshold=0.4, default_filtering_level="minimal"), storage
        )

        resolved = context_filter.resolve_options(None)

        assert resolved.confidence_threshold == 0.4
        assert resolved.summarization_level == SummarizationLevel.MINIMAL

    @pytest.mark.parametrize(
        "raw, message",
        [
            ({"confidence_threshold": 1.5}, "Confidence threshold must be between 0 and 1"),
            ({"max_history_steps": 0}, "Max history steps must be at least 1"),
            ({"summarization_level": "verbose"}, "Invalid context filter options"),
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_options(self, session, context_filter, raw, message):
        """Out-of-range or malformed options are rejected."""
        with pytest.raises(InvalidFilterOptions) as exc_info:
            await context_filter.generate_filtered_context(session, 0, raw)

        assert exc_info.value.message == message

    @pytest.mark.asyncio
    async def test_target_step_validated(self, session, context_filter):
        """Targets past the last step are rejected."""
        with pytest.raises(TargetStepOutOfRange):
            await context_filter.generate_filtered_context(session, 3)

    @pytest.mark.parametrize(
        "overrides, approach",
        [
            ({"exclude_full_dom": True, "exclude_page_content": True}, "minimal"),
            ({}, "comprehensive"),
            ({"include_working_memory": False}, "standard"),
        ],
    )
    def test_context_management_approach(self, overrides, approach):
        """The approach follows the inclusion flags."""
        assert ContextFilter.context_management_approach(ContextFilterOptions(**overrides)) == approach


class TestExecutionSummary:

    @pytest.mark.asyncio
    async def test_events_without_confidence_use_default(self, session, tracker, context_filter):
        """Unscored steps count as 0.5 and are dropped by the default threshold."""
        await tracker.add_execution_event(session, 0, make_command(), make_result())

        default = await context_filter.generate_filtered_context(session, 0)
        lenient = await context_filter.generate_filtered_context(session, 0, {"confidence_threshold": 0.5})

        assert default.execution_summary == []
        assert [item.confidence for item in lenient.execution_summary] == [0.5]

    @pytest.mark.parametrize(
        "level, expected",
        [
            (SummarizationLevel.MINIMAL, "third"),
            (SummarizationLevel.STANDARD, "second → third"),
            (SummarizationLevel.DETAILED, "first → second → third"),
        ],
    )
    @pytest.mark.asyncio
    async def test_reasoning_by_level(self, session, tracker, context_filter, level, expected):
        """The summarization level controls how much reasoning is kept."""
        for reasoning in ("first", "second", "third"):
            await tracker.add_execution_event(
                session, 0, make_command(), make_result(), reasoning=reasoning, metadata=CONFIDENT
            )

        context = await context_filter.generate_filtered_context(session, 0, options(summarization_level=level))

        assert context.execution_summary[0].reasoning == expected

    @pytest.mark.asyncio
    async def test_actions_and_key_findings(self, session, tracker, context_filter):
        """Successful saves and clicks become findings; methods are listed once."""
        await tracker.add_execution_event(
            session, 1, make_command(CommandAction.SAVE_VARIABLE, variable_name="token"), make_result()
        )
        await tracker.add_execution_event(session, 1, make_command(selector="#missing"), make_result(success=False))
        await tracker.add_execution_event(
            session, 1, make_command(selector="#submit"), make_result(), metadata=CONFIDENT
        )

        item = (await context_filter.generate_filtered_context(session, 1, options())).execution_summary[0]

        assert item.action_taken == "SAVE_VARIABLE, CLICK_ELEMENT"
        assert item.key_findings == ["Variable saved: token", "Successfully clicked: #submit"]
        assert item.outcome == "investigating"

    @pytest.mark.asyncio
    async def test_outcomes_follow_step_status(self, session, step_manager, context_filter):
        """Step status maps onto summary outcomes."""
        await step_manager.add_step_execution(session, StepExecution(step_index=0, step_name="a"))
        await step_manager.start_step(session, 1)
        await step_manager.fail_step(session, 1, "timeout")
        await step_manager.start_step(session, 2)
        await step_manager.complete_step(session, 2)

        context = await context_filter.generate_filtered_context(session, 2, options())

        assert [item.outcome for item in context.execution_summary] == ["retry", "failure", "success"]

    @pytest.mark.asyncio
    async def test_history_window(self, session, tracker, context_filter):
        """Only the last max_history_steps steps before the target are summarized."""
        for index in range(3):
            await tracker.add_execution_event(session, index, make_command(), make_result(), metadata=CONFIDENT)

        context = await context_filter.generate_filtered_context(session, 2, options(max_history_steps=1))

        assert [item.step_index for item in context.execution_summary] == [1, 2]


class TestPageInsightsAndKnowledge:

    @pytest.mark.asyncio
    async def test_insight_from_dom(self, session, tracker, context_filter):
        """DOM analysis counts interactive and form elements."""
        await tracker.add_execution_event(session, 0, make_command(), make_result(dom=BUTTONS_DOM))

        insights = (await context_filter.generate_filtered_context(session, 0, options())).page_insights

        assert len(insights) == 1
        assert insights[0].page_title == "Shop"
        assert insights[0].complexity == "medium"
        assert insights[0].interactive_elements == ["7 interactive elements found"]
        assert insights[0].form_elements == ["2 form elements found"]

    @pytest.mark.asyncio
    async def test_insight_from_metadata_when_page_content_excluded(self, session, tracker, context_filter):
        """Without page content, insights come from event metadata."""
        await tracker.add_execution_event(
            session, 0, make_command(), make_result(dom=BUTTONS_DOM),
            metadata={"page_url": "https://shop.example.com", "page_title": "Shop"},
        )

        insights = (
            await context_filter.generate_filtered_context(session, 0, options(exclude_page_content=True))
        ).page_insights

        assert insights[0].page_url == "https://shop.example.com"
        assert insights[0].interactive_elements == []

    def test_merge_page_insights_keeps_latest_per_url(self):
        """Insights for the same URL collapse to the latest step."""
        merged = ContextFilter.merge_page_insights([
            PageInsight(step_index=1, page_url="https://a"),
            PageInsight(step_index=2),
            PageInsight(step_index=3, page_url="https://a"),
        ])

        assert [(i.page_url, i.step_index) for i in merged] == [("https://a", 3), (None, 2)]

    @pytest.mark.asyncio
    async def test_element_knowledge_merges_memory_and_discoveries(
        self, session, discoveries, memory_manager, context_filter
    ):
        """The most reliable entry per selector wins; weak entries are dropped."""
        await memory_manager.update_working_memory(session, 0, ElementDiscoveryUpdate(selector="#submit", confidence=0.8))
        await discoveries.add_page_element_discovery(session, 1, make_discovery(selector="#submit", confidence=0.95))
        await discoveries.add_page_element_discovery(session, 1, make_discovery(selector="#weak", confidence=0.3))

        knowledge = (await context_filter.generate_filtered_context(session, 1, options())).element_knowledge

        assert [k.selector for k in knowledge] == ["#submit"]
        assert knowledge[0].reliability == 0.95
        assert knowledge[0].discovery_history == ["screenshot_analysis (0.95)"]

    @pytest.mark.asyncio
    async def test_excluded_knowledge_and_memory(self, session, memory_manager, context_filter):
        """Excluded sections fall back to empty knowledge and default memory."""
        await memory_manager.update_working_memory(session, 0, ElementDiscoveryUpdate(selector="#a", confidence=0.9))

        context = await context_filter.generate_filtered_context(
            session, 0, options(include_element_knowledge=False, include_working_memory=False)
        )

        assert context.element_knowledge == []
        assert context.working_memory.known_elements == {}
        preferences = context.working_memory.investigation_preferences
        assert preferences.preferred_order == [InvestigationType.SCREENSHOT_ANALYSIS]
        assert preferences.quality_thresholds == {}
        assert context.investigation_strategy.context_management_approach == "standard"

    @pytest.mark.asyncio
    async def test_working_memory_filtered_by_threshold(self, session, memory_manager, context_filter):
        """Only elements at or above the threshold stay in the memory view."""
        await memory_manager.update_working_memory(session, 0, ElementDiscoveryUpdate(selector="#a", confidence=0.9))
        await memory_manager.update_working_memory(session, 0, ElementDiscoveryUpdate(selector="#b", confidence=0.2))

        context = await context_filter.generate_filtered_context(session, 0, options())

        assert set(context.working_memory.known_elements) == {"#a"}
        assert set(memory_manager.get_working_memory(session).known_elements) == {"#a", "#b"}


class TestSizeConstraints:

    @pytest.mark.asyncio
    async def test_long_session_is_trimmed(self, registry, step_manager, tracker, storage):
        """A fifty-step history over budget keeps at most ten summary items."""
        await registry.create_session("long-run")
        session = registry.require_session("long-run")
        await step_manager.set_steps(session, [f"Step {i}" for i in range(50)])
        for index in range(50):
            await tracker.add_execution_event(
                session, index, make_command(), make_result(), reasoning="x" * 500, metadata=CONFIDENT
            )
        context_filter = ContextFilter(build_settings(max_context_size=2000), storage)

        context = await context_filter.generate_filtered_context(session, 49, options(max_history_steps=50))

        assert len(context.execution_summary) <= 10
        assert [item.step_index for item in context.execution_summary] == list(range(40, 50))
        assert all(len(item.reasoning) <= 100 for item in context.execution_summary)

    def test_trim_cascade_on_oversized_context(self, context_filter):
        """Each stage caps its section when the context stays over budget."""
        insights = [PageInsight(step_index=i, key_elements=[f"k{j}" for j in range(10)]) for i in range(6)]
        memory = WorkingMemoryState(
            session_id="wf",
            successful_patterns=[SuccessPattern(pattern=f"p{i}", context="c", success_rate=1.0) for i in range(8)],
            failure_patterns=[FailurePattern(pattern=f"f{i}", context="c") for i in range(6)],
        )
        context = FilteredContextJson(
            session_id="s",
            target_step=0,
            page_insights=insights,
            element_knowledge=[
                ElementKnowledge(selector=f"#e{i}", discovery_history=["a", "b", "c"]) for i in range(30)
            ],
            working_memory=memory,
            investigation_strategy=InvestigationStrategy(
                current_phase=InvestigationPhase.INITIAL_ASSESSMENT,
                investigation_priority=InvestigationPriority(primary=InvestigationType.SCREENSHOT_ANALYSIS),
                confidence_threshold=0.7,
                max_investigation_rounds=20,
            ),
        )

        trimmed = context_filter.apply_size_constraints(context, 10)

        assert [i.step_index for i in trimmed.page_insights] == [3, 4, 5]
        assert all(len(i.key_elements) == 5 for i in trimmed.page_insights)
        assert len(trimmed.element_knowledge) == 20
        assert all(k.discovery_history == ["b", "c"] for k in trimmed.element_knowledge)
        assert [p.pattern for p in trimmed.working_memory.successful_patterns] == ["p3", "p4", "p5", "p6", "p7"]
        assert len(trimmed.working_memory.failure_patterns) == 3
        assert context_size(trimmed) > 10
        assert len(context.page_insights) == 6

    @pytest.mark.asyncio
    async def test_filtering_disabled_skips_trim(self, session, tracker, storage):
        """With filtering off the context is returned untrimmed."""
        context_filter = ContextFilter(build_settings(context_filtering_enabled=False, max_context_size=10), storage)
        await tracker.add_execution_event(session, 0, make_command(), make_result(), metadata=CONFIDENT)

        context = await context_filter.generate_filtered_context(session, 0, options())

        assert len(context.execution_summary) == 1
        assert context_filter.size_limit(options(max_history_steps=3)) == 30000


class TestContextSummaries:

    @pytest.mark.asyncio
    async def test_add_and_list_summaries(self, session, context_filter, storage):
        """Summaries are keyed by step, sorted and filterable by range."""
        await context_filter.add_context_summary(session, 2, {"summary": "submitted", "step_index": 99})
        await context_filter.add_context_summary(session, 0, {"summary": "opened"})

        summaries = context_filter.get_context_summaries(session)
        assert [(s.step_index, s.summary) for s in summaries] == [(0, "opened"), (2, "submitted")]
        assert [s.step_index for s in context_filter.get_context_summaries(session, (1, 2))] == [2]

        stored = await storage.load_context_summaries(session.session_id)
        assert len(stored) == 2

    @pytest.mark.asyncio
    async def test_summary_step_validated(self, session, context_filter):
        """Summaries for unknown steps are rejected."""
        with pytest.raises(InvalidStepIndex):
            await context_filter.add_context_summary(session, 5, {"summary": "nope"})
