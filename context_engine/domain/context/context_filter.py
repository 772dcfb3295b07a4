from typing import Dict, List, Any, Optional, Tuple, Union
import re
import time
import structlog
from pydantic import ValidationError

from context_engine.domain.context.base_component import ContextComponent
from context_engine.domain.context.investigation.investigation_strategy import (
    compute_investigation_priority,
    determine_investigation_phase,
    suggest_investigations,
)
from context_engine.domain.errors import ContextEngineError, ContextGenerationFailed, InvalidFilterOptions
from context_engine.domain.models.context_output import (
    ContextFilterOptions,
    ExecutionSummaryItem,
    FilteredContextJson,
    InvestigationStrategy,
    SummarizationLevel,
)
from context_engine.domain.models.context_session import (
    CommandAction,
    ContextSession,
    ContextSummary,
    ExecutionEvent,
    StepExecution,
    StepStatus,
)
from context_engine.domain.models.investigation import ElementDiscovery, InvestigationType
from context_engine.domain.models.working_memory import (
    ElementKnowledge,
    InvestigationPreferences,
    PageInsight,
    WorkingMemoryState,
)
from context_engine.infrastructure.observability.logging import ContextLogger
from context_engine.infrastructure.storage.dom_utils import extract_title

logger = structlog.get_logger(__name__)

_INTERACTIVE_RE = re.compile(r"<(button|input|select|textarea|a)\b", re.IGNORECASE)
_FORM_RE = re.compile(r"<(form|input|select|textarea)\b", re.IGNORECASE)

DEFAULT_EVENT_CONFIDENCE = 0.5
MAX_KEY_FINDINGS = 5
MAX_ELEMENT_KNOWLEDGE = 50
INSIGHT_LOOKBACK_STEPS = 3
DISCOVERY_LOOKBACK_STEPS = 5
SIZE_PER_HISTORY_STEP = 10000

OUTCOMES = {
    StepStatus.COMPLETED: "success",
    StepStatus.FAILED: "failure",
    StepStatus.ACTIVE: "investigating",
}


def context_size(context: FilteredContextJson) -> int:
    """Serialized size in characters"""
    return len(context.model_dump_json())


class ContextFilter(ContextComponent):
    """Summarized, size-bounded context plus per-step context summaries"""

    def __init__(self, settings, storage):
        super().__init__(settings, storage)
        self.context_logger = ContextLogger(__name__)

    def resolve_options(
        self, options: Union[ContextFilterOptions, Dict[str, Any], None] = None
    ) -> ContextFilterOptions:
        """Fill caller options from settings and validate them"""

        if options is None:
            options = ContextFilterOptions(
                confidence_threshold=self.settings.default_confidence_threshold,
                summarization_level=SummarizationLevel(self.settings.default_filtering_level),
            )
        elif isinstance(options, dict):
            try:
                options = ContextFilterOptions.model_validate(options)
            except ValidationError as e:
                raise InvalidFilterOptions(
                    "Invalid context filter options",
                    details={"errors": e.errors(include_url=False)},
                ) from e

        if not 0 <= options.confidence_threshold <= 1:
            raise InvalidFilterOptions(
                "Confidence threshold must be between 0 and 1",
                details={"confidence_threshold": options.confidence_threshold},
            )
        if options.max_history_steps < 1:
            raise InvalidFilterOptions(
                "Max history steps must be at least 1",
                details={"max_history_steps": options.max_history_steps},
            )

        return options

    def size_limit(self, options: ContextFilterOptions) -> int:
        if self.settings.context_filtering_enabled:
            return self.settings.max_context_size
        return options.max_history_steps * SIZE_PER_HISTORY_STEP

    async def generate_filtered_context(
        self,
        session: ContextSession,
        target_step: int,
        options: Union[ContextFilterOptions, Dict[str, Any], None] = None,
    ) -> FilteredContextJson:
        self.validate_target_step(session, target_step)
        options = self.resolve_options(options)
        started = time.perf_counter()

        try:
            context = FilteredContextJson(
                session_id=session.linked_workflow_id,
                target_step=target_step,
                execution_summary=self._execution_summary(session, target_step, options),
                page_insights=self._page_insights(session, target_step, options),
                element_knowledge=self._element_knowledge(session, target_step, options),
                working_memory=self._filtered_working_memory(session, options),
                investigation_strategy=self._investigation_strategy(session, target_step, options),
            )

            trimmed = False
            if self.settings.context_filtering_enabled:
                limit = self.size_limit(options)
                if context_size(context) > limit:
                    context = self.apply_size_constraints(context, limit)
                    trimmed = True
        except ContextEngineError:
            raise
        except Exception as e:
            logger.error(
                "Filtered context generation failed",
                session_id=session.session_id,
                target_step=target_step,
                error=str(e),
            )
            raise ContextGenerationFailed(
                f"Failed to generate filtered context for step {target_step}",
                session_id=session.session_id,
                step_index=target_step,
                details={"target_step": target_step, "error": str(e)},
            ) from e

        self.context_logger.log_context_generated(
            session.session_id,
            "filtered_context",
            target_step,
            context_size(context),
            duration_ms=(time.perf_counter() - started) * 1000,
            trimmed=trimmed,
        )
        return context

    # Execution summary

    def _execution_summary(
        self, session: ContextSession, target_step: int, options: ContextFilterOptions
    ) -> List[ExecutionSummaryItem]:
        start = max(0, target_step - options.max_history_steps)
        summary = []
        for step_index in range(start, target_step + 1):
            execution = session.get_step_execution(step_index)
            if not execution:
                continue
            item = self._summary_item(execution, options)
            if item:
                summary.append(item)
        return summary

    def _summary_item(
        self, execution: StepExecution, options: ContextFilterOptions
    ) -> Optional[ExecutionSummaryItem]:
        events = sorted(execution.events, key=lambda e: e.timestamp)
        last_event = events[-1] if events else None

        confidence = DEFAULT_EVENT_CONFIDENCE
        if last_event and isinstance(last_event.metadata.get("confidence"), (int, float)):
            confidence = last_event.metadata["confidence"]

        if confidence < options.confidence_threshold:
            return None

        return ExecutionSummaryItem(
            step_index=execution.step_index,
            step_name=execution.step_name,
            reasoning=self._summarize_reasoning(events, options.summarization_level),
            action_taken=", ".join(dict.fromkeys(e.executor_method for e in events if e.executor_method)),
            outcome=OUTCOMES.get(execution.status, "retry"),
            confidence=confidence,
            timestamp=execution.end_time or execution.start_time,
            screenshot_id=last_event.screenshot_id if last_event else None,
            key_findings=self._key_findings(events),
        )

    @staticmethod
    def _summarize_reasoning(events: List[ExecutionEvent], level: SummarizationLevel) -> str:
        reasonings = [e.reasoning for e in events if e.reasoning]
        if not reasonings:
            return ""
        if level == SummarizationLevel.MINIMAL:
            return reasonings[-1]
        if level == SummarizationLevel.DETAILED:
            return " → ".join(reasonings)
        return " → ".join(reasonings[-2:])

    @staticmethod
    def _key_findings(events: List[ExecutionEvent]) -> List[str]:
        findings = []
        for event in events:
            if not (event.command_result and event.command_result.success):
                continue
            parameters = event.executor_command.parameters if event.executor_command else None
            if event.executor_method == CommandAction.SAVE_VARIABLE.value:
                findings.append(f"Variable saved: {parameters.variable_name if parameters else None}")
            elif event.executor_method == CommandAction.CLICK_ELEMENT.value:
                findings.append(f"Successfully clicked: {parameters.selector if parameters else None}")
        return findings[:MAX_KEY_FINDINGS]

    # Page insights

    def _page_insights(
        self, session: ContextSession, target_step: int, options: ContextFilterOptions
    ) -> List[PageInsight]:
        insights = []
        if session.working_memory and session.working_memory.current_page_insight:
            insights.append(session.working_memory.current_page_insight.model_copy(deep=True))

        start = max(0, target_step - min(INSIGHT_LOOKBACK_STEPS, options.max_history_steps))
        for step_index in range(start, target_step + 1):
            execution = session.get_step_execution(step_index)
            if not execution or not execution.events:
                continue
            last_event = max(execution.events, key=lambda e: e.timestamp)
            if options.exclude_page_content:
                insights.append(self._insight_from_metadata(last_event, step_index))
            else:
                insights.append(self._insight_from_dom(last_event.page_dom, step_index))

        return self.merge_page_insights(insights)

    @staticmethod
    def _insight_from_metadata(event: ExecutionEvent, step_index: int) -> PageInsight:
        return PageInsight(
            step_index=step_index,
            page_url=event.metadata.get("page_url"),
            page_title=event.metadata.get("page_title"),
            complexity="medium",
        )

    @staticmethod
    def _insight_from_dom(dom: str, step_index: int) -> PageInsight:
        dom = dom or ""
        interactive = len(_INTERACTIVE_RE.findall(dom))
        forms = len(_FORM_RE.findall(dom))

        if interactive > 20:
            complexity = "high"
        elif interactive > 5:
            complexity = "medium"
        else:
            complexity = "low"

        return PageInsight(
            step_index=step_index,
            page_title=extract_title(dom),
            interactive_elements=[f"{interactive} interactive elements found"],
            form_elements=[f"{forms} form elements found"],
            complexity=complexity,
        )

    @staticmethod
    def merge_page_insights(insights: List[PageInsight]) -> List[PageInsight]:
        """Deduplicate by URL (or step), keeping the latest step"""

        unique: Dict[str, PageInsight] = {}
        for insight in insights:
            key = insight.page_url or f"step-{insight.step_index}"
            if key not in unique or insight.step_index > unique[key].step_index:
                unique[key] = insight
        return list(unique.values())

    # Element knowledge

    def _element_knowledge(
        self, session: ContextSession, target_step: int, options: ContextFilterOptions
    ) -> List[ElementKnowledge]:
        if not options.include_element_knowledge:
            return []

        knowledge: List[ElementKnowledge] = []
        if session.working_memory:
            knowledge.extend(
                k.model_copy(deep=True) for k in session.working_memory.known_elements.values()
                if k.reliability >= options.confidence_threshold
            )

        start = max(0, target_step - min(DISCOVERY_LOOKBACK_STEPS, options.max_history_steps))
        for step_index in range(start, target_step + 1):
            for discovery in session.element_discoveries.get(step_index, []):
                if discovery.confidence >= options.confidence_threshold:
                    knowledge.append(self._discovery_to_knowledge(discovery))

        unique: Dict[str, ElementKnowledge] = {}
        for k in knowledge:
            if k.selector not in unique or k.reliability > unique[k.selector].reliability:
                unique[k.selector] = k

        ranked = sorted(unique.values(), key=lambda k: k.reliability, reverse=True)
        return ranked[:MAX_ELEMENT_KNOWLEDGE]

    @staticmethod
    def _discovery_to_knowledge(discovery: ElementDiscovery) -> ElementKnowledge:
        return ElementKnowledge(
            selector=discovery.selector,
            element_type=discovery.element_type,
            reliability=discovery.confidence,
            last_seen=discovery.timestamp,
            discovery_history=[f"{discovery.discovery_method.value} ({discovery.confidence})"],
        )

    # Working memory and strategy

    @staticmethod
    def _filtered_working_memory(session: ContextSession, options: ContextFilterOptions) -> WorkingMemoryState:
        if not options.include_working_memory or not session.working_memory:
            return WorkingMemoryState(
                session_id=session.linked_workflow_id,
                investigation_preferences=InvestigationPreferences(
                    preferred_order=[InvestigationType.SCREENSHOT_ANALYSIS],
                    quality_thresholds={},
                    fallback_strategies={},
                ),
            )

        memory = session.working_memory.model_copy(deep=True)
        memory.known_elements = {
            selector: k for selector, k in memory.known_elements.items()
            if k.reliability >= options.confidence_threshold
        }
        return memory

    def _investigation_strategy(
        self, session: ContextSession, target_step: int, options: ContextFilterOptions
    ) -> InvestigationStrategy:
        investigations = session.investigations.get(target_step, [])
        preferences = session.working_memory.investigation_preferences if session.working_memory else None

        return InvestigationStrategy(
            current_phase=determine_investigation_phase(investigations),
            recommended_investigations=suggest_investigations(
                investigations, session.steps[target_step], preferences
            ),
            investigation_priority=compute_investigation_priority(investigations, preferences),
            context_management_approach=self.context_management_approach(options),
            confidence_threshold=options.confidence_threshold,
            max_investigation_rounds=self.settings.max_investigations_per_step,
        )

    @staticmethod
    def context_management_approach(options: ContextFilterOptions) -> str:
        if options.exclude_full_dom and options.exclude_page_content:
            return "minimal"
        if options.include_working_memory and options.include_element_knowledge:
            return "comprehensive"
        return "standard"

    # Trim cascade

    def apply_size_constraints(self, context: FilteredContextJson, limit: int) -> FilteredContextJson:
        """Shrink the context stage by stage until it fits.

        Best effort: each stage runs only while the context is still over
        `limit`, and nothing is checked after the last stage.
        """

        context = context.model_copy(deep=True)

        if context_size(context) > limit:
            context.execution_summary = self._trim_execution_summary(context.execution_summary, int(limit * 0.4))

        if context_size(context) > limit:
            context.page_insights = self._trim_page_insights(context.page_insights)

        if context_size(context) > limit:
            context.element_knowledge = self._trim_element_knowledge(context.element_knowledge)

        if context_size(context) > limit:
            memory = context.working_memory
            memory.successful_patterns = memory.successful_patterns[-5:]
            memory.failure_patterns = memory.failure_patterns[-3:]

        logger.debug("Applied size constraints", limit=limit, size=context_size(context))
        return context

    @staticmethod
    def _trim_execution_summary(summary: List[ExecutionSummaryItem], target_size: int) -> List[ExecutionSummaryItem]:
        trimmed = summary[-10:]
        size = sum(len(item.model_dump_json()) for item in trimmed)
        if size <= target_size:
            return trimmed
        return [
            item.model_copy(update={"reasoning": item.reasoning[:100], "key_findings": item.key_findings[:2]})
            for item in trimmed
        ]

    @staticmethod
    def _trim_page_insights(insights: List[PageInsight]) -> List[PageInsight]:
        return [
            insight.model_copy(update={
                "main_sections": insight.main_sections[:3],
                "key_elements": insight.key_elements[:5],
                "form_elements": insight.form_elements[:3],
                "interactive_elements": insight.interactive_elements[:5],
            })
            for insight in insights[-3:]
        ]

    @staticmethod
    def _trim_element_knowledge(knowledge: List[ElementKnowledge]) -> List[ElementKnowledge]:
        return [
            k.model_copy(update={
                "discovery_history": k.discovery_history[-2:],
                "alternative_selectors": k.alternative_selectors[:2] if k.alternative_selectors else k.alternative_selectors,
            })
            for k in knowledge[:20]
        ]

    # Context summaries

    async def add_context_summary(
        self, session: ContextSession, step_index: int, summary: Union[ContextSummary, Dict[str, Any]]
    ) -> None:
        self.validate_step_index(session, step_index)

        if isinstance(summary, dict):
            summary = ContextSummary.model_validate({**summary, "step_index": step_index})
        else:
            summary = summary.model_copy(deep=True, update={"step_index": step_index})

        session.context_summaries[step_index] = summary
        session.touch()

        await self._persist(
            self.storage.save_context_summary(session.session_id, summary),
            "save_context_summary",
            session.session_id,
        )
        self.context_logger.log_context_update(
            session.session_id, "context_summary", "add", {"step_index": step_index}
        )

    def get_context_summaries(
        self, session: ContextSession, step_range: Optional[Tuple[int, int]] = None
    ) -> List[ContextSummary]:
        summaries = sorted(session.context_summaries.values(), key=lambda s: s.step_index)
        if step_range:
            start, end = step_range
            summaries = [s for s in summaries if start <= s.step_index <= end]
        return [s.model_copy(deep=True) for s in summaries]
