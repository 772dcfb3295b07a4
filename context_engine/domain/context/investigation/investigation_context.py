from typing import List
import re
import time
import structlog

from context_engine.domain.context.base_component import ContextComponent
from context_engine.domain.context.investigation.investigation_strategy import (
    compute_investigation_priority,
    suggest_investigations,
)
from context_engine.domain.errors import ContextEngineError, InvestigationContextGenerationFailed
from context_engine.domain.models.context_output import InvestigationContextJson, InvestigationCycleAnalysis
from context_engine.domain.models.context_session import ContextSession, StepExecution, StepStatus
from context_engine.domain.models.investigation import ElementDiscovery, InvestigationResult
from context_engine.domain.models.working_memory import PageInsight, WorkingMemoryState
from context_engine.infrastructure.observability.logging import ContextLogger
from context_engine.infrastructure.storage.dom_utils import extract_title

logger = structlog.get_logger(__name__)

MAX_ELEMENTS_DISCOVERED = 20

_FORM_RE = re.compile(r"<(form|input|select|textarea|button)", re.IGNORECASE)
_INTERACTIVE_RE = re.compile(r"<(a|button|input|select|textarea)\b", re.IGNORECASE)
_NAVIGATION_RE = re.compile(r"<(nav|menu|ul|ol)\b", re.IGNORECASE)

NEXT_RECOMMENDATIONS = {
    "exploring": "Start with screenshot analysis to understand the page layout",
    "focusing": "Focus on targeted investigations to find reliable selectors",
    "executing": "Proceed with automation using discovered elements",
    "completed": "Investigation cycle completed successfully",
}


def _label_matches(dom: str, pattern: re.Pattern) -> List[str]:
    return [f"<{m.group(1)} ({i + 1})" for i, m in enumerate(pattern.finditer(dom))]


class InvestigationContextGenerator(ContextComponent):
    """Builds the per-step context used to choose the next investigation"""

    def __init__(self, settings, storage):
        super().__init__(settings, storage)
        self.context_logger = ContextLogger(__name__)

    async def generate_investigation_context(
        self, session: ContextSession, step_index: int
    ) -> InvestigationContextJson:
        self.validate_step_index(session, step_index)
        started = time.perf_counter()

        try:
            investigations = self._current_investigations(session, step_index)
            memory = self._working_memory_state(session)

            context = InvestigationContextJson(
                session_id=session.linked_workflow_id,
                step_index=step_index,
                current_investigations=investigations,
                elements_discovered=self._elements_discovered(session, step_index),
                page_insight=self._page_insight(session, step_index),
                working_memory=memory,
                suggested_investigations=suggest_investigations(
                    investigations, session.steps[step_index], memory.investigation_preferences
                ),
                investigation_priority=compute_investigation_priority(
                    investigations, memory.investigation_preferences
                ),
            )
        except ContextEngineError:
            raise
        except Exception as e:
            logger.error(
                "Investigation context generation failed",
                session_id=session.session_id,
                step_index=step_index,
                error=str(e),
            )
            raise InvestigationContextGenerationFailed(
                f"Failed to generate investigation context for step {step_index}",
                session_id=session.session_id,
                step_index=step_index,
                details={"error": str(e)},
            ) from e

        self.context_logger.log_context_generated(
            session.session_id,
            "investigation_context",
            step_index,
            len(context.model_dump_json()),
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        return context

    def _current_investigations(self, session: ContextSession, step_index: int) -> List[InvestigationResult]:
        """Newest first, capped at the per-step maximum"""

        investigations = sorted(
            session.investigations.get(step_index, []), key=lambda i: i.timestamp, reverse=True
        )
        return [i.model_copy(deep=True) for i in investigations[:self.settings.max_investigations_per_step]]

    def _elements_discovered(self, session: ContextSession, step_index: int) -> List[ElementDiscovery]:
        discoveries = [
            d for d in session.element_discoveries.get(step_index, [])
            if d.confidence >= self.settings.reliability_threshold
        ]
        discoveries.sort(key=lambda d: d.confidence, reverse=True)
        return [d.model_copy(deep=True) for d in discoveries[:MAX_ELEMENTS_DISCOVERED]]

    def _working_memory_state(self, session: ContextSession) -> WorkingMemoryState:
        if session.working_memory:
            return session.working_memory.model_copy(deep=True)
        return WorkingMemoryState(session_id=session.linked_workflow_id)

    def _page_insight(self, session: ContextSession, step_index: int) -> PageInsight:
        if session.working_memory and session.working_memory.current_page_insight:
            return session.working_memory.current_page_insight.model_copy(deep=True)

        execution = session.get_step_execution(step_index)
        if execution and execution.events:
            return self.page_insight_from_step(execution)

        return PageInsight(step_index=step_index, complexity="medium")

    @staticmethod
    def page_insight_from_step(execution: StepExecution) -> PageInsight:
        """Rough page structure from the step's latest DOM snapshot"""

        last_event = max(execution.events, key=lambda e: e.timestamp)
        dom = last_event.page_dom or ""

        form_elements = _label_matches(dom, _FORM_RE)
        interactive_elements = _label_matches(dom, _INTERACTIVE_RE)
        navigation_count = len(_NAVIGATION_RE.findall(dom))

        total = len(form_elements) + len(interactive_elements)
        if total > 50:
            complexity = "high"
        elif total > 15:
            complexity = "medium"
        else:
            complexity = "low"

        return PageInsight(
            step_index=execution.step_index,
            page_title=extract_title(dom),
            form_elements=form_elements[:10],
            interactive_elements=interactive_elements[:15],
            navigation_structure=f"{navigation_count} navigation elements" if navigation_count else None,
            complexity=complexity,
        )

    # Analysis

    def analyze_investigation_cycle(self, session: ContextSession, step_index: int) -> InvestigationCycleAnalysis:
        self.validate_step_index(session, step_index)

        investigations = self._current_investigations(session, step_index)
        discoveries = self._elements_discovered(session, step_index)
        issues: List[str] = []

        phase = "exploring"
        confidence = 0.0

        if investigations:
            reliable = [d for d in discoveries if d.is_reliable]
            if not any(i.success for i in investigations):
                confidence = 0.1
                issues.append("No successful investigations yet")
            elif not reliable:
                phase, confidence = "focusing", 0.3
                issues.append("Investigations successful but no reliable elements found")
            elif len(reliable) < 3:
                phase, confidence = "focusing", 0.6
            else:
                phase, confidence = "executing", 0.8

            execution = session.get_step_execution(step_index)
            if execution and execution.status == StepStatus.COMPLETED:
                phase, confidence = "completed", 1.0

        return InvestigationCycleAnalysis(
            cycle_phase=phase,
            confidence=confidence,
            next_recommendation=NEXT_RECOMMENDATIONS[phase],
            issues=issues,
        )

    # Export

    @staticmethod
    def export_investigation_context_as_markdown(context: InvestigationContextJson) -> str:
        lines = [
            f"# Investigation Context - Step {context.step_index}",
            f"Session: {context.session_id}",
            f"Generated: {context.generated_at.isoformat()}",
            "",
            "## Current Investigations",
        ]

        if not context.current_investigations:
            lines.append("No investigations performed yet.")
        for i, investigation in enumerate(context.current_investigations, start=1):
            mark = "✓" if investigation.success else "✗"
            lines.append(f"### {i}. {investigation.investigation_type.value} {mark}")
            lines.append(f"**Time:** {investigation.timestamp.isoformat()}")
            if investigation.output.summary:
                lines.append(f"**Summary:** {investigation.output.summary}")
            if investigation.error:
                lines.append(f"**Error:** {investigation.error}")
            lines.append("")

        lines.append("## Elements Discovered")
        if not context.elements_discovered:
            lines.append("No reliable elements discovered yet.")
        for i, element in enumerate(context.elements_discovered, start=1):
            lines.append(f"### {i}. {element.element_type} ({round(element.confidence * 100)}% confidence)")
            lines.append(f"**Selector:** `{element.selector}`")
            lines.append(f"**Method:** {element.discovery_method.value}")
            lines.append(f"**Reliable:** {'Yes' if element.is_reliable else 'No'}")
            lines.append("")

        lines.append("## Suggested Next Investigations")
        for i, suggestion in enumerate(context.suggested_investigations, start=1):
            lines.append(f"### {i}. {suggestion.type.value} (Priority: {suggestion.priority})")
            lines.append(f"**Purpose:** {suggestion.purpose}")
            lines.append(f"**Reasoning:** {suggestion.reasoning}")
            lines.append("")

        priority = context.investigation_priority
        lines.append("## Investigation Priority")
        lines.append(f"**Primary:** {priority.primary.value}")
        lines.append(f"**Fallbacks:** {', '.join(t.value for t in priority.fallbacks)}")
        lines.append(f"**Reasoning:** {priority.reasoning}")

        return "\n".join(lines)
