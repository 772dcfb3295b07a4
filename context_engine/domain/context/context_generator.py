from typing import List, Optional
from datetime import timedelta
import time
import structlog

from context_engine.domain.context.base_component import ContextComponent
from context_engine.domain.errors import ContextEngineError, ContextGenerationFailed
from context_engine.domain.models.context_output import (
    AIContextJson,
    ContextQualityReport,
    ContextValidationReport,
    ExecutionFlowItem,
    QualityMetrics,
)
from context_engine.domain.models.context_session import ContextSession, StepStatus
from context_engine.infrastructure.observability.logging import ContextLogger
from context_engine.infrastructure.storage.dom_utils import (
    aggressive_compress_dom,
    compress_dom_if_needed,
    create_dom_summary as summarize_dom,
)

logger = structlog.get_logger(__name__)

PENDING_REASONING = "Step not yet executed"
PENDING_METHOD = "PENDING"
PENDING_STATUS = "initializing"
MISSING_REASONING = "No reasoning provided"

FLOW_KEEP_RATIO = 0.6
SUMMARIZE_DOM_OVER = 10000
FULL_TEMPORAL_COVERAGE = timedelta(minutes=30)


class ContextGenerator(ContextComponent):
    """Full chronological context for a target step"""

    def __init__(self, settings, storage):
        super().__init__(settings, storage)
        self.context_logger = ContextLogger(__name__)

    async def generate_context_json(self, session: ContextSession, target_step: int) -> AIContextJson:
        self.validate_target_step(session, target_step)
        started = time.perf_counter()

        try:
            executed = [e for e in session.step_executions if e.step_index <= target_step]
            context = AIContextJson(
                session_id=session.linked_workflow_id,
                target_step=target_step,
                execution_flow=self._execution_flow(session, target_step),
                previous_page_dom=self._page_dom(session, target_step - 1),
                current_page_dom=self._page_dom(session, target_step),
                total_steps=len(session.steps),
                completed_steps=len([e for e in executed if e.status == StepStatus.COMPLETED]),
                failed_steps=len([e for e in executed if e.status == StepStatus.FAILED]),
            )
        except ContextEngineError:
            raise
        except Exception as e:
            logger.error(
                "Context generation failed",
                session_id=session.session_id,
                target_step=target_step,
                error=str(e),
            )
            raise ContextGenerationFailed(
                f"Failed to generate context for step {target_step}",
                session_id=session.session_id,
                step_index=target_step,
                details={"target_step": target_step, "session_id": session.session_id, "error": str(e)},
            ) from e

        self.context_logger.log_context_generated(
            session.session_id,
            "context_json",
            target_step,
            len(context.model_dump_json()),
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        return context

    def _execution_flow(self, session: ContextSession, target_step: int) -> List[ExecutionFlowItem]:
        flow = []
        for step_index in range(target_step + 1):
            step_name = session.steps[step_index]
            execution = session.get_step_execution(step_index)

            if not execution:
                flow.append(ExecutionFlowItem(
                    step_index=step_index,
                    step_name=step_name,
                    reasoning=PENDING_REASONING,
                    executor_method=PENDING_METHOD,
                    timestamp=session.created_at,
                    status=PENDING_STATUS,
                ))
                continue

            for event in execution.events:
                if not event.reasoning and not event.executor_method:
                    continue
                flow.append(ExecutionFlowItem(
                    step_index=step_index,
                    step_name=step_name,
                    reasoning=event.reasoning or MISSING_REASONING,
                    executor_method=event.executor_method,
                    timestamp=event.timestamp,
                    status=execution.status.value,
                    screenshot_id=event.screenshot_id,
                ))

        flow.sort(key=lambda item: item.timestamp)
        return flow

    def _page_dom(self, session: ContextSession, step_index: int) -> Optional[str]:
        """Latest non-blank DOM snapshot recorded for a step"""

        if step_index < 0:
            return None
        execution = session.get_step_execution(step_index)
        if not execution:
            return None

        for event in sorted(execution.events, key=lambda e: e.timestamp, reverse=True):
            if event.page_dom and event.page_dom.strip():
                return compress_dom_if_needed(event.page_dom, self.settings.dom_compression_threshold)
        return None

    # Size optimization

    @staticmethod
    def optimize_context_for_size(context: AIContextJson, max_size: int) -> AIContextJson:
        """Shrink a context towards max_size serialized characters"""

        optimized = context.model_copy(deep=True)
        if len(optimized.model_dump_json()) <= max_size:
            return optimized

        if optimized.current_page_dom:
            optimized.current_page_dom = aggressive_compress_dom(optimized.current_page_dom)
        if optimized.previous_page_dom:
            optimized.previous_page_dom = aggressive_compress_dom(optimized.previous_page_dom)

        if len(optimized.model_dump_json()) > max_size:
            keep = int(len(optimized.execution_flow) * FLOW_KEEP_RATIO)
            optimized.execution_flow = optimized.execution_flow[-keep:] if keep else []

        if len(optimized.model_dump_json()) > max_size:
            if optimized.current_page_dom and len(optimized.current_page_dom) > SUMMARIZE_DOM_OVER:
                optimized.current_page_dom = summarize_dom(optimized.current_page_dom)
            if optimized.previous_page_dom and len(optimized.previous_page_dom) > SUMMARIZE_DOM_OVER:
                optimized.previous_page_dom = summarize_dom(optimized.previous_page_dom)

        logger.debug(
            "Optimized context size",
            session_id=context.session_id,
            max_size=max_size,
            size=len(optimized.model_dump_json()),
        )
        return optimized

    @staticmethod
    def create_dom_summary(dom: str) -> str:
        return summarize_dom(dom)

    # Quality

    @staticmethod
    def analyze_context_quality(context: AIContextJson) -> ContextQualityReport:
        issues: List[str] = []
        recommendations: List[str] = []

        expected_events = max(1, context.target_step + 1)
        completeness = min(1.0, len(context.execution_flow) / expected_events)
        if completeness < 0.5:
            issues.append("Execution flow is incomplete")
            recommendations.append("Record execution events for every executed step")

        dom_availability = 0.0
        if context.current_page_dom:
            dom_availability += 0.6
        else:
            issues.append("Current page DOM is missing")
            recommendations.append("Capture the DOM after each browser action")
        if context.previous_page_dom:
            dom_availability += 0.4
        elif context.target_step > 0:
            issues.append("Previous page DOM is missing")

        temporal_coverage = 0.0
        if len(context.execution_flow) > 1:
            timestamps = [item.timestamp for item in context.execution_flow]
            span = max(timestamps) - min(timestamps)
            temporal_coverage = min(1.0, span / FULL_TEMPORAL_COVERAGE)
        if temporal_coverage < 0.1:
            recommendations.append("Context covers a short time window, consider including more history")

        overall = completeness * 0.4 + dom_availability * 0.4 + temporal_coverage * 0.2
        if overall >= 0.8:
            quality = "high"
        elif overall >= 0.5:
            quality = "medium"
        else:
            quality = "low"

        return ContextQualityReport(
            quality=quality,
            issues=issues,
            recommendations=recommendations,
            metrics=QualityMetrics(
                execution_flow_completeness=completeness,
                dom_content_availability=dom_availability,
                temporal_coverage=temporal_coverage,
                overall_score=overall,
            ),
        )

    @staticmethod
    def validate_generated_context(context: AIContextJson) -> ContextValidationReport:
        errors: List[str] = []
        warnings: List[str] = []

        if not context.session_id:
            errors.append("Missing session ID")
        if context.target_step < 0:
            errors.append("Invalid target step")
        if context.total_steps and context.target_step >= context.total_steps:
            errors.append("Target step exceeds total steps")

        timestamps = [item.timestamp for item in context.execution_flow]
        if timestamps != sorted(timestamps):
            errors.append("Execution flow is not in chronological order")

        if not context.execution_flow:
            warnings.append("Execution flow is empty")
        if not context.current_page_dom:
            warnings.append("Current page DOM is missing")
        if context.completed_steps + context.failed_steps > context.target_step + 1:
            warnings.append("Step counts exceed the target step range")

        return ContextValidationReport(is_valid=not errors, errors=errors, warnings=warnings)

    # Export

    @staticmethod
    def export_context_as_markdown(context: AIContextJson) -> str:
        lines = [
            f"# AI Context - Step {context.target_step}",
            f"Session: {context.session_id}",
            f"Generated: {context.generated_at.isoformat()}",
            f"Progress: {context.completed_steps} completed, {context.failed_steps} failed"
            f" of {context.total_steps} steps",
            "",
            "## Execution Flow",
        ]

        if not context.execution_flow:
            lines.append("No execution history.")
        for item in context.execution_flow:
            lines.append(f"### Step {item.step_index}: {item.step_name}")
            lines.append(f"**Method:** {item.executor_method}")
            lines.append(f"**Status:** {item.status}")
            lines.append(f"**Time:** {item.timestamp.isoformat()}")
            lines.append(f"**Reasoning:** {item.reasoning}")
            if item.screenshot_id:
                lines.append(f"**Screenshot:** {item.screenshot_id}")
            lines.append("")

        for title, dom in (("Previous Page DOM", context.previous_page_dom), ("Current Page DOM", context.current_page_dom)):
            if dom:
                lines.extend([f"## {title}", "```html", dom, "```", ""])

        return "\n".join(lines).rstrip() + "\n"
