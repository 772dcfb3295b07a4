from typing import Dict, List, Any, Optional, Tuple, Union, Callable
from datetime import datetime
import structlog

from context_engine.domain.context.context_filter import ContextFilter
from context_engine.domain.context.context_generator import ContextGenerator
from context_engine.domain.context.investigation.element_discovery import ElementDiscoveryRegistry
from context_engine.domain.context.investigation.investigation_context import InvestigationContextGenerator
from context_engine.domain.context.investigation.investigation_ledger import InvestigationLedger
from context_engine.domain.context.memory.working_memory import WorkingMemoryManager
from context_engine.domain.context.session.session_registry import SessionRegistry
from context_engine.domain.context.state.execution_tracker import ExecutionTracker
from context_engine.domain.context.state.step_manager import StepManager
from context_engine.domain.models.context_output import (
    AIContextJson,
    ContextFilterOptions,
    ContextQualityReport,
    EventStatistics,
    FilteredContextJson,
    InvestigationContextJson,
    InvestigationStatistics,
    StepProgress,
)
from context_engine.domain.models.context_session import (
    CommandResponse,
    ContextSession,
    ContextSummary,
    ExecutionEvent,
    ExecutorCommand,
    ModuleHealth,
    SessionStatus,
    StepExecution,
)
from context_engine.domain.models.investigation import ElementDiscovery, InvestigationResult, InvestigationType
from context_engine.domain.models.working_memory import (
    ElementDiscoveryUpdate,
    ElementKnowledge,
    WorkingMemoryState,
    WorkingMemoryUpdate,
)
from context_engine.infrastructure.config.settings import EngineSettings, get_settings
from context_engine.infrastructure.observability.logging import MetricsCollector
from context_engine.infrastructure.storage.factory import create_storage_adapter
from context_engine.infrastructure.storage.storage_adapter import StorageAdapter

logger = structlog.get_logger(__name__)


class ContextEngine:
    """Assembles execution history, investigations and learned knowledge into
    context for the automation agent.

    All components share one session registry and one storage adapter. Every
    operation is addressed by workflow ID; the owning session is resolved
    through the registry.
    """

    def __init__(self, settings: Optional[EngineSettings] = None, storage: Optional[StorageAdapter] = None):
        self.settings = settings or get_settings()
        self.storage = storage or create_storage_adapter(self.settings)

        self.registry = SessionRegistry(self.settings, self.storage)
        self.steps = StepManager(self.settings, self.storage)
        self.events = ExecutionTracker(self.settings, self.storage)
        self.investigations = InvestigationLedger(self.settings, self.storage)
        self.discoveries = ElementDiscoveryRegistry(self.settings, self.storage)
        self.working_memory = WorkingMemoryManager(self.settings, self.storage)
        self.context_generator = ContextGenerator(self.settings, self.storage)
        self.context_filter = ContextFilter(self.settings, self.storage)
        self.investigation_context = InvestigationContextGenerator(self.settings, self.storage)
        self.metrics = MetricsCollector()

    async def initialize(self) -> ModuleHealth:
        """Check storage health and start the TTL cleanup task"""

        health = await self.registry.health_check()
        if not health.is_healthy:
            logger.warning("Context engine started with unhealthy storage", errors=health.errors)

        self.registry.start_cleanup_task()
        logger.info("Context engine initialized", max_sessions=self.settings.max_sessions)
        return health

    async def destroy(self):
        await self.registry.stop_cleanup_task()
        logger.info("Context engine stopped", sessions=len(self.registry.sessions))

    def _session(self, workflow_id: str) -> ContextSession:
        return self.registry.require_session(workflow_id)

    # Sessions

    async def create_session(self, workflow_id: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        with self.metrics.time_operation("create_session"):
            return await self.registry.create_session(workflow_id, metadata)

    async def destroy_session(self, workflow_id: str):
        await self.registry.destroy_session(workflow_id)
        self.metrics.increment_counter("operations.destroy_session")

    def get_session(self, workflow_id: str) -> Optional[ContextSession]:
        session = self.registry.get_session(workflow_id)
        return session.model_copy(deep=True) if session else None

    def session_exists(self, workflow_id: str) -> bool:
        return self.registry.session_exists(workflow_id)

    def get_session_status(self, workflow_id: str) -> Optional[SessionStatus]:
        return self.registry.get_session_status(workflow_id)

    def get_last_activity(self, workflow_id: str) -> Optional[datetime]:
        return self.registry.get_last_activity(workflow_id)

    async def update_session_status(self, workflow_id: str, status: SessionStatus):
        await self.registry.update_status(workflow_id, status)

    async def record_activity(self, workflow_id: str):
        await self.registry.record_activity(workflow_id)

    async def link_executor_session(self, workflow_id: str, executor_session_id: str):
        await self.registry.link_executor_session(workflow_id, executor_session_id)

    def register_callback(self, event_type: str, handler: Callable):
        self.registry.register_callback(event_type, handler)

    async def health_check(self) -> ModuleHealth:
        return await self.registry.health_check()

    async def cleanup_expired_sessions(self) -> int:
        return await self.registry.cleanup_expired_sessions()

    # Steps

    async def set_steps(self, workflow_id: str, steps: List[str]):
        await self.steps.set_steps(self._session(workflow_id), steps)

    def get_steps(self, workflow_id: str) -> List[str]:
        return self.steps.get_steps(self._session(workflow_id))

    def get_step_by_index(self, workflow_id: str, step_index: int) -> Optional[str]:
        return self.steps.get_step_by_index(self._session(workflow_id), step_index)

    async def add_step_execution(self, workflow_id: str, execution: StepExecution):
        await self.steps.add_step_execution(self._session(workflow_id), execution)

    async def update_step_execution(self, workflow_id: str, step_index: int, updates: Dict[str, Any]) -> StepExecution:
        return await self.steps.update_step_execution(self._session(workflow_id), step_index, updates)

    def get_step_execution(self, workflow_id: str, step_index: int) -> Optional[StepExecution]:
        return self.steps.get_step_execution(self._session(workflow_id), step_index)

    def get_step_executions(self, workflow_id: str) -> List[StepExecution]:
        return self.steps.get_step_executions(self._session(workflow_id))

    async def start_step(self, workflow_id: str, step_index: int) -> StepExecution:
        return await self.steps.start_step(self._session(workflow_id), step_index)

    async def complete_step(self, workflow_id: str, step_index: int) -> StepExecution:
        return await self.steps.complete_step(self._session(workflow_id), step_index)

    async def fail_step(self, workflow_id: str, step_index: int, reason: Optional[str] = None) -> StepExecution:
        return await self.steps.fail_step(self._session(workflow_id), step_index, reason)

    def get_current_step_index(self, workflow_id: str) -> int:
        return self.steps.get_current_step_index(self._session(workflow_id))

    def get_step_progress(self, workflow_id: str) -> StepProgress:
        return self.steps.get_step_progress(self._session(workflow_id))

    # Execution events

    async def add_execution_event(
        self,
        workflow_id: str,
        step_index: int,
        command: ExecutorCommand,
        result: CommandResponse,
        reasoning: Optional[str] = None,
        screenshot_id: Optional[str] = None,
        **kwargs,
    ) -> str:
        with self.metrics.time_operation("add_execution_event"):
            return await self.events.add_execution_event(
                self._session(workflow_id), step_index, command, result, reasoning, screenshot_id, **kwargs
            )

    def get_execution_events(self, workflow_id: str, step_index: int) -> List[ExecutionEvent]:
        return self.events.get_execution_events(self._session(workflow_id), step_index)

    def get_events_by_time_range(
        self, workflow_id: str, step_index: int, start_time: datetime, end_time: datetime
    ) -> List[ExecutionEvent]:
        return self.events.get_events_by_time_range(self._session(workflow_id), step_index, start_time, end_time)

    def get_events_by_executor_method(self, workflow_id: str, step_index: int, method: str) -> List[ExecutionEvent]:
        return self.events.get_events_by_executor_method(self._session(workflow_id), step_index, method)

    def get_events_with_errors(self, workflow_id: str, step_index: int) -> List[ExecutionEvent]:
        return self.events.get_events_with_errors(self._session(workflow_id), step_index)

    def get_last_event(self, workflow_id: str, step_index: int) -> Optional[ExecutionEvent]:
        return self.events.get_last_event(self._session(workflow_id), step_index)

    def get_event_statistics(self, workflow_id: str, step_index: int) -> EventStatistics:
        return self.events.get_event_statistics(self._session(workflow_id), step_index)

    def get_latest_page_dom(self, workflow_id: str, step_index: int) -> Optional[str]:
        return self.events.get_latest_page_dom(self._session(workflow_id), step_index)

    def get_previous_page_dom(self, workflow_id: str, step_index: int) -> Optional[str]:
        return self.events.get_previous_page_dom(self._session(workflow_id), step_index)

    # Investigations

    async def add_investigation_result(
        self, workflow_id: str, step_index: int, investigation: Union[InvestigationResult, Dict[str, Any]]
    ) -> str:
        with self.metrics.time_operation("add_investigation_result"):
            return await self.investigations.add_investigation_result(
                self._session(workflow_id), step_index, investigation
            )

    def get_investigation_history(self, workflow_id: str, step_index: int) -> List[InvestigationResult]:
        return self.investigations.get_investigation_history(self._session(workflow_id), step_index)

    def get_investigation_statistics(self, workflow_id: str, step_index: int) -> InvestigationStatistics:
        return self.investigations.get_investigation_statistics(self._session(workflow_id), step_index)

    def get_most_effective_investigation_type(self, workflow_id: str, step_index: int) -> Optional[InvestigationType]:
        return self.investigations.get_most_effective_investigation_type(self._session(workflow_id), step_index)

    # Element discoveries

    async def add_page_element_discovery(
        self, workflow_id: str, step_index: int, discovery: Union[ElementDiscovery, Dict[str, Any]]
    ) -> ElementDiscovery:
        """Record a discovery and feed it into working memory when enabled"""

        session = self._session(workflow_id)
        stored = await self.discoveries.add_page_element_discovery(session, step_index, discovery)

        if self.settings.element_knowledge_enabled and self.settings.working_memory_enabled:
            await self.working_memory.update_working_memory(session, step_index, ElementDiscoveryUpdate(
                selector=stored.selector,
                element_type=stored.element_type,
                confidence=stored.confidence,
                source=stored.discovery_method.value,
            ))

        return stored

    def get_page_elements_discovered(self, workflow_id: str, step_index: int) -> List[ElementDiscovery]:
        return self.discoveries.get_page_elements_discovered(self._session(workflow_id), step_index)

    def get_reliable_element_discoveries(self, workflow_id: str, step_index: int) -> List[ElementDiscovery]:
        return self.discoveries.get_reliable_element_discoveries(self._session(workflow_id), step_index)

    # Working memory

    def get_working_memory(self, workflow_id: str) -> WorkingMemoryState:
        return self.working_memory.get_working_memory_snapshot(self._session(workflow_id))

    async def update_working_memory(
        self, workflow_id: str, step_index: int, update: Union[WorkingMemoryUpdate, Dict[str, Any]]
    ) -> WorkingMemoryState:
        with self.metrics.time_operation("update_working_memory"):
            return await self.working_memory.update_working_memory(self._session(workflow_id), step_index, update)

    async def clear_working_memory(self, workflow_id: str):
        await self.working_memory.clear_working_memory(self._session(workflow_id))

    def get_reliable_elements(self, workflow_id: str, min_reliability: Optional[float] = None) -> List[ElementKnowledge]:
        return self.working_memory.get_reliable_elements(self._session(workflow_id), min_reliability)

    # Context generation

    async def generate_context_json(self, workflow_id: str, target_step: int) -> AIContextJson:
        with self.metrics.time_operation("generate_context_json"):
            return await self.context_generator.generate_context_json(self._session(workflow_id), target_step)

    async def generate_filtered_context(
        self,
        workflow_id: str,
        target_step: int,
        options: Union[ContextFilterOptions, Dict[str, Any], None] = None,
    ) -> FilteredContextJson:
        with self.metrics.time_operation("generate_filtered_context"):
            return await self.context_filter.generate_filtered_context(
                self._session(workflow_id), target_step, options
            )

    async def generate_investigation_context(self, workflow_id: str, step_index: int) -> InvestigationContextJson:
        with self.metrics.time_operation("generate_investigation_context"):
            return await self.investigation_context.generate_investigation_context(
                self._session(workflow_id), step_index
            )

    async def add_context_summary(
        self, workflow_id: str, step_index: int, summary: Union[ContextSummary, Dict[str, Any]]
    ):
        await self.context_filter.add_context_summary(self._session(workflow_id), step_index, summary)

    def get_context_summaries(
        self, workflow_id: str, step_range: Optional[Tuple[int, int]] = None
    ) -> List[ContextSummary]:
        return self.context_filter.get_context_summaries(self._session(workflow_id), step_range)

    async def analyze_context_quality(self, workflow_id: str, target_step: int) -> ContextQualityReport:
        context = await self.generate_context_json(workflow_id, target_step)
        return self.context_generator.analyze_context_quality(context)

    # Analytics and maintenance

    def generate_analytics_report(self, workflow_id: str) -> Dict[str, Any]:
        session = self._session(workflow_id)

        step_indices = range(len(session.steps))
        total_investigations = sum(len(session.investigations.get(i, [])) for i in step_indices)
        successful_investigations = sum(
            len([r for r in session.investigations.get(i, []) if r.success]) for i in step_indices
        )
        total_discoveries = sum(len(session.element_discoveries.get(i, [])) for i in step_indices)
        reliable_discoveries = sum(
            len([d for d in session.element_discoveries.get(i, []) if d.is_reliable]) for i in step_indices
        )

        report = {
            "session": session.get_session_summary(),
            "steps": self.steps.get_step_statistics(session).model_dump(),
            "events": self.events.get_event_metrics(session),
            "investigations": {
                "total": total_investigations,
                "successful": successful_investigations,
                "success_rate": successful_investigations / total_investigations if total_investigations else 0.0,
            },
            "discoveries": {
                "total": total_discoveries,
                "reliable": reliable_discoveries,
                "reliability_rate": reliable_discoveries / total_discoveries if total_discoveries else 0.0,
            },
            "working_memory": None,
            "metrics": self.metrics.get_metrics_summary(),
            "generated_at": datetime.utcnow().isoformat(),
        }

        if session.working_memory:
            report["working_memory"] = self.working_memory.get_memory_statistics(session).model_dump(mode="json")

        return report

    async def optimize_storage(self, workflow_id: str) -> Dict[str, Any]:
        """Compress stored DOMs and trim oversized investigation payloads"""

        session = self._session(workflow_id)
        dom_savings = await self.events.compress_dom_data(session)
        investigation_result = await self.investigations.optimize_investigation_storage(session)
        expired_memory = await self.working_memory.expire_stale_memory(session)

        logger.info(
            "Optimized session storage",
            workflow_id=workflow_id,
            dom_savings=dom_savings,
            investigation_savings=investigation_result.savings,
        )

        return {
            "dom_savings": dom_savings,
            "investigation_savings": investigation_result.savings,
            "optimized_investigations": investigation_result.optimized_items,
            "expired_working_memory": expired_memory,
        }
