from typing import Dict, List, Any, Optional, Union
from datetime import datetime, timedelta
import structlog
from pydantic import TypeAdapter, ValidationError

from context_engine.domain.context.base_component import ContextComponent
from context_engine.domain.errors import (
    InvalidWorkingMemoryUpdate,
    UnknownUpdateType,
    WorkingMemoryDisabled,
)
from context_engine.domain.models.context_output import MemoryStatistics
from context_engine.domain.models.context_session import ContextSession
from context_engine.domain.models.working_memory import (
    ElementDiscoveryUpdate,
    ElementKnowledge,
    FailurePattern,
    InvestigationPreferenceUpdate,
    InvestigationPreferences,
    NavigationPattern,
    PageInsight,
    PageInsightUpdate,
    PatternLearningUpdate,
    SuccessPattern,
    VariableContext,
    VariableExtractionUpdate,
    WorkingMemoryState,
    WorkingMemoryUpdate,
)
from context_engine.infrastructure.observability.logging import ContextLogger

logger = structlog.get_logger(__name__)

_update_adapter = TypeAdapter(WorkingMemoryUpdate)

_UNKNOWN_TAG_ERRORS = {"union_tag_invalid", "union_tag_not_found"}


class WorkingMemoryManager(ContextComponent):
    """Cross-step knowledge base with confidence-weighted learning.

    Element reliability is blended with `learning_rate`; success patterns keep
    a running mean of outcomes. Collections are capped: lowest-reliability
    elements, lowest-scoring success patterns and oldest failure patterns are
    evicted first.
    """

    def __init__(self, settings, storage):
        super().__init__(settings, storage)
        self.context_logger = ContextLogger(__name__)

    def _require_enabled(self, session: ContextSession):
        if not self.settings.working_memory_enabled:
            raise WorkingMemoryDisabled(
                "Working memory is disabled",
                session_id=session.session_id,
            )

    # State

    def initialize_working_memory(self, session: ContextSession) -> WorkingMemoryState:
        session.working_memory = WorkingMemoryState(session_id=session.linked_workflow_id)
        return session.working_memory

    def get_working_memory(self, session: ContextSession) -> WorkingMemoryState:
        """Live working memory of the session, created on first use"""

        if session.working_memory is None:
            return self.initialize_working_memory(session)
        return session.working_memory

    def get_working_memory_snapshot(self, session: ContextSession) -> WorkingMemoryState:
        return self.get_working_memory(session).model_copy(deep=True)

    async def clear_working_memory(self, session: ContextSession) -> None:
        """Reset every collection; preferences and the session itself survive"""

        memory = session.working_memory
        if memory is None:
            return

        memory.known_elements = {}
        memory.extracted_variables = {}
        memory.successful_patterns = []
        memory.failure_patterns = []
        memory.current_page_insight = None
        memory.navigation_pattern = None
        memory.last_updated = datetime.utcnow()

        await self.save_working_memory(session)
        self.context_logger.log_context_update(session.session_id, "working_memory", "clear")

    def is_expired(self, session: ContextSession) -> bool:
        memory = session.working_memory
        if memory is None:
            return False
        age = datetime.utcnow() - memory.last_updated
        return age > timedelta(seconds=self.settings.working_memory_ttl_seconds)

    async def expire_stale_memory(self, session: ContextSession) -> bool:
        """Clear working memory untouched for longer than its TTL"""

        if not self.is_expired(session):
            return False
        logger.info("Working memory expired", session_id=session.session_id)
        await self.clear_working_memory(session)
        return True

    # Updates

    def parse_update(self, session: ContextSession, update: Any) -> WorkingMemoryUpdate:
        """Turn a raw mapping into a typed update"""

        if not isinstance(update, dict):
            return update

        try:
            return _update_adapter.validate_python(update)
        except ValidationError as e:
            errors = e.errors(include_url=False)
            if any(err["type"] in _UNKNOWN_TAG_ERRORS for err in errors):
                raise UnknownUpdateType(
                    f"Unknown working memory update type: {update.get('update_type')}",
                    session_id=session.session_id,
                    details={"update_type": update.get("update_type")},
                ) from e
            raise InvalidWorkingMemoryUpdate(
                "Invalid working memory update",
                session_id=session.session_id,
                details={"errors": errors},
            ) from e

    async def update_working_memory(
        self,
        session: ContextSession,
        step_index: int,
        update: Union[WorkingMemoryUpdate, Dict[str, Any]],
    ) -> WorkingMemoryState:
        self._require_enabled(session)
        update = self.parse_update(session, update)
        memory = self.get_working_memory(session)

        match update:
            case ElementDiscoveryUpdate():
                self._update_element_knowledge(session, memory, update)
            case PageInsightUpdate():
                memory.current_page_insight = update.insight.model_copy(deep=True)
            case VariableExtractionUpdate():
                self._update_variable_context(session, memory, update)
            case PatternLearningUpdate():
                if update.success:
                    self._update_success_pattern(memory, update)
                else:
                    self._update_failure_pattern(memory, update)
            case InvestigationPreferenceUpdate():
                self._update_investigation_preferences(memory, update)
            case _:
                raise UnknownUpdateType(
                    f"Unknown working memory update type: {getattr(update, 'update_type', type(update).__name__)}",
                    session_id=session.session_id,
                    step_index=step_index,
                )

        memory.last_updated = datetime.utcnow()
        session.touch()
        await self.save_working_memory(session)

        self.context_logger.log_context_update(
            session.session_id,
            "working_memory",
            update.update_type,
            {"step_index": step_index, "confidence": update.confidence, "source": update.source},
        )

        return memory.model_copy(deep=True)

    def _update_element_knowledge(
        self, session: ContextSession, memory: WorkingMemoryState, update: ElementDiscoveryUpdate
    ):
        if not update.selector or not update.selector.strip():
            raise InvalidWorkingMemoryUpdate(
                "Element selector is required and must be a string",
                code="INVALID_ELEMENT_DATA",
                session_id=session.session_id,
            )

        history_entry = f"{update.source} (confidence: {update.confidence})"
        existing = memory.known_elements.get(update.selector)

        if existing:
            rate = self.settings.learning_rate
            existing.reliability = existing.reliability * (1 - rate) + update.confidence * rate
            existing.last_seen = datetime.utcnow()
            existing.discovery_history.append(history_entry)

            if update.alternative_selectors:
                known = existing.alternative_selectors or []
                existing.alternative_selectors = known + [
                    s for s in update.alternative_selectors if s not in known
                ]
            if update.interaction_notes:
                existing.interaction_notes = update.interaction_notes
        else:
            memory.known_elements[update.selector] = ElementKnowledge(
                selector=update.selector,
                element_type=update.element_type or "unknown",
                purpose=update.purpose or "unknown",
                reliability=update.confidence,
                discovery_history=[history_entry],
                alternative_selectors=list(update.alternative_selectors) if update.alternative_selectors else None,
                interaction_notes=update.interaction_notes,
            )

        self._cleanup_element_knowledge(memory)

    def _update_variable_context(
        self, session: ContextSession, memory: WorkingMemoryState, update: VariableExtractionUpdate
    ):
        if not update.name or not update.name.strip():
            raise InvalidWorkingMemoryUpdate(
                "Variable name is required and must be a string",
                code="INVALID_VARIABLE_DATA",
                session_id=session.session_id,
            )

        memory.extracted_variables[update.name] = VariableContext(
            name=update.name,
            value=update.value or "",
            extraction_method=update.extraction_method or update.source,
            reliability=update.confidence,
            source_element=update.source_element,
        )

    def _update_success_pattern(self, memory: WorkingMemoryState, update: PatternLearningUpdate):
        existing = next(
            (p for p in memory.successful_patterns if p.pattern == update.pattern and p.context == update.context),
            None,
        )

        if existing:
            existing.usage_count += 1
            n = existing.usage_count
            existing.success_rate = (existing.success_rate * (n - 1) + 1) / n
            existing.last_used = datetime.utcnow()
        else:
            memory.successful_patterns.append(SuccessPattern(
                pattern=update.pattern,
                context=update.context,
                success_rate=update.confidence,
            ))

        if len(memory.successful_patterns) > self.settings.max_success_patterns:
            memory.successful_patterns.sort(
                key=lambda p: p.success_rate * 0.7 + (p.usage_count / 100) * 0.3,
                reverse=True,
            )
            memory.successful_patterns = memory.successful_patterns[:self.settings.max_success_patterns]

    def _update_failure_pattern(self, memory: WorkingMemoryState, update: PatternLearningUpdate):
        existing = next(
            (p for p in memory.failure_patterns if p.pattern == update.pattern and p.context == update.context),
            None,
        )

        if existing:
            existing.failure_reasons = list(dict.fromkeys(existing.failure_reasons + update.failure_reasons))
            existing.last_encountered = datetime.utcnow()
            if update.avoidance_strategy:
                existing.avoidance_strategy = update.avoidance_strategy
        else:
            memory.failure_patterns.append(FailurePattern(
                pattern=update.pattern,
                context=update.context,
                failure_reasons=list(update.failure_reasons),
                avoidance_strategy=update.avoidance_strategy,
            ))

        if len(memory.failure_patterns) > self.settings.max_failure_patterns:
            memory.failure_patterns.sort(key=lambda p: p.last_encountered, reverse=True)
            memory.failure_patterns = memory.failure_patterns[:self.settings.max_failure_patterns]

    @staticmethod
    def _update_investigation_preferences(memory: WorkingMemoryState, update: InvestigationPreferenceUpdate):
        preferences = memory.investigation_preferences
        if update.preferred_order:
            preferences.preferred_order = list(update.preferred_order)
        if update.quality_thresholds:
            preferences.quality_thresholds.update(update.quality_thresholds)
        if update.fallback_strategies:
            preferences.fallback_strategies.update(update.fallback_strategies)

    def _cleanup_element_knowledge(self, memory: WorkingMemoryState):
        overflow = len(memory.known_elements) - self.settings.max_known_elements
        if overflow <= 0:
            return

        weakest = sorted(memory.known_elements.values(), key=lambda e: e.reliability)[:overflow]
        for element in weakest:
            del memory.known_elements[element.selector]

        logger.debug("Evicted element knowledge", count=overflow)

    async def update_navigation_pattern(
        self, session: ContextSession, url_pattern: str, navigation_steps: List[str]
    ) -> NavigationPattern:
        self._require_enabled(session)
        memory = self.get_working_memory(session)

        existing = memory.navigation_pattern
        if existing and existing.url_pattern == url_pattern:
            existing.reliability = min(1.0, existing.reliability + self.settings.learning_rate)
            existing.last_used = datetime.utcnow()
        else:
            memory.navigation_pattern = NavigationPattern(
                url_pattern=url_pattern,
                navigation_steps=list(navigation_steps),
            )

        memory.last_updated = datetime.utcnow()
        await self.save_working_memory(session)

        return memory.navigation_pattern.model_copy(deep=True)

    # Queries

    def get_element_knowledge(self, session: ContextSession, selector: str) -> Optional[ElementKnowledge]:
        element = self.get_working_memory(session).known_elements.get(selector)
        return element.model_copy(deep=True) if element else None

    def get_reliable_elements(
        self, session: ContextSession, min_reliability: Optional[float] = None
    ) -> List[ElementKnowledge]:
        threshold = self.settings.reliability_threshold if min_reliability is None else min_reliability
        elements = [
            e for e in self.get_working_memory(session).known_elements.values()
            if e.reliability >= threshold
        ]
        return [e.model_copy(deep=True) for e in sorted(elements, key=lambda e: e.reliability, reverse=True)]

    def get_current_page_insight(self, session: ContextSession) -> Optional[PageInsight]:
        insight = self.get_working_memory(session).current_page_insight
        return insight.model_copy(deep=True) if insight else None

    def get_variable_context(self, session: ContextSession, name: str) -> Optional[VariableContext]:
        variable = self.get_working_memory(session).extracted_variables.get(name)
        return variable.model_copy(deep=True) if variable else None

    def get_all_variables(self, session: ContextSession) -> List[VariableContext]:
        variables = self.get_working_memory(session).extracted_variables.values()
        return [v.model_copy(deep=True) for v in sorted(variables, key=lambda v: v.last_updated, reverse=True)]

    def get_successful_patterns(self, session: ContextSession, context: Optional[str] = None) -> List[SuccessPattern]:
        patterns = self.get_working_memory(session).successful_patterns
        if context:
            patterns = [p for p in patterns if p.context == context]
        return [p.model_copy(deep=True) for p in sorted(patterns, key=lambda p: p.success_rate, reverse=True)]

    def get_failure_patterns(self, session: ContextSession, context: Optional[str] = None) -> List[FailurePattern]:
        patterns = self.get_working_memory(session).failure_patterns
        if context:
            patterns = [p for p in patterns if p.context == context]
        return [p.model_copy(deep=True) for p in sorted(patterns, key=lambda p: p.last_encountered, reverse=True)]

    def get_investigation_preferences(self, session: ContextSession) -> InvestigationPreferences:
        return self.get_working_memory(session).investigation_preferences.model_copy(deep=True)

    def get_navigation_pattern(self, session: ContextSession) -> Optional[NavigationPattern]:
        pattern = self.get_working_memory(session).navigation_pattern
        return pattern.model_copy(deep=True) if pattern else None

    def get_memory_statistics(self, session: ContextSession) -> MemoryStatistics:
        memory = self.get_working_memory(session)
        return MemoryStatistics(
            total_elements=len(memory.known_elements),
            reliable_elements=len(self.get_reliable_elements(session)),
            total_variables=len(memory.extracted_variables),
            success_patterns=len(memory.successful_patterns),
            failure_patterns=len(memory.failure_patterns),
            memory_age_seconds=(datetime.utcnow() - memory.last_updated).total_seconds(),
            last_updated=memory.last_updated,
        )

    # Persistence

    async def save_working_memory(self, session: ContextSession) -> None:
        if session.working_memory is None:
            return
        await self._persist(
            self.storage.save_working_memory(session.session_id, session.working_memory),
            "save_working_memory",
            session.session_id,
        )

    async def load_working_memory(self, session: ContextSession) -> Optional[WorkingMemoryState]:
        memory = await self._persist(
            self.storage.load_working_memory(session.session_id), "load_working_memory", session.session_id
        )
        if memory:
            session.working_memory = memory
        return memory
