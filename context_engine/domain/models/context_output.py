from typing import Dict, List, Optional, Literal
from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from enum import Enum

from context_engine.domain.models.investigation import (
    InvestigationResult,
    ElementDiscovery,
    InvestigationSuggestion,
    InvestigationPriority,
)
from context_engine.domain.models.working_memory import (
    ElementKnowledge,
    PageInsight,
    WorkingMemoryState,
)


class InvestigationPhase(str, Enum):
    """Where a step is in its investigate-then-act cycle"""
    INITIAL_ASSESSMENT = "initial_assessment"
    FOCUSED_EXPLORATION = "focused_exploration"
    SELECTOR_DETERMINATION = "selector_determination"


class SummarizationLevel(str, Enum):
    MINIMAL = "minimal"
    STANDARD = "standard"
    DETAILED = "detailed"


class ExecutionFlowItem(BaseModel):
    """One entry of the chronological execution flow"""
    step_index: int
    step_name: str
    reasoning: str
    executor_method: str
    timestamp: datetime
    status: str
    screenshot_id: Optional[str] = None


class AIContextJson(BaseModel):
    """Full context artifact"""
    session_id: str
    target_step: int
    generated_at: datetime = Field(default_factory=datetime.utcnow)
    execution_flow: List[ExecutionFlowItem] = Field(default_factory=list)
    previous_page_dom: Optional[str] = None
    current_page_dom: Optional[str] = None
    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0


class ContextFilterOptions(BaseModel):
    """Caller knobs for filtered context generation"""
    max_history_steps: int = 10
    confidence_threshold: float = 0.7
    summarization_level: SummarizationLevel = SummarizationLevel.STANDARD
    include_working_memory: bool = True
    include_element_knowledge: bool = True
    exclude_full_dom: bool = True
    exclude_page_content: bool = False


class ExecutionSummaryItem(BaseModel):
    step_index: int
    step_name: str
    reasoning: str = ""
    action_taken: str = ""
    outcome: Literal["success", "failure", "retry", "investigating"]
    confidence: float
    timestamp: datetime
    screenshot_id: Optional[str] = None
    key_findings: List[str] = Field(default_factory=list)


class InvestigationStrategy(BaseModel):
    current_phase: InvestigationPhase
    recommended_investigations: List[InvestigationSuggestion] = Field(default_factory=list)
    investigation_priority: InvestigationPriority
    context_management_approach: Literal["minimal", "standard", "comprehensive"] = "standard"
    confidence_threshold: float
    max_investigation_rounds: int


class FilteredContextJson(BaseModel):
    """Summarized, size-bounded context artifact"""
    session_id: str
    target_step: int
    generated_at: datetime = Field(default_factory=datetime.utcnow)
    execution_summary: List[ExecutionSummaryItem] = Field(default_factory=list)
    page_insights: List[PageInsight] = Field(default_factory=list)
    element_knowledge: List[ElementKnowledge] = Field(default_factory=list)
    working_memory: WorkingMemoryState
    investigation_strategy: InvestigationStrategy


class InvestigationContextJson(BaseModel):
    """Everything the decision process needs to pick the next investigation"""
    session_id: str
    step_index: int
    generated_at: datetime = Field(default_factory=datetime.utcnow)
    current_investigations: List[InvestigationResult] = Field(default_factory=list)
    elements_discovered: List[ElementDiscovery] = Field(default_factory=list)
    page_insight: PageInsight
    working_memory: WorkingMemoryState
    suggested_investigations: List[InvestigationSuggestion] = Field(default_factory=list)
    investigation_priority: InvestigationPriority


class QualityMetrics(BaseModel):
    execution_flow_completeness: float
    dom_content_availability: float
    temporal_coverage: float
    overall_score: float


class ContextQualityReport(BaseModel):
    quality: Literal["high", "medium", "low"]
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    metrics: QualityMetrics


class ContextValidationReport(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class InvestigationCycleAnalysis(BaseModel):
    cycle_phase: Literal["exploring", "focusing", "executing", "completed"]
    confidence: float
    next_recommendation: str
    issues: List[str] = Field(default_factory=list)


class StepProgress(BaseModel):
    completed: int
    total: int
    percentage: float


class StepStatistics(BaseModel):
    total_steps: int
    pending_steps: int
    active_steps: int
    completed_steps: int
    failed_steps: int
    average_duration: float = Field(description="Mean duration of finished steps in ms")


class EventStatistics(BaseModel):
    total_events: int = 0
    successful_events: int = 0
    failed_events: int = 0
    average_duration: float = 0.0
    total_duration: float = 0.0
    method_counts: Dict[str, int] = Field(default_factory=dict)


class TypeStatistics(BaseModel):
    total: int = 0
    successful: int = 0
    success_rate: float = 0.0


class InvestigationStatistics(BaseModel):
    total_investigations: int = 0
    successful_investigations: int = 0
    failed_investigations: int = 0
    success_rate: float = 0.0
    average_duration: float = 0.0
    by_type: Dict[str, TypeStatistics] = Field(default_factory=dict)


class InvestigationRecommendations(BaseModel):
    recommended: List[str] = Field(default_factory=list)
    avoid: List[str] = Field(default_factory=list)
    reasoning: str = ""


class DiscoveryStatistics(BaseModel):
    total_discoveries: int = 0
    reliable_discoveries: int = 0
    interactable_discoveries: int = 0
    visible_discoveries: int = 0
    average_confidence: float = 0.0
    by_element_type: Dict[str, int] = Field(default_factory=dict)
    by_discovery_method: Dict[str, int] = Field(default_factory=dict)
    reliability_rate: float = 0.0


class SelectorValidation(BaseModel):
    is_valid: bool
    issues: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class OptimizedSelector(BaseModel):
    selector: str
    confidence: float
    changes: List[str] = Field(default_factory=list)

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, value: float) -> float:
        return max(0.0, min(1.0, value))


class MemoryStatistics(BaseModel):
    total_elements: int
    reliable_elements: int
    total_variables: int
    success_patterns: int
    failure_patterns: int
    memory_age_seconds: float
    last_updated: datetime


class StorageOptimizationResult(BaseModel):
    original_size: int
    optimized_size: int
    savings: int
    optimized_items: int = 0
