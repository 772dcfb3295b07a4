from typing import Dict, List, Optional, Literal, Union, Annotated
from pydantic import BaseModel, Field
from datetime import datetime

from context_engine.domain.models.investigation import InvestigationType


class ElementKnowledge(BaseModel):
    """Durable, cross-step belief about an element"""
    selector: str
    element_type: str = "unknown"
    purpose: str = "unknown"
    reliability: float = 0.5
    last_seen: datetime = Field(default_factory=datetime.utcnow)
    discovery_history: List[str] = Field(default_factory=list)
    alternative_selectors: Optional[List[str]] = None
    interaction_notes: Optional[str] = None


class PageInsight(BaseModel):
    """Structural understanding of a page"""
    step_index: int = 0
    page_url: Optional[str] = None
    page_title: Optional[str] = None
    layout_type: Optional[str] = None
    main_sections: List[str] = Field(default_factory=list)
    key_elements: List[str] = Field(default_factory=list)
    navigation_structure: Optional[str] = None
    form_elements: List[str] = Field(default_factory=list)
    interactive_elements: List[str] = Field(default_factory=list)
    visual_description: Optional[str] = None
    complexity: Literal["low", "medium", "high"] = "medium"


class NavigationPattern(BaseModel):
    url_pattern: str
    navigation_steps: List[str] = Field(default_factory=list)
    reliability: float = 0.5
    last_used: datetime = Field(default_factory=datetime.utcnow)


class VariableContext(BaseModel):
    """A value extracted from a page and where it came from"""
    name: str
    value: str = ""
    extraction_method: str = ""
    reliability: float = 0.5
    last_updated: datetime = Field(default_factory=datetime.utcnow)
    source_element: Optional[str] = None


class SuccessPattern(BaseModel):
    pattern: str
    context: str
    success_rate: float
    usage_count: int = 1
    last_used: datetime = Field(default_factory=datetime.utcnow)


class FailurePattern(BaseModel):
    pattern: str
    context: str
    failure_reasons: List[str] = Field(default_factory=list)
    last_encountered: datetime = Field(default_factory=datetime.utcnow)
    avoidance_strategy: Optional[str] = None


def default_preferred_order() -> List[InvestigationType]:
    return [
        InvestigationType.SCREENSHOT_ANALYSIS,
        InvestigationType.TEXT_EXTRACTION,
        InvestigationType.SUB_DOM_EXTRACTION,
        InvestigationType.FULL_DOM_RETRIEVAL,
    ]


def default_quality_thresholds() -> Dict[InvestigationType, float]:
    return {
        InvestigationType.SCREENSHOT_ANALYSIS: 0.7,
        InvestigationType.TEXT_EXTRACTION: 0.8,
        InvestigationType.SUB_DOM_EXTRACTION: 0.6,
        InvestigationType.FULL_DOM_RETRIEVAL: 0.5,
    }


def default_fallback_strategies() -> Dict[InvestigationType, List[InvestigationType]]:
    return {
        InvestigationType.SCREENSHOT_ANALYSIS: [InvestigationType.TEXT_EXTRACTION],
        InvestigationType.TEXT_EXTRACTION: [InvestigationType.SUB_DOM_EXTRACTION],
        InvestigationType.SUB_DOM_EXTRACTION: [InvestigationType.FULL_DOM_RETRIEVAL],
        InvestigationType.FULL_DOM_RETRIEVAL: [],
    }


class InvestigationPreferences(BaseModel):
    """Ranked investigation types with per-type thresholds and fallbacks"""
    preferred_order: List[InvestigationType] = Field(default_factory=default_preferred_order)
    quality_thresholds: Dict[InvestigationType, float] = Field(default_factory=default_quality_thresholds)
    fallback_strategies: Dict[InvestigationType, List[InvestigationType]] = Field(
        default_factory=default_fallback_strategies
    )


class WorkingMemoryState(BaseModel):
    """Cross-step knowledge base of one session"""
    session_id: str
    last_updated: datetime = Field(default_factory=datetime.utcnow)
    current_page_insight: Optional[PageInsight] = None
    known_elements: Dict[str, ElementKnowledge] = Field(default_factory=dict)
    navigation_pattern: Optional[NavigationPattern] = None
    extracted_variables: Dict[str, VariableContext] = Field(default_factory=dict)
    successful_patterns: List[SuccessPattern] = Field(default_factory=list)
    failure_patterns: List[FailurePattern] = Field(default_factory=list)
    investigation_preferences: InvestigationPreferences = Field(default_factory=InvestigationPreferences)


# Working memory updates, discriminated on update_type

class BaseMemoryUpdate(BaseModel):
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    source: str = "unknown"


class ElementDiscoveryUpdate(BaseMemoryUpdate):
    update_type: Literal["element_discovery"] = "element_discovery"
    selector: str = ""
    element_type: Optional[str] = None
    purpose: Optional[str] = None
    alternative_selectors: Optional[List[str]] = None
    interaction_notes: Optional[str] = None


class PageInsightUpdate(BaseMemoryUpdate):
    update_type: Literal["page_insight"] = "page_insight"
    insight: PageInsight


class VariableExtractionUpdate(BaseMemoryUpdate):
    update_type: Literal["variable_extraction"] = "variable_extraction"
    name: str = ""
    value: Optional[str] = None
    extraction_method: Optional[str] = None
    source_element: Optional[str] = None


class PatternLearningUpdate(BaseMemoryUpdate):
    update_type: Literal["pattern_learning"] = "pattern_learning"
    pattern: str
    context: str
    success: bool
    failure_reasons: List[str] = Field(default_factory=list)
    avoidance_strategy: Optional[str] = None


class InvestigationPreferenceUpdate(BaseMemoryUpdate):
    update_type: Literal["investigation_preference"] = "investigation_preference"
    preferred_order: Optional[List[InvestigationType]] = None
    quality_thresholds: Optional[Dict[InvestigationType, float]] = None
    fallback_strategies: Optional[Dict[InvestigationType, List[InvestigationType]]] = None


WorkingMemoryUpdate = Annotated[
    Union[
        ElementDiscoveryUpdate,
        PageInsightUpdate,
        VariableExtractionUpdate,
        PatternLearningUpdate,
        InvestigationPreferenceUpdate,
    ],
    Field(discriminator="update_type"),
]
