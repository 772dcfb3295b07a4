from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
import uuid


class InvestigationType(str, Enum):
    """Ways of probing the current page. Declaration order is the tie-break order."""
    SCREENSHOT_ANALYSIS = "screenshot_analysis"
    TEXT_EXTRACTION = "text_extraction"
    FULL_DOM_RETRIEVAL = "full_dom_retrieval"
    SUB_DOM_EXTRACTION = "sub_dom_extraction"


class InvestigationInput(BaseModel):
    """What an investigation was asked to look at"""
    screenshot_id: Optional[str] = None
    selector: Optional[str] = None
    max_dom_size: Optional[int] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class InvestigationOutput(BaseModel):
    """What an investigation produced"""
    text_content: Optional[str] = None
    visual_description: Optional[str] = None
    summary: Optional[str] = None
    dom_content: Optional[str] = Field(None, description="Raw DOM, may be dropped by storage optimization")


class InvestigationResult(BaseModel):
    """One attempt to learn about the current page"""
    investigation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    investigation_type: InvestigationType
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    input: InvestigationInput = Field(default_factory=InvestigationInput)
    output: InvestigationOutput = Field(default_factory=InvestigationOutput)
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BoundingBox(BaseModel):
    x: float
    y: float
    width: float
    height: float


class ElementProperties(BaseModel):
    """Structural properties observed for an element"""
    tag_name: str = ""
    text_content: Optional[str] = None
    is_visible: bool = True
    is_interactable: bool = False
    bounding_box: Optional[BoundingBox] = None
    attributes: Dict[str, str] = Field(default_factory=dict)


class ElementDiscovery(BaseModel):
    """One observation linking a selector to an element"""
    discovery_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    selector: str
    element_type: str = "unknown"
    properties: ElementProperties = Field(default_factory=ElementProperties)
    confidence: float = 0.5
    discovery_method: InvestigationType
    is_reliable: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SelectorRanking(BaseModel):
    """Aggregate of all discoveries sharing one selector"""
    selector: str
    confidence: float
    discovery_methods: List[InvestigationType] = Field(default_factory=list)
    element_type: str
    is_reliable: bool
    discovery_count: int = 1


class DuplicateDiscoveryGroup(BaseModel):
    selector: str
    discoveries: List[ElementDiscovery]
    suggested_merge: ElementDiscovery


class InvestigationSuggestion(BaseModel):
    """A proposed next investigation"""
    type: InvestigationType
    purpose: str
    priority: int
    reasoning: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)


class InvestigationPriority(BaseModel):
    primary: InvestigationType
    fallbacks: List[InvestigationType] = Field(default_factory=list)
    reasoning: str = ""
