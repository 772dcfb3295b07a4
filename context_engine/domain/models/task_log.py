from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime


class InteractibleElement(BaseModel):
    """Interactive element reported by screenshot analysis"""
    type: str
    id: Optional[str] = None
    tag: Optional[str] = None
    text: Optional[str] = None
    coordinates: Optional[Dict[str, float]] = None

    model_config = {"extra": "allow"}


class ScreenshotDescription(BaseModel):
    screenshot_id: str
    description: str
    action_type: str
    iteration: Optional[int] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    interactible_elements: List[InteractibleElement] = Field(default_factory=list)


class ContextData(BaseModel):
    """Everything logged for one task log context"""
    context_id: str
    steps: List[str] = Field(default_factory=list)
    step_logs: Dict[int, List[Any]] = Field(default_factory=dict)
    screenshot_descriptions: Dict[int, List[ScreenshotDescription]] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_updated: datetime = Field(default_factory=datetime.utcnow)


class TaskLogMemoryStats(BaseModel):
    total_contexts: int = 0
    total_steps: int = 0
    total_logs: int = 0
    avg_logs_per_step: float = 0.0
