from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
import uuid

from context_engine.domain.models.investigation import InvestigationResult, ElementDiscovery
from context_engine.domain.models.working_memory import WorkingMemoryState


class SessionStatus(str, Enum):
    """Context session lifecycle status"""
    INITIALIZING = "initializing"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CLEANUP = "cleanup"


class StepStatus(str, Enum):
    """Execution status of a single step"""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class CommandAction(str, Enum):
    """Actions the automation driver understands"""
    OPEN_PAGE = "OPEN_PAGE"
    CLICK_ELEMENT = "CLICK_ELEMENT"
    INPUT_TEXT = "INPUT_TEXT"
    SAVE_VARIABLE = "SAVE_VARIABLE"
    GET_DOM = "GET_DOM"
    GET_CONTENT = "GET_CONTENT"
    GET_SUBDOM = "GET_SUBDOM"


class CommandParameters(BaseModel):
    """Parameters of a driver command"""
    url: Optional[str] = None
    selector: Optional[str] = None
    text: Optional[str] = None
    variable_name: Optional[str] = None
    attribute: Optional[str] = None
    multiple: Optional[bool] = None
    max_dom_size: Optional[int] = None


class ExecutorCommand(BaseModel):
    """Command issued to the automation driver"""
    action: CommandAction
    parameters: CommandParameters = Field(default_factory=CommandParameters)
    command_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: Optional[str] = Field(None, description="Driver session identifier")
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class CommandResponse(BaseModel):
    """Result reported by the automation driver"""
    success: bool
    command_id: str = ""
    dom: str = Field(default="", description="Full DOM of the page after the action")
    screenshot_id: Optional[str] = None
    duration: float = Field(default=0.0, description="Execution time in ms")
    error: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExecutionEvent(BaseModel):
    """One recorded action and its result"""
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    reasoning: str = ""
    executor_method: str = ""
    executor_command: Optional[ExecutorCommand] = None
    command_result: Optional[CommandResponse] = None
    page_dom: str = ""
    screenshot_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StepExecution(BaseModel):
    """All execution events recorded for one step"""
    step_index: int
    step_name: str
    events: List[ExecutionEvent] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None
    status: StepStatus = Field(default=StepStatus.PENDING)


class ContextSummary(BaseModel):
    """Condensed view of a step stored alongside the raw history"""
    step_index: int
    summary: str = ""
    key_findings: List[str] = Field(default_factory=list)
    confidence: float = 0.5
    created_at: datetime = Field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ContextSession(BaseModel):
    """State container for one in-progress automation run"""
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    linked_workflow_id: str = Field(description="External workflow run this session belongs to")
    executor_session_id: Optional[str] = None
    status: SessionStatus = Field(default=SessionStatus.INITIALIZING)
    steps: List[str] = Field(default_factory=list)
    step_executions: List[StepExecution] = Field(default_factory=list)
    # Sparse maps keyed by step index
    investigations: Dict[int, List[InvestigationResult]] = Field(default_factory=dict)
    element_discoveries: Dict[int, List[ElementDiscovery]] = Field(default_factory=dict)
    context_summaries: Dict[int, ContextSummary] = Field(default_factory=dict)
    working_memory: Optional[WorkingMemoryState] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_activity: datetime = Field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def touch(self):
        """Record activity on the session"""
        self.last_activity = datetime.utcnow()

    def get_step_execution(self, step_index: int) -> Optional[StepExecution]:
        for execution in self.step_executions:
            if execution.step_index == step_index:
                return execution
        return None

    def sort_step_executions(self):
        self.step_executions.sort(key=lambda e: e.step_index)

    def reset_derived_state(self):
        """Drop everything derived from the current step list"""
        self.step_executions = []
        self.investigations = {}
        self.element_discoveries = {}
        self.context_summaries = {}
        self.working_memory = None

    def get_session_summary(self) -> Dict[str, Any]:
        """Get a summary of the session"""
        return {
            "session_id": self.session_id,
            "linked_workflow_id": self.linked_workflow_id,
            "status": self.status.value,
            "total_steps": len(self.steps),
            "executed_steps": len(self.step_executions),
            "completed_steps": len([e for e in self.step_executions if e.status == StepStatus.COMPLETED]),
            "failed_steps": len([e for e in self.step_executions if e.status == StepStatus.FAILED]),
            "total_events": sum(len(e.events) for e in self.step_executions),
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat()
        }


class ModuleHealth(BaseModel):
    """Health report of the session registry"""
    module_id: str = "context-engine"
    is_healthy: bool = True
    active_sessions: int = 0
    total_sessions: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[Dict[str, Any]] = Field(default_factory=list)
    last_health_check: datetime = Field(default_factory=datetime.utcnow)
