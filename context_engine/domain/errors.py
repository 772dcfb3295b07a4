from typing import Dict, Any, Optional
from datetime import datetime
from enum import Enum
import uuid


class ErrorKind(str, Enum):
    """What went wrong, at a level callers can branch on"""
    VALIDATION = "validation"
    RESOURCE_LIMIT = "resource_limit"
    STORAGE = "storage"
    GENERATION = "generation"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SUGGESTED_ACTIONS: Dict[str, str] = {
    "SESSION_NOT_FOUND": "Verify session ID and create new session if needed",
    "SESSION_CREATION_FAILED": "Check storage adapter configuration and available resources",
    "MAX_SESSIONS_EXCEEDED": "Destroy unused sessions or raise the maximum session count",
    "SESSION_DESTRUCTION_FAILED": "Retry destroying the session or wait for background cleanup",
    "STORAGE_ERROR": "Check storage adapter health and retry the operation",
    "INVALID_STEPS_FORMAT": "Provide steps as a list of strings",
    "EMPTY_STEPS_ARRAY": "Provide at least one step",
    "TOO_MANY_STEPS": "Reduce the number of steps or raise the per-session step limit",
    "INVALID_STEP_TYPE": "Every step must be a string",
    "EMPTY_STEP_CONTENT": "Remove blank steps",
    "STEP_TOO_LONG": "Shorten step descriptions to 1000 characters or less",
    "INVALID_STEP_INDEX": "Provide a valid step index within the available range",
    "MAX_EVENTS_EXCEEDED": "Clean up old events or raise the per-step event limit",
    "TEMPORAL_ORDERING_VIOLATION": "Ensure step end time is not before its start time",
    "CHRONOLOGICAL_ORDER_VIOLATION": "Record step executions in chronological order",
    "STEP_EXECUTION_NOT_FOUND": "Start the step before updating its execution",
    "MISSING_INVESTIGATION_ID": "Provide a non-empty investigation ID",
    "INVALID_INVESTIGATION_TYPE": "Use one of the supported investigation types",
    "INVALID_TIMESTAMP": "Provide a valid investigation timestamp",
    "INVALID_INVESTIGATION": "Review investigation result data and try again",
    "MAX_INVESTIGATIONS_EXCEEDED": "Consider increasing max investigations per step or cleaning up old investigations",
    "MISSING_DISCOVERY_ID": "Provide a non-empty discovery ID",
    "INVALID_SELECTOR": "Provide a non-empty selector string",
    "INVALID_CONFIDENCE": "Confidence must be between 0 and 1",
    "INVALID_DISCOVERY_METHOD": "Use one of the supported investigation types as discovery method",
    "INVALID_ELEMENT_DATA": "Review working memory update data and try again",
    "INVALID_VARIABLE_DATA": "Review working memory update data and try again",
    "INVALID_MEMORY_UPDATE": "Review working memory update data and try again",
    "UNKNOWN_UPDATE_TYPE": "Use one of the supported working memory update types",
    "WORKING_MEMORY_DISABLED": "Enable working memory in the engine settings",
    "INVALID_TARGET_STEP": "Provide a valid target step index",
    "TARGET_STEP_OUT_OF_RANGE": "Use a target step within the available range",
    "CONTEXT_GENERATION_FAILED": "Check session data integrity and retry context generation",
    "INVESTIGATION_CONTEXT_GENERATION_FAILED": "Check investigation data integrity and retry context generation",
    "INVALID_FILTER_OPTIONS": "Review context filter options and try again",
    "INVALID_CONTEXT_ID": "Provide a non-empty context ID",
    "CONTEXT_EXISTS": "Use a new context ID or reuse the existing context",
    "CONTEXT_NOT_FOUND": "Create the context before logging to it",
    "MAX_CONTEXTS_EXCEEDED": "Clear unused contexts or raise the maximum context count",
    "MAX_LOGS_EXCEEDED": "Raise the per-step log limit or log less per step",
}


class ContextEngineError(Exception):
    """Base error carrying a stable code and remediation hints"""

    code = "CONTEXT_ENGINE_ERROR"
    kind = ErrorKind.VALIDATION
    severity = ErrorSeverity.LOW
    recoverable = True
    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        session_id: Optional[str] = None,
        step_index: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[ErrorSeverity] = None,
        kind: Optional[ErrorKind] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if severity:
            self.severity = severity
        if kind:
            self.kind = kind
        if retryable is not None:
            self.retryable = retryable
        self.session_id = session_id
        self.step_index = step_index
        self.details = details or {}
        self.error_id = str(uuid.uuid4())
        self.timestamp = datetime.utcnow()

    @property
    def suggested_action(self) -> str:
        return SUGGESTED_ACTIONS.get(self.code, "Review the operation parameters and try again")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_id": self.error_id,
            "code": self.code,
            "message": self.message,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "retryable": self.retryable,
            "suggested_action": self.suggested_action,
            "session_id": self.session_id,
            "step_index": self.step_index,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


# Validation

class SessionNotFound(ContextEngineError):
    code = "SESSION_NOT_FOUND"
    severity = ErrorSeverity.MEDIUM


class InvalidSteps(ContextEngineError):
    code = "INVALID_STEPS_FORMAT"


class InvalidStepIndex(ContextEngineError):
    code = "INVALID_STEP_INDEX"


class TemporalOrderingViolation(ContextEngineError):
    code = "TEMPORAL_ORDERING_VIOLATION"


class StepExecutionNotFound(ContextEngineError):
    code = "STEP_EXECUTION_NOT_FOUND"
    severity = ErrorSeverity.MEDIUM


class InvalidInvestigation(ContextEngineError):
    code = "INVALID_INVESTIGATION"


class InvalidDiscovery(ContextEngineError):
    code = "INVALID_SELECTOR"


class InvalidWorkingMemoryUpdate(ContextEngineError):
    code = "INVALID_MEMORY_UPDATE"
    severity = ErrorSeverity.MEDIUM


class UnknownUpdateType(InvalidWorkingMemoryUpdate):
    code = "UNKNOWN_UPDATE_TYPE"


class WorkingMemoryDisabled(ContextEngineError):
    code = "WORKING_MEMORY_DISABLED"


class InvalidFilterOptions(ContextEngineError):
    code = "INVALID_FILTER_OPTIONS"


class TargetStepOutOfRange(ContextEngineError):
    code = "TARGET_STEP_OUT_OF_RANGE"
    severity = ErrorSeverity.HIGH


# Resource limits

class ResourceLimitError(ContextEngineError):
    kind = ErrorKind.RESOURCE_LIMIT
    severity = ErrorSeverity.MEDIUM


class SessionCreationFailed(ResourceLimitError):
    code = "SESSION_CREATION_FAILED"
    severity = ErrorSeverity.HIGH


class MaxEventsExceeded(ResourceLimitError):
    code = "MAX_EVENTS_EXCEEDED"


class MaxInvestigationsExceeded(ResourceLimitError):
    code = "MAX_INVESTIGATIONS_EXCEEDED"


# Storage

class StorageError(ContextEngineError):
    code = "STORAGE_ERROR"
    kind = ErrorKind.STORAGE
    severity = ErrorSeverity.MEDIUM
    retryable = True


# Generation

class GenerationError(ContextEngineError):
    kind = ErrorKind.GENERATION
    severity = ErrorSeverity.HIGH
    recoverable = False
    retryable = True


class ContextGenerationFailed(GenerationError):
    code = "CONTEXT_GENERATION_FAILED"


class InvestigationContextGenerationFailed(GenerationError):
    code = "INVESTIGATION_CONTEXT_GENERATION_FAILED"


# Task log store

class TaskLogError(ContextEngineError):
    """Error raised by the per-context task log store"""

    code = "TASK_LOG_ERROR"

    def __init__(
        self,
        message: str,
        context_id: Optional[str] = None,
        step_id: Optional[int] = None,
        operation: Optional[str] = None,
        kind: ErrorKind = ErrorKind.VALIDATION,
        code: Optional[str] = None,
    ):
        super().__init__(message, code=code, session_id=context_id, step_index=step_id, kind=kind)
        self.context_id = context_id
        self.step_id = step_id
        self.operation = operation


class InvalidTaskLogStep(TaskLogError, InvalidStepIndex):
    """Step ID that is malformed or outside a task log context's steps"""

    code = "INVALID_STEP_INDEX"
