from typing import Dict, List, Any, Optional, Callable
from datetime import datetime, timedelta
import asyncio
import inspect
import psutil
import structlog

from context_engine.domain.context.base_component import ContextComponent
from context_engine.domain.errors import (
    ErrorKind,
    ErrorSeverity,
    SessionCreationFailed,
    SessionNotFound,
    StorageError,
)
from context_engine.domain.models.context_session import ContextSession, SessionStatus, ModuleHealth
from context_engine.infrastructure.config.settings import EngineSettings
from context_engine.infrastructure.observability.logging import ContextLogger
from context_engine.infrastructure.storage.dom_utils import is_valid_session_id
from context_engine.infrastructure.storage.storage_adapter import StorageAdapter

logger = structlog.get_logger(__name__)

MODULE_ID = "context-engine"

SESSION_CREATED = "session_created"
STATUS_CHANGED = "status_changed"
SESSION_DESTROYED = "session_destroyed"
SESSION_ERROR = "session_error"


class SessionRegistry(ContextComponent):
    """Owns the lifecycle of context sessions, keyed by workflow ID"""

    def __init__(self, settings: EngineSettings, storage: StorageAdapter):
        super().__init__(settings, storage)
        self.sessions: Dict[str, ContextSession] = {}
        self.callbacks: Dict[str, List[Callable]] = {}
        self.context_logger = ContextLogger(__name__)
        self._cleanup_task: Optional[asyncio.Task] = None

    # Lifecycle

    async def create_session(self, workflow_id: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Create a session linked to a workflow and return its ID"""

        if workflow_id in self.sessions:
            raise SessionCreationFailed(
                f"Session for workflow {workflow_id} already exists",
                details={"workflow_id": workflow_id},
                kind=ErrorKind.VALIDATION,
            )

        if len(self.sessions) >= self.settings.max_sessions:
            error = SessionCreationFailed(
                f"Maximum number of sessions ({self.settings.max_sessions}) exceeded",
                details={"workflow_id": workflow_id, "max_sessions": self.settings.max_sessions},
            )
            await self._emit(SESSION_ERROR, workflow_id, error)
            raise error

        session = ContextSession(linked_workflow_id=workflow_id, metadata=dict(metadata or {}))
        self.sessions[workflow_id] = session

        try:
            await self.storage.save_session(session)
            await self.update_status(workflow_id, SessionStatus.ACTIVE)
        except Exception as e:
            self.sessions.pop(workflow_id, None)
            error = SessionCreationFailed(
                f"Failed to create session for workflow {workflow_id}",
                details={"workflow_id": workflow_id, "error": str(e)},
                kind=ErrorKind.STORAGE,
                retryable=True,
            )
            logger.error("Session creation failed", workflow_id=workflow_id, error=str(e))
            await self._emit(SESSION_ERROR, workflow_id, error)
            raise error from e

        logger.info("Session created", workflow_id=workflow_id, session_id=session.session_id)
        await self._emit(SESSION_CREATED, workflow_id, session.session_id)

        return session.session_id

    async def destroy_session(self, workflow_id: str) -> None:
        """Destroy a session and everything it owns; no-op if absent"""

        session = self.sessions.get(workflow_id)
        if not session:
            return

        try:
            await self.update_status(workflow_id, SessionStatus.CLEANUP)
            self.sessions.pop(workflow_id, None)
            await self.storage.delete_session(session.session_id)
        except Exception as e:
            self.sessions.pop(workflow_id, None)
            error = StorageError(
                f"Failed to destroy session {workflow_id}",
                code="SESSION_DESTRUCTION_FAILED",
                session_id=session.session_id,
                details={"workflow_id": workflow_id, "error": str(e)},
                severity=ErrorSeverity.HIGH,
            )
            await self._emit(SESSION_ERROR, workflow_id, error)
            raise error from e

        logger.info("Session destroyed", workflow_id=workflow_id, session_id=session.session_id)
        await self._emit(SESSION_DESTROYED, workflow_id)

    # Lookups

    def get_session(self, workflow_id: str) -> Optional[ContextSession]:
        return self.sessions.get(workflow_id)

    def require_session(self, workflow_id: str) -> ContextSession:
        session = self.sessions.get(workflow_id)
        if not session:
            raise SessionNotFound(
                f"Session {workflow_id} not found",
                details={"workflow_id": workflow_id},
            )
        return session

    def session_exists(self, workflow_id: str) -> bool:
        return workflow_id in self.sessions

    def get_session_status(self, workflow_id: str) -> Optional[SessionStatus]:
        session = self.sessions.get(workflow_id)
        return session.status if session else None

    def get_last_activity(self, workflow_id: str) -> Optional[datetime]:
        session = self.sessions.get(workflow_id)
        return session.last_activity if session else None

    def list_workflow_ids(self) -> List[str]:
        return list(self.sessions.keys())

    # Mutations

    async def update_status(self, workflow_id: str, status: SessionStatus) -> None:
        session = self.require_session(workflow_id)

        old_status = session.status
        session.status = status
        session.touch()

        await self._persist(self.storage.save_session(session), "save_session", session.session_id)

        self.context_logger.log_session_transition(
            session.session_id, old_status.value, status.value, workflow_id=workflow_id
        )
        await self._emit(STATUS_CHANGED, workflow_id, old_status, status)

    async def record_activity(self, workflow_id: str) -> None:
        session = self.require_session(workflow_id)
        session.touch()
        await self._persist(self.storage.save_session(session), "save_session", session.session_id)

    async def link_executor_session(self, workflow_id: str, executor_session_id: str) -> None:
        """Link the driver's own session ID to this context session"""

        session = self.require_session(workflow_id)
        session.executor_session_id = executor_session_id
        await self.record_activity(workflow_id)

    # Callbacks

    def register_callback(self, event_type: str, handler: Callable):
        """Register a lifecycle callback"""

        if event_type not in self.callbacks:
            self.callbacks[event_type] = []
        self.callbacks[event_type].append(handler)

    async def _emit(self, event_type: str, workflow_id: str, *args):
        for handler in self.callbacks.get(event_type, []):
            try:
                result = handler(MODULE_ID, workflow_id, *args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Error in lifecycle callback", event_type=event_type, error=str(e))

    # Health

    async def health_check(self) -> ModuleHealth:
        errors: List[Dict[str, Any]] = []
        warnings: List[Dict[str, Any]] = []
        is_healthy = True

        try:
            await self.storage.list_sessions()
        except Exception as e:
            is_healthy = False
            errors.append(StorageError(
                "Storage adapter health check failed",
                code="STORAGE_HEALTH_CHECK_FAILED",
                details={"error": str(e)},
            ).to_dict())

        rss = psutil.Process().memory_info().rss
        if rss > self.settings.memory_warning_threshold_bytes:
            warnings.append({
                "code": "HIGH_MEMORY_USAGE",
                "message": "High memory usage detected",
                "rss": rss,
                "threshold": self.settings.memory_warning_threshold_bytes,
            })

        health = ModuleHealth(
            module_id=MODULE_ID,
            is_healthy=is_healthy,
            active_sessions=len([s for s in self.sessions.values() if s.status == SessionStatus.ACTIVE]),
            total_sessions=len(self.sessions),
            errors=errors,
            warnings=warnings,
        )

        if not is_healthy:
            logger.warning("Health check failed", errors=len(errors))

        return health

    # Storage sync

    async def load_session_from_storage(self, workflow_id: str) -> None:
        """Reload the session's owned records from storage"""

        session = self.sessions.get(workflow_id)
        if not session:
            return

        sid = session.session_id
        try:
            memory = await self.storage.load_working_memory(sid)
            if memory:
                session.working_memory = memory

            for step_index in range(len(session.steps)):
                investigations = await self.storage.load_investigation_results(sid, step_index)
                if investigations:
                    session.investigations[step_index] = investigations

                discoveries = await self.storage.load_element_discoveries(sid, step_index)
                if discoveries:
                    session.element_discoveries[step_index] = discoveries

            for summary in await self.storage.load_context_summaries(sid):
                session.context_summaries[summary.step_index] = summary
        except Exception as e:
            raise StorageError(
                "Failed to load session data from storage",
                code="STORAGE_LOAD_FAILED",
                session_id=sid,
                details={"workflow_id": workflow_id, "error": str(e)},
            ) from e

    async def validate_session_integrity(self, workflow_id: str) -> bool:
        session = self.sessions.get(workflow_id)
        if not session:
            return False

        if not is_valid_session_id(session.session_id):
            return False

        for execution in session.step_executions:
            if execution.step_index < 0 or execution.step_index >= len(session.steps):
                return False

        try:
            stored = await self.storage.load_session(session.session_id)
        except Exception as e:
            logger.warning("Integrity check could not read storage", workflow_id=workflow_id, error=str(e))
            return False

        return stored is not None and stored.session_id == session.session_id

    # TTL cleanup

    async def cleanup_expired_sessions(self) -> int:
        """Destroy sessions idle longer than the TTL; failures are logged"""

        cutoff = datetime.utcnow() - timedelta(seconds=self.settings.session_ttl_seconds)
        expired = [
            workflow_id for workflow_id, session in self.sessions.items()
            if session.last_activity < cutoff
        ]

        destroyed = 0
        for workflow_id in expired:
            try:
                await self.destroy_session(workflow_id)
                destroyed += 1
            except Exception as e:
                logger.error("Failed to cleanup expired session", workflow_id=workflow_id, error=str(e))

        if destroyed:
            logger.info("Cleaned up expired sessions", count=destroyed)

        return destroyed

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.settings.memory_cleanup_interval_seconds)
            try:
                await self.cleanup_expired_sessions()
            except Exception as e:
                logger.error("Session cleanup error", error=str(e))

    def start_cleanup_task(self) -> None:
        """Start the periodic TTL scan on the running event loop"""

        if self._cleanup_task and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop_cleanup_task(self) -> None:
        if not self._cleanup_task:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None
