from typing import Awaitable, Optional, TypeVar
import structlog

from context_engine.domain.errors import ContextEngineError, InvalidStepIndex, StorageError, TargetStepOutOfRange
from context_engine.domain.models.context_session import ContextSession
from context_engine.infrastructure.config.settings import EngineSettings
from context_engine.infrastructure.storage.storage_adapter import StorageAdapter

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ContextComponent:
    """Shared plumbing for components operating on a session"""

    def __init__(self, settings: EngineSettings, storage: StorageAdapter):
        self.settings = settings
        self.storage = storage

    async def _persist(self, call: Awaitable[T], operation: str, session_id: Optional[str] = None) -> T:
        """Await a storage call, wrapping adapter failures"""

        try:
            return await call
        except ContextEngineError:
            raise
        except Exception as e:
            logger.error("Storage operation failed", operation=operation, session_id=session_id, error=str(e))
            raise StorageError(
                f"Storage operation '{operation}' failed: {e}",
                session_id=session_id,
                details={"operation": operation, "error": str(e)},
            ) from e

    @staticmethod
    def validate_step_index(session: ContextSession, step_index: int) -> None:
        if not isinstance(step_index, int) or isinstance(step_index, bool) \
                or step_index < 0 or step_index >= len(session.steps):
            raise InvalidStepIndex(
                f"Step index {step_index} is out of range. Valid range: 0-{len(session.steps) - 1}",
                session_id=session.session_id,
                step_index=step_index if isinstance(step_index, int) else None,
                details={"step_index": step_index, "max_index": len(session.steps) - 1},
            )

    @staticmethod
    def validate_target_step(session: ContextSession, target_step: int) -> None:
        if not isinstance(target_step, int) or isinstance(target_step, bool) or target_step < 0:
            raise TargetStepOutOfRange(
                f"Invalid target step: {target_step}",
                code="INVALID_TARGET_STEP",
                session_id=session.session_id,
                details={"target_step": target_step},
            )
        if target_step >= len(session.steps):
            raise TargetStepOutOfRange(
                f"Target step {target_step} is beyond the available steps (0-{len(session.steps) - 1})",
                session_id=session.session_id,
                step_index=target_step,
                details={"target_step": target_step, "total_steps": len(session.steps)},
            )
