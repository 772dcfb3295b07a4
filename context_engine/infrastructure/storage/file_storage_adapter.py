from typing import List, Optional, Tuple, Type, TypeVar
from pathlib import Path
import asyncio
import shutil
import structlog
from pydantic import BaseModel, TypeAdapter

from context_engine.domain.models.context_session import ContextSession, ContextSummary
from context_engine.domain.models.investigation import InvestigationResult, ElementDiscovery
from context_engine.domain.models.working_memory import WorkingMemoryState
from context_engine.infrastructure.storage.storage_adapter import StorageAdapter, session_core, upsert

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_investigation_list = TypeAdapter(List[InvestigationResult])
_discovery_list = TypeAdapter(List[ElementDiscovery])


class FileSystemStorageAdapter(StorageAdapter):
    """JSON-file storage rooted at a base directory"""

    def __init__(self, base_dir: str = ".context-engine"):
        self.base_dir = Path(base_dir)
        self._lock = asyncio.Lock()

    # Paths

    def _session_path(self, session_id: str) -> Path:
        return self.base_dir / "sessions" / f"{session_id}.json"

    def _investigation_path(self, session_id: str, step_index: int) -> Path:
        return self.base_dir / "investigations" / session_id / f"step-{step_index}.json"

    def _discovery_path(self, session_id: str, step_index: int) -> Path:
        return self.base_dir / "discoveries" / session_id / f"step-{step_index}.json"

    def _memory_path(self, session_id: str) -> Path:
        return self.base_dir / "memory" / f"{session_id}.json"

    def _summary_dir(self, session_id: str) -> Path:
        return self.base_dir / "summaries" / session_id

    # Blocking helpers, run in a worker thread

    @staticmethod
    def _write(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(path)

    @staticmethod
    def _read(path: Path) -> Optional[str]:
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    async def _save_model(self, path: Path, model: BaseModel) -> None:
        await asyncio.to_thread(self._write, path, model.model_dump_json())

    async def _load_model(self, path: Path, model_cls: Type[ModelT]) -> Optional[ModelT]:
        raw = await asyncio.to_thread(self._read, path)
        if raw is None:
            return None
        return model_cls.model_validate_json(raw)

    # Sessions

    async def save_session(self, session: ContextSession) -> None:
        await self._save_model(self._session_path(session.session_id), session_core(session))

    async def load_session(self, session_id: str) -> Optional[ContextSession]:
        return await self._load_model(self._session_path(session_id), ContextSession)

    async def delete_session(self, session_id: str) -> None:
        def _delete():
            self._session_path(session_id).unlink(missing_ok=True)
            self._memory_path(session_id).unlink(missing_ok=True)
            for directory in ("investigations", "discoveries", "summaries"):
                shutil.rmtree(self.base_dir / directory / session_id, ignore_errors=True)

        async with self._lock:
            await asyncio.to_thread(_delete)
        logger.debug("Deleted session files", session_id=session_id)

    async def list_sessions(self) -> List[str]:
        sessions_dir = self.base_dir / "sessions"

        def _list():
            if not sessions_dir.exists():
                return []
            return [p.stem for p in sessions_dir.glob("*.json")]

        return await asyncio.to_thread(_list)

    # Investigations

    async def save_investigation_result(
        self, session_id: str, step_index: int, result: InvestigationResult
    ) -> None:
        path = self._investigation_path(session_id, step_index)
        async with self._lock:
            results = await self._load_list(path, _investigation_list)
            upsert(results, result, "investigation_id")
            await asyncio.to_thread(self._write, path, _investigation_list.dump_json(results).decode())

    async def load_investigation_results(self, session_id: str, step_index: int) -> List[InvestigationResult]:
        return await self._load_list(self._investigation_path(session_id, step_index), _investigation_list)

    async def replace_investigation_results(
        self, session_id: str, step_index: int, results: List[InvestigationResult]
    ) -> None:
        path = self._investigation_path(session_id, step_index)
        async with self._lock:
            await asyncio.to_thread(self._write, path, _investigation_list.dump_json(results).decode())

    # Discoveries

    async def save_element_discovery(
        self, session_id: str, step_index: int, discovery: ElementDiscovery
    ) -> None:
        path = self._discovery_path(session_id, step_index)
        async with self._lock:
            discoveries = await self._load_list(path, _discovery_list)
            upsert(discoveries, discovery, "discovery_id")
            await asyncio.to_thread(self._write, path, _discovery_list.dump_json(discoveries).decode())

    async def load_element_discoveries(self, session_id: str, step_index: int) -> List[ElementDiscovery]:
        return await self._load_list(self._discovery_path(session_id, step_index), _discovery_list)

    async def _load_list(self, path: Path, adapter: TypeAdapter) -> list:
        raw = await asyncio.to_thread(self._read, path)
        if raw is None:
            return []
        return adapter.validate_json(raw)

    # Working memory

    async def save_working_memory(self, session_id: str, memory: WorkingMemoryState) -> None:
        await self._save_model(self._memory_path(session_id), memory)

    async def load_working_memory(self, session_id: str) -> Optional[WorkingMemoryState]:
        return await self._load_model(self._memory_path(session_id), WorkingMemoryState)

    # Context summaries

    async def save_context_summary(self, session_id: str, summary: ContextSummary) -> None:
        path = self._summary_dir(session_id) / f"step-{summary.step_index}.json"
        await self._save_model(path, summary)

    async def load_context_summaries(
        self, session_id: str, step_range: Optional[Tuple[int, int]] = None
    ) -> List[ContextSummary]:
        summary_dir = self._summary_dir(session_id)

        def _read_all() -> List[str]:
            if not summary_dir.exists():
                return []
            return [p.read_text(encoding="utf-8") for p in summary_dir.glob("step-*.json")]

        summaries = [ContextSummary.model_validate_json(raw) for raw in await asyncio.to_thread(_read_all)]

        if step_range:
            start, end = step_range
            summaries = [s for s in summaries if start <= s.step_index <= end]

        return sorted(summaries, key=lambda s: s.step_index)
