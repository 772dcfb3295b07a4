from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple
import asyncio

from context_engine.domain.models.context_session import ContextSession, ContextSummary
from context_engine.domain.models.investigation import InvestigationResult, ElementDiscovery
from context_engine.domain.models.working_memory import WorkingMemoryState


def session_core(session: ContextSession) -> ContextSession:
    """Copy of a session without the collections persisted separately"""

    return session.model_copy(
        update={
            "investigations": {},
            "element_discoveries": {},
            "context_summaries": {},
            "working_memory": None,
        },
        deep=True,
    )


class StorageAdapter(ABC):
    """Persistence contract used by the context engine"""

    @abstractmethod
    async def save_session(self, session: ContextSession) -> None:
        pass

    @abstractmethod
    async def load_session(self, session_id: str) -> Optional[ContextSession]:
        pass

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Remove the session and every record it owns"""
        pass

    @abstractmethod
    async def list_sessions(self) -> List[str]:
        pass

    @abstractmethod
    async def save_investigation_result(
        self, session_id: str, step_index: int, result: InvestigationResult
    ) -> None:
        pass

    @abstractmethod
    async def load_investigation_results(self, session_id: str, step_index: int) -> List[InvestigationResult]:
        pass

    @abstractmethod
    async def replace_investigation_results(
        self, session_id: str, step_index: int, results: List[InvestigationResult]
    ) -> None:
        """Overwrite every stored investigation of one step"""
        pass

    @abstractmethod
    async def save_element_discovery(
        self, session_id: str, step_index: int, discovery: ElementDiscovery
    ) -> None:
        pass

    @abstractmethod
    async def load_element_discoveries(self, session_id: str, step_index: int) -> List[ElementDiscovery]:
        pass

    @abstractmethod
    async def save_working_memory(self, session_id: str, memory: WorkingMemoryState) -> None:
        pass

    @abstractmethod
    async def load_working_memory(self, session_id: str) -> Optional[WorkingMemoryState]:
        pass

    @abstractmethod
    async def save_context_summary(self, session_id: str, summary: ContextSummary) -> None:
        pass

    @abstractmethod
    async def load_context_summaries(
        self, session_id: str, step_range: Optional[Tuple[int, int]] = None
    ) -> List[ContextSummary]:
        pass

    async def clear_session_data(self, session_id: str) -> None:
        """Drop every record owned by a session but keep the session itself"""

        session = await self.load_session(session_id)
        await self.delete_session(session_id)
        if session:
            await self.save_session(session)


def upsert(records: list, record, key: str) -> None:
    """Replace the record sharing `key`, or append"""

    for idx, existing in enumerate(records):
        if getattr(existing, key) == getattr(record, key):
            records[idx] = record
            return
    records.append(record)


class MemoryStorageAdapter(StorageAdapter):
    """In-memory storage; every save and load copies"""

    def __init__(self):
        self.sessions: Dict[str, ContextSession] = {}
        self.investigations: Dict[str, Dict[int, List[InvestigationResult]]] = {}
        self.element_discoveries: Dict[str, Dict[int, List[ElementDiscovery]]] = {}
        self.working_memory: Dict[str, WorkingMemoryState] = {}
        self.context_summaries: Dict[str, Dict[int, ContextSummary]] = {}
        self._lock = asyncio.Lock()

    async def save_session(self, session: ContextSession) -> None:
        async with self._lock:
            self.sessions[session.session_id] = session_core(session)

    async def load_session(self, session_id: str) -> Optional[ContextSession]:
        async with self._lock:
            session = self.sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    async def delete_session(self, session_id: str) -> None:
        async with self._lock:
            self.sessions.pop(session_id, None)
            self.investigations.pop(session_id, None)
            self.element_discoveries.pop(session_id, None)
            self.working_memory.pop(session_id, None)
            self.context_summaries.pop(session_id, None)

    async def list_sessions(self) -> List[str]:
        async with self._lock:
            return list(self.sessions.keys())

    async def save_investigation_result(
        self, session_id: str, step_index: int, result: InvestigationResult
    ) -> None:
        async with self._lock:
            step_results = self.investigations.setdefault(session_id, {}).setdefault(step_index, [])
            upsert(step_results, result.model_copy(deep=True), "investigation_id")

    async def load_investigation_results(self, session_id: str, step_index: int) -> List[InvestigationResult]:
        async with self._lock:
            results = self.investigations.get(session_id, {}).get(step_index, [])
            return [r.model_copy(deep=True) for r in results]

    async def replace_investigation_results(
        self, session_id: str, step_index: int, results: List[InvestigationResult]
    ) -> None:
        async with self._lock:
            self.investigations.setdefault(session_id, {})[step_index] = [r.model_copy(deep=True) for r in results]

    async def save_element_discovery(
        self, session_id: str, step_index: int, discovery: ElementDiscovery
    ) -> None:
        async with self._lock:
            step_discoveries = self.element_discoveries.setdefault(session_id, {}).setdefault(step_index, [])
            upsert(step_discoveries, discovery.model_copy(deep=True), "discovery_id")

    async def load_element_discoveries(self, session_id: str, step_index: int) -> List[ElementDiscovery]:
        async with self._lock:
            discoveries = self.element_discoveries.get(session_id, {}).get(step_index, [])
            return [d.model_copy(deep=True) for d in discoveries]

    async def save_working_memory(self, session_id: str, memory: WorkingMemoryState) -> None:
        async with self._lock:
            self.working_memory[session_id] = memory.model_copy(deep=True)

    async def load_working_memory(self, session_id: str) -> Optional[WorkingMemoryState]:
        async with self._lock:
            memory = self.working_memory.get(session_id)
            return memory.model_copy(deep=True) if memory else None

    async def save_context_summary(self, session_id: str, summary: ContextSummary) -> None:
        async with self._lock:
            self.context_summaries.setdefault(session_id, {})[summary.step_index] = summary.model_copy(deep=True)

    async def load_context_summaries(
        self, session_id: str, step_range: Optional[Tuple[int, int]] = None
    ) -> List[ContextSummary]:
        async with self._lock:
            summaries = list(self.context_summaries.get(session_id, {}).values())

        if step_range:
            start, end = step_range
            summaries = [s for s in summaries if start <= s.step_index <= end]

        return [s.model_copy(deep=True) for s in sorted(summaries, key=lambda s: s.step_index)]
