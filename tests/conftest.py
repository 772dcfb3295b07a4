"""Shared fixtures for the context engine tests."""

import pytest
import pytest_asyncio

from context_engine.domain.context.context_filter import ContextFilter
from context_engine.domain.context.context_generator import ContextGenerator
from context_engine.domain.context.context_manager import ContextEngine
from context_engine.domain.context.investigation.element_discovery import ElementDiscoveryRegistry
from context_engine.domain.context.investigation.investigation_context import InvestigationContextGenerator
from context_engine.domain.context.investigation.investigation_ledger import InvestigationLedger
from context_engine.domain.context.memory.working_memory import WorkingMemoryManager
from context_engine.domain.context.session.session_registry import SessionRegistry
from context_engine.domain.context.state.execution_tracker import ExecutionTracker
from context_engine.domain.context.state.step_manager import StepManager
from context_engine.infrastructure.storage.storage_adapter import MemoryStorageAdapter

from tests.factories import STEPS, WORKFLOW_ID, build_settings


@pytest.fixture
def settings():
    return build_settings()


@pytest.fixture
def storage():
    return MemoryStorageAdapter()


@pytest.fixture
def registry(settings, storage):
    return SessionRegistry(settings, storage)


@pytest.fixture
def step_manager(settings, storage):
    return StepManager(settings, storage)


@pytest.fixture
def tracker(settings, storage):
    return ExecutionTracker(settings, storage)


@pytest.fixture
def ledger(settings, storage):
    return InvestigationLedger(settings, storage)


@pytest.fixture
def discoveries(settings, storage):
    return ElementDiscoveryRegistry(settings, storage)


@pytest.fixture
def memory_manager(settings, storage):
    return WorkingMemoryManager(settings, storage)


@pytest.fixture
def context_generator(settings, storage):
    return ContextGenerator(settings, storage)


@pytest.fixture
def context_filter(settings, storage):
    return ContextFilter(settings, storage)


@pytest.fixture
def investigation_context(settings, storage):
    return InvestigationContextGenerator(settings, storage)


@pytest_asyncio.fixture
async def session(registry, step_manager):
    """Active session with three steps"""
    await registry.create_session(WORKFLOW_ID)
    session = registry.require_session(WORKFLOW_ID)
    await step_manager.set_steps(session, list(STEPS))
    return session


@pytest_asyncio.fixture
async def engine(settings, storage):
    engine = ContextEngine(settings, storage)
    await engine.create_session(WORKFLOW_ID)
    await engine.set_steps(WORKFLOW_ID, list(STEPS))
    yield engine
    await engine.destroy()
