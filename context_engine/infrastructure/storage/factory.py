from context_engine.infrastructure.config.settings import EngineSettings
from context_engine.infrastructure.storage.storage_adapter import StorageAdapter, MemoryStorageAdapter
from context_engine.infrastructure.storage.file_storage_adapter import FileSystemStorageAdapter


def create_storage_adapter(settings: EngineSettings) -> StorageAdapter:
    """Build the storage adapter selected in settings"""

    if settings.storage_backend == "memory":
        return MemoryStorageAdapter()
    if settings.storage_backend == "filesystem":
        return FileSystemStorageAdapter(settings.storage_base_dir)
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
