"""Engine configuration using Pydantic settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class EngineSettings(BaseSettings):
    """Context engine settings loaded from environment variables."""

    # Sessions
    max_sessions: int = Field(default=100, ge=1, description="Maximum number of live sessions")
    session_ttl_seconds: int = Field(
        default=24 * 60 * 60, description="Idle time after which a session is destroyed"
    )
    memory_cleanup_interval_seconds: float = Field(
        default=5 * 60, description="Period of the background TTL scan"
    )
    memory_warning_threshold_bytes: int = Field(
        default=1024 * 1024 * 1024, description="Process RSS above which health check warns"
    )

    # Steps and events
    max_steps_per_session: int = Field(default=100, ge=1)
    max_events_per_step: int = Field(default=1000, ge=1)
    max_step_length: int = Field(default=1000, description="Maximum characters per step name")

    # Compression
    compression_enabled: bool = True
    dom_compression_threshold: int = Field(
        default=50000, description="DOM snapshots longer than this are compressed"
    )

    # Investigations and discoveries
    max_investigations_per_step: int = Field(default=20, ge=1)
    discovery_merge_weight: float = Field(
        default=0.3, ge=0.0, le=1.0, description="Weight of a new observation when merging discoveries"
    )
    element_knowledge_enabled: bool = Field(
        default=True, description="Feed element discoveries into working memory"
    )

    # Working memory
    working_memory_enabled: bool = True
    working_memory_ttl_seconds: int = Field(default=60 * 60)
    max_known_elements: int = Field(default=100, ge=1)
    max_navigation_patterns: int = Field(default=20, ge=1)
    max_success_patterns: int = Field(default=50, ge=1)
    max_failure_patterns: int = Field(default=30, ge=1)
    reliability_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    learning_rate: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Blend weight for cross-step reliability updates"
    )

    # Context filtering
    context_filtering_enabled: bool = Field(
        default=True, description="Run the trim cascade on oversized filtered contexts"
    )
    max_context_size: int = Field(default=50000, description="Budget in serialized characters")
    default_filtering_level: Literal["minimal", "standard", "detailed"] = "standard"
    default_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)

    # Storage
    storage_backend: Literal["memory", "filesystem"] = "memory"
    storage_base_dir: str = Field(default=".context-engine", description="Root of the filesystem store")

    # Task log store
    max_contexts: int = Field(default=100, ge=1)
    max_logs_per_step: int = Field(default=1000, ge=1)

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"
    service_name: str = "context-engine"

    model_config = {
        "env_prefix": "CONTEXT_ENGINE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }


@lru_cache()
def get_settings() -> EngineSettings:
    """Get cached engine settings."""
    return EngineSettings()
