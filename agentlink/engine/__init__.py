"""agentlink engine: backend processes, stream parsing and transcript reconciliation."""
from .models import (
    ConversationConfig,
    ParsedToolInput,
    PermissionPolicy,
    RawToolInput,
    Usage,
    parse_permission_policy,
)
from .config import EngineConfig
from .errors import (
    AgentLinkError,
    BackendNotAvailableError,
    ConversationNotFoundError,
    ProcessSpawnError,
)

__all__ = [
    # Coordinator (lazy import to avoid circular deps)
    "ConversationCoordinator",
    # Models
    "ConversationConfig",
    "ParsedToolInput",
    "PermissionPolicy",
    "RawToolInput",
    "Usage",
    "parse_permission_policy",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "AgentLinkConfig",
    "load_yaml_config",
    # Stream stages (lazy import)
    "ChunkBuffer",
    "classify",
    "TranscriptReconciler",
    "StreamJsonPipeline",
    "PlainTextPipeline",
    "ProcessSupervisor",
    # Backends (lazy import)
    "Backend",
    "BackendRegistry",
    "ClaudeBackend",
    "GeminiBackend",
    "build_backend_registry",
    # Errors
    "AgentLinkError",
    "BackendNotAvailableError",
    "ConversationNotFoundError",
    "ProcessSpawnError",
]


def __getattr__(name: str):
    if name == "ConversationCoordinator":
        from .coordinator import ConversationCoordinator
        return ConversationCoordinator
    if name == "AgentLinkConfig":
        from .yaml_config import AgentLinkConfig
        return AgentLinkConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "ChunkBuffer":
        from .extractor import ChunkBuffer
        return ChunkBuffer
    if name == "classify":
        from .events import classify
        return classify
    if name == "TranscriptReconciler":
        from .reconciler import TranscriptReconciler
        return TranscriptReconciler
    if name == "StreamJsonPipeline":
        from .pipeline import StreamJsonPipeline
        return StreamJsonPipeline
    if name == "PlainTextPipeline":
        from .pipeline import PlainTextPipeline
        return PlainTextPipeline
    if name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name in ("Backend", "BackendRegistry", "ClaudeBackend", "GeminiBackend", "build_backend_registry"):
        from . import backends
        return getattr(backends, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
