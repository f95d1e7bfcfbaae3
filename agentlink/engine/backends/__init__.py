"""Backend CLI abstraction."""
from .base import Backend
from .registry import BackendRegistry, build_backend_registry
from .claude import ClaudeBackend
from .gemini import GeminiBackend

__all__ = [
    "Backend",
    "BackendRegistry",
    "build_backend_registry",
    "ClaudeBackend",
    "GeminiBackend",
]
