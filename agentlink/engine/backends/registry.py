"""Backend registry: maps backend names to Backend instances."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import BackendNotAvailableError
from .base import Backend

if TYPE_CHECKING:
    from ..yaml_config import BackendConfig

logger = logging.getLogger(__name__)


class BackendRegistry:
    """Registry of configured backend CLIs."""

    def __init__(self) -> None:
        self._backends: dict[str, Backend] = {}

    def register(self, name: str, backend: Backend) -> None:
        """Register a backend by name."""
        self._backends[name] = backend
        logger.info(
            "Backend registered: %s (command=%s available=%s)",
            name,
            backend.command,
            backend.is_available(),
        )

    def get(self, name: str) -> Backend | None:
        return self._backends.get(name)

    def get_or_raise(self, name: str) -> Backend:
        backend = self._backends.get(name)
        if backend is None:
            raise BackendNotAvailableError(name, self.list_names())
        return backend

    def list_names(self) -> list[str]:
        return list(self._backends.keys())

    def list_available(self) -> list[str]:
        """Return names of backends whose CLI is installed."""
        return [
            name for name, b in self._backends.items()
            if b.is_available()
        ]

    @property
    def count(self) -> int:
        return len(self._backends)


def build_backend_registry(
    backend_configs: dict[str, BackendConfig] | None = None,
) -> BackendRegistry:
    """Build a BackendRegistry from YAML-sourced backend configs.

    With no configs, registers the claude and gemini CLIs under their
    default command names.
    """
    from .claude import ClaudeBackend
    from .gemini import GeminiBackend

    registry = BackendRegistry()

    if not backend_configs:
        registry.register("claude", ClaudeBackend())
        registry.register("gemini", GeminiBackend())
        return registry

    for name, cfg in backend_configs.items():
        if cfg.type == "claude":
            registry.register(name, ClaudeBackend(
                command=cfg.command or "claude",
                api_key_env=cfg.api_key_env,
            ))
        elif cfg.type == "gemini":
            registry.register(name, GeminiBackend(
                command=cfg.command or "gemini",
                api_key_env=cfg.api_key_env,
            ))
        else:
            logger.warning(
                "Unknown backend type '%s' for '%s', skipping",
                cfg.type, name,
            )

    return registry
