"""Abstract base for backend CLIs.

A backend knows how to turn a prompt plus a ``ConversationConfig``
into an argument vector, and which output pipeline understands what
the CLI writes to stdout. It never spawns anything itself; that is
the supervisor's job.
"""
from __future__ import annotations

import abc
import logging
import os
import shutil
from typing import TYPE_CHECKING

from ..models import ConversationConfig

if TYPE_CHECKING:
    from ..config import EngineConfig
    from ..pipeline import StreamPipeline

logger = logging.getLogger(__name__)


class Backend(abc.ABC):
    """Abstract backend interface.

    Implementations:
    - ClaudeBackend: ``claude -p`` with ``--output-format stream-json``
    - GeminiBackend: ``gemini --prompt`` with plain text output
    """

    def __init__(self, command: str, api_key_env: str | None = None) -> None:
        self._command = self.resolve_command(command, self.default_command)
        self._api_key_env = api_key_env

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short backend name (e.g. 'claude', 'gemini')."""

    @property
    @abc.abstractmethod
    def default_command(self) -> str:
        """Binary name used when no command is configured."""

    @property
    def command(self) -> str:
        return self._command

    @property
    def suppress_user_echo(self) -> bool:
        """Whether the CLI echoes the user's prompt back on stdout.

        The caller renders the user's message on submission, so an
        echo from the backend would show it twice.
        """
        return False

    @property
    def supports_resume(self) -> bool:
        return False

    @abc.abstractmethod
    def build_argv(self, prompt: str, config: ConversationConfig) -> list[str]:
        """Argument vector for one turn. Working directory is not included."""

    @abc.abstractmethod
    def create_pipeline(self, engine_config: EngineConfig) -> StreamPipeline:
        """A fresh output pipeline for this backend's stdout protocol."""

    def api_key_var(self) -> str | None:
        """Environment variable the CLI reads its API key from."""
        return None

    def build_env(self) -> dict[str, str] | None:
        """Subprocess environment with the configured API key, if any."""
        target = self.api_key_var()
        if self._api_key_env and target:
            key = os.environ.get(self._api_key_env)
            if key:
                env = os.environ.copy()
                env[target] = key
                return env
        return None

    def is_available(self) -> bool:
        """Check if the CLI is installed."""
        return shutil.which(self._command) is not None

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a backend binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        """
        if command:
            if shutil.which(command):
                return command
            if fallback and shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s",
                    command, fallback,
                )
                return fallback
            return command
        return fallback or command
