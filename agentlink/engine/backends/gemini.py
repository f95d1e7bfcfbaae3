"""Gemini CLI backend.

Runs ``gemini --prompt`` and renders its plain stdout as a single
streamed assistant message. Gemini does not echo the prompt, so there
is nothing to suppress, and it has no resume id to replay.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from ..models import ConversationConfig, PermissionPolicy
from ..pipeline import PlainTextPipeline, StreamPipeline
from .base import Backend

if TYPE_CHECKING:
    from ..config import EngineConfig

_APPROVAL_MODES = {
    PermissionPolicy.GUARDED: "plan",
    PermissionPolicy.EDITS: "auto_edit",
    PermissionPolicy.SUPERVISED: "default",
}


class GeminiBackend(Backend):
    """Backend for the ``gemini`` CLI."""

    def __init__(
        self,
        command: str = "gemini",
        api_key_env: str | None = None,
    ) -> None:
        super().__init__(command, api_key_env)

    @property
    def name(self) -> str:
        return "gemini"

    @property
    def default_command(self) -> str:
        return "gemini"

    def api_key_var(self) -> str | None:
        return "GEMINI_API_KEY"

    def build_argv(self, prompt: str, config: ConversationConfig) -> list[str]:
        argv = [self._command]
        if config.model:
            argv.extend(["--model", config.model])
        if config.permission_policy == PermissionPolicy.OPEN:
            argv.append("--yolo")
        elif config.permission_policy in _APPROVAL_MODES:
            argv.extend([
                "--approval-mode", _APPROVAL_MODES[config.permission_policy],
            ])
        # --flag=value keeps yargs from reading the prompt as a positional.
        argv.append(f"--prompt={prompt}")
        return argv

    def create_pipeline(self, engine_config: EngineConfig) -> StreamPipeline:
        return PlainTextPipeline()
