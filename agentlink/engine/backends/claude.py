"""Claude Code CLI backend.

Each turn is a fresh ``claude -p`` process writing ``stream-json``
events; conversation continuity comes from ``--resume`` with the
session id captured from the previous turn's init event.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..models import ConversationConfig, PermissionPolicy
from ..pipeline import StreamJsonPipeline, StreamPipeline
from .base import Backend

if TYPE_CHECKING:
    from ..config import EngineConfig

logger = logging.getLogger(__name__)

READ_ONLY_TOOLS = ("Read", "Glob", "Grep", "Task", "WebFetch", "WebSearch")
EDIT_TOOLS = ("Edit", "Write", "Read", "Glob", "Grep", "MultiEdit", "NotebookEdit")


def permission_flags(policy: PermissionPolicy) -> list[str]:
    """Map a permission policy onto claude CLI flags."""
    if policy == PermissionPolicy.OPEN:
        return ["--dangerously-skip-permissions"]
    if policy == PermissionPolicy.GUARDED:
        return ["--allowedTools", ",".join(READ_ONLY_TOOLS)]
    if policy == PermissionPolicy.EDITS:
        return ["--allowedTools", ",".join(EDIT_TOOLS)]
    if policy == PermissionPolicy.SUPERVISED:
        return ["--permission-mode", "default"]
    return []


class ClaudeBackend(Backend):
    """Backend for the ``claude`` CLI in print mode."""

    def __init__(
        self,
        command: str = "claude",
        api_key_env: str | None = None,
    ) -> None:
        super().__init__(command, api_key_env)

    @property
    def name(self) -> str:
        return "claude"

    @property
    def default_command(self) -> str:
        return "claude"

    @property
    def suppress_user_echo(self) -> bool:
        return True

    @property
    def supports_resume(self) -> bool:
        return True

    def api_key_var(self) -> str | None:
        return "ANTHROPIC_API_KEY"

    def build_argv(self, prompt: str, config: ConversationConfig) -> list[str]:
        argv = [
            self._command,
            "-p", prompt,
            "--output-format", "stream-json",
            "--verbose",
            "--include-partial-messages",
        ]
        system_prompt = (config.system_prompt or "").strip()
        if system_prompt:
            argv.extend(["--append-system-prompt", system_prompt])
        if config.model:
            argv.extend(["--model", config.model])
        argv.extend(permission_flags(config.permission_policy))
        if config.resume_id:
            argv.extend(["--resume", config.resume_id])
        logger.debug(
            "claude argv built (model=%s policy=%s resume=%s)",
            config.model,
            config.permission_policy.value,
            config.resume_id or "<fresh>",
        )
        return argv

    def create_pipeline(self, engine_config: EngineConfig) -> StreamPipeline:
        return StreamJsonPipeline(
            noise_ceiling=engine_config.noise_ceiling,
            max_object_chars=engine_config.max_object_chars,
            suppress_user_echo=self.suppress_user_echo,
            preview_chars=engine_config.tool_result_preview_chars,
        )
