"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTLINK_* env vars.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .extractor import DEFAULT_MAX_OBJECT_CHARS, DEFAULT_NOISE_CEILING
from .models import PermissionPolicy, parse_permission_policy

logger = logging.getLogger(__name__)


def _default_data_dir() -> str:
    return str(Path.home() / ".agentlink")


@dataclass
class EngineConfig:
    """Conversation engine configuration."""

    # Defaults for newly opened conversations
    default_backend: str = "claude"
    default_model: str | None = None
    default_permission_policy: PermissionPolicy = PermissionPolicy.DEFAULT
    default_cwd: str = "."
    default_system_prompt: str | None = None

    # Stream handling
    # Non-protocol output tolerated before it is discarded.
    noise_ceiling: int = DEFAULT_NOISE_CEILING
    # Hard limit for one unterminated JSON object.
    max_object_chars: int = DEFAULT_MAX_OBJECT_CHARS
    tool_result_preview_chars: int = 500
    read_chunk_size: int = 4096

    # Process lifecycle
    # Time between SIGTERM and SIGKILL when stopping a turn.
    kill_grace_seconds: float = 3.0
    # Max time spent reading already-buffered output after a kill.
    drain_timeout_seconds: float = 2.0
    stderr_tail_chars: int = 4000

    # UI event bus
    event_queue_size: int = 5000

    # Persistence and logging
    data_dir: str | None = None
    log_level: str = "INFO"

    def resolved_data_dir(self) -> Path:
        return Path(self.data_dir or _default_data_dir())

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from AGENTLINK_* environment variables."""
        link_vars = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTLINK_")
        }
        if link_vars:
            logger.info(
                "EngineConfig.from_env: AGENTLINK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(link_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no AGENTLINK_* env vars set, using defaults")

        config = cls(
            default_backend=os.getenv(
                "AGENTLINK_DEFAULT_BACKEND", cls.default_backend
            ),
            default_model=os.getenv("AGENTLINK_DEFAULT_MODEL") or None,
            default_permission_policy=parse_permission_policy(
                os.getenv("AGENTLINK_PERMISSION_POLICY")
            ),
            default_cwd=os.getenv("AGENTLINK_DEFAULT_CWD", cls.default_cwd),
            default_system_prompt=os.getenv("AGENTLINK_SYSTEM_PROMPT") or None,
            noise_ceiling=int(os.getenv(
                "AGENTLINK_NOISE_CEILING", str(cls.noise_ceiling)
            )),
            max_object_chars=int(os.getenv(
                "AGENTLINK_MAX_OBJECT_CHARS", str(cls.max_object_chars)
            )),
            tool_result_preview_chars=int(os.getenv(
                "AGENTLINK_TOOL_RESULT_PREVIEW",
                str(cls.tool_result_preview_chars),
            )),
            read_chunk_size=int(os.getenv(
                "AGENTLINK_READ_CHUNK_SIZE", str(cls.read_chunk_size)
            )),
            kill_grace_seconds=float(os.getenv(
                "AGENTLINK_KILL_GRACE_SECONDS", str(cls.kill_grace_seconds)
            )),
            drain_timeout_seconds=float(os.getenv(
                "AGENTLINK_DRAIN_TIMEOUT_SECONDS",
                str(cls.drain_timeout_seconds),
            )),
            data_dir=os.getenv("AGENTLINK_DATA_DIR") or None,
            log_level=os.getenv("AGENTLINK_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: backend=%s model=%s policy=%s cwd=%s",
            config.default_backend, config.default_model,
            config.default_permission_policy.value, config.default_cwd,
        )
        return config
