"""YAML configuration loader.

Example YAML:
    engine:
      noise_ceiling: 5000
      tool_result_preview_chars: 500
      kill_grace_seconds: 3
      log_level: INFO

    backends:
      claude:
        type: claude
        command: claude
      gemini:
        type: gemini
        command: gemini
        api_key_env: GEMINI_API_KEY

    defaults:
      backend: claude
      model: claude-sonnet-4-5
      permission_policy: guarded
      system_prompt: "Keep answers short."
      cwd: /path/to/project
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .config import EngineConfig
from .models import ConversationConfig, parse_permission_policy

logger = logging.getLogger(__name__)


@dataclass
class BackendConfig:
    """Configuration for a single backend CLI."""
    type: str  # "claude" or "gemini"
    command: str | None = None
    api_key_env: str | None = None


@dataclass
class AgentLinkConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    backends: dict[str, BackendConfig] = field(default_factory=dict)

    def conversation_defaults(self) -> ConversationConfig:
        """ConversationConfig built from the engine defaults."""
        return ConversationConfig(
            working_directory=self.engine.default_cwd,
            permission_policy=self.engine.default_permission_policy,
            model=self.engine.default_model,
            system_prompt=self.engine.default_system_prompt,
        )


_INT_FIELDS = (
    "noise_ceiling",
    "max_object_chars",
    "tool_result_preview_chars",
    "read_chunk_size",
    "stderr_tail_chars",
    "event_queue_size",
)
_FLOAT_FIELDS = ("kill_grace_seconds", "drain_timeout_seconds")


def _build_engine_config(engine_raw: dict, defaults_raw: dict, base: EngineConfig) -> EngineConfig:
    engine = EngineConfig(
        default_backend=str(defaults_raw.get("backend", base.default_backend)),
        default_model=defaults_raw.get("model", base.default_model),
        default_permission_policy=parse_permission_policy(
            defaults_raw.get("permission_policy", base.default_permission_policy)
        ),
        default_cwd=str(defaults_raw.get("cwd", base.default_cwd)),
        default_system_prompt=defaults_raw.get(
            "system_prompt", base.default_system_prompt
        ),
        data_dir=engine_raw.get("data_dir", base.data_dir),
        log_level=str(engine_raw.get("log_level", base.log_level)),
    )
    for name in _INT_FIELDS:
        setattr(engine, name, int(engine_raw.get(name, getattr(base, name))))
    for name in _FLOAT_FIELDS:
        setattr(engine, name, float(engine_raw.get(name, getattr(base, name))))
    return engine


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> AgentLinkConfig:
    """Load and parse a YAML config file.

    Values missing from the file fall back to *base* (typically
    ``EngineConfig.from_env()``), then to the dataclass defaults.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    engine = _build_engine_config(
        raw.get("engine") or {},
        raw.get("defaults") or {},
        base or EngineConfig(),
    )

    backends: dict[str, BackendConfig] = {}
    for name, cfg in (raw.get("backends") or {}).items():
        cfg = cfg or {}
        backends[name] = BackendConfig(
            type=str(cfg.get("type", name)),
            command=cfg.get("command"),
            api_key_env=cfg.get("api_key_env"),
        )
        logger.debug(
            "Backend config: %s type=%s command=%s",
            name, backends[name].type, backends[name].command,
        )

    return AgentLinkConfig(engine=engine, backends=backends)
