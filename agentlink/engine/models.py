"""Core data models for conversations and streamed turns."""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any


class PermissionPolicy(str, Enum):
    """Tool permission policy handed to the backend CLI."""
    OPEN = "open"              # allow every tool
    GUARDED = "guarded"        # read-oriented tools only
    EDITS = "edits"            # file edits allowed without prompting
    SUPERVISED = "supervised"  # prompt for every tool
    DEFAULT = "default"        # the CLI's own default


_POLICY_ALIASES: dict[str, PermissionPolicy] = {
    "open": PermissionPolicy.OPEN,
    "bypass": PermissionPolicy.OPEN,
    "bypassPermissions": PermissionPolicy.OPEN,
    "guarded": PermissionPolicy.GUARDED,
    "plan": PermissionPolicy.GUARDED,
    "edits": PermissionPolicy.EDITS,
    "acceptEdits": PermissionPolicy.EDITS,
    "accept_edits": PermissionPolicy.EDITS,
    "supervised": PermissionPolicy.SUPERVISED,
    "default": PermissionPolicy.DEFAULT,
}


def parse_permission_policy(value: str | PermissionPolicy | None) -> PermissionPolicy:
    """Parse a permission policy string, falling back to DEFAULT."""
    if isinstance(value, PermissionPolicy):
        return value
    if not value:
        return PermissionPolicy.DEFAULT
    return _POLICY_ALIASES.get(value.strip(), PermissionPolicy.DEFAULT)


@dataclass(frozen=True)
class ConversationConfig:
    """Snapshot of the settings used to start one turn.

    Never mutated in place; the coordinator swaps in a new instance
    (``dataclasses.replace``) when the resume id or any setting changes.
    """
    working_directory: str = "."
    resume_id: str | None = None
    permission_policy: PermissionPolicy = PermissionPolicy.DEFAULT
    model: str | None = None
    system_prompt: str | None = None


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass
class Usage:
    """Token counters for one assistant turn.

    Cache counters stay None until the backend reports them.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None

    @classmethod
    def from_dict(cls, data: Any) -> Usage | None:
        if not isinstance(data, dict):
            return None
        return cls(
            input_tokens=_optional_int(data.get("input_tokens")) or 0,
            output_tokens=_optional_int(data.get("output_tokens")) or 0,
            cache_creation_input_tokens=_optional_int(
                data.get("cache_creation_input_tokens")
            ),
            cache_read_input_tokens=_optional_int(
                data.get("cache_read_input_tokens")
            ),
        )

    def copy(self) -> Usage:
        return Usage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_creation_input_tokens=self.cache_creation_input_tokens,
            cache_read_input_tokens=self.cache_read_input_tokens,
        )

    def merge(self, delta: Usage) -> None:
        """Add *delta* to these counters. Never overwrites."""
        self.input_tokens += delta.input_tokens
        self.output_tokens += delta.output_tokens
        if delta.cache_creation_input_tokens is not None:
            self.cache_creation_input_tokens = (
                (self.cache_creation_input_tokens or 0)
                + delta.cache_creation_input_tokens
            )
        if delta.cache_read_input_tokens is not None:
            self.cache_read_input_tokens = (
                (self.cache_read_input_tokens or 0)
                + delta.cache_read_input_tokens
            )

    def raise_to(self, final: Usage) -> None:
        """Lift each counter to at least the value reported in *final*."""
        self.input_tokens = max(self.input_tokens, final.input_tokens)
        self.output_tokens = max(self.output_tokens, final.output_tokens)
        if final.cache_creation_input_tokens is not None:
            self.cache_creation_input_tokens = max(
                self.cache_creation_input_tokens or 0,
                final.cache_creation_input_tokens,
            )
        if final.cache_read_input_tokens is not None:
            self.cache_read_input_tokens = max(
                self.cache_read_input_tokens or 0,
                final.cache_read_input_tokens,
            )

    def to_dict(self) -> dict[str, int]:
        d = {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }
        if self.cache_creation_input_tokens is not None:
            d["cache_creation_input_tokens"] = self.cache_creation_input_tokens
        if self.cache_read_input_tokens is not None:
            d["cache_read_input_tokens"] = self.cache_read_input_tokens
        return d


@dataclass(frozen=True)
class ParsedToolInput:
    """Tool input that decoded to a JSON object."""
    value: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return dict(self.value)


@dataclass(frozen=True)
class RawToolInput:
    """Tool input whose fragments did not form a JSON object."""
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"raw": self.text}


ToolInput = ParsedToolInput | RawToolInput


def parse_tool_input(text: str) -> ToolInput:
    """Decode joined tool-input fragments, keeping the text on failure."""
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return RawToolInput(text)
    if not isinstance(value, dict):
        return RawToolInput(text)
    return ParsedToolInput(value)


def tool_input_from_dict(data: dict[str, Any] | None) -> ToolInput | None:
    """Inverse of ``ToolInput.to_dict`` for persisted entries."""
    if data is None:
        return None
    if set(data) == {"raw"} and isinstance(data["raw"], str):
        return RawToolInput(data["raw"])
    return ParsedToolInput(dict(data))
