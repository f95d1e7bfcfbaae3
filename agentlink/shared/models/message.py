"""Transcript entry model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid

from agentlink.engine.models import ToolInput, Usage, tool_input_from_dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def gen_id(prefix: str = "msg") -> str:
    return f"{prefix}-{str(uuid.uuid4())[:8]}"


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass
class TranscriptEntry:
    role: MessageRole
    content: str
    id: str = field(default_factory=gen_id)
    timestamp: datetime = field(default_factory=_utcnow)
    tool_name: str | None = None
    tool_input: ToolInput | None = None
    # Untruncated tool output; ``content`` only holds the preview.
    tool_result: str | None = None
    is_error: bool = False
    usage: Usage | None = None
    cost: float | None = None
    # A partial entry is superseded by the next entry with the same id.
    is_partial: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "is_partial": self.is_partial,
        }
        if self.tool_name is not None:
            d["tool_name"] = self.tool_name
        if self.tool_input is not None:
            d["tool_input"] = self.tool_input.to_dict()
        if self.tool_result is not None:
            d["tool_result"] = self.tool_result
        if self.is_error:
            d["is_error"] = True
        if self.usage is not None:
            d["usage"] = self.usage.to_dict()
        if self.cost is not None:
            d["cost"] = self.cost
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TranscriptEntry:
        timestamp = data.get("timestamp")
        return cls(
            id=data["id"],
            role=MessageRole(data["role"]),
            content=data.get("content", ""),
            timestamp=(
                datetime.fromisoformat(timestamp) if timestamp else _utcnow()
            ),
            tool_name=data.get("tool_name"),
            tool_input=tool_input_from_dict(data.get("tool_input")),
            tool_result=data.get("tool_result"),
            is_error=bool(data.get("is_error", False)),
            usage=Usage.from_dict(data.get("usage")),
            cost=data.get("cost"),
            is_partial=bool(data.get("is_partial", False)),
        )
