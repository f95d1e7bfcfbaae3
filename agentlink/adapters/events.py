"""Event types published by the conversation coordinator.

UI consumers read these from the EventBus; ``event_to_dict`` turns
them into plain dicts for JSON transports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from agentlink.shared.models.message import MessageRole, TranscriptEntry


@dataclass
class ConversationEvent:
    """Base event for one conversation."""
    event_type: str = ""
    conversation_id: str = ""


@dataclass
class TranscriptUpdated(ConversationEvent):
    """A transcript entry was created or (if partial) superseded by id."""
    event_type: str = "transcript_updated"
    entry: TranscriptEntry = field(
        default_factory=lambda: TranscriptEntry(role=MessageRole.SYSTEM, content=""),
    )


@dataclass
class ResumeCaptured(ConversationEvent):
    event_type: str = "resume_captured"
    resume_id: str = ""
    model: str | None = None


@dataclass
class DiagnosticReported(ConversationEvent):
    """A malformed or discarded piece of backend output."""
    event_type: str = "diagnostic_reported"
    kind: str = ""
    message: str = ""
    raw: str = ""


@dataclass
class ProcessStateChanged(ConversationEvent):
    event_type: str = "process_state_changed"
    state: str = ""  # "running", "exited", "killed", "failed"
    pid: int | None = None
    exit_code: int | None = None


def event_to_dict(event: ConversationEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is None:
            continue
        if isinstance(val, TranscriptEntry):
            val = val.to_dict()
        d[f] = val
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d
