"""Adapters package - bridge between the engine and UI frontends.

Holds the event bus and the event types the coordinator publishes.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "ConversationEvent",
    "TranscriptUpdated",
    "ResumeCaptured",
    "DiagnosticReported",
    "ProcessStateChanged",
    "event_to_dict",
]

from agentlink.adapters.event_bus import EventBus
from agentlink.adapters.events import (
    ConversationEvent,
    DiagnosticReported,
    ProcessStateChanged,
    ResumeCaptured,
    TranscriptUpdated,
    event_to_dict,
)
