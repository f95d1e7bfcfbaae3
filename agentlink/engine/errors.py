"""Exception hierarchy for the conversation engine.

Only failures that end a caller's request are raised. Stream-level
problems (noise overflow, malformed objects, bad tool input) are
reported as records and never interrupt the stream.
"""
from __future__ import annotations


class AgentLinkError(Exception):
    """Base exception for all agentlink errors."""


class ProcessSpawnError(AgentLinkError):
    """The OS could not start the backend subprocess."""
    def __init__(self, conversation_id: str, command: str, reason: str):
        self.conversation_id = conversation_id
        self.command = command
        self.reason = reason
        super().__init__(
            f"Failed to start '{command}' for conversation "
            f"{conversation_id}: {reason}"
        )


class BackendNotAvailableError(AgentLinkError):
    """Requested backend is not registered."""
    def __init__(self, backend_name: str, available: list[str]):
        self.backend_name = backend_name
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"Backend '{backend_name}' is not registered. "
            f"Available backends: {avail_str}"
        )


class ConversationNotFoundError(AgentLinkError):
    """No conversation is open under the given id."""
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")
