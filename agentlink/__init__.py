"""agentlink: drive agent CLIs and reconcile their streamed output into transcripts."""

__version__ = "0.1.0"
