"""Turn classified protocol events into transcript entries.

One ``TranscriptReconciler`` lives for one backend process. It keeps
the in-flight content blocks of the current assistant message keyed
by block index, and the running token usage, and returns the
transcript entries each event produces:

- every text delta yields a partial assistant entry holding the full
  text so far (index order), so consumers replace by id;
- ``message_stop`` yields the final entry for that id;
- tool blocks are only reported once their input is complete.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from agentlink.shared.models.message import MessageRole, TranscriptEntry, gen_id

from .events import (
    TEXT_BLOCK_KINDS,
    TOOL_BLOCK_KIND,
    AssistantMessage,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    ErrorEvent,
    MessageDelta,
    MessageStart,
    MessageStop,
    ProtocolEvent,
    SessionInit,
    ToolResult,
    ToolUse,
    TurnResult,
    UnknownEvent,
    UserMessage,
)
from .models import ParsedToolInput, RawToolInput, ToolInput, Usage, parse_tool_input

logger = logging.getLogger(__name__)

DEFAULT_PREVIEW_CHARS = 500


@dataclass(frozen=True)
class SessionCaptured:
    """The backend announced the id to pass back on the next turn."""
    resume_id: str
    model: str | None = None


@dataclass(frozen=True)
class StreamDiagnostic:
    """A recovered stream problem worth surfacing to a debug view."""
    kind: str
    message: str
    raw: str = ""


ReconcilerOutput = Union[TranscriptEntry, SessionCaptured, StreamDiagnostic]


@dataclass
class _ToolBlock:
    tool_id: str | None = None
    tool_name: str | None = None
    fragments: list[str] = field(default_factory=list)
    initial_input: dict | None = None


class TranscriptReconciler:
    """Per-process state machine from protocol events to transcript entries."""

    def __init__(
        self,
        *,
        suppress_user_echo: bool = True,
        preview_chars: int = DEFAULT_PREVIEW_CHARS,
    ) -> None:
        self._suppress_user_echo = suppress_user_echo
        self._preview_chars = preview_chars
        self._text_blocks: dict[int, str] = {}
        self._tool_blocks: dict[int, _ToolBlock] = {}
        self._assistant_id: str | None = None
        self._usage: Usage | None = None
        self._session_seen = False
        self._turn_result_seen = False
        self._streamed_ids: set[str] = set()
        self._emitted_tool_ids: set[str] = set()
        self._handlers: dict[type, Callable[[Any], list[ReconcilerOutput]]] = {
            SessionInit: self._on_session_init,
            MessageStart: self._on_message_start,
            ContentBlockStart: self._on_block_start,
            ContentBlockDelta: self._on_block_delta,
            ContentBlockStop: self._on_block_stop,
            MessageDelta: self._on_message_delta,
            MessageStop: self._on_message_stop,
            ToolResult: self._on_tool_result,
            ToolUse: self._on_tool_use,
            AssistantMessage: self._on_assistant_message,
            UserMessage: self._on_user_message,
            TurnResult: self._on_turn_result,
            ErrorEvent: self._on_error,
            UnknownEvent: self._on_unknown,
        }

    @property
    def turn_result_seen(self) -> bool:
        return self._turn_result_seen

    @property
    def usage(self) -> Usage | None:
        return self._usage.copy() if self._usage else None

    @property
    def has_pending_text(self) -> bool:
        return bool(self._text_blocks)

    def reset(self) -> None:
        """Forget everything; called before a new process starts."""
        self._reset_turn()
        self._session_seen = False
        self._turn_result_seen = False
        self._streamed_ids.clear()
        self._emitted_tool_ids.clear()

    def _reset_turn(self) -> None:
        self._text_blocks.clear()
        self._tool_blocks.clear()
        self._assistant_id = None
        self._usage = None

    def apply(self, event: ProtocolEvent) -> list[ReconcilerOutput]:
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.debug("No reconciler rule for %s", type(event).__name__)
            return []
        return handler(event)

    def flush(self) -> list[ReconcilerOutput]:
        """Finalize any text still in flight (e.g. the process exited early)."""
        out: list[ReconcilerOutput] = []
        if self._tool_blocks:
            logger.debug(
                "Dropping %d incomplete tool blocks on flush",
                len(self._tool_blocks),
            )
        if self._text_blocks:
            out.extend(self._final_assistant())
        self._reset_turn()
        return out

    # ── helpers ──────────────────────────────────────────────

    def _assistant_text(self) -> str:
        return "".join(text for _, text in sorted(self._text_blocks.items()))

    def _current_id(self) -> str:
        if self._assistant_id is None:
            self._assistant_id = gen_id("msg")
        return self._assistant_id

    def _final_assistant(self) -> list[ReconcilerOutput]:
        content = self._assistant_text()
        if not content:
            return []
        return [TranscriptEntry(
            id=self._current_id(),
            role=MessageRole.ASSISTANT,
            content=content,
            usage=self.usage,
        )]

    def _tool_entry(
        self,
        tool_id: str | None,
        name: str,
        tool_input: ToolInput | None,
        label: str = "Using tool",
    ) -> TranscriptEntry:
        entry_id = tool_id or gen_id("tool")
        self._emitted_tool_ids.add(entry_id)
        return TranscriptEntry(
            id=entry_id,
            role=MessageRole.TOOL,
            content=f"{label}: {name}",
            tool_name=name,
            tool_input=tool_input,
        )

    def _tool_result_entry(self, event: ToolResult) -> TranscriptEntry:
        content = event.content
        preview = content[:self._preview_chars]
        if len(content) > self._preview_chars:
            preview += "..."
        return TranscriptEntry(
            id=f"result-{event.tool_id}",
            role=MessageRole.TOOL,
            content=preview,
            tool_result=content,
            is_error=event.is_error,
        )

    @staticmethod
    def _system(content: str, *, is_error: bool = False, cost: float | None = None) -> TranscriptEntry:
        return TranscriptEntry(
            role=MessageRole.SYSTEM,
            content=content,
            is_error=is_error,
            cost=cost,
        )

    # ── event rules ──────────────────────────────────────────

    def _on_session_init(self, event: SessionInit) -> list[ReconcilerOutput]:
        if self._session_seen:
            logger.warning(
                "Ignoring repeated session init (resume_id=%s)", event.resume_id,
            )
            return []
        self._session_seen = True
        out: list[ReconcilerOutput] = []
        if event.resume_id:
            out.append(SessionCaptured(resume_id=event.resume_id, model=event.model))
        out.append(self._system(
            f"Session initialized. Model: {event.model or 'unknown'}"
        ))
        return out

    def _on_message_start(self, event: MessageStart) -> list[ReconcilerOutput]:
        self._reset_turn()
        self._assistant_id = event.message_id or gen_id("msg")
        self._streamed_ids.add(self._assistant_id)
        self._usage = event.initial_usage.copy() if event.initial_usage else None
        return []

    def _on_block_start(self, event: ContentBlockStart) -> list[ReconcilerOutput]:
        if event.kind in TEXT_BLOCK_KINDS:
            self._text_blocks[event.index] = ""
        elif event.kind == TOOL_BLOCK_KIND:
            self._tool_blocks[event.index] = _ToolBlock(
                tool_id=event.tool_id,
                tool_name=event.tool_name,
                initial_input=event.initial_input,
            )
        else:
            logger.debug("Ignoring content block of kind %s", event.kind)
        return []

    def _on_block_delta(self, event: ContentBlockDelta) -> list[ReconcilerOutput]:
        if event.index in self._text_blocks:
            if not event.text_delta:
                return []
            self._text_blocks[event.index] += event.text_delta
            content = self._assistant_text()
            return [TranscriptEntry(
                id=self._current_id(),
                role=MessageRole.ASSISTANT,
                content=content,
                usage=self.usage,
                is_partial=True,
            )]
        block = self._tool_blocks.get(event.index)
        if block is not None:
            addition = event.partial_json_delta or event.text_delta
            if addition:
                block.fragments.append(addition)
            return []
        logger.debug("Delta for unopened block index %d", event.index)
        return []

    def _on_block_stop(self, event: ContentBlockStop) -> list[ReconcilerOutput]:
        block = self._tool_blocks.pop(event.index, None)
        if block is None:
            if event.tool_id is None and event.tool_name is None:
                return []
            block = _ToolBlock()

        out: list[ReconcilerOutput] = []
        name = block.tool_name or event.tool_name or "Tool"
        combined = "".join(block.fragments)
        tool_input: ToolInput | None = (
            ParsedToolInput(block.initial_input)
            if block.initial_input is not None else None
        )
        if combined.strip():
            tool_input = parse_tool_input(combined)
            if isinstance(tool_input, RawToolInput):
                logger.warning(
                    "Tool %s input did not parse as a JSON object; keeping raw text",
                    name,
                )
                out.append(StreamDiagnostic(
                    kind="tool_input_parse_failure",
                    message=f"Tool {name} input is not a JSON object",
                    raw=combined,
                ))
        out.append(self._tool_entry(block.tool_id or event.tool_id, name, tool_input))
        return out

    def _on_message_delta(self, event: MessageDelta) -> list[ReconcilerOutput]:
        if event.usage_delta is not None:
            if self._usage is None:
                self._usage = Usage()
            self._usage.merge(event.usage_delta)
        return []

    def _on_message_stop(self, event: MessageStop) -> list[ReconcilerOutput]:
        if event.final_usage is not None:
            if self._usage is None:
                self._usage = Usage()
            self._usage.raise_to(event.final_usage)
        if self._assistant_id is None and event.message_id:
            self._assistant_id = event.message_id
        out = self._final_assistant()
        self._reset_turn()
        return out

    def _on_tool_result(self, event: ToolResult) -> list[ReconcilerOutput]:
        return [self._tool_result_entry(event)]

    def _on_tool_use(self, event: ToolUse) -> list[ReconcilerOutput]:
        tool_input = (
            ParsedToolInput(event.tool_input)
            if event.tool_input is not None else None
        )
        return [self._tool_entry(event.tool_id, event.tool_name, tool_input, label="Tool")]

    def _on_assistant_message(self, event: AssistantMessage) -> list[ReconcilerOutput]:
        out: list[ReconcilerOutput] = []
        streamed = event.message_id is not None and event.message_id in self._streamed_ids
        if event.text and not streamed:
            out.append(TranscriptEntry(
                id=event.message_id or gen_id("msg"),
                role=MessageRole.ASSISTANT,
                content=event.text,
                usage=event.usage,
            ))
        for tool in event.tool_uses:
            if tool.tool_id and tool.tool_id in self._emitted_tool_ids:
                continue
            tool_input = (
                ParsedToolInput(tool.tool_input)
                if tool.tool_input is not None else None
            )
            out.append(self._tool_entry(tool.tool_id, tool.tool_name, tool_input))
        return out

    def _on_user_message(self, event: UserMessage) -> list[ReconcilerOutput]:
        out: list[ReconcilerOutput] = [
            self._tool_result_entry(result) for result in event.tool_results
        ]
        if event.text:
            if self._suppress_user_echo:
                logger.debug("Skipping user message echo")
            else:
                out.append(TranscriptEntry(role=MessageRole.USER, content=event.text))
        return out

    def _on_turn_result(self, event: TurnResult) -> list[ReconcilerOutput]:
        self._turn_result_seen = True
        out: list[ReconcilerOutput] = []
        if event.status == "success":
            if self._text_blocks:
                # message_stop was never seen for this text.
                out.extend(self.flush())
            cost = event.cost_usd
            out.append(self._system(
                f"Completed. Cost: ${cost:.4f}" if cost is not None else "Completed. Cost: $0",
                cost=cost,
            ))
        else:
            out.append(self._system(
                f"Error: {event.error_text or 'unknown error'}",
                is_error=True,
                cost=event.cost_usd,
            ))
        return out

    def _on_error(self, event: ErrorEvent) -> list[ReconcilerOutput]:
        return [self._system(f"Error: {event.message}", is_error=True)]

    def _on_unknown(self, event: UnknownEvent) -> list[ReconcilerOutput]:
        logger.debug("Ignoring stream event type=%s subtype=%s", event.type_name, event.subtype)
        return []
