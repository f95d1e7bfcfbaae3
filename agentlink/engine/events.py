"""Protocol events emitted by stream-json backends, and their classifier.

Each extracted JSON object is parsed into one typed, frozen dataclass
by dispatching on its ``type`` field (and ``subtype`` for system and
result objects). Anything that cannot be parsed is returned as a
``ParseFailure`` record; ``classify`` never raises.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from .models import Usage

logger = logging.getLogger(__name__)

TEXT_BLOCK_KINDS = frozenset({"text", "thinking", "assistant_response"})
TOOL_BLOCK_KIND = "tool_use"

# CSI sequences (colors, cursor movement) and OSC sequences (titles).
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


@dataclass(frozen=True)
class ProtocolEvent:
    """Base class for every classified stream event."""


@dataclass(frozen=True)
class SessionInit(ProtocolEvent):
    resume_id: str | None = None
    model: str | None = None
    tools: tuple[str, ...] = ()


@dataclass(frozen=True)
class MessageStart(ProtocolEvent):
    message_id: str | None = None
    initial_usage: Usage | None = None


@dataclass(frozen=True)
class ContentBlockStart(ProtocolEvent):
    index: int = 0
    kind: str = "text"
    tool_id: str | None = None
    tool_name: str | None = None
    initial_input: dict[str, Any] | None = None


@dataclass(frozen=True)
class ContentBlockDelta(ProtocolEvent):
    index: int = 0
    text_delta: str | None = None
    partial_json_delta: str | None = None


@dataclass(frozen=True)
class ContentBlockStop(ProtocolEvent):
    index: int = 0
    tool_id: str | None = None
    tool_name: str | None = None


@dataclass(frozen=True)
class MessageDelta(ProtocolEvent):
    usage_delta: Usage | None = None
    stop_reason: str | None = None


@dataclass(frozen=True)
class MessageStop(ProtocolEvent):
    final_usage: Usage | None = None
    message_id: str | None = None


@dataclass(frozen=True)
class ToolResult(ProtocolEvent):
    tool_id: str = ""
    content: str = ""
    is_error: bool = False


@dataclass(frozen=True)
class TurnResult(ProtocolEvent):
    status: str = "success"  # "success" or "error"
    cost_usd: float | None = None
    error_text: str | None = None
    result_text: str | None = None


@dataclass(frozen=True)
class ErrorEvent(ProtocolEvent):
    kind: str = "error"
    message: str = ""


@dataclass(frozen=True)
class ToolUse(ProtocolEvent):
    """A complete tool invocation (top-level or inside a whole message)."""
    tool_id: str | None = None
    tool_name: str = "Tool"
    tool_input: dict[str, Any] | None = None


@dataclass(frozen=True)
class AssistantMessage(ProtocolEvent):
    """A whole, non-streamed assistant message."""
    message_id: str | None = None
    text: str = ""
    tool_uses: tuple[ToolUse, ...] = ()
    usage: Usage | None = None


@dataclass(frozen=True)
class UserMessage(ProtocolEvent):
    """The backend's echo of a user turn.

    Claude reports tool output as tool_result blocks inside user
    messages, so those are carried alongside the echoed text.
    """
    text: str = ""
    tool_results: tuple[ToolResult, ...] = ()


@dataclass(frozen=True)
class UnknownEvent(ProtocolEvent):
    type_name: str = ""
    subtype: str | None = None


@dataclass(frozen=True)
class ParseFailure:
    """An extracted object that could not be classified, even after ANSI stripping."""
    raw: str
    error: str
    retry_error: str | None = None


class _StructureError(ValueError):
    """Object is valid JSON but not a recognizable protocol event."""


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _optional_str(obj: dict[str, Any], key: str) -> str | None:
    """Return ``obj[key]`` when it is a string; ids and names must be."""
    value = obj.get(key)
    if value is None or isinstance(value, str):
        return value
    raise _StructureError(f"{key} must be a string, got {type(value).__name__}")


def _index(obj: dict[str, Any]) -> int:
    raw = obj.get("index", 0)
    if raw is None:
        return 0
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise _StructureError(f"invalid block index: {raw!r}")
    try:
        return int(raw)
    except (ValueError, OverflowError) as exc:
        raise _StructureError(f"invalid block index: {raw!r}") from exc


def _subtype(obj: dict[str, Any]) -> str | None:
    subtype = obj.get("subtype")
    return subtype if isinstance(subtype, str) else None


def _content_text(content: Any) -> str:
    """Flatten string-or-blocks content into display text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                if block.get("type") == "text" or "text" in block:
                    parts.append(str(block.get("text", "")))
                else:
                    parts.append(json.dumps(block))
        return "\n".join(p for p in parts if p)
    return json.dumps(content)


def _cost(obj: dict[str, Any]) -> float | None:
    for key in ("cost_usd", "total_cost_usd"):
        value = obj.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    return None


def _parse_system(obj: dict[str, Any]) -> ProtocolEvent:
    subtype = _subtype(obj)
    if subtype == "init":
        tools = obj.get("tools") or []
        return SessionInit(
            resume_id=_optional_str(obj, "session_id"),
            model=_optional_str(obj, "model"),
            tools=tuple(str(t) for t in tools) if isinstance(tools, list) else (),
        )
    return UnknownEvent(type_name="system", subtype=subtype)


def _parse_message_start(obj: dict[str, Any]) -> ProtocolEvent:
    message = _as_dict(obj.get("message"))
    return MessageStart(
        message_id=_optional_str(message, "id"),
        initial_usage=Usage.from_dict(message.get("usage")),
    )


def _parse_block_start(obj: dict[str, Any]) -> ProtocolEvent:
    block = _as_dict(obj.get("content_block"))
    initial = block.get("input")
    return ContentBlockStart(
        index=_index(obj),
        kind=str(block.get("type") or "text"),
        tool_id=_optional_str(block, "id"),
        tool_name=_optional_str(block, "name"),
        initial_input=initial if isinstance(initial, dict) else None,
    )


def _parse_block_delta(obj: dict[str, Any]) -> ProtocolEvent:
    delta = obj.get("delta")
    if not isinstance(delta, dict):
        raise _StructureError("content_block_delta without delta object")
    text = delta.get("text")
    if text is None:
        text = delta.get("thinking")
    partial = delta.get("partial_json")
    return ContentBlockDelta(
        index=_index(obj),
        text_delta=text if isinstance(text, str) else None,
        partial_json_delta=partial if isinstance(partial, str) else None,
    )


def _parse_block_stop(obj: dict[str, Any]) -> ProtocolEvent:
    block = _as_dict(obj.get("content_block"))
    return ContentBlockStop(
        index=_index(obj),
        tool_id=_optional_str(block, "id") if block.get("type") == TOOL_BLOCK_KIND else None,
        tool_name=_optional_str(block, "name") if block.get("type") == TOOL_BLOCK_KIND else None,
    )


def _parse_message_delta(obj: dict[str, Any]) -> ProtocolEvent:
    delta = _as_dict(obj.get("delta"))
    # Anthropic's wire format puts usage beside the delta, not in it.
    usage = delta.get("usage", obj.get("usage"))
    return MessageDelta(
        usage_delta=Usage.from_dict(usage),
        stop_reason=_optional_str(delta, "stop_reason"),
    )


def _parse_message_stop(obj: dict[str, Any]) -> ProtocolEvent:
    message = _as_dict(obj.get("message"))
    return MessageStop(
        final_usage=Usage.from_dict(message.get("usage")),
        message_id=_optional_str(message, "id"),
    )


def _parse_tool_use_block(block: dict[str, Any]) -> ToolUse:
    tool_input = block.get("input")
    return ToolUse(
        tool_id=_optional_str(block, "id"),
        tool_name=str(block.get("name") or "Tool"),
        tool_input=tool_input if isinstance(tool_input, dict) else None,
    )


def _parse_tool_use(obj: dict[str, Any]) -> ProtocolEvent:
    tool_input = obj.get("tool_input")
    return ToolUse(
        tool_id=_optional_str(obj, "tool_use_id"),
        tool_name=str(obj.get("tool_name") or "Tool"),
        tool_input=tool_input if isinstance(tool_input, dict) else None,
    )


def _parse_tool_result(obj: dict[str, Any]) -> ToolResult:
    tool_id = obj.get("tool_use_id")
    if not tool_id:
        raise _StructureError("tool_result without tool_use_id")
    return ToolResult(
        tool_id=str(tool_id),
        content=_content_text(obj.get("content")),
        is_error=bool(obj.get("is_error", False)),
    )


def _parse_assistant(obj: dict[str, Any]) -> ProtocolEvent:
    message = obj.get("message")
    if not isinstance(message, dict):
        raise _StructureError("assistant event without message object")
    blocks = message.get("content") or []
    if not isinstance(blocks, list):
        blocks = [{"type": "text", "text": str(blocks)}]
    text = "".join(
        str(b.get("text") or "")
        for b in blocks
        if isinstance(b, dict) and b.get("type") == "text"
    )
    tool_uses = tuple(
        _parse_tool_use_block(b)
        for b in blocks
        if isinstance(b, dict) and b.get("type") == TOOL_BLOCK_KIND
    )
    return AssistantMessage(
        message_id=_optional_str(message, "id"),
        text=text,
        tool_uses=tool_uses,
        usage=Usage.from_dict(message.get("usage")),
    )


def _parse_user(obj: dict[str, Any]) -> ProtocolEvent:
    message = _as_dict(obj.get("message"))
    content = message.get("content")
    if isinstance(content, list):
        results = tuple(
            _parse_tool_result(b)
            for b in content
            if isinstance(b, dict) and b.get("type") == "tool_result"
        )
        text = _content_text([
            b for b in content
            if not (isinstance(b, dict) and b.get("type") == "tool_result")
        ])
        return UserMessage(text=text, tool_results=results)
    return UserMessage(text=_content_text(content))


def _parse_result(obj: dict[str, Any]) -> ProtocolEvent:
    subtype = str(obj.get("subtype") or "")
    failed = bool(obj.get("is_error")) or subtype.startswith("error")
    result_text = obj.get("result")
    error_text = obj.get("error")
    if failed and not error_text:
        error_text = result_text or subtype or "unknown error"
    return TurnResult(
        status="error" if failed else "success",
        cost_usd=_cost(obj),
        error_text=str(error_text) if failed else None,
        result_text=result_text if isinstance(result_text, str) else None,
    )


def _parse_error(obj: dict[str, Any]) -> ProtocolEvent:
    error = obj.get("error")
    if isinstance(error, dict):
        return ErrorEvent(
            kind=str(error.get("type") or "error"),
            message=str(error.get("message") or ""),
        )
    return ErrorEvent(message=str(error or obj.get("message") or ""))


_PARSERS: dict[str, Callable[[dict[str, Any]], ProtocolEvent]] = {
    "system": _parse_system,
    "message_start": _parse_message_start,
    "content_block_start": _parse_block_start,
    "content_block_delta": _parse_block_delta,
    "content_block_stop": _parse_block_stop,
    "message_delta": _parse_message_delta,
    "message_stop": _parse_message_stop,
    "tool_use": _parse_tool_use,
    "tool_result": _parse_tool_result,
    "assistant": _parse_assistant,
    "user": _parse_user,
    "result": _parse_result,
    "error": _parse_error,
}


def _structural_parse(text: str) -> ProtocolEvent:
    obj = json.loads(text)
    if not isinstance(obj, dict):
        raise _StructureError(f"expected object, got {type(obj).__name__}")
    # --include-partial-messages wraps API stream events in an envelope.
    while obj.get("type") == "stream_event" and isinstance(obj.get("event"), dict):
        obj = obj["event"]
    event_type = obj.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise _StructureError("missing type discriminator")
    parser = _PARSERS.get(event_type)
    if parser is None:
        return UnknownEvent(type_name=event_type, subtype=_subtype(obj))
    return parser(obj)


def classify(text: str) -> ProtocolEvent | ParseFailure:
    """Parse one extracted object string into a protocol event.

    On failure the text is stripped of ANSI escape sequences and parsed
    once more. A second failure is returned as ``ParseFailure``.
    """
    stripped = text.strip()
    try:
        return _structural_parse(stripped)
    except Exception as exc:  # any parser failure becomes a ParseFailure
        first_error = f"{type(exc).__name__}: {exc}"

    cleaned = strip_ansi(stripped)
    if cleaned != stripped:
        try:
            event = _structural_parse(cleaned)
        except Exception as exc:
            retry_error = f"{type(exc).__name__}: {exc}"
        else:
            logger.debug("Recovered event after stripping ANSI codes: %s", first_error)
            return event
    else:
        retry_error = first_error

    logger.warning(
        "Dropping unparseable stream object (%s / %s): %r",
        first_error,
        retry_error,
        stripped[:200],
    )
    return ParseFailure(raw=stripped, error=first_error, retry_error=retry_error)
