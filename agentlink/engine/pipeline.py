"""Per-process stage chains from raw output to transcript outputs.

Each stage hands its results to the next by return value:

    chunk -> ChunkBuffer.feed -> classify -> TranscriptReconciler.apply

so ordering is exactly the order of ``feed()`` calls. A pipeline is
owned by one conversation and driven by a single pump task.
"""
from __future__ import annotations

import abc
import logging

from agentlink.shared.models.message import MessageRole, TranscriptEntry, gen_id

from .events import ParseFailure, classify, strip_ansi
from .extractor import DEFAULT_MAX_OBJECT_CHARS, DEFAULT_NOISE_CEILING, ChunkBuffer
from .reconciler import (
    DEFAULT_PREVIEW_CHARS,
    ReconcilerOutput,
    StreamDiagnostic,
    TranscriptReconciler,
)

logger = logging.getLogger(__name__)


def _exit_error_entry(exit_code: int, stderr_tail: str) -> TranscriptEntry:
    detail = stderr_tail.strip().splitlines()[-1] if stderr_tail.strip() else ""
    content = f"Process exited with code {exit_code}"
    if detail:
        content = f"{content}: {detail}"
    return TranscriptEntry(role=MessageRole.SYSTEM, content=content, is_error=True)


class StreamPipeline(abc.ABC):
    """Common interface of the per-backend output pipelines."""

    @abc.abstractmethod
    def feed(self, chunk: str) -> list[ReconcilerOutput]:
        """Process one decoded chunk of stdout."""

    @abc.abstractmethod
    def finish(self, exit_code: int | None, stderr_tail: str = "") -> list[ReconcilerOutput]:
        """Flush buffered content after the process exited on its own."""

    @abc.abstractmethod
    def reset(self) -> None:
        """Drop all state, flushing nothing."""

    def discard(self) -> None:
        """Drop in-flight state after a kill."""
        self.reset()


class StreamJsonPipeline(StreamPipeline):
    """Buffer -> classifier -> reconciler for ``stream-json`` backends."""

    def __init__(
        self,
        *,
        noise_ceiling: int = DEFAULT_NOISE_CEILING,
        max_object_chars: int = DEFAULT_MAX_OBJECT_CHARS,
        suppress_user_echo: bool = True,
        preview_chars: int = DEFAULT_PREVIEW_CHARS,
    ) -> None:
        self.buffer = ChunkBuffer(
            noise_ceiling=noise_ceiling,
            max_object_chars=max_object_chars,
        )
        self.reconciler = TranscriptReconciler(
            suppress_user_echo=suppress_user_echo,
            preview_chars=preview_chars,
        )

    def feed(self, chunk: str) -> list[ReconcilerOutput]:
        out: list[ReconcilerOutput] = []
        objects = self.buffer.feed(chunk)
        overflow = self.buffer.pop_overflow()
        if overflow is not None:
            out.append(StreamDiagnostic(
                kind="buffer_overflow",
                message=f"Discarded {overflow.discarded_chars} chars of non-protocol output",
                raw=overflow.preview,
            ))
        for raw in objects:
            event = classify(raw)
            if isinstance(event, ParseFailure):
                message = event.error
                if event.retry_error and event.retry_error != event.error:
                    message = f"{event.error} / {event.retry_error}"
                out.append(StreamDiagnostic(
                    kind="parse_failure",
                    message=message,
                    raw=event.raw,
                ))
                continue
            try:
                out.extend(self.reconciler.apply(event))
            except Exception as exc:
                logger.exception("Reconciler failed on %s", type(event).__name__)
                out.append(StreamDiagnostic(
                    kind="reconciler_error",
                    message=f"{type(event).__name__}: {type(exc).__name__}: {exc}",
                    raw=raw[:200],
                ))
        return out

    def finish(self, exit_code: int | None, stderr_tail: str = "") -> list[ReconcilerOutput]:
        out: list[ReconcilerOutput] = []
        leftover = self.buffer.remainder().strip()
        if leftover:
            logger.debug("Flushed incomplete buffer (%d chars)", len(leftover))
            out.append(StreamDiagnostic(
                kind="incomplete_output",
                message="Flushed incomplete buffer",
                raw=leftover[:200],
            ))
        self.buffer.clear()
        out.extend(self.reconciler.flush())
        if exit_code and not self.reconciler.turn_result_seen:
            out.append(_exit_error_entry(exit_code, stderr_tail))
        return out

    def reset(self) -> None:
        self.buffer.clear()
        self.reconciler.reset()


class PlainTextPipeline(StreamPipeline):
    """Whole-output rendering for backends without a JSON protocol.

    All output so far is one assistant message, re-emitted as a
    partial entry on every chunk and finalized on exit.
    """

    def __init__(self) -> None:
        self._text = ""
        self._entry_id: str | None = None

    def feed(self, chunk: str) -> list[ReconcilerOutput]:
        cleaned = strip_ansi(chunk).replace("\r\n", "\n")
        if not cleaned:
            return []
        self._text += cleaned
        if self._entry_id is None:
            self._entry_id = gen_id("msg")
        return [TranscriptEntry(
            id=self._entry_id,
            role=MessageRole.ASSISTANT,
            content=self._text,
            is_partial=True,
        )]

    def finish(self, exit_code: int | None, stderr_tail: str = "") -> list[ReconcilerOutput]:
        out: list[ReconcilerOutput] = []
        if self._text and self._entry_id is not None:
            out.append(TranscriptEntry(
                id=self._entry_id,
                role=MessageRole.ASSISTANT,
                content=self._text,
            ))
        if exit_code:
            out.append(_exit_error_entry(exit_code, stderr_tail))
        self.reset()
        return out

    def reset(self) -> None:
        self._text = ""
        self._entry_id = None
