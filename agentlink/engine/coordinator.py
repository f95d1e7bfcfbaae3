"""Conversation coordinator: one live backend process per conversation.

Tracks every open conversation, serializes its kill-old/spawn-new
sequence behind a per-conversation lock, and runs one pump task per
live process that moves supervisor messages through the backend's
output pipeline. Every transcript entry is published on the event bus;
finalized entries and captured resume ids also go to the persistence
sink.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from agentlink.adapters.events import (
    ConversationEvent,
    DiagnosticReported,
    ProcessStateChanged,
    ResumeCaptured,
    TranscriptUpdated,
)
from agentlink.shared.models.message import MessageRole, TranscriptEntry

from .backends.base import Backend
from .backends.registry import BackendRegistry, build_backend_registry
from .config import EngineConfig
from .errors import AgentLinkError, ConversationNotFoundError, ProcessSpawnError
from .models import ConversationConfig
from .reconciler import ReconcilerOutput, SessionCaptured, StreamDiagnostic
from .supervisor import OutputChunk, ProcessExited, ProcessHandle, ProcessSupervisor

if TYPE_CHECKING:
    from agentlink.adapters.event_bus import EventBus
    from agentlink.shared.services.persistence import TranscriptSink
    from .pipeline import StreamPipeline

logger = logging.getLogger(__name__)


@dataclass
class _Conversation:
    conversation_id: str
    config: ConversationConfig
    backend: Backend
    supervisor: ProcessSupervisor
    pipeline: StreamPipeline
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    handle: ProcessHandle | None = None
    pump_task: asyncio.Task | None = None


class ConversationCoordinator:
    """Owns the backend process lifecycle of every open conversation.

    Conversations share nothing: each has its own backend pipeline,
    lock, handle and pump task.
    """

    def __init__(
        self,
        engine_config: EngineConfig | None = None,
        registry: BackendRegistry | None = None,
        sink: TranscriptSink | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._engine_config = engine_config or EngineConfig()
        self._registry = registry or build_backend_registry()
        self._sink = sink
        self._bus = bus
        self._conversations: dict[str, _Conversation] = {}

    @property
    def engine_config(self) -> EngineConfig:
        return self._engine_config

    @property
    def registry(self) -> BackendRegistry:
        return self._registry

    @property
    def bus(self) -> EventBus | None:
        return self._bus

    def default_config(self) -> ConversationConfig:
        return ConversationConfig(
            working_directory=self._engine_config.default_cwd,
            permission_policy=self._engine_config.default_permission_policy,
            model=self._engine_config.default_model,
            system_prompt=self._engine_config.default_system_prompt,
        )

    # ── Conversation registry ──

    def open(
        self,
        conversation_id: str,
        config: ConversationConfig | None = None,
        backend: str | Backend | None = None,
    ) -> ConversationConfig:
        """Register a conversation. Nothing is spawned until ``send``.

        *backend* is a registry name or a Backend instance; it defaults
        to ``engine_config.default_backend``.
        """
        if conversation_id in self._conversations:
            raise AgentLinkError(f"Conversation already open: {conversation_id}")
        if backend is None:
            backend = self._engine_config.default_backend
        if isinstance(backend, str):
            backend = self._registry.get_or_raise(backend)
        config = config or self.default_config()
        self._conversations[conversation_id] = _Conversation(
            conversation_id=conversation_id,
            config=config,
            backend=backend,
            supervisor=ProcessSupervisor(backend, self._engine_config),
            pipeline=backend.create_pipeline(self._engine_config),
        )
        logger.info(
            "Opened conversation %s (backend=%s cwd=%s resume=%s)",
            conversation_id, backend.name, config.working_directory,
            config.resume_id or "<fresh>",
        )
        return config

    def _get(self, conversation_id: str) -> _Conversation:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            raise ConversationNotFoundError(conversation_id)
        return conv

    def conversation_ids(self) -> list[str]:
        return list(self._conversations)

    def config(self, conversation_id: str) -> ConversationConfig:
        return self._get(conversation_id).config

    def backend(self, conversation_id: str) -> Backend:
        return self._get(conversation_id).backend

    def update_config(self, conversation_id: str, **changes: Any) -> ConversationConfig:
        """Replace fields of the conversation's config for the next turn."""
        conv = self._get(conversation_id)
        conv.config = replace(conv.config, **changes)
        logger.debug(
            "Conversation %s config updated: %s",
            conversation_id, ", ".join(sorted(changes)),
        )
        return conv.config

    def is_running(self, conversation_id: str) -> bool:
        """True while a process is live or its final output is being processed."""
        return self._get(conversation_id).handle is not None

    def live_handle(self, conversation_id: str) -> ProcessHandle | None:
        return self._get(conversation_id).handle

    # ── Turn lifecycle ──

    async def send(self, conversation_id: str, text: str) -> ProcessHandle:
        """Start a new turn, killing whatever turn is still running.

        The user's message is published as a user entry first. Raises
        ProcessSpawnError if the backend cannot be started; the failure
        is also published as a system error entry.
        """
        conv = self._get(conversation_id)
        async with conv.lock:
            await self._stop_locked(conv)
            conv.pipeline.reset()

            await self._publish(conv, TranscriptEntry(
                role=MessageRole.USER,
                content=text,
            ))

            try:
                handle = await conv.supervisor.spawn(conversation_id, text, conv.config)
            except ProcessSpawnError as exc:
                logger.error("Spawn failed for conversation %s: %s", conversation_id, exc)
                await self._publish(conv, TranscriptEntry(
                    role=MessageRole.SYSTEM,
                    content=f"Error: {exc}",
                    is_error=True,
                ))
                await self._emit(ProcessStateChanged(
                    conversation_id=conversation_id,
                    state="failed",
                ))
                raise

            conv.handle = handle
            await self._emit(ProcessStateChanged(
                conversation_id=conversation_id,
                state="running",
                pid=handle.pid,
            ))
            conv.pump_task = asyncio.create_task(self._pump(conv, handle))
            return handle

    async def stop(self, conversation_id: str) -> bool:
        """Kill the live process, if any. Returns whether one was running."""
        conv = self._get(conversation_id)
        async with conv.lock:
            if conv.handle is None:
                return False
            await self._stop_locked(conv)
            return True

    async def wait_idle(self, conversation_id: str, timeout: float | None = None) -> None:
        """Wait until the current turn's output has been fully processed."""
        task = self._get(conversation_id).pump_task
        if task is None or task.done():
            return
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

    async def close(self, conversation_id: str) -> None:
        """Stop the conversation's process and forget the conversation."""
        await self.stop(conversation_id)
        self._conversations.pop(conversation_id, None)
        logger.info("Closed conversation %s", conversation_id)

    async def shutdown(self) -> None:
        """Stop every live process."""
        running = [
            cid for cid, conv in self._conversations.items()
            if conv.handle is not None
        ]
        if running:
            logger.info("Shutting down %d running conversation(s)", len(running))
        await asyncio.gather(
            *(self.stop(cid) for cid in running),
            return_exceptions=True,
        )

    async def _stop_locked(self, conv: _Conversation) -> None:
        # Caller holds conv.lock.
        handle = conv.handle
        if handle is not None:
            await conv.supervisor.kill(handle)
        task = conv.pump_task
        if task is not None:
            # The pump consumes the killed process's remaining messages.
            await task
        conv.handle = None
        conv.pump_task = None

    async def _pump(self, conv: _Conversation, handle: ProcessHandle) -> None:
        cid = conv.conversation_id
        exited = False
        try:
            async for message in handle.stream():
                if message.handle_id != handle.handle_id:
                    logger.warning(
                        "Dropping message from stale process for conversation %s", cid,
                    )
                    continue
                if isinstance(message, OutputChunk):
                    for output in conv.pipeline.feed(message.text):
                        await self._publish(conv, output)
                elif isinstance(message, ProcessExited):
                    exited = True
                    await self._on_exit(conv, message)
        except Exception:
            logger.exception(
                "Output pump for conversation %s failed; stopping its process", cid,
            )
            conv.pipeline.reset()
            if not exited:
                await self._abandon(conv, handle)
            try:
                await self._emit(ProcessStateChanged(
                    conversation_id=cid,
                    state="failed",
                    exit_code=handle.exit_code,
                ))
            except Exception:
                logger.exception("Could not report pump failure for %s", cid)
        finally:
            if conv.handle is handle:
                conv.handle = None

    async def _abandon(self, conv: _Conversation, handle: ProcessHandle) -> None:
        # The reader blocks on a full queue unless someone keeps consuming.
        kill_task = asyncio.create_task(conv.supervisor.kill(handle))
        async for _ in handle.stream():
            pass
        await kill_task

    async def _on_exit(self, conv: _Conversation, message: ProcessExited) -> None:
        if message.killed:
            conv.pipeline.discard()
            state = "killed"
        else:
            for output in conv.pipeline.finish(message.exit_code, message.stderr_tail):
                await self._publish(conv, output)
            state = "exited"
        await self._emit(ProcessStateChanged(
            conversation_id=conv.conversation_id,
            state=state,
            exit_code=message.exit_code,
        ))

    # ── Output routing ──

    async def _publish(self, conv: _Conversation, output: ReconcilerOutput) -> None:
        cid = conv.conversation_id
        if isinstance(output, TranscriptEntry):
            if not output.is_partial and self._sink is not None:
                try:
                    self._sink.save_entry(cid, output)
                except Exception:
                    logger.exception("Failed to persist entry %s for %s", output.id, cid)
            await self._emit(TranscriptUpdated(conversation_id=cid, entry=output))
        elif isinstance(output, SessionCaptured):
            conv.config = replace(conv.config, resume_id=output.resume_id)
            logger.info(
                "Conversation %s resume id captured: %s", cid, output.resume_id,
            )
            if self._sink is not None:
                try:
                    self._sink.save_resume_id(cid, output.resume_id)
                except Exception:
                    logger.exception("Failed to persist resume id for %s", cid)
            await self._emit(ResumeCaptured(
                conversation_id=cid,
                resume_id=output.resume_id,
                model=output.model,
            ))
        elif isinstance(output, StreamDiagnostic):
            logger.warning("[%s] %s: %s", cid, output.kind, output.message)
            await self._emit(DiagnosticReported(
                conversation_id=cid,
                kind=output.kind,
                message=output.message,
                raw=output.raw,
            ))

    async def _emit(self, event: ConversationEvent) -> None:
        if self._bus is not None:
            await self._bus.emit(event)
