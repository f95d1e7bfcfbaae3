"""Process supervision for backend CLI turns.

``ProcessSupervisor.spawn`` starts one backend process and returns a
``ProcessHandle``. The handle's reader task decodes stdout into text
chunks and publishes them, followed by exactly one ``ProcessExited``,
on the handle's queue; consumers iterate ``handle.stream()``.

Processes run in their own session so a kill reaches the whole
process group (the CLI's tool subprocesses included).
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

from .backends.base import Backend
from .config import EngineConfig
from .errors import ProcessSpawnError
from .models import ConversationConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutputChunk:
    handle_id: str
    text: str


@dataclass(frozen=True)
class ProcessExited:
    handle_id: str
    exit_code: int | None
    killed: bool = False
    stderr_tail: str = ""


SupervisorMessage = Union[OutputChunk, ProcessExited]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProcessHandle:
    """One live (or finished) backend process."""
    conversation_id: str
    argv: list[str]
    pid: int
    handle_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=_utcnow)
    exit_code: int | None = None
    killed: bool = False
    _process: asyncio.subprocess.Process | None = field(default=None, repr=False)
    _queue: asyncio.Queue = field(
        default_factory=lambda: asyncio.Queue(maxsize=256), repr=False,
    )
    _reader: asyncio.Task | None = field(default=None, repr=False)
    _stderr_reader: asyncio.Task | None = field(default=None, repr=False)
    _stderr_tail: str = field(default="", repr=False)
    _finished: bool = field(default=False, repr=False)

    @property
    def is_alive(self) -> bool:
        """True until the exit message has been published."""
        return not self._finished

    async def stream(self) -> AsyncIterator[SupervisorMessage]:
        """Yield output chunks in arrival order, ending with ProcessExited."""
        while True:
            message = await self._queue.get()
            yield message
            if isinstance(message, ProcessExited):
                return

    async def _publish_exit(self, exit_code: int | None) -> None:
        if self._finished:
            return
        self._finished = True
        self.exit_code = exit_code
        await self._queue.put(ProcessExited(
            handle_id=self.handle_id,
            exit_code=exit_code,
            killed=self.killed,
            stderr_tail=self._stderr_tail,
        ))


class ProcessSupervisor:
    """Spawns and kills backend processes for one conversation."""

    def __init__(self, backend: Backend, engine_config: EngineConfig) -> None:
        self._backend = backend
        self._config = engine_config

    @property
    def backend(self) -> Backend:
        return self._backend

    async def spawn(
        self,
        conversation_id: str,
        prompt: str,
        config: ConversationConfig,
    ) -> ProcessHandle:
        """Start one backend turn.

        Raises ProcessSpawnError if the process cannot be started; no
        handle exists in that case.
        """
        argv = self._backend.build_argv(prompt, config)
        cwd = config.working_directory or "."
        if not Path(cwd).is_dir():
            raise ProcessSpawnError(
                conversation_id, argv[0], f"working directory does not exist: {cwd}",
            )

        try:
            # argv is passed as a list, never through a shell
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=self._backend.build_env(),
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError as exc:
            raise ProcessSpawnError(
                conversation_id, argv[0], f"command not found ({exc})",
            ) from exc
        except OSError as exc:
            raise ProcessSpawnError(conversation_id, argv[0], str(exc)) from exc

        handle = ProcessHandle(
            conversation_id=conversation_id,
            argv=argv,
            pid=proc.pid,
            _process=proc,
        )
        handle._stderr_reader = asyncio.create_task(self._read_stderr(handle))
        handle._reader = asyncio.create_task(self._read_stdout(handle))
        logger.info(
            "Spawned %s for conversation %s (pid=%d cwd=%s)",
            self._backend.name, conversation_id, proc.pid, cwd,
        )
        return handle

    async def _read_stdout(self, handle: ProcessHandle) -> None:
        proc = handle._process
        assert proc is not None and proc.stdout is not None
        # Reads may split multi-byte characters; the decoder carries them over.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = await proc.stdout.read(self._config.read_chunk_size)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    await handle._queue.put(OutputChunk(handle.handle_id, text))
            tail = decoder.decode(b"", final=True)
            if tail:
                await handle._queue.put(OutputChunk(handle.handle_id, tail))
        except OSError as exc:
            logger.error("Reading stdout of pid %d failed: %s", handle.pid, exc)

        exit_code = await proc.wait()
        await self._finish_stderr(handle)
        logger.info(
            "Process %d for conversation %s exited (code=%s killed=%s)",
            handle.pid, handle.conversation_id, exit_code, handle.killed,
        )
        await handle._publish_exit(exit_code)

    async def _read_stderr(self, handle: ProcessHandle) -> None:
        proc = handle._process
        assert proc is not None and proc.stderr is not None
        limit = self._config.stderr_tail_chars
        while True:
            data = await proc.stderr.read(self._config.read_chunk_size)
            if not data:
                return
            text = data.decode("utf-8", errors="replace")
            logger.debug("stderr[%d]: %s", handle.pid, text.rstrip()[:500])
            handle._stderr_tail = (handle._stderr_tail + text)[-limit:]

    async def _finish_stderr(self, handle: ProcessHandle) -> None:
        task = handle._stderr_reader
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(task, timeout=1.0)
        except asyncio.TimeoutError:
            # A grandchild may still hold the pipe open.
            logger.debug("stderr of pid %d still open after exit", handle.pid)

    def _signal_group(self, proc: asyncio.subprocess.Process, sig: int) -> None:
        if hasattr(os, "killpg"):
            try:
                os.killpg(proc.pid, sig)
                return
            except ProcessLookupError:
                return
            except OSError as exc:
                logger.debug("killpg(%d) failed: %s", proc.pid, exc)
        try:
            if sig == getattr(signal, "SIGKILL", None):
                proc.kill()
            else:
                proc.terminate()
        except ProcessLookupError:
            pass

    async def kill(self, handle: ProcessHandle) -> None:
        """Terminate the process and wait until its handle is dead.

        Output the process already wrote is still read and published
        (bounded by ``drain_timeout_seconds``) before ProcessExited.
        """
        if not handle.is_alive:
            return
        handle.killed = True
        proc = handle._process
        if proc is not None and proc.returncode is None:
            logger.info(
                "Killing process %d for conversation %s",
                handle.pid, handle.conversation_id,
            )
            self._signal_group(proc, signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._config.kill_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    "Process %d ignored SIGTERM for %.1fs; sending SIGKILL",
                    handle.pid, self._config.kill_grace_seconds,
                )
                self._signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
                await proc.wait()

        reader = handle._reader
        if reader is not None and not reader.done():
            try:
                await asyncio.wait_for(
                    asyncio.shield(reader),
                    timeout=self._config.drain_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Output of process %d did not drain in %.1fs; abandoning it",
                    handle.pid, self._config.drain_timeout_seconds,
                )
                reader.cancel()
                try:
                    await reader
                except asyncio.CancelledError:
                    pass
        stderr_reader = handle._stderr_reader
        if stderr_reader is not None and not stderr_reader.done():
            stderr_reader.cancel()
        await handle._publish_exit(proc.returncode if proc is not None else None)
