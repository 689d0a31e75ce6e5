"""Supervised persistent shell processes.

A :class:`ProcessSupervisor` owns one long-lived interactive process (normally
``bash``) and turns it into a sequential command channel. A shell that stays
alive between commands gives no per-command exit signal, so every awaited
command is followed by a ``printf`` of a unique sentinel carrying ``$?``. The
command is complete once that sentinel shows up on stdout, or once the process
closes, whichever happens first.

Every live supervisor is registered with a process-wide shutdown hook so no
child outlives the interpreter.
"""

from __future__ import annotations

import asyncio
import atexit
import contextlib
import os
import re
import shlex
import signal
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from fcbuild.errors import ProcessChannelError

SENTINEL_PREFIX = "__FCBUILD_DONE_"
EXIT_INSTRUCTION = "exit"
READ_CHUNK_SIZE = 4096

_SENTINEL_LINE = re.compile(rb"__FCBUILD_DONE_[0-9a-f]+:-?\d*\r?\n")

CompletedBy = Literal["sentinel", "closed", "not_sent"]

ChunkListener = Callable[[bytes], None]
CloseListener = Callable[[int | None], None]


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: str
    sent: bool
    completed_by: CompletedBy
    exit_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.sent and self.exit_code == 0


@dataclass(slots=True)
class _PendingCommand:
    marker: bytes
    done: asyncio.Future[int | None]
    buffer: bytearray = field(default_factory=bytearray)

    def feed(self, chunk: bytes) -> None:
        if self.done.done():
            return
        self.buffer.extend(chunk)
        index = self.buffer.find(self.marker)
        if index == -1:
            # keep just enough to match a marker split across chunks
            del self.buffer[: max(0, len(self.buffer) - len(self.marker))]
            return
        tail = bytes(self.buffer[index + len(self.marker) :])
        newline = tail.find(b"\n")
        if newline == -1:
            return
        status = tail[:newline].strip()
        self.done.set_result(int(status) if status.isdigit() else None)


class SentinelFilter:
    """Drop sentinel lines from stdout chunks, holding back a possibly split one."""

    def __init__(self) -> None:
        self._held = b""
        self._prefix = SENTINEL_PREFIX.encode()

    def feed(self, chunk: bytes) -> bytes:
        data = _SENTINEL_LINE.sub(b"", self._held + chunk)
        cut = self._holdback(data)
        self._held = data[cut:]
        return data[:cut]

    def flush(self) -> bytes:
        remainder, self._held = self._held, b""
        return remainder

    def _holdback(self, data: bytes) -> int:
        start = data.rfind(self._prefix)
        if start != -1 and b"\n" not in data[start:]:
            return start
        for size in range(min(len(self._prefix) - 1, len(data)), 0, -1):
            if data.endswith(self._prefix[:size]):
                return len(data) - size
        return len(data)


class LineAssembler:
    """Reassemble complete text lines from arbitrarily split output chunks."""

    def __init__(self) -> None:
        self._partial = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        text = chunk.decode("utf-8", errors="replace") if isinstance(chunk, bytes) else chunk
        lines = (self._partial + text).split("\n")
        self._partial = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        if not self._partial:
            return []
        remainder, self._partial = self._partial, ""
        return [remainder.rstrip("\r")]


class ProcessSupervisor:
    def __init__(self, *, name: str | None = None) -> None:
        self.name = name
        self.last_command: str | None = None
        self.exit_code: int | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._output_listeners: list[ChunkListener] = []
        self._error_listeners: list[ChunkListener] = []
        self._closed_listeners: list[CloseListener] = []
        self._readers: list[asyncio.Task[None]] = []
        self._watcher: asyncio.Task[None] | None = None
        self._closed: asyncio.Event | None = None
        self._lock: asyncio.Lock | None = None
        self._pending: _PendingCommand | None = None
        self._stdout_filter = SentinelFilter()
        self._terminated = False

    async def __aenter__(self) -> ProcessSupervisor:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def running(self) -> bool:
        return (
            self._process is not None
            and self._process.returncode is None
            and not self._terminated
        )

    def on_output(self, listener: ChunkListener) -> None:
        self._output_listeners.append(listener)

    def on_error_output(self, listener: ChunkListener) -> None:
        self._error_listeners.append(listener)

    def on_closed(self, listener: CloseListener) -> None:
        self._closed_listeners.append(listener)

    async def spawn(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        working_directory: str | Path | None = None,
    ) -> None:
        if self._process is not None or self._terminated:
            raise ProcessChannelError(
                "Supervisor has already spawned a process.",
                hint="Create a new ProcessSupervisor for each process.",
                context={"supervisor": self.name or "", "executable": executable},
            )
        try:
            self._process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise ProcessChannelError(
                "Failed to spawn supervised process.",
                hint="Ensure the executable exists and is on PATH.",
                context={"executable": executable, "error": str(exc)},
            ) from exc

        self._closed = asyncio.Event()
        self._lock = asyncio.Lock()
        _register(self)

        assert self._process.stdout is not None and self._process.stderr is not None
        self._readers = [
            asyncio.create_task(self._pump(self._process.stdout, self._dispatch_output)),
            asyncio.create_task(self._pump(self._process.stderr, self._dispatch_error)),
        ]
        self._watcher = asyncio.create_task(self._watch())

        if working_directory is not None:
            self.send(f"cd {shlex.quote(str(working_directory))}")

    def send(self, command: str, terminate_after: bool = False) -> bool:
        """Write *command* without waiting; returns whether the write succeeded."""
        self.last_command = command
        payload = f"{command}\n"
        if terminate_after:
            payload += f"{EXIT_INSTRUCTION}\n"
        return self._write(payload)

    def request_exit(self) -> bool:
        return self._write(f"{EXIT_INSTRUCTION}\n")

    async def send_and_wait(self, command: str, terminate_after: bool = False) -> CommandResult:
        """Send *command* and wait for its sentinel or for the process to close."""
        if self._lock is None or self._closed is None:
            return CommandResult(command=command, sent=False, completed_by="not_sent")

        async with self._lock:
            if self._closed.is_set():
                return CommandResult(command=command, sent=False, completed_by="not_sent")

            pending: _PendingCommand | None = None
            self.last_command = command
            if terminate_after:
                payload = f"{command}\n{EXIT_INSTRUCTION}\n"
            else:
                marker = f"{SENTINEL_PREFIX}{uuid.uuid4().hex}"
                pending = _PendingCommand(
                    marker=f"{marker}:".encode(),
                    done=asyncio.get_running_loop().create_future(),
                )
                payload = f"{command}\nprintf '%s:%s\\n' '{marker}' \"$?\"\n"
            self._pending = pending

            try:
                if not self._write(payload) or not await self._drain():
                    return CommandResult(command=command, sent=False, completed_by="not_sent")

                closed_wait = asyncio.ensure_future(self._closed.wait())
                waiters: set[asyncio.Future[object]] = {closed_wait}
                if pending is not None:
                    waiters.add(pending.done)
                try:
                    await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    closed_wait.cancel()
            finally:
                self._pending = None

            if pending is not None and pending.done.done() and not pending.done.cancelled():
                return CommandResult(
                    command=command,
                    sent=True,
                    completed_by="sentinel",
                    exit_code=pending.done.result(),
                )
            if self._watcher is not None and not self._terminated:
                # let the watcher record the exit code before reporting it
                await asyncio.wait({self._watcher})
            return CommandResult(
                command=command,
                sent=True,
                completed_by="closed",
                exit_code=self.exit_code,
            )

    async def wait_closed(self) -> int | None:
        if self._closed is None:
            return self.exit_code
        await self._closed.wait()
        if self._watcher is not None and not self._terminated:
            await asyncio.wait({self._watcher})
        return self.exit_code

    def terminate(self) -> None:
        """Force-kill the process and detach all listeners. Idempotent."""
        if self._terminated:
            return
        self._terminated = True
        _unregister(self)
        process = self._process
        if process is not None:
            _kill_group(process)
        for reader in self._readers:
            reader.cancel()
        self._output_listeners.clear()
        self._error_listeners.clear()
        self._closed_listeners.clear()
        if self._pending is not None and not self._pending.done.done():
            self._pending.done.cancel()
        if self._closed is not None:
            self._closed.set()

    async def aclose(self) -> None:
        self.terminate()
        if self._watcher is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._watcher

    def _write(self, payload: str) -> bool:
        process = self._process
        if process is None or process.stdin is None or self._terminated:
            return False
        if process.returncode is not None or process.stdin.is_closing():
            return False
        try:
            process.stdin.write(payload.encode("utf-8"))
        except (OSError, RuntimeError):
            return False
        return True

    async def _drain(self) -> bool:
        process = self._process
        if process is None or process.stdin is None:
            return False
        try:
            await process.stdin.drain()
        except (OSError, RuntimeError):
            return False
        return True

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        dispatch: Callable[[bytes], None],
    ) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                return
            dispatch(chunk)

    def _dispatch_output(self, chunk: bytes) -> None:
        if self._pending is not None:
            self._pending.feed(chunk)
        chunk = self._stdout_filter.feed(chunk)
        if not chunk:
            return
        for listener in tuple(self._output_listeners):
            listener(chunk)

    def _dispatch_error(self, chunk: bytes) -> None:
        for listener in tuple(self._error_listeners):
            listener(chunk)

    async def _watch(self) -> None:
        assert self._process is not None and self._closed is not None
        await asyncio.gather(*self._readers, return_exceptions=True)
        remainder = self._stdout_filter.flush()
        if remainder:
            for output_listener in tuple(self._output_listeners):
                output_listener(remainder)
        self.exit_code = await self._process.wait()
        _unregister(self)
        self._closed.set()
        for listener in tuple(self._closed_listeners):
            listener(self.exit_code)


def _kill_group(process: asyncio.subprocess.Process) -> None:
    # the shell leads its own session, so its commands share its process group
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()


_live_supervisors: set[ProcessSupervisor] = set()
_hook_installed = False


def _register(supervisor: ProcessSupervisor) -> None:
    _live_supervisors.add(supervisor)
    _install_shutdown_hook()


def _unregister(supervisor: ProcessSupervisor) -> None:
    _live_supervisors.discard(supervisor)


def live_supervisors() -> tuple[ProcessSupervisor, ...]:
    return tuple(_live_supervisors)


def terminate_all() -> None:
    """Kill every live supervised process."""
    for supervisor in tuple(_live_supervisors):
        supervisor.terminate()


def _handle_sigterm(signum: int, frame: object) -> None:
    terminate_all()
    raise SystemExit(128 + signum)


def _install_shutdown_hook() -> None:
    global _hook_installed
    if _hook_installed:
        return
    _hook_installed = True
    atexit.register(terminate_all)
    try:
        if signal.getsignal(signal.SIGTERM) is signal.SIG_DFL:
            signal.signal(signal.SIGTERM, _handle_sigterm)
    except ValueError:
        # signal handlers can only be installed from the main thread
        pass


__all__ = [
    "CommandResult",
    "LineAssembler",
    "ProcessSupervisor",
    "SENTINEL_PREFIX",
    "SentinelFilter",
    "live_supervisors",
    "terminate_all",
]
