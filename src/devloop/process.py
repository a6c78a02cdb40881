"""Lifecycle of the child process running the compiled server."""

from __future__ import annotations

import asyncio
import codecs
from collections.abc import Callable, Mapping, Sequence
import contextlib
from dataclasses import dataclass, field
from enum import Enum
import json
import os
import re
from typing import TYPE_CHECKING, Any

from devloop.events import BasepathEvent, FatalEvent, ReadyEvent, StderrEvent, StdoutEvent
from devloop.exceptions import ServerNotListeningError
from devloop.log import get_logger
from devloop.ports import wait_for_port


if TYPE_CHECKING:
    from pathlib import Path

    from devloop.events import Event


logger = get_logger(__name__)

MESSAGE_MARKER = "__devloop__"
"""Key marking a JSON line on the server's stdout as a message for the watcher."""

TERMINATE_TIMEOUT = 5.0
READ_SIZE = 4096
MAX_MESSAGE = 64 * 1024
"""Longest line still considered a possible watcher message."""

_LINE_END = re.compile(r"(?<=\n)")


class ProcessState(Enum):
    NO_PROCESS = "no_process"
    STARTING = "starting"
    LISTENING = "listening"
    RESTARTING = "restarting"
    CRASHED = "crashed"


@dataclass
class _Child:
    proc: asyncio.subprocess.Process
    expected_exit: bool = False
    """Set before an intentional kill so the exit is not reported as a crash."""

    tasks: list[asyncio.Task[Any]] = field(default_factory=list)
    exited: asyncio.Event = field(default_factory=asyncio.Event)


class StdoutParser:
    """Separates tagged watcher messages from the server's regular output.

    Output is passed on as soon as it cannot be a message anymore. Only the
    beginning of a line starting with `{` is held back until its newline
    arrives, and only up to `max_message` characters.
    """

    def __init__(self, max_message: int = MAX_MESSAGE) -> None:
        self.max_message = max_message
        self._held = ""
        self._mid_line = False

    def feed(self, text: str) -> list[str | dict[str, Any]]:
        """Split decoded output into text chunks and parsed messages."""
        items: list[str | dict[str, Any]] = []
        for piece in _LINE_END.split(text):
            if not piece:
                continue
            complete = piece.endswith("\n")
            if self._mid_line:
                _append_text(items, piece)
                self._mid_line = not complete
                continue
            line, self._held = self._held + piece, ""
            if complete:
                message = parse_server_message(line)
                if message is None:
                    _append_text(items, line)
                else:
                    items.append(message)
            elif line.lstrip().startswith("{") and len(line) < self.max_message:
                self._held = line
            else:
                _append_text(items, line)
                self._mid_line = True
        return items

    def flush(self) -> list[str | dict[str, Any]]:
        """Release held-back output at end of stream."""
        held, self._held = self._held, ""
        message = parse_server_message(held) if held else None
        if message is not None:
            return [message]
        return [held] if held else []


def _append_text(items: list[str | dict[str, Any]], text: str) -> None:
    if items and isinstance(items[-1], str):
        items[-1] += text
    else:
        items.append(text)


def parse_server_message(line: str) -> dict[str, Any] | None:
    """Return the message if the line is a tagged watcher message."""
    stripped = line.strip()
    if not stripped.startswith("{") or MESSAGE_MARKER not in stripped:
        return None
    try:
        data = json.loads(stripped)
    except ValueError:
        return None
    if isinstance(data, dict) and data.get(MESSAGE_MARKER):
        return data
    return None


class ServerProcess:
    """Owns spawn, restart and crash detection of the server process.

    Every new server build is announced with `handle_result()`. Only one
    restart cycle runs at a time: builds arriving before the replacement is
    spawned are absorbed by it, builds arriving later cause exactly one more
    cycle once the current one has finished. A process exiting on its own
    outside of a cycle is reported as a crash and not restarted until the
    next build.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        port: int,
        emit: Callable[[Event], object],
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        host: str = "127.0.0.1",
        listen_timeout: float = 5.0,
        on_ready: Callable[[], object] | None = None,
    ) -> None:
        self.command = list(command)
        self.port = port
        self.host = host
        self.cwd = cwd
        self.listen_timeout = listen_timeout
        self._env = dict(env) if env is not None else None
        self._emit = emit
        self._on_ready = on_ready
        self.state = ProcessState.NO_PROCESS
        self._child: _Child | None = None
        self._cycle_task: asyncio.Task[None] | None = None
        self._requested = 0
        self._closed = False

    @property
    def pid(self) -> int | None:
        return self._child.proc.pid if self._child else None

    @property
    def running(self) -> bool:
        return self._child is not None and self._child.proc.returncode is None

    @property
    def crashed(self) -> bool:
        return self.state is ProcessState.CRASHED

    @property
    def restarting(self) -> bool:
        return self.state is ProcessState.RESTARTING

    def handle_result(self) -> asyncio.Task[None]:
        """Run the newest server build, restarting the current process if needed."""
        self._requested += 1
        if self._cycle_task is None or self._cycle_task.done():
            self._cycle_task = asyncio.get_running_loop().create_task(self._run_cycles())
        else:
            logger.debug("Restart in flight, coalescing", generation=self._requested)
        return self._cycle_task

    async def _run_cycles(self) -> None:
        while not self._closed:
            if self._child is not None:
                self.state = ProcessState.RESTARTING
                await self._stop_child(self._child)
            generation = self._requested
            child = await self._spawn()
            await self._confirm_listening(child)
            if self._closed or self._requested == generation:
                return
            logger.debug("Newer build arrived during restart", generation=self._requested)

    def _build_env(self) -> dict[str, str]:
        env = dict(os.environ) if self._env is None else dict(self._env)
        env["PORT"] = str(self.port)
        return env

    async def _spawn(self) -> _Child:
        self.state = ProcessState.STARTING
        proc = await asyncio.create_subprocess_exec(
            *self.command,
            cwd=self.cwd,
            env=self._build_env(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        child = _Child(proc=proc)
        self._child = child
        loop = asyncio.get_running_loop()
        child.tasks.append(loop.create_task(self._read_stdout(proc)))
        child.tasks.append(loop.create_task(self._read_stderr(proc)))
        child.tasks.append(loop.create_task(self._monitor(child)))
        logger.info("Spawned server", pid=proc.pid, port=self.port)
        return child

    async def _confirm_listening(self, child: _Child) -> None:
        waiter = asyncio.ensure_future(
            wait_for_port(self.port, host=self.host, timeout=self.listen_timeout)
        )
        exited = asyncio.ensure_future(child.exited.wait())
        try:
            await asyncio.wait({waiter, exited}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            waiter.cancel()
            raise
        finally:
            exited.cancel()
        if not waiter.done():
            # exited before listening; _monitor already reported it
            waiter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await waiter
            return
        try:
            waiter.result()
        except ServerNotListeningError as exc:
            if self.crashed or self._closed or child is not self._child:
                return
            logger.warning("Server not listening", port=self.port, timeout=self.listen_timeout)
            self._emit(FatalEvent(message=str(exc)))
            return
        if self._closed or child is not self._child:
            return
        if child.exited.is_set() or child.proc.returncode is not None:
            # exited right after accepting; _monitor reports the crash
            return
        self.state = ProcessState.LISTENING
        self._emit(ReadyEvent(port=self.port))
        if self._on_ready is not None:
            self._on_ready()

    async def _monitor(self, child: _Child) -> None:
        returncode = await child.proc.wait()
        child.exited.set()
        if child.expected_exit or self._closed or child is not self._child:
            return
        logger.warning("Server crashed", pid=child.proc.pid, returncode=returncode)
        self._child = None
        self.state = ProcessState.CRASHED
        self._emit(FatalEvent(message="Server crashed"))

    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stdout is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        parser = StdoutParser()
        while chunk := await proc.stdout.read(READ_SIZE):
            self._dispatch(parser.feed(decoder.decode(chunk)))
        self._dispatch(parser.feed(decoder.decode(b"", final=True)) + parser.flush())

    def _dispatch(self, items: list[str | dict[str, Any]]) -> None:
        for item in items:
            if isinstance(item, str):
                self._emit(StdoutEvent(chunk=item))
            elif item.get("event") == "basepath":
                self._emit(BasepathEvent(basepath=str(item.get("basepath", ""))))

    async def _read_stderr(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while chunk := await proc.stderr.read(READ_SIZE):
            if text := decoder.decode(chunk):
                self._emit(StderrEvent(chunk=text))
        if text := decoder.decode(b"", final=True):
            self._emit(StderrEvent(chunk=text))

    async def _stop_child(self, child: _Child) -> None:
        """Terminate a child and wait until it has exited."""
        child.expected_exit = True
        proc = child.proc
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=TERMINATE_TIMEOUT)
            except TimeoutError:
                logger.warning("Server ignored SIGTERM, killing", pid=proc.pid)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
        # readers end at EOF, unless a grandchild still holds the pipes
        _done, pending = await asyncio.wait(child.tasks, timeout=1.0)
        for task in pending:
            task.cancel()
        if self._child is child:
            self._child = None
        logger.debug("Server stopped", pid=proc.pid, returncode=proc.returncode)

    async def close(self) -> None:
        """Stop the server for good. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._cycle_task is not None and not self._cycle_task.done():
            self._cycle_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cycle_task
        if self._child is not None:
            await self._stop_child(self._child)
        self.state = ProcessState.NO_PROCESS

    def kill(self) -> None:
        """Synchronously kill a still running child (interpreter exit path)."""
        if self._child is None or self._child.proc.returncode is not None:
            return
        self._child.expected_exit = True
        with contextlib.suppress(ProcessLookupError):
            self._child.proc.kill()
