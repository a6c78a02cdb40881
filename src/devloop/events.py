"""Session events and the ordered event stream."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, Literal

from psygnal import Signal


if TYPE_CHECKING:
    from devloop.compilers.models import Diagnostic, Target


EventType = Literal[
    "ready",
    "invalid",
    "build",
    "error",
    "fatal",
    "stdout",
    "stderr",
    "basepath",
]


@dataclass(frozen=True)
class ReadyEvent:
    """The server process was (re)started and accepts connections."""

    event_type: ClassVar[EventType] = "ready"

    port: int


@dataclass(frozen=True)
class InvalidEvent:
    """Sources changed and the listed targets are rebuilding."""

    event_type: ClassVar[EventType] = "invalid"

    changed: tuple[str, ...]
    invalid: Mapping[Target, bool]


@dataclass(frozen=True)
class BuildEvent:
    """A target finished compiling."""

    event_type: ClassVar[EventType] = "build"

    type: Target
    duration: float
    errors: tuple[Diagnostic, ...]
    warnings: tuple[Diagnostic, ...]


@dataclass(frozen=True)
class ErrorEvent:
    """A recoverable failure. `type` is a target name or "manifest"."""

    event_type: ClassVar[EventType] = "error"

    type: str
    error: BaseException


@dataclass(frozen=True)
class FatalEvent:
    """The session cannot continue usefully."""

    event_type: ClassVar[EventType] = "fatal"

    message: str


@dataclass(frozen=True)
class StdoutEvent:
    event_type: ClassVar[EventType] = "stdout"

    chunk: str


@dataclass(frozen=True)
class StderrEvent:
    event_type: ClassVar[EventType] = "stderr"

    chunk: str


@dataclass(frozen=True)
class BasepathEvent:
    """The server announced the base path it is mounted under."""

    event_type: ClassVar[EventType] = "basepath"

    basepath: str


Event = (
    ReadyEvent
    | InvalidEvent
    | BuildEvent
    | ErrorEvent
    | FatalEvent
    | StdoutEvent
    | StderrEvent
    | BasepathEvent
)


class EventStream:
    """Ordered fan-out of session events.

    Events are delivered synchronously to `event_emitted` listeners and queued
    for every `subscribe()` iterator. Once closed, nothing is emitted anymore.
    """

    event_emitted = Signal(object)
    """Signal emitted for every session event."""

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[Event | None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: Event) -> bool:
        """Publish an event. Returns False if the stream is already closed."""
        if self._closed:
            return False
        self.event_emitted.emit(event)
        for queue in self._subscribers:
            queue.put_nowait(event)
        return True

    async def subscribe(self) -> AsyncIterator[Event]:
        """Iterate over events emitted from now on until the stream closes."""
        if self._closed:
            return
        queue: asyncio.Queue[Event | None] = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            self._subscribers.remove(queue)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(None)
