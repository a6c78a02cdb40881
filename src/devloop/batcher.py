"""Coalescing of invalidation signals into rebuild batches."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from devloop.compilers.models import TARGETS
from devloop.events import InvalidEvent
from devloop.log import get_logger


if TYPE_CHECKING:
    from devloop.compilers.models import CompileResult, Signature, Target


logger = get_logger(__name__)


class BatchState(Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"


@dataclass
class BuildBatch:
    """One invalidation to rebuild cycle."""

    changed: set[str] = field(default_factory=set)
    rebuilding: set[Target] = field(default_factory=set)
    unique_errors: set[Signature] = field(default_factory=set)
    """Distinct errors reported by the builds of this batch, across targets."""

    unique_warnings: set[Signature] = field(default_factory=set)

    def to_event(self) -> InvalidEvent:
        return InvalidEvent(
            changed=tuple(sorted(self.changed)),
            invalid={target: target in self.rebuilding for target in TARGETS},
        )


class ChangeBatcher:
    """Merges invalidations emitted within one event loop tick.

    The first invalidation after quiescence opens a batch and schedules a
    flush with `call_soon`, so signals emitted together by several compilers
    end up in a single `InvalidEvent` without adding latency.
    """

    def __init__(self, on_flush: Callable[[InvalidEvent], object]) -> None:
        self._on_flush = on_flush
        self.state = BatchState.IDLE
        self.current = BuildBatch()
        self._handle: asyncio.Handle | None = None

    def invalidate(self, filename: str | None, target: Target) -> None:
        """Record that `filename` changed and `target` is rebuilding."""
        if self.state is BatchState.IDLE:
            self._summarize(self.current)
            self.current = BuildBatch()
            self.state = BatchState.ACCUMULATING
            self._handle = asyncio.get_running_loop().call_soon(self.flush)
        if filename:
            self.current.changed.add(filename)
        self.current.rebuilding.add(target)

    def flush(self) -> InvalidEvent | None:
        """Emit the open batch now. No-op when nothing is accumulating."""
        if self.state is not BatchState.ACCUMULATING:
            return None
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self.state = BatchState.IDLE
        event = self.current.to_event()
        logger.debug("Flushing batch", changed=event.changed, targets=sorted(self.current.rebuilding))
        self._on_flush(event)
        return event

    def record(self, result: CompileResult) -> None:
        """Remember the diagnostics a result of the current batch reported."""
        self.current.unique_errors.update(d.signature for d in result.errors)
        self.current.unique_warnings.update(d.signature for d in result.warnings)

    def _summarize(self, batch: BuildBatch) -> None:
        if not (batch.rebuilding or batch.unique_errors or batch.unique_warnings):
            return
        logger.debug(
            "Batch finished",
            targets=sorted(batch.rebuilding),
            errors=len(batch.unique_errors),
            warnings=len(batch.unique_warnings),
        )

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self.state = BatchState.IDLE
