"""Compiler capability and a watch-mode adapter base class."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from collections.abc import Callable
import contextlib
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from devloop.file_watcher import FileWatcher
from devloop.log import get_logger


if TYPE_CHECKING:
    from collections.abc import Set as AbstractSet

    from watchfiles import Change

    from devloop.compilers.models import CompileResult
    from devloop.config import BundlerKind, Directories
    from devloop.file_watcher import WatchFilter


logger = get_logger(__name__)

WatchCallback = Callable[[BaseException | None, "CompileResult | None"], None]
InvalidCallback = Callable[[str], None]


class Compiler(Protocol):
    """A bundler configured for one target."""

    async def compile(self) -> CompileResult:
        """Run a single build."""
        ...

    def watch(self, callback: WatchCallback) -> None:
        """Build continuously, calling `callback(error, result)` after every rebuild."""
        ...

    def oninvalid(self, callback: InvalidCallback) -> None:
        """Register a callback fired synchronously when a rebuild begins."""
        ...


@dataclass(frozen=True)
class CompilerSet:
    """Compilers for all targets of a project."""

    client: Compiler
    server: Compiler
    serviceworker: Compiler | None = None


class CompilerFactory(Protocol):
    """Creates configured compilers for a bundler kind."""

    async def __call__(
        self,
        bundler: BundlerKind,
        dirs: Directories,
        *,
        dev: bool,
        legacy: bool = False,
    ) -> CompilerSet: ...


class CompilerAdapter(ABC):
    """Base class giving a one-shot build function watch-mode semantics.

    Subclasses implement `_build()`. Calling `invalidate()` (directly or from
    the optional source watcher) notifies invalid listeners synchronously and
    schedules a rebuild. Only one rebuild runs at a time; invalidations that
    arrive while building cause exactly one follow-up rebuild.
    """

    def __init__(
        self,
        name: str,
        *,
        sources: list[str | Path] | None = None,
        source_filter: WatchFilter | None = None,
    ) -> None:
        self.name = name
        self.log = logger.bind(compiler=name)
        self._sources = sources or []
        self._source_filter = source_filter
        self._invalid_callbacks: list[InvalidCallback] = []
        self._watch_callbacks: list[WatchCallback] = []
        self._build_task: asyncio.Task[None] | None = None
        self._source_watcher: FileWatcher | None = None
        self._watch_start: asyncio.Task[None] | None = None
        self._pending = False

    @abstractmethod
    async def _build(self) -> CompileResult:
        """Produce one compile result. Raise for failures that yield no result."""

    async def compile(self) -> CompileResult:
        return await self._build()

    def oninvalid(self, callback: InvalidCallback) -> None:
        self._invalid_callbacks.append(callback)

    def watch(self, callback: WatchCallback) -> None:
        first = not self._watch_callbacks
        self._watch_callbacks.append(callback)
        if not first:
            return
        if self._sources:
            self._source_watcher = FileWatcher(
                paths=list(self._sources),
                callback=self._on_source_change,
                filter=self._source_filter,
            )
            self._watch_start = asyncio.get_running_loop().create_task(
                self._source_watcher.start()
            )
        self._schedule()

    def invalidate(self, filename: str) -> None:
        """Signal that a source changed and start a rebuild."""
        for callback in self._invalid_callbacks:
            callback(filename)
        self._schedule()

    @property
    def building(self) -> bool:
        return self._build_task is not None and not self._build_task.done()

    async def close(self) -> None:
        if self._source_watcher is not None:
            await self._source_watcher.close()
        if self._build_task is not None:
            self._build_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._build_task
            self._build_task = None

    async def _on_source_change(self, changes: AbstractSet[tuple[Change, str]]) -> None:
        for _change, path in sorted(changes, key=lambda c: c[1]):
            self.invalidate(path)

    def _schedule(self) -> None:
        if self.building:
            self._pending = True
            return
        self._build_task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            self._pending = False
            try:
                result = await self._build()
            except Exception as exc:  # noqa: BLE001
                self.log.debug("Build failed", error=str(exc))
                self._deliver(exc, None)
            else:
                self._deliver(None, result)
            if not self._pending:
                return

    def _deliver(self, error: BaseException | None, result: CompileResult | None) -> None:
        for callback in self._watch_callbacks:
            callback(error, result)
