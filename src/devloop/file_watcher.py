"""Recursive, debounced directory and file watching on top of watchfiles."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Set as AbstractSet
import contextlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Self

from watchfiles import Change, awatch

from devloop.log import get_logger


logger = get_logger(__name__)

Changes = AbstractSet[tuple[Change, str]]
ChangeHandler = Callable[[Changes], Awaitable[None]]


@dataclass(frozen=True)
class WatchEntry:
    """A filesystem entry offered to a watch filter."""

    path: Path
    is_directory: bool


WatchFilter = Callable[[WatchEntry], bool]


def skip_underscore_dirs(entry: WatchEntry) -> bool:
    """Filter pruning directories whose name starts with an underscore."""
    return not (entry.is_directory and entry.path.name.startswith("_"))


@dataclass
class FileWatcher:
    """Calls an async handler once per burst of filesystem changes.

    Editors saving through a temporary file and a rename produce several raw
    events for one edit; `debounce` merges them into a single call.

        ```python
        async def rebuild(changes):
            for change, path in changes:
                print(change.name, path)

        async with FileWatcher(paths=["src/routes"], callback=rebuild):
            ...
        ```
    """

    paths: list[str | Path]
    """Files or directories, watched recursively."""

    callback: ChangeHandler
    """Receives the set of `(Change, path)` tuples of one burst."""

    filter: WatchFilter | None = None
    """Decides per entry whether it is watched. Rejected directories prune their subtree."""

    debounce: int = 50
    """Milliseconds to wait for a burst to settle."""

    _task: asyncio.Task[None] | None = field(default=None, repr=False)
    _stop: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _closed: bool = field(default=False, repr=False)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None or self._closed:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        """Stop watching. Idempotent, also before or instead of `start()`."""
        self._closed = True
        task, self._task = self._task, None
        if task is None:
            return
        self._stop.set()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    stop = close

    def _accepts(self, path: str) -> bool:
        if self.filter is None:
            return True
        candidate = Path(path)
        root = next((Path(p) for p in self.paths if candidate.is_relative_to(p)), None)
        if root is not None:
            parent = root
            for part in candidate.relative_to(root).parts[:-1]:
                parent /= part
                if not self.filter(WatchEntry(parent, is_directory=True)):
                    return False
        return self.filter(WatchEntry(candidate, is_directory=candidate.is_dir()))

    async def _run(self) -> None:
        targets = [str(p) for p in self.paths if Path(p).exists()]
        if not targets:
            logger.debug("Nothing to watch", paths=[str(p) for p in self.paths])
            return
        async for changes in awatch(
            *targets,
            watch_filter=lambda _change, path: self._accepts(path),
            debounce=self.debounce,
            stop_event=self._stop,
        ):
            try:
                await self.callback(changes)
            except Exception:
                logger.exception("Change handler failed", paths=targets)

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()


async def watch_dir(
    directory: str | Path,
    filter: WatchFilter | None,  # noqa: A002
    callback: ChangeHandler,
    *,
    debounce: int = 50,
) -> FileWatcher:
    """Start a recursive, debounced watch of a directory.

    Args:
        directory: Directory to watch
        filter: Entry filter, see `FileWatcher.filter`
        callback: Called once per burst of changes
        debounce: Debounce window in milliseconds

    Returns:
        The running watcher. `close()` it to release the OS watch handle.
    """
    watcher = FileWatcher([Path(directory)], callback, filter=filter, debounce=debounce)
    await watcher.start()
    return watcher
