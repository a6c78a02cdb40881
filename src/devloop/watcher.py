"""Development session orchestrating compilers, the server process and live reload."""

from __future__ import annotations

import asyncio
import atexit
from collections.abc import Awaitable, Callable
import json
from typing import TYPE_CHECKING, Any, Self, cast

from devloop.batcher import ChangeBatcher
from devloop.bundler import prepare_directories, validate_bundler
from devloop.compilers.diagnostics import DiagnosticTracker
from devloop.config import DevConfig
from devloop.dev_server import COMPLETED, RELOAD, DevServer
from devloop.events import BuildEvent, ErrorEvent, EventStream, FatalEvent
from devloop.exceptions import DevloopError, PortUnavailableError
from devloop.file_watcher import FileWatcher, skip_underscore_dirs, watch_dir
from devloop.log import get_logger
from devloop.manifest import EntryConfig
from devloop.ports import (
    DEFAULT_APP_PORT,
    DEFAULT_DEV_PORT,
    DEFAULT_DEVTOOLS_PORT,
    ensure_available,
    find_available,
)
from devloop.process import ServerProcess


if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Set as AbstractSet

    from psygnal import SignalInstance
    from watchfiles import Change

    from devloop.compilers.base import Compiler, CompilerFactory
    from devloop.compilers.models import CompileResult, Target
    from devloop.events import Event, EventType
    from devloop.manifest import ManifestData, ManifestGenerator


logger = get_logger(__name__)

SERVICEWORKER_DELAY = 0.1
"""Seconds between the first client build and watching the service worker."""


class Watcher:
    """One development session.

    Validates or allocates ports, prepares the build directories, writes the
    entry files, then keeps the client, server and service-worker compilers
    in watch mode. Server builds restart the child server, client builds
    update build.json and the service-worker manifest, and connected browsers
    are told to reload. Everything observable is published as events:

        ```python
        async with Watcher(config, compilers=factory, manifest=generator) as watcher:
            async for event in watcher.events():
                print(event)
        ```
    """

    def __init__(
        self,
        config: DevConfig | None = None,
        *,
        compilers: CompilerFactory,
        manifest: ManifestGenerator,
    ) -> None:
        self.config = config or DevConfig()
        self.dirs = self.config.resolve_dirs(self.config.dest)
        self.bundler = validate_bundler(self.config.bundler, self.dirs.cwd)
        self.port = self.config.port
        self.dev_port = self.config.dev_port
        self.devtools_port = self.config.devtools_port
        self.live = self.config.live
        self.hot = self.config.hot
        self.closed = False

        self.stream = EventStream()
        self.batcher = ChangeBatcher(self.stream.emit)
        self.diagnostics = DiagnosticTracker()
        self.dev_server: DevServer | None = None
        self.server: ServerProcess | None = None
        self.filewatchers: list[FileWatcher] = []
        self.manifest_data: ManifestData = None
        self.client_files: list[str] = []

        self._compiler_factory = compilers
        self._manifest = manifest
        self._compilers: list[Compiler] = []
        self._serviceworker: Compiler | None = None
        self._serviceworker_handle: asyncio.TimerHandle | None = None
        self._serviceworker_watched = False
        self._client_built = asyncio.Event()
        self._ports: set[int] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        atexit.register(self._kill_on_exit)

    @property
    def event_emitted(self) -> SignalInstance:
        """Signal emitted synchronously for every session event."""
        return self.stream.event_emitted

    def events(self) -> AsyncIterator[Event]:
        """Iterate over session events until the session is closed."""
        return self.stream.subscribe()

    def on(self, event_type: EventType, callback: Callable[[Any], object]) -> None:
        """Call `callback` for every event of the given type."""

        def _filtered(event: Event) -> None:
            if event.event_type == event_type:
                callback(event)

        self.stream.event_emitted.connect(_filtered)

    def _emit(self, event: Event) -> None:
        self.stream.emit(event)

    async def start(self) -> None:
        """Initialize the session. Fatal conditions are emitted, not raised."""
        try:
            await self._init()
        except DevloopError as exc:
            logger.warning("Session startup failed", error=str(exc))
            self._emit(FatalEvent(message=str(exc)))

    async def _allocate(self, start: int) -> int:
        port = await find_available(
            start,
            exclude=self._ports,
            max_attempts=self.config.max_port_attempts,
        )
        self._ports.add(port)
        return port

    async def _init(self) -> None:
        # explicit ports are reserved before anything is allocated around them
        explicit = [p for p in (self.port, self.dev_port, self.devtools_port) if p is not None]
        self._ports.update(explicit)
        for port in explicit:
            await ensure_available(port)
        if self.port is None:
            self.port = await self._allocate(DEFAULT_APP_PORT)
        if self.dev_port is None:
            self.dev_port = await self._allocate(DEFAULT_DEV_PORT)
        if self.devtools_port is None:
            self.devtools_port = await self._allocate(DEFAULT_DEVTOOLS_PORT)
        if self.closed:
            return
        logger.info(
            "Ports assigned",
            port=self.port,
            dev_port=self.dev_port,
            devtools_port=self.devtools_port,
        )

        prepare_directories(self.dirs)
        try:
            self._generate_entry_files()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Manifest generation failed", error=str(exc))
            self._emit(FatalEvent(message=str(exc)))
            return

        self.dev_server = DevServer(
            self.dev_port,
            interval=self.config.keepalive_interval,
            path=self.config.live_reload_path,
        )
        try:
            await self.dev_server.start()
        except OSError as exc:
            # taken between the availability check and the bind
            raise PortUnavailableError(self.dev_port) from exc
        if self.closed:
            return

        self.filewatchers.append(
            await watch_dir(self.dirs.routes, skip_underscore_dirs, self._on_routes_change)
        )
        if self.live:
            template_watcher = FileWatcher(
                paths=[self.dirs.template],
                callback=self._on_template_change,
            )
            self.filewatchers.append(template_watcher)
            await template_watcher.start()

        compilers = await self._compiler_factory(self.bundler, self.dirs, dev=True)
        self._compilers = [
            c for c in (compilers.client, compilers.server, compilers.serviceworker) if c
        ]
        if self.closed:
            await self._close_compilers()
            return
        self._watch("server", compilers.server, self._on_server_result)
        self._watch("client", compilers.client, self._on_client_result)
        self._serviceworker = compilers.serviceworker

    def _generate_entry_files(self) -> None:
        self.manifest_data = self._manifest.generate(self.dirs.routes, self.config.ext)
        self._manifest.emit_entry_files(
            EntryConfig(
                bundler=self.bundler,
                manifest_data=self.manifest_data,
                dirs=self.dirs,
                dev=True,
                dev_port=self.dev_port,
            )
        )

    async def _on_routes_change(self, changes: AbstractSet[tuple[Change, str]]) -> None:
        if self.closed:
            return
        try:
            self._generate_entry_files()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Manifest regeneration failed", error=str(exc))
            self._emit(ErrorEvent(type="manifest", error=exc))

    async def _on_template_change(self, changes: AbstractSet[tuple[Change, str]]) -> None:
        if self.closed or self.dev_server is None:
            return
        logger.debug("Template changed")
        self.dev_server.send(RELOAD)

    def _watch(
        self,
        target: Target,
        compiler: Compiler,
        handle_result: Callable[[CompileResult], object] | None = None,
    ) -> None:
        def _on_invalid(filename: str | None) -> None:
            self._on_invalid(filename, target)

        def _on_compiled(error: BaseException | None, result: CompileResult | None) -> None:
            self._on_compiled(target, error, result, handle_result)

        compiler.oninvalid(_on_invalid)
        compiler.watch(_on_compiled)

    def _on_invalid(self, filename: str | None, target: Target) -> None:
        if self.closed:
            return
        if target == "client":
            # server restarts wait for the client build of the same batch
            self._client_built.clear()
        self.batcher.invalidate(filename, target)

    def _on_compiled(
        self,
        target: Target,
        error: BaseException | None,
        result: CompileResult | None,
        handle_result: Callable[[CompileResult], object] | None,
    ) -> None:
        if self.closed:
            return
        self.batcher.flush()
        if error is not None or result is None:
            logger.debug("Compiler failed", target=target, error=str(error))
            self._emit(ErrorEvent(type=target, error=error or DevloopError("No result")))
            return
        result = self.diagnostics.apply(target, result)
        self.batcher.record(result)
        self._emit(
            BuildEvent(
                type=target,
                duration=result.duration,
                errors=result.errors,
                warnings=result.warnings,
            )
        )
        if handle_result is not None:
            handle_result(result)

    def _on_client_result(self, result: CompileResult) -> None:
        info = result.to_build_info(self.dirs)
        self.dirs.build_info.write_text(json.dumps(info, indent=2), encoding="utf-8")
        self.client_files = [f"client/{chunk.file}" for chunk in result.chunks]
        try:
            self._manifest.emit_serviceworker_manifest(
                self.manifest_data,
                self.dirs.output,
                self.client_files,
                self.dirs.static,
            )
        except Exception as exc:  # noqa: BLE001
            self._emit(ErrorEvent(type="manifest", error=exc))
        self._client_built.set()
        if self._serviceworker is not None and self._serviceworker_handle is None:
            loop = asyncio.get_running_loop()
            self._serviceworker_handle = loop.call_later(
                SERVICEWORKER_DELAY, self._watch_serviceworker
            )

    def _watch_serviceworker(self) -> None:
        if self.closed or self._serviceworker_watched or self._serviceworker is None:
            return
        self._serviceworker_watched = True
        logger.debug("Watching service worker")
        self._watch("serviceworker", self._serviceworker)

    def _on_server_result(self, result: CompileResult) -> None:
        self._spawn(self._run_server())

    async def _run_server(self) -> None:
        await self._client_built.wait()
        if self.closed:
            return
        if self.server is None:
            self.server = ServerProcess(
                self.server_command(),
                port=cast("int", self.port),
                emit=self._emit,
                cwd=self.dirs.cwd,
                listen_timeout=self.config.listen_timeout,
                on_ready=self._on_server_ready,
            )
        self.server.handle_result()

    def server_command(self) -> list[str]:
        """Command line used to spawn the compiled server."""
        entry = str(self.dirs.server_entry)
        if self.config.server_command:
            values = {
                "entry": entry,
                "port": str(self.port),
                "devtools_port": str(self.devtools_port),
            }
            return [part.format(**values) for part in self.config.server_command]
        command = ["node"]
        if self.config.inspect:
            # the child needs its own inspector port, the parent's is taken
            command.append(f"--inspect={self.devtools_port}")
        command.append(entry)
        return command

    def _on_server_ready(self) -> None:
        if self.dev_server is None:
            return
        if self.hot and self.bundler == "webpack":
            self.dev_server.send(COMPLETED)
        elif self.live:
            self.dev_server.send(RELOAD)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _close_compilers(self) -> None:
        for compiler in self._compilers:
            close = getattr(compiler, "close", None)
            if close is not None:
                await close()

    async def close(self) -> None:
        """Tear the session down. Idempotent, safe during `start()`."""
        if self.closed:
            return
        self.closed = True
        self.stream.close()
        self.batcher.cancel()
        if self._serviceworker_handle is not None:
            self._serviceworker_handle.cancel()
        self._client_built.set()
        for task in list(self._tasks):
            task.cancel()
        steps: list[Callable[[], Awaitable[None]]] = []
        if self.dev_server is not None:
            steps.append(self.dev_server.close)
        if self.server is not None:
            steps.append(self.server.close)
        steps.extend(watcher.close for watcher in self.filewatchers)
        steps.append(self._close_compilers)
        for step in steps:
            try:
                await step()
            except Exception:  # noqa: BLE001
                logger.debug("Cleanup step failed", exc_info=True)
        atexit.unregister(self._kill_on_exit)
        logger.info("Session closed")

    def _kill_on_exit(self) -> None:
        if self.server is not None:
            self.server.kill()

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()


def dev(
    config: DevConfig | None = None,
    *,
    compilers: CompilerFactory,
    manifest: ManifestGenerator,
    **overrides: Any,
) -> Watcher:
    """Create a development session. Use it as an async context manager or call `start()`.

    Args:
        config: Session configuration
        compilers: Factory creating the configured compilers
        manifest: Route manifest and entry file generator
        overrides: Field values replacing those of `config`
    """
    base = config or DevConfig()
    if overrides:
        base = DevConfig.model_validate(base.model_dump() | overrides)
    return Watcher(base, compilers=compilers, manifest=manifest)

