from __future__ import annotations

import asyncio
import json
from pathlib import Path
import socket

from conftest import FakeCompiler, FakeFactory, FakeManifest, wait_until, write_server
import pytest

from devloop import (
    BasepathEvent,
    BuildEvent,
    Chunk,
    CompileResult,
    DevConfig,
    Diagnostic,
    ErrorEvent,
    FatalEvent,
    InvalidEvent,
    ReadyEvent,
    StdoutEvent,
    Watcher,
    dev,
    find_available,
    is_available,
)
from devloop import watcher as watcher_module
from devloop.dev_server import COMPLETED, RELOAD, DevServer
from devloop.ports import DEFAULT_APP_PORT


CLIENT_RESULT = CompileResult(
    duration=12,
    chunks=(Chunk("a.js", "main"), Chunk("b.js")),
    assets={"main": "a.js"},
)


def _server_compiler(config: DevConfig) -> FakeCompiler:
    entry = config.resolve_dirs(config.dest).server_entry

    def write_entry(build: int) -> None:
        write_server(entry, marker=f"v{build}")

    return FakeCompiler("server", on_build=write_entry)


@pytest.fixture
def factory(dev_config: DevConfig) -> FakeFactory:
    return FakeFactory(
        client=FakeCompiler("client", [CLIENT_RESULT]),
        server=_server_compiler(dev_config),
    )


def _collect(watcher: Watcher) -> list:
    events: list = []

    def record(event):
        events.append(event)

    watcher.event_emitted.connect(record)
    return events


def _of_type(events: list, cls: type) -> list:
    return [e for e in events if isinstance(e, cls)]


async def test_busy_port_is_fatal_before_touching_disk(
    dev_config: DevConfig, factory: FakeFactory, manifest: FakeManifest, project: Path
):
    """Test that an occupied explicit port stops the session early."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen()
    port = sock.getsockname()[1]
    try:
        watcher = dev(dev_config, compilers=factory, manifest=manifest, port=port)
        events = _collect(watcher)
        await watcher.start()
        await watcher.close()
    finally:
        sock.close()

    assert events == [FatalEvent(message=f"Port {port} is unavailable")]
    assert not (project / "__devloop__").exists()
    assert not factory.calls
    assert manifest.generated == 0


def _listening_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen()
    return sock


async def test_busy_dev_port_is_fatal_before_touching_disk(
    dev_config: DevConfig, factory: FakeFactory, manifest: FakeManifest, project: Path
):
    """Test that an occupied explicit live-reload port is rejected up front."""
    sock = _listening_socket()
    port = sock.getsockname()[1]
    try:
        watcher = dev(dev_config, compilers=factory, manifest=manifest, dev_port=port)
        events = _collect(watcher)
        await watcher.start()
        await watcher.close()
    finally:
        sock.close()

    assert events == [FatalEvent(message=f"Port {port} is unavailable")]
    assert not (project / "__devloop__").exists()
    assert not factory.calls
    assert manifest.generated == 0


async def test_dev_port_taken_after_check_is_fatal(
    dev_config: DevConfig,
    factory: FakeFactory,
    manifest: FakeManifest,
    monkeypatch: pytest.MonkeyPatch,
):
    """Test that losing the live-reload port before binding it is reported as fatal."""

    async def skip_check(port: int, host: str = "127.0.0.1") -> int:
        return port

    monkeypatch.setattr(watcher_module, "ensure_available", skip_check)
    sock = _listening_socket()
    port = sock.getsockname()[1]
    try:
        watcher = dev(dev_config, compilers=factory, manifest=manifest, dev_port=port)
        events = _collect(watcher)
        await watcher.start()
        await watcher.close()
    finally:
        sock.close()

    assert events == [FatalEvent(message=f"Port {port} is unavailable")]
    assert not factory.calls


async def test_explicit_dev_port_is_not_allocated_to_app(
    dev_config: DevConfig, factory: FakeFactory, manifest: FakeManifest
):
    """Test that allocation skips a port already given to the live-reload channel."""
    taken = await find_available(DEFAULT_APP_PORT)
    watcher = dev(dev_config, compilers=factory, manifest=manifest, dev_port=taken)
    events = _collect(watcher)
    try:
        await watcher.start()
        assert watcher.dev_port == taken
        assert watcher.port != taken
        assert watcher.devtools_port != taken
        assert not _of_type(events, FatalEvent)
    finally:
        await watcher.close()


async def test_full_cycle(dev_config: DevConfig, factory: FakeFactory, manifest: FakeManifest):
    """Test startup through the first ready server."""
    async with Watcher(dev_config, compilers=factory, manifest=manifest) as watcher:
        events = _collect(watcher)
        reloads: list = []
        assert watcher.dev_server is not None
        watcher.dev_server.send = reloads.append  # type: ignore[method-assign]

        await wait_until(lambda: _of_type(events, ReadyEvent), timeout=10)

        builds = _of_type(events, BuildEvent)
        assert {b.type for b in builds} == {"client", "server"}
        assert _of_type(events, ReadyEvent) == [ReadyEvent(port=watcher.port)]
        assert watcher.client_files == ["client/a.js", "client/b.js"]
        assert manifest.serviceworker_files == [["client/a.js", "client/b.js"]]
        assert reloads == [RELOAD]

        info = json.loads(watcher.dirs.build_info.read_text())
        assert info["chunks"] == ["a.js", "b.js"]
        assert info["assets"] == {"main": "a.js"}

        config = manifest.entry_configs[0]
        assert config.dev
        assert config.dev_port == watcher.dev_port
        assert factory.calls == [{"bundler": "rollup", "dev": True, "legacy": False}]
        assert len({watcher.port, watcher.dev_port, watcher.devtools_port}) == 3


async def test_rebuild_emits_invalid_before_build(
    dev_config: DevConfig, factory: FakeFactory, manifest: FakeManifest
):
    """Test that a change produces one invalid event followed by builds and a restart."""
    async with Watcher(dev_config, compilers=factory, manifest=manifest) as watcher:
        events = _collect(watcher)
        await wait_until(lambda: _of_type(events, ReadyEvent), timeout=10)
        events.clear()

        factory.client.invalidate("src/routes/index.svelte")
        factory.server.invalidate("src/routes/index.svelte")
        await wait_until(lambda: _of_type(events, ReadyEvent), timeout=10)

        kinds = [e.event_type for e in events if e.event_type in {"invalid", "build", "ready"}]
        assert kinds[0] == "invalid"
        assert kinds.count("invalid") == 1
        assert kinds.count("build") == 2
        assert kinds[-1] == "ready"
        invalid = _of_type(events, InvalidEvent)[0]
        assert invalid.changed == ("src/routes/index.svelte",)
        assert invalid.invalid == {"server": True, "client": True, "serviceworker": False}
        assert not _of_type(events, FatalEvent)


async def test_repeated_warnings_are_flagged(
    dev_config: DevConfig, manifest: FakeManifest
):
    """Test that warnings seen in the previous client build are marked duplicate."""
    warning = Diagnostic("Unused export", file="src/routes/index.svelte", line=3, column=1)
    factory = FakeFactory(
        client=FakeCompiler(
            "client",
            [
                CompileResult(duration=1, warnings=(warning,)),
                CompileResult(duration=1, warnings=(warning,)),
            ],
        ),
        server=_server_compiler(dev_config),
    )
    async with Watcher(dev_config, compilers=factory, manifest=manifest) as watcher:
        events = _collect(watcher)
        await wait_until(lambda: len(_of_type(events, BuildEvent)) >= 2, timeout=10)
        factory.client.invalidate("src/routes/index.svelte")
        await wait_until(
            lambda: len([b for b in _of_type(events, BuildEvent) if b.type == "client"]) == 2
        )

    client_builds = [b for b in _of_type(events, BuildEvent) if b.type == "client"]
    assert not client_builds[0].warnings[0].duplicate
    assert client_builds[1].warnings[0].duplicate


async def test_compile_failure_emits_error(dev_config: DevConfig, manifest: FakeManifest):
    """Test that a failing compiler is reported without ending the session."""
    failure = RuntimeError("Cannot find module")
    factory = FakeFactory(
        client=FakeCompiler("client", [CLIENT_RESULT]),
        server=FakeCompiler("server", [failure]),
    )
    async with Watcher(dev_config, compilers=factory, manifest=manifest) as watcher:
        events = _collect(watcher)
        await wait_until(lambda: _of_type(events, ErrorEvent))
        assert _of_type(events, ErrorEvent) == [ErrorEvent(type="server", error=failure)]
        assert not _of_type(events, FatalEvent)
        assert watcher.server is None


async def test_manifest_failure_at_startup_is_fatal(
    dev_config: DevConfig, factory: FakeFactory
):
    """Test that route manifest errors during startup end the session."""
    manifest = FakeManifest(fail=True)
    watcher = Watcher(dev_config, compilers=factory, manifest=manifest)
    events = _collect(watcher)
    await watcher.start()
    await watcher.close()

    assert events == [FatalEvent(message="Invalid route file")]
    assert not factory.calls


async def test_routes_change_regenerates_manifest(
    dev_config: DevConfig, factory: FakeFactory, manifest: FakeManifest, project: Path
):
    """Test that route edits regenerate the entry files and report errors."""
    async with Watcher(dev_config, compilers=factory, manifest=manifest) as watcher:
        events = _collect(watcher)
        await asyncio.sleep(0.2)
        (project / "src" / "routes" / "about.svelte").write_text("<h1>About</h1>")
        await wait_until(lambda: manifest.generated >= 2)

        manifest.fail = True
        (project / "src" / "routes" / "blog.svelte").write_text("<h1>Blog</h1>")
        await wait_until(lambda: _of_type(events, ErrorEvent))
        error = _of_type(events, ErrorEvent)[0]
        assert error.type == "manifest"
        assert not _of_type(events, FatalEvent)
        assert not watcher.closed


async def test_template_change_reloads(
    dev_config: DevConfig, factory: FakeFactory, manifest: FakeManifest, project: Path
):
    """Test that editing the template reloads browsers."""
    async with Watcher(dev_config, compilers=factory, manifest=manifest) as watcher:
        reloads: list = []
        assert watcher.dev_server is not None
        watcher.dev_server.send = reloads.append  # type: ignore[method-assign]
        await asyncio.sleep(0.2)
        (project / "src" / "template.html").write_text("<html>changed</html>")
        await wait_until(lambda: RELOAD in reloads)


async def test_webpack_hot_sends_completed(project: Path, dev_config: DevConfig):
    """Test that hot webpack sessions signal completion instead of reloading."""
    (project / "rollup.config.js").unlink()
    (project / "webpack.config.js").write_text("module.exports = {};\n")
    config = dev_config.model_copy(update={"bundler": "webpack"})
    factory = FakeFactory(
        client=FakeCompiler("client", [CLIENT_RESULT]),
        server=_server_compiler(config),
    )
    async with Watcher(config, compilers=factory, manifest=FakeManifest()) as watcher:
        events = _collect(watcher)
        sent: list = []
        assert watcher.dev_server is not None
        watcher.dev_server.send = sent.append  # type: ignore[method-assign]
        await wait_until(lambda: _of_type(events, ReadyEvent), timeout=10)
        assert sent == [COMPLETED]


async def test_serviceworker_watched_once(dev_config: DevConfig, manifest: FakeManifest):
    """Test that the service worker starts after the first client build only."""
    serviceworker = FakeCompiler("serviceworker")
    factory = FakeFactory(
        client=FakeCompiler("client", [CLIENT_RESULT, CLIENT_RESULT]),
        server=_server_compiler(dev_config),
        serviceworker=serviceworker,
    )
    async with Watcher(dev_config, compilers=factory, manifest=manifest) as watcher:
        events = _collect(watcher)
        await wait_until(lambda: serviceworker.builds == 1)
        factory.client.invalidate("src/client.js")
        await wait_until(
            lambda: len([b for b in _of_type(events, BuildEvent) if b.type == "client"]) == 2
        )
        await asyncio.sleep(0.3)
        assert serviceworker.builds == 1
        assert len(serviceworker._watch_callbacks) == 1


async def test_server_command(factory: FakeFactory, manifest: FakeManifest):
    """Test the default and custom server commands."""
    config = DevConfig(bundler="rollup", port=4000, devtools_port=9333, inspect=True)
    watcher = Watcher(config, compilers=factory, manifest=manifest)
    assert watcher.server_command() == [
        "node",
        "--inspect=9333",
        str(watcher.dirs.server_entry),
    ]

    watcher.config = config.model_copy(update={"server_command": ["deno", "run", "{entry}"]})
    assert watcher.server_command() == ["deno", "run", str(watcher.dirs.server_entry)]
    await watcher.close()


async def test_close_is_idempotent(
    dev_config: DevConfig, factory: FakeFactory, manifest: FakeManifest
):
    """Test that close stops the child server and can be repeated."""
    watcher = Watcher(dev_config, compilers=factory, manifest=manifest)
    events = _collect(watcher)
    await watcher.start()
    await wait_until(lambda: _of_type(events, ReadyEvent), timeout=10)
    server = watcher.server
    assert server is not None

    await watcher.close()
    await watcher.close()

    assert not server.running
    assert watcher.stream.closed
    assert not _of_type(events, FatalEvent)


async def test_close_during_start(
    dev_config: DevConfig, factory: FakeFactory, manifest: FakeManifest
):
    """Test that closing while starting leaves nothing running."""
    watcher = Watcher(dev_config, compilers=factory, manifest=manifest)
    start = asyncio.create_task(watcher.start())
    await asyncio.sleep(0)
    await watcher.close()
    await start

    assert watcher.server is None
    assert factory.client.builds == 0


@pytest.mark.parametrize("step", ["ports", "dev_server", "compilers"])
async def test_close_at_each_startup_step(
    step: str,
    dev_config: DevConfig,
    factory: FakeFactory,
    manifest: FakeManifest,
    monkeypatch: pytest.MonkeyPatch,
):
    """Test that closing while startup is suspended leaks no port, watcher or build."""
    reached = asyncio.Event()
    release = asyncio.Event()

    async def pause() -> None:
        reached.set()
        await release.wait()

    if step == "ports":
        original_find = watcher_module.find_available

        async def slow_find(*args, **kwargs) -> int:
            if not reached.is_set():
                await pause()
            return await original_find(*args, **kwargs)

        monkeypatch.setattr(watcher_module, "find_available", slow_find)
    elif step == "dev_server":
        original_start = DevServer.start

        async def slow_start(self: DevServer) -> None:
            await original_start(self)
            await pause()

        monkeypatch.setattr(DevServer, "start", slow_start)

    async def compilers(*args, **kwargs):
        result = await factory(*args, **kwargs)
        if step == "compilers":
            await pause()
        return result

    watcher = Watcher(dev_config, compilers=compilers, manifest=manifest)
    events = _collect(watcher)
    start = asyncio.create_task(watcher.start())
    await asyncio.wait_for(reached.wait(), timeout=5)
    await watcher.close()
    seen = len(events)
    release.set()
    await start
    await asyncio.sleep(0.2)

    assert len(events) == seen
    assert watcher.server is None
    assert factory.client.builds == 0
    assert factory.server.builds == 0
    assert not any(w.running for w in watcher.filewatchers)
    if watcher.dev_port is not None:
        assert await is_available(watcher.dev_port)


async def test_back_to_back_server_results_restart_once(
    tmp_path: Path, dev_config: DevConfig, factory: FakeFactory, manifest: FakeManifest
):
    """Test that two server results delivered together cause a single restart."""
    async with Watcher(dev_config, compilers=factory, manifest=manifest) as watcher:
        events = _collect(watcher)
        await wait_until(lambda: _of_type(events, ReadyEvent), timeout=10)
        assert watcher.server is not None
        first_pid = watcher.server.pid

        pid_file = tmp_path / "pids"
        write_server(watcher.dirs.server_entry, marker="v2", pid_file=pid_file)
        events.clear()
        factory.server._deliver(None, CompileResult(duration=1))
        factory.server._deliver(None, CompileResult(duration=1))

        await wait_until(lambda: _of_type(events, ReadyEvent), timeout=10)
        await asyncio.sleep(0.3)

        assert len(_of_type(events, ReadyEvent)) == 1
        assert len(_of_type(events, BuildEvent)) == 2
        assert not _of_type(events, FatalEvent)
        assert len(pid_file.read_text().split()) == 1
        assert watcher.server.pid != first_pid
        await wait_until(
            lambda: any("server v2" in e.chunk for e in _of_type(events, StdoutEvent))
        )


async def test_on_filters_by_event_type(
    dev_config: DevConfig, factory: FakeFactory, manifest: FakeManifest
):
    """Test that `on` only passes events of the requested type."""
    watcher = Watcher(dev_config, compilers=factory, manifest=manifest)
    builds: list = []
    watcher.on("build", builds.append)
    build = BuildEvent(type="client", duration=1.0, errors=(), warnings=())

    watcher.stream.emit(ReadyEvent(port=3000))
    watcher.stream.emit(build)
    watcher.stream.emit(BasepathEvent(basepath="/"))
    await watcher.close()

    assert builds == [build]
