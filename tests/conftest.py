"""Test configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
import sys
from typing import TYPE_CHECKING, Any

import pytest

from devloop import CompileResult, CompilerAdapter, CompilerSet, DevConfig, find_available


if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from devloop import Directories, EntryConfig


SERVER_TEMPLATE = """\
import http.server
import json
import os
import threading
import time

port = int(os.environ["PORT"])
pid_file = {pid_file!r}
if pid_file:
    with open(pid_file, "a") as f:
        f.write(f"{{os.getpid()}}\\n")
print(json.dumps({{"__devloop__": True, "event": "basepath", "basepath": "/base"}}), flush=True)
print("server {marker}", flush=True)
if not {listen!r}:
    time.sleep(30)
    raise SystemExit(0)
server = http.server.HTTPServer(("127.0.0.1", port), http.server.BaseHTTPRequestHandler)
crash_after = {crash_after!r}
if crash_after is None:
    server.serve_forever()
else:
    threading.Thread(target=server.serve_forever, daemon=True).start()
    time.sleep(crash_after)
    os._exit(1)
"""


def write_server(
    path: Path,
    *,
    marker: str = "v1",
    listen: bool = True,
    crash_after: float | None = None,
    pid_file: Path | None = None,
) -> Path:
    """Write a small HTTP server script binding the PORT environment variable."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        SERVER_TEMPLATE.format(
            marker=marker,
            listen=listen,
            crash_after=crash_after,
            pid_file=str(pid_file) if pid_file else None,
        )
    )
    return path


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until the predicate holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


class FakeCompiler(CompilerAdapter):
    """Compiler returning queued results, optionally running a hook per build."""

    def __init__(
        self,
        name: str,
        results: Sequence[CompileResult | Exception] = (),
        on_build: Callable[[int], None] | None = None,
    ) -> None:
        super().__init__(name)
        self.results: list[CompileResult | Exception] = list(results)
        self.on_build = on_build
        self.builds = 0

    async def _build(self) -> CompileResult:
        self.builds += 1
        await asyncio.sleep(0)
        if self.on_build is not None:
            self.on_build(self.builds)
        item = self.results.pop(0) if self.results else CompileResult(duration=1.0)
        if isinstance(item, Exception):
            raise item
        return item


@dataclass
class FakeFactory:
    """Compiler factory handing out prepared fake compilers."""

    client: FakeCompiler
    server: FakeCompiler
    serviceworker: FakeCompiler | None = None
    legacy_client: FakeCompiler | None = None
    calls: list[dict[str, Any]] = field(default_factory=list)

    async def __call__(
        self,
        bundler: str,
        dirs: Directories,
        *,
        dev: bool,
        legacy: bool = False,
    ) -> CompilerSet:
        self.calls.append({"bundler": bundler, "dev": dev, "legacy": legacy})
        if legacy and self.legacy_client is not None:
            return CompilerSet(client=self.legacy_client, server=self.server)
        return CompilerSet(
            client=self.client,
            server=self.server,
            serviceworker=self.serviceworker,
        )


class FakeManifest:
    """Manifest generator recording what it was asked to write."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.generated = 0
        self.entry_configs: list[EntryConfig] = []
        self.serviceworker_files: list[list[str]] = []

    def generate(self, routes_dir: Path, extensions: Sequence[str]) -> dict[str, Any]:
        if self.fail:
            msg = "Invalid route file"
            raise ValueError(msg)
        self.generated += 1
        return {"routes": [], "extensions": list(extensions)}

    def emit_entry_files(self, config: EntryConfig) -> None:
        self.entry_configs.append(config)

    def emit_serviceworker_manifest(
        self,
        manifest_data: Any,
        output: Path,
        client_files: Sequence[str],
        static_files: Path,
    ) -> None:
        self.serviceworker_files.append(list(client_files))


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """sse-starlette keeps a module-level exit event bound to the first event loop."""
    from sse_starlette.sse import AppStatus

    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
    yield


@pytest.fixture(autouse=True)
def no_port_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("PORT", raising=False)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Minimal rollup project layout."""
    (tmp_path / "rollup.config.js").write_text("export default {};\n")
    routes = tmp_path / "src" / "routes"
    routes.mkdir(parents=True)
    (routes / "index.svelte").write_text("<h1>Hello</h1>\n")
    (tmp_path / "src" / "template.html").write_text("<html>%devloop.head%</html>\n")
    (tmp_path / "static").mkdir()
    return tmp_path


@pytest.fixture
async def free_port() -> int:
    return await find_available(20000)


@pytest.fixture
def manifest() -> FakeManifest:
    return FakeManifest()


@pytest.fixture
def dev_config(project: Path) -> DevConfig:
    return DevConfig(
        cwd=project,
        server_command=[sys.executable, "{entry}"],
        listen_timeout=5.0,
    )
