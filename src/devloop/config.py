"""Configuration models for dev sessions and one-shot builds."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Literal

from pydantic import ConfigDict, Field
from schemez import Schema


BundlerKind = Literal["rollup", "webpack"]


def _port_from_env() -> int | None:
    value = os.environ.get("PORT", "").strip()
    return int(value) if value else None


@dataclass(frozen=True)
class Directories:
    """Absolute project directories of a session."""

    cwd: Path
    src: Path
    routes: Path
    output: Path
    static: Path
    dest: Path

    @property
    def template(self) -> Path:
        """Path of the HTML template inside the source directory."""
        return self.src / "template.html"

    @property
    def server_entry(self) -> Path:
        """Compiled server entry point."""
        return self.dest / "server" / "server.js"

    @property
    def build_info(self) -> Path:
        return self.dest / "build.json"


class ProjectConfig(Schema):
    """Project layout shared by dev sessions and builds."""

    cwd: Path = Field(default=Path(), title="Working directory")
    """Project root. All other paths are resolved against it."""

    src: Path = Field(default=Path("src"), title="Source directory")
    """Directory containing the application sources and template.html."""

    routes: Path = Field(default=Path("src/routes"), title="Routes directory")
    """Directory the route manifest is derived from."""

    output: Path = Field(
        default=Path("src/node_modules/@devloop"),
        title="Intermediate output directory",
    )
    """Where generated entry files are written. Cleared on every start."""

    static: Path = Field(default=Path("static"), title="Static files directory")
    """Static assets, listed in the service-worker manifest."""

    bundler: BundlerKind | None = Field(
        default=None,
        examples=["rollup", "webpack"],
        title="Bundler",
    )
    """Bundler kind. Detected from the config files in cwd if None."""

    ext: list[str] = Field(
        default_factory=lambda: [".svelte", ".html"],
        title="Route extensions",
    )
    """File extensions treated as page routes."""

    model_config = ConfigDict(frozen=True)

    def resolve_dirs(self, dest: Path) -> Directories:
        """Resolve all configured directories to absolute paths."""
        cwd = self.cwd.resolve()
        return Directories(
            cwd=cwd,
            src=(cwd / self.src).resolve(),
            routes=(cwd / self.routes).resolve(),
            output=(cwd / self.output).resolve(),
            static=(cwd / self.static).resolve(),
            dest=(cwd / dest).resolve(),
        )


class DevConfig(ProjectConfig):
    """Configuration of a development watch session."""

    dest: Path = Field(default=Path("__devloop__/dev"), title="Build directory")
    """Development build directory. Cleared on every start."""

    port: int | None = Field(
        default_factory=_port_from_env,
        ge=1,
        le=65535,
        title="Application port",
    )
    """Port the server must bind. Must be free if given; allocated from 3000 if None.
    Defaults to the PORT environment variable."""

    dev_port: int | None = Field(default=None, ge=1, le=65535, title="Live-reload port")
    """Port of the live-reload channel. Allocated from 10000 if None."""

    devtools_port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        title="Debugger port",
    )
    """Inspector port handed to the child server. Allocated from 9222 if None."""

    live: bool = Field(default=True, title="Live reload")
    """Reload connected browsers after server restarts and template edits."""

    hot: bool = Field(default=True, title="Hot module replacement")
    """Send a build-completed signal instead of a reload (webpack only)."""

    inspect: bool = Field(default=False, title="Enable inspector")
    """Start the child server with the inspector bound to devtools_port."""

    server_command: list[str] | None = Field(
        default=None,
        examples=[["node", "{entry}"]],
        title="Server command",
    )
    """Command spawning the compiled server. '{entry}' is replaced by the entry path.
    Defaults to running the entry point with node."""

    listen_timeout: float = Field(default=5.0, gt=0, title="Listen timeout")
    """Seconds to wait for the spawned server to accept connections."""

    keepalive_interval: float = Field(default=10.0, gt=0, title="Keep-alive interval")
    """Seconds between idle keep-alive messages on the live-reload channel."""

    live_reload_path: str = Field(default="/__devloop__", title="Live-reload path")
    """HTTP path browsers subscribe to for reload notifications."""

    max_port_attempts: int = Field(default=100, ge=1, title="Port probe ceiling")
    """Ports probed upward from a default base before giving up."""


class BuildConfig(ProjectConfig):
    """Configuration of a one-shot production build."""

    dest: Path = Field(default=Path("__devloop__/build"), title="Build directory")
    """Production build directory. Cleared before building."""

    legacy: bool = Field(default=False, title="Legacy build")
    """Create an additional client build for legacy browsers (rollup only)."""
