"""Development build orchestrator.

Drives client, server and service-worker compilers in watch mode, keeps the
compiled server running in a child process and tells connected browsers when
to reload.

Example:
    async with dev(compilers=create_compilers, manifest=generator) as watcher:
        async for event in watcher.events():
            print(event)
"""

from __future__ import annotations

from devloop.batcher import BatchState, BuildBatch, ChangeBatcher
from devloop.build import build
from devloop.bundler import prepare_directories, validate_bundler
from devloop.compilers import (
    Chunk,
    CompileResult,
    Compiler,
    CompilerAdapter,
    CompilerFactory,
    CompilerSet,
    Diagnostic,
    DiagnosticTracker,
    Target,
)
from devloop.config import BuildConfig, DevConfig, Directories
from devloop.dev_server import DevServer
from devloop.events import (
    BasepathEvent,
    BuildEvent,
    ErrorEvent,
    Event,
    EventStream,
    EventType,
    FatalEvent,
    InvalidEvent,
    ReadyEvent,
    StderrEvent,
    StdoutEvent,
)
from devloop.exceptions import (
    BundlerConfigError,
    DevloopError,
    NoFreePortError,
    PortUnavailableError,
    ServerNotListeningError,
    TemplateNotFoundError,
)
from devloop.file_watcher import FileWatcher, WatchEntry, watch_dir
from devloop.log import EventReporter, configure_logging, get_logger
from devloop.manifest import EntryConfig, ManifestGenerator
from devloop.ports import ensure_available, find_available, is_available, wait_for_port
from devloop.process import ProcessState, ServerProcess
from devloop.watcher import Watcher, dev

__version__ = "0.1.0"

__all__ = [
    "BasepathEvent",
    "BatchState",
    "BuildBatch",
    "BuildConfig",
    "BuildEvent",
    "BundlerConfigError",
    "ChangeBatcher",
    "Chunk",
    "CompileResult",
    "Compiler",
    "CompilerAdapter",
    "CompilerFactory",
    "CompilerSet",
    "DevConfig",
    "DevServer",
    "DevloopError",
    "Diagnostic",
    "DiagnosticTracker",
    "Directories",
    "EntryConfig",
    "ErrorEvent",
    "Event",
    "EventReporter",
    "EventStream",
    "EventType",
    "FatalEvent",
    "FileWatcher",
    "InvalidEvent",
    "ManifestGenerator",
    "NoFreePortError",
    "PortUnavailableError",
    "ProcessState",
    "ReadyEvent",
    "ServerNotListeningError",
    "ServerProcess",
    "StderrEvent",
    "StdoutEvent",
    "Target",
    "TemplateNotFoundError",
    "WatchEntry",
    "Watcher",
    "build",
    "configure_logging",
    "dev",
    "ensure_available",
    "find_available",
    "get_logger",
    "is_available",
    "prepare_directories",
    "validate_bundler",
    "wait_for_port",
    "watch_dir",
]
