"""Contract of the route manifest and entry file generator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol


if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from devloop.config import BundlerKind, Directories


ManifestData = Any
"""Opaque route tree produced by the generator and handed back to it."""


@dataclass(frozen=True)
class EntryConfig:
    """Input for writing the framework entry files the compilers consume."""

    bundler: BundlerKind
    manifest_data: ManifestData
    dirs: Directories
    dev: bool
    dev_port: int | None = None
    """Port of the live-reload channel the client runtime connects to (dev only)."""


class ManifestGenerator(Protocol):
    """Derives the route manifest and writes generated entry files."""

    def generate(self, routes_dir: Path, extensions: Sequence[str]) -> ManifestData:
        """Derive the route manifest from the routes directory."""
        ...

    def emit_entry_files(self, config: EntryConfig) -> None:
        """Write the entry files for the given manifest."""
        ...

    def emit_serviceworker_manifest(
        self,
        manifest_data: ManifestData,
        output: Path,
        client_files: Sequence[str],
        static_files: Path,
    ) -> None:
        """Write the manifest the service worker uses to precache files."""
        ...
