"""Compile result models."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Literal


if TYPE_CHECKING:
    from devloop.config import Directories


Target = Literal["client", "server", "serviceworker"]
TARGETS: tuple[Target, ...] = ("server", "client", "serviceworker")

Signature = tuple[str, str | None, int | None, int | None]


@dataclass(frozen=True)
class Diagnostic:
    """A compiler error or warning."""

    message: str
    file: str | None = None
    line: int | None = None
    column: int | None = None
    frame: str | None = None
    """Source excerpt around the location, if the bundler provides one."""

    duplicate: bool = False
    """Whether the same diagnostic was reported by the previous result of the target."""

    @property
    def signature(self) -> Signature:
        """Identity of the diagnostic across compile results."""
        return (self.message, self.file, self.line, self.column)

    def as_duplicate(self, duplicate: bool = True) -> Diagnostic:
        return replace(self, duplicate=duplicate)


@dataclass(frozen=True)
class Chunk:
    """An emitted output file."""

    file: str
    name: str | None = None


@dataclass(frozen=True)
class CompileResult:
    """Outcome of one compile cycle of one target."""

    duration: float
    """Compile time in milliseconds."""

    errors: tuple[Diagnostic, ...] = ()
    warnings: tuple[Diagnostic, ...] = ()
    chunks: tuple[Chunk, ...] = ()
    """Emitted chunks. Only client results carry them."""

    assets: Mapping[str, Any] = field(default_factory=dict)
    """Bundler-specific asset map (entry name to files)."""

    def to_build_info(self, dirs: Directories) -> dict[str, Any]:
        """Build the content of build.json for this (client) result."""
        return {
            "assets": dict(self.assets),
            "chunks": [chunk.file for chunk in self.chunks],
            "dest": str(dirs.dest),
        }
