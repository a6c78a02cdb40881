"""Compiler capability, results and diagnostics."""

from __future__ import annotations

from devloop.compilers.base import (
    Compiler,
    CompilerAdapter,
    CompilerFactory,
    CompilerSet,
    InvalidCallback,
    WatchCallback,
)
from devloop.compilers.diagnostics import DiagnosticTracker, count_duplicates
from devloop.compilers.models import (
    TARGETS,
    Chunk,
    CompileResult,
    Diagnostic,
    Signature,
    Target,
)

__all__ = [
    "TARGETS",
    "Chunk",
    "CompileResult",
    "Compiler",
    "CompilerAdapter",
    "CompilerFactory",
    "CompilerSet",
    "Diagnostic",
    "DiagnosticTracker",
    "InvalidCallback",
    "Signature",
    "Target",
    "WatchCallback",
    "count_duplicates",
]
