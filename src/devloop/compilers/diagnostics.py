"""Duplicate detection for compiler diagnostics."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from typing import Literal

from devloop.compilers.models import CompileResult, Diagnostic, Signature, Target


DiagnosticKind = Literal["errors", "warnings"]


class DiagnosticTracker:
    """Marks diagnostics already reported by the previous result of the same target.

    Diagnostics are compared by signature (message and location), so two
    results produced by separate compiles still match.
    """

    def __init__(self) -> None:
        self._previous: dict[tuple[Target, DiagnosticKind], frozenset[Signature]] = {}

    def mark(
        self,
        target: Target,
        kind: DiagnosticKind,
        diagnostics: Sequence[Diagnostic],
    ) -> tuple[Diagnostic, ...]:
        previous = self._previous.get((target, kind), frozenset())
        marked = tuple(d.as_duplicate(d.signature in previous) for d in diagnostics)
        self._previous[target, kind] = frozenset(d.signature for d in diagnostics)
        return marked

    def apply(self, target: Target, result: CompileResult) -> CompileResult:
        """Return a copy of the result with duplicate flags set."""
        return replace(
            result,
            errors=self.mark(target, "errors", result.errors),
            warnings=self.mark(target, "warnings", result.warnings),
        )

    def reset(self, target: Target | None = None) -> None:
        if target is None:
            self._previous.clear()
            return
        for key in [k for k in self._previous if k[0] == target]:
            del self._previous[key]


def count_duplicates(diagnostics: Sequence[Diagnostic]) -> int:
    """Number of diagnostics hidden as duplicates."""
    return sum(1 for d in diagnostics if d.duplicate)
