"""Exception types raised by closure_capture."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from closure_capture.diagnostics import Diagnostic


class CaptureError(Exception):
    """Base class for capture rewriting and runtime failures."""


class DirectiveSyntaxError(CaptureError):
    """A capture list could not be parsed.

    ``start`` and ``end`` are character offsets into the directive text, so
    the rewriter can translate them into a source span.
    """

    def __init__(self, message: str, start: int, end: int) -> None:
        super().__init__(message)
        self.message = message
        self.start = start
        self.end = max(start, end)


class CaptureSyntaxError(CaptureError, SyntaxError):
    """One or more diagnostics were reported while expanding an item."""

    def __init__(
        self,
        diagnostics: Sequence[Diagnostic],
        *,
        filename: str | None = None,
    ) -> None:
        self.diagnostics = tuple(diagnostics)
        first = self.diagnostics[0] if self.diagnostics else None
        if first is None:
            summary = "capture expansion failed"
        elif len(self.diagnostics) == 1:
            summary = first.message
        else:
            summary = f"{first.message} (and {len(self.diagnostics) - 1} more)"
        if first is None:
            super().__init__(summary)
        else:
            super().__init__(
                summary,
                (filename, first.span.line, first.span.column + 1, None),
            )

    def __str__(self) -> str:
        if len(self.diagnostics) <= 1:
            return SyntaxError.__str__(self)
        lines = [self.msg]
        for diagnostic in self.diagnostics:
            lines.append("  " + diagnostic.format(self.filename))
        return "\n".join(lines)


class UpgradeError(CaptureError, ReferenceError):
    """A ``panic`` capture found its weak reference dead."""

    def __init__(self, message: str, *, name: str | None = None) -> None:
        super().__init__(message)
        self.name = name
