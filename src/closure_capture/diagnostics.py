from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

import libcst as cst
from libcst.metadata import CodeRange


@dataclass(frozen=True)
class Span:
    line: int
    column: int
    end_line: int
    end_column: int

    @classmethod
    def from_range(cls, code_range: CodeRange) -> Span:
        return cls(
            line=code_range.start.line,
            column=code_range.start.column,
            end_line=code_range.end.line,
            end_column=code_range.end.column,
        )

    def shifted(self, line_offset: int) -> Span:
        return Span(
            line=self.line + line_offset,
            column=self.column,
            end_line=self.end_line + line_offset,
            end_column=self.end_column,
        )


UNKNOWN_SPAN = Span(1, 0, 1, 0)


@dataclass(frozen=True)
class Diagnostic:
    span: Span
    message: str

    def format(self, filename: str | None = None) -> str:
        path = filename or "<unknown>"
        return f"{path}:{self.span.line}:{self.span.column + 1}: error: {self.message}"


@dataclass
class DiagnosticSink:
    """Ordered collection of the diagnostics raised during one expansion."""

    diagnostics: List[Diagnostic] = field(default_factory=list)

    def error(self, span: Span, message: str) -> None:
        self.diagnostics.append(Diagnostic(span=span, message=message))

    def mark(self) -> int:
        return len(self.diagnostics)

    def since(self, mark: int) -> list[Diagnostic]:
        return list(self.diagnostics[mark:])

    def __bool__(self) -> bool:
        return bool(self.diagnostics)

    def __len__(self) -> int:
        return len(self.diagnostics)


def marker_statement(diagnostic: Diagnostic, *, runtime_alias: str) -> cst.SimpleStatementLine:
    """Render a diagnostic as a statement that raises when executed."""
    call = cst.Call(
        func=cst.Attribute(value=cst.Name(runtime_alias), attr=cst.Name("compile_error")),
        args=[
            cst.Arg(cst.SimpleString(repr(diagnostic.message))),
            cst.Arg(
                cst.Integer(str(diagnostic.span.line)),
                keyword=cst.Name("line"),
                equal=cst.AssignEqual(
                    whitespace_before=cst.SimpleWhitespace(""),
                    whitespace_after=cst.SimpleWhitespace(""),
                ),
            ),
            cst.Arg(
                cst.Integer(str(diagnostic.span.column)),
                keyword=cst.Name("column"),
                equal=cst.AssignEqual(
                    whitespace_before=cst.SimpleWhitespace(""),
                    whitespace_after=cst.SimpleWhitespace(""),
                ),
            ),
        ],
    )
    return cst.SimpleStatementLine(body=[cst.Expr(call)])
