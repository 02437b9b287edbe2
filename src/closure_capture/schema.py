from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel

from closure_capture.diagnostics import Diagnostic, Span
from closure_capture.directives import CaptureDirective


class SpanDTO(BaseModel):
    line: int
    column: int
    end_line: int
    end_column: int

    @classmethod
    def from_span(cls, span: Span) -> "SpanDTO":
        return cls(
            line=span.line,
            column=span.column,
            end_line=span.end_line,
            end_column=span.end_column,
        )


class DiagnosticDTO(BaseModel):
    message: str
    span: SpanDTO

    @classmethod
    def from_diagnostic(cls, diagnostic: Diagnostic) -> "DiagnosticDTO":
        return cls(message=diagnostic.message, span=SpanDTO.from_span(diagnostic.span))


class FileReportDTO(BaseModel):
    path: str
    changed: bool = False
    written: bool = False
    diagnostics: List[DiagnosticDTO] = []


class RewriteReportDTO(BaseModel):
    files: List[FileReportDTO] = []
    changed: int = 0
    diagnostics: int = 0
    exit_code: int = 0


class DirectiveDTO(BaseModel):
    mode: str
    name: str
    fallback: Optional[str] = None
    weak: bool = False
    mutable: bool = False

    @classmethod
    def from_directive(cls, directive: CaptureDirective) -> "DirectiveDTO":
        return cls(
            mode=directive.mode.value,
            name=directive.name,
            fallback=directive.fallback_source,
            weak=directive.mode.is_weak,
            mutable=directive.mode.is_mutable,
        )


class ExplainResponseDTO(BaseModel):
    directives: List[DirectiveDTO] = []
    errors: List[DiagnosticDTO] = []
