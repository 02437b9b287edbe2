from __future__ import annotations

import fnmatch
import logging
from pathlib import Path
from typing import Iterator, List, Optional

import typer

from closure_capture.config import (
    RewriteConfig,
    merge_payload,
    rewrite_config,
    rewrite_defaults,
)
from closure_capture.diagnostics import Diagnostic, Span
from closure_capture.directives import parse_capture_list
from closure_capture.exceptions import DirectiveSyntaxError
from closure_capture.rewriter import RewriteResult, rewrite_source
from closure_capture.schema import (
    DiagnosticDTO,
    DirectiveDTO,
    ExplainResponseDTO,
    FileReportDTO,
    RewriteReportDTO,
)

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _is_excluded(path: Path, patterns: List[str]) -> bool:
    text = path.as_posix()
    return any(
        fnmatch.fnmatch(text, pattern) or fnmatch.fnmatch(path.name, pattern)
        for pattern in patterns
    )


def _iter_sources(paths: List[Path], exclude: List[str]) -> Iterator[Path]:
    for path in paths:
        if path.is_dir():
            candidates = sorted(path.rglob("*.py"))
        else:
            candidates = [path]
        for candidate in candidates:
            if _is_excluded(candidate, exclude):
                logger.debug("skipping excluded %s", candidate)
                continue
            yield candidate


def resolve_config(
    *,
    root: Optional[Path],
    config_path: Optional[Path],
    runtime_alias: Optional[str] = None,
    require_marker: Optional[bool] = None,
    exclude: Optional[List[str]] = None,
) -> RewriteConfig:
    defaults = rewrite_defaults(root=root, config_path=config_path)
    payload = {
        "runtime_alias": runtime_alias,
        "require_marker": require_marker,
        "exclude": exclude or None,
    }
    return rewrite_config(merge_payload(payload, defaults))


def rewrite_path(path: Path, config: RewriteConfig, *, write: bool) -> tuple[FileReportDTO, RewriteResult]:
    try:
        source = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        diagnostic = Diagnostic(span=Span(1, 0, 1, 0), message=f"cannot read file: {exc}")
        result = RewriteResult(code="", diagnostics=[diagnostic], filename=str(path))
        return (
            FileReportDTO(path=str(path), diagnostics=[DiagnosticDTO.from_diagnostic(diagnostic)]),
            result,
        )
    result = rewrite_source(source, filename=str(path), config=config)
    written = False
    if write and result.changed:
        path.write_text(result.code, encoding="utf-8")
        written = True
        logger.info("rewrote %s", path)
    report = FileReportDTO(
        path=str(path),
        changed=result.changed,
        written=written,
        diagnostics=[DiagnosticDTO.from_diagnostic(d) for d in result.diagnostics],
    )
    return report, result


@app.command()
def rewrite(
    paths: List[Path] = typer.Argument(..., help="Files or directories to rewrite."),
    write: bool = typer.Option(False, "--write", help="Write rewritten sources back in place."),
    check: bool = typer.Option(
        False, "--check", help="Exit non-zero when any file would change."
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit a JSON report."),
    root: Optional[Path] = typer.Option(None, "--root", help="Directory holding the config."),
    config: Optional[Path] = typer.Option(None, "--config", help="Explicit config file."),
    runtime_alias: Optional[str] = typer.Option(None, "--runtime-alias"),
    require_marker: Optional[bool] = typer.Option(
        None, "--require-marker/--whole-module"
    ),
    exclude: Optional[List[str]] = typer.Option(None, "--exclude", help="Glob to skip (repeatable)."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Expand @with_closure items in Python sources."""
    _configure_logging(verbose)
    settings = resolve_config(
        root=root,
        config_path=config,
        runtime_alias=runtime_alias,
        require_marker=require_marker,
        exclude=exclude,
    )
    report = RewriteReportDTO()
    sources = list(_iter_sources(paths, settings.exclude))
    single = len(sources) == 1 and not paths[0].is_dir()
    for path in sources:
        file_report, result = rewrite_path(path, settings, write=write)
        report.files.append(file_report)
        if file_report.changed:
            report.changed += 1
        report.diagnostics += len(file_report.diagnostics)
        if not json_output:
            for diagnostic in result.diagnostics:
                typer.echo(diagnostic.format(str(path)), err=True)
            if single and not write and not check and result.code:
                typer.echo(result.code, nl=False)
            elif check and file_report.changed:
                typer.echo(f"would rewrite {path}")
    if report.diagnostics or (check and report.changed):
        report.exit_code = 1
    if json_output:
        typer.echo(report.model_dump_json(indent=2))
    elif not single or write or check:
        typer.echo(
            f"{len(report.files)} file(s), {report.changed} changed, {report.diagnostics} diagnostic(s)",
            err=True,
        )
    raise typer.Exit(code=report.exit_code)


@app.command()
def explain(
    directives: str = typer.Argument(..., help="Capture list, e.g. 'clone a, weak b'."),
    json_output: bool = typer.Option(False, "--json", help="Emit a JSON response."),
) -> None:
    """Parse a capture list and describe each directive."""
    response = ExplainResponseDTO()
    try:
        parsed = parse_capture_list(directives)
    except DirectiveSyntaxError as exc:
        span = Span(1, exc.start, 1, exc.end)
        response.errors.append(
            DiagnosticDTO.from_diagnostic(Diagnostic(span=span, message=exc.message))
        )
    else:
        response.directives = [DirectiveDTO.from_directive(d) for d in parsed]
    if json_output:
        typer.echo(response.model_dump_json(indent=2))
    else:
        for error in response.errors:
            typer.echo(f"{error.span.column + 1}: error: {error.message}", err=True)
        for directive in response.directives:
            line = f"{directive.name}: {directive.mode}"
            if directive.fallback is not None:
                line += f" (fallback {directive.fallback})"
            if directive.weak:
                line += " [weak]"
            if directive.mutable:
                line += " [mut]"
            typer.echo(line)
    if response.errors:
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
