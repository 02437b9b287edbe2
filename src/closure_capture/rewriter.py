"""Locate annotated closures and rewrite them in place.

Closure sites are ``@closure("...")`` on a ``def`` and
``closure("...")(lambda ...: ...)`` around a lambda. Items opt in with
``@with_closure``; every site inside an item is rewritten post-order, so a
nested site is finished before the site that encloses it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import libcst as cst
from libcst.metadata import (
    CodeRange,
    FunctionScope,
    GlobalScope,
    MetadataWrapper,
    PositionProvider,
    Scope,
    ScopeProvider,
)

from closure_capture.codegen import (
    RUNTIME_ALIAS,
    parenthesized,
    plan_captures,
    rewrite_function,
    rewrite_lambda,
)
from closure_capture.config import RewriteConfig
from closure_capture.diagnostics import (
    UNKNOWN_SPAN,
    Diagnostic,
    DiagnosticSink,
    Span,
    marker_statement,
)
from closure_capture.directives import CaptureDirective, CaptureMode, parse_capture_list
from closure_capture.exceptions import CaptureSyntaxError, DirectiveSyntaxError

logger = logging.getLogger(__name__)

CLOSURE_ANNOTATION = "closure"
ITEM_ANNOTATION = "with_closure"
RUNTIME_MODULE = "closure_capture"

Positions = Mapping[cst.CSTNode, CodeRange]
Scopes = Mapping[cst.CSTNode, Optional[Scope]]
Item = Union[cst.FunctionDef, cst.ClassDef]


@dataclass
class RewriteResult:
    code: str
    diagnostics: List[Diagnostic] = field(default_factory=list)
    changed: bool = False
    filename: Optional[str] = None

    def raise_for_diagnostics(self) -> None:
        if self.diagnostics:
            raise CaptureSyntaxError(self.diagnostics, filename=self.filename)


@dataclass
class ClosureSite:
    """Directives gathered from one closure and the decorators it keeps."""

    directives: List[CaptureDirective] = field(default_factory=list)
    spans: List[Span] = field(default_factory=list)
    kept_decorators: List[cst.Decorator] = field(default_factory=list)


def _is_closure_name(expr: cst.BaseExpression) -> bool:
    if isinstance(expr, cst.Name):
        return expr.value == CLOSURE_ANNOTATION
    if isinstance(expr, cst.Attribute):
        return expr.attr.value == CLOSURE_ANNOTATION
    return False


def _is_item_name(expr: cst.BaseExpression) -> bool:
    if isinstance(expr, cst.Name):
        return expr.value == ITEM_ANNOTATION
    if isinstance(expr, cst.Attribute):
        return expr.attr.value == ITEM_ANNOTATION
    return False


def _is_item_annotation(decorator: cst.Decorator) -> bool:
    expr = decorator.decorator
    if isinstance(expr, cst.Call):
        return _is_item_name(expr.func)
    return _is_item_name(expr)


def _is_closure_annotation(decorator: cst.Decorator) -> bool:
    expr = decorator.decorator
    if isinstance(expr, cst.Call):
        return _is_closure_name(expr.func)
    return _is_closure_name(expr)


def find_item_annotation(
    decorators: Sequence[cst.Decorator],
) -> Optional[Tuple[int, cst.Decorator]]:
    for index, decorator in enumerate(decorators):
        if _is_item_annotation(decorator):
            return index, decorator
    return None


def _literal_text(literal: cst.BaseExpression) -> Optional[str]:
    if isinstance(literal, (cst.SimpleString, cst.ConcatenatedString)):
        value = literal.evaluated_value
        if isinstance(value, str):
            return value
    return None


def _parameter_names(params: cst.Parameters) -> set[str]:
    names = {
        param.name.value
        for param in (*params.posonly_params, *params.params, *params.kwonly_params)
    }
    if isinstance(params.star_arg, cst.Param):
        names.add(params.star_arg.name.value)
    if params.star_kwarg is not None:
        names.add(params.star_kwarg.name.value)
    return names


class _ScopeDeclarations(cst.CSTVisitor):
    """``nonlocal``/``global`` names declared directly in one function body."""

    def __init__(self) -> None:
        self.declared: dict[str, str] = {}

    def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
        return False

    def visit_ClassDef(self, node: cst.ClassDef) -> bool:
        return False

    def visit_Lambda(self, node: cst.Lambda) -> bool:
        return False

    def visit_Nonlocal(self, node: cst.Nonlocal) -> None:
        for item in node.names:
            self.declared.setdefault(item.name.value, "nonlocal")

    def visit_Global(self, node: cst.Global) -> None:
        for item in node.names:
            self.declared.setdefault(item.name.value, "global")


def _declared_names(body: cst.BaseSuite) -> dict[str, str]:
    visitor = _ScopeDeclarations()
    body.visit(visitor)
    return visitor.declared


def _function_bound(scope: Optional[Scope], name: str) -> bool:
    """Whether a function scope at or above ``scope`` binds ``name``.

    Class bodies are skipped, as Python skips them when resolving ``nonlocal``.
    """
    while scope is not None and not isinstance(scope, GlobalScope):
        if isinstance(scope, FunctionScope) and name in scope.assignments:
            return True
        if scope.parent is scope:
            break
        scope = scope.parent
    return False


class _YieldFinder(cst.CSTVisitor):
    """Detects a ``yield`` that belongs to the function body being visited."""

    def __init__(self) -> None:
        self.found = False

    def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
        return False

    def visit_ClassDef(self, node: cst.ClassDef) -> bool:
        return False

    def visit_Lambda(self, node: cst.Lambda) -> bool:
        return False

    def visit_Yield(self, node: cst.Yield) -> bool:
        self.found = True
        return False


def _is_generator(body: cst.CSTNode) -> bool:
    finder = _YieldFinder()
    body.visit(finder)
    return finder.found


class CaptureRewriter(cst.CSTTransformer):
    def __init__(
        self,
        positions: Positions,
        sink: DiagnosticSink,
        *,
        scopes: Optional[Scopes] = None,
        runtime_alias: str = RUNTIME_ALIAS,
        default_span: Span = UNKNOWN_SPAN,
    ) -> None:
        super().__init__()
        self.positions = positions
        self.scopes: Scopes = scopes if scopes is not None else {}
        self.sink = sink
        self.runtime_alias = runtime_alias
        self.default_span = default_span
        self.uses_runtime = False
        self.sites = 0

    def _span(self, node: cst.CSTNode) -> Span:
        code_range = self.positions.get(node)
        if code_range is None:
            return self.default_span
        return Span.from_range(code_range)

    def _literal_span(self, literal: cst.BaseExpression, start: int, end: int) -> Span:
        code_range = self.positions.get(literal)
        if code_range is None:
            return self.default_span
        if isinstance(literal, cst.SimpleString):
            raw = literal.raw_value
            if len(literal.quote) == 1 and "\\" not in raw and "\n" not in raw:
                line = code_range.start.line
                base = code_range.start.column + len(literal.prefix) + len(literal.quote)
                return Span(line, base + start, line, base + end)
        return Span.from_range(code_range)

    def _parse_annotation(self, call: cst.Call, site: ClosureSite) -> None:
        args = call.args
        if not args:
            return
        arg = args[0]
        text = _literal_text(arg.value)
        if len(args) != 1 or arg.keyword is not None or arg.star or text is None:
            self.sink.error(
                self._span(call),
                "closure attribute takes a single string of capture directives",
            )
            return
        try:
            directives = parse_capture_list(text)
        except DirectiveSyntaxError as exc:
            self.sink.error(self._literal_span(arg.value, exc.start, exc.end), exc.message)
            return
        for directive in directives:
            site.directives.append(directive)
            site.spans.append(self._literal_span(arg.value, directive.start, directive.end))

    def check_item_annotation(self, decorator: cst.Decorator) -> None:
        expr = decorator.decorator
        if isinstance(expr, cst.Call) and expr.args:
            self.sink.error(self._span(decorator), "with_closure attribute takes no arguments")

    def _collect_site(
        self,
        original: Sequence[cst.Decorator],
        updated: Sequence[cst.Decorator],
    ) -> ClosureSite:
        site = ClosureSite()
        for before, after in zip(original, updated):
            if _is_item_annotation(before):
                # A nested item is expanded together with its enclosing one.
                self.check_item_annotation(before)
                continue
            if not _is_closure_annotation(before):
                site.kept_decorators.append(after)
                continue
            expr = before.decorator
            if isinstance(expr, cst.Call):
                self._parse_annotation(expr, site)
            else:
                self.sink.error(self._span(before), "closure attribute must have arguments")
        return site

    def _validated(
        self,
        site: ClosureSite,
        parameters: set[str],
        declared: Mapping[str, str],
        *,
        generator: bool = False,
    ) -> list[CaptureDirective]:
        seen: set[str] = set()
        kept: list[CaptureDirective] = []
        for directive, span in zip(site.directives, site.spans):
            name = directive.name
            if name in parameters:
                self.sink.error(span, f"closure parameter `{name}` cannot also be captured")
                continue
            if name in declared:
                self.sink.error(
                    span,
                    f"closure must not declare `{declared[name]} {name}`; use `ref mut {name}` instead",
                )
                continue
            if name in seen:
                self.sink.error(span, f"`{name}` is captured more than once")
                continue
            if generator and directive.mode is CaptureMode.FAIL:
                self.sink.error(
                    span,
                    f"`fail` cannot return a fallback from a generator; capture `{name}` with `weak` or `panic` instead",
                )
                continue
            seen.add(name)
            kept.append(directive)
        return kept

    def leave_ClassDef(
        self, original_node: cst.ClassDef, updated_node: cst.ClassDef
    ) -> cst.ClassDef:
        kept: list[cst.Decorator] = []
        for before, after in zip(original_node.decorators, updated_node.decorators):
            if _is_item_annotation(before):
                self.check_item_annotation(before)
                continue
            if _is_closure_annotation(before):
                self.sink.error(
                    self._span(before),
                    "closure attribute must be applied to a lambda or function definition",
                )
                continue
            kept.append(after)
        if len(kept) == len(updated_node.decorators):
            return updated_node
        return updated_node.with_changes(decorators=kept)

    def leave_FunctionDef(
        self, original_node: cst.FunctionDef, updated_node: cst.FunctionDef
    ) -> Union[cst.BaseStatement, cst.FlattenSentinel[cst.BaseStatement]]:
        site = self._collect_site(original_node.decorators, updated_node.decorators)
        if len(site.kept_decorators) == len(updated_node.decorators):
            return updated_node
        stripped = updated_node.with_changes(decorators=site.kept_decorators)
        directives = self._validated(
            site,
            _parameter_names(updated_node.params),
            _declared_names(updated_node.body),
            generator=_is_generator(updated_node.body),
        )
        if not directives:
            return stripped
        enclosing = self.scopes.get(original_node.name)
        plan = plan_captures(
            directives,
            runtime_alias=self.runtime_alias,
            module_bound={
                d.name
                for d in directives
                if d.mode is CaptureMode.REF_MUT and not _function_bound(enclosing, d.name)
            },
        )
        self.sites += 1
        self.uses_runtime = self.uses_runtime or plan.uses_runtime
        logger.debug(
            "rewriting def %s at line %d: %s",
            updated_node.name.value,
            self._span(original_node).line,
            ", ".join(d.describe() for d in directives),
        )
        statements = rewrite_function(stripped, plan, runtime_alias=self.runtime_alias)
        if len(statements) == 1:
            return statements[0]
        return cst.FlattenSentinel(statements)

    def leave_Call(
        self, original_node: cst.Call, updated_node: cst.Call
    ) -> cst.BaseExpression:
        func = updated_node.func
        args = updated_node.args
        single = (
            len(args) == 1 and args[0].keyword is None and not args[0].star
        )
        if _is_closure_name(func):
            if single and isinstance(args[0].value, cst.Lambda):
                self.sink.error(self._span(original_node), "closure attribute must have arguments")
                return parenthesized(args[0].value)
            return updated_node
        if not (isinstance(func, cst.Call) and _is_closure_name(func.func)):
            return updated_node
        assert isinstance(original_node.func, cst.Call)
        site = ClosureSite()
        self._parse_annotation(original_node.func, site)
        if not (single and isinstance(args[0].value, cst.Lambda)):
            self.sink.error(
                self._span(original_node),
                "closure attribute must be applied to a lambda or function definition",
            )
            if single:
                return parenthesized(args[0].value)
            return updated_node
        function = args[0].value
        directives = self._validated(
            site,
            _parameter_names(function.params),
            {},
            generator=_is_generator(function.body),
        )
        if not directives:
            return parenthesized(function)
        plan = plan_captures(directives, runtime_alias=self.runtime_alias)
        self.sites += 1
        self.uses_runtime = self.uses_runtime or plan.uses_runtime
        logger.debug(
            "rewriting lambda at line %d: %s",
            self._span(original_node).line,
            ", ".join(d.describe() for d in directives),
        )
        return rewrite_lambda(function, plan, runtime_alias=self.runtime_alias)


def expand_item(
    item: Item,
    *,
    positions: Positions,
    sink: DiagnosticSink,
    scopes: Optional[Scopes] = None,
    runtime_alias: str = RUNTIME_ALIAS,
    strip_outer: bool = False,
) -> tuple[list[cst.BaseStatement], bool]:
    """Expand one ``@with_closure`` item.

    The item annotation is removed; with ``strip_outer`` the decorators above
    it go too, for callers that apply those themselves. Returns the item's
    replacement statements and whether they reference the runtime alias.
    """
    code_range = positions.get(item)
    default_span = Span.from_range(code_range) if code_range is not None else UNKNOWN_SPAN
    rewriter = CaptureRewriter(
        positions,
        sink,
        scopes=scopes,
        runtime_alias=runtime_alias,
        default_span=default_span,
    )
    decorators = list(item.decorators)
    found = find_item_annotation(decorators)
    if found is not None:
        index, decorator = found
        rewriter.check_item_annotation(decorator)
        if strip_outer:
            decorators = decorators[index + 1 :]
        else:
            decorators = decorators[:index] + decorators[index + 1 :]
    stripped = item.with_changes(decorators=decorators)
    result = cst.Module(body=[stripped]).visit(rewriter)
    logger.debug(
        "expanded %s: %d closure site(s) rewritten",
        item.name.value,
        rewriter.sites,
    )
    return list(result.body), rewriter.uses_runtime


class _ItemLocator(cst.CSTTransformer):
    def __init__(
        self,
        positions: Positions,
        scopes: Scopes,
        sink: DiagnosticSink,
        runtime_alias: str,
    ) -> None:
        super().__init__()
        self.positions = positions
        self.scopes = scopes
        self.sink = sink
        self.runtime_alias = runtime_alias
        self.uses_runtime = False
        self.items = 0

    def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
        return find_item_annotation(node.decorators) is None

    def visit_ClassDef(self, node: cst.ClassDef) -> bool:
        return find_item_annotation(node.decorators) is None

    def leave_FunctionDef(
        self, original_node: cst.FunctionDef, updated_node: cst.FunctionDef
    ) -> Union[cst.BaseStatement, cst.FlattenSentinel[cst.BaseStatement]]:
        if find_item_annotation(original_node.decorators) is None:
            return updated_node
        return self._expand(original_node)

    def leave_ClassDef(
        self, original_node: cst.ClassDef, updated_node: cst.ClassDef
    ) -> Union[cst.BaseStatement, cst.FlattenSentinel[cst.BaseStatement]]:
        if find_item_annotation(original_node.decorators) is None:
            return updated_node
        return self._expand(original_node)

    def _expand(self, item: Item) -> Union[cst.BaseStatement, cst.FlattenSentinel[cst.BaseStatement]]:
        self.items += 1
        mark = self.sink.mark()
        statements, uses_runtime = expand_item(
            item,
            positions=self.positions,
            sink=self.sink,
            scopes=self.scopes,
            runtime_alias=self.runtime_alias,
        )
        markers = [
            marker_statement(diagnostic, runtime_alias=self.runtime_alias)
            for diagnostic in self.sink.since(mark)
        ]
        self.uses_runtime = self.uses_runtime or uses_runtime or bool(markers)
        if markers:
            markers[0] = markers[0].with_changes(leading_lines=statements[0].leading_lines)
            statements[0] = statements[0].with_changes(leading_lines=[])
        combined = [*markers, *statements]
        if len(combined) == 1:
            return combined[0]
        return cst.FlattenSentinel(combined)


def _is_docstring(stmt: cst.CSTNode) -> bool:
    if not isinstance(stmt, cst.SimpleStatementLine) or not stmt.body:
        return False
    expr = stmt.body[0]
    return isinstance(expr, cst.Expr) and isinstance(expr.value, cst.SimpleString)


def _is_import(stmt: cst.CSTNode) -> bool:
    if not isinstance(stmt, cst.SimpleStatementLine):
        return False
    return any(isinstance(item, (cst.Import, cst.ImportFrom)) for item in stmt.body)


def _find_import_insert_index(body: Sequence[cst.CSTNode]) -> int:
    insert_idx = 0
    if body and _is_docstring(body[0]):
        insert_idx = 1
    while insert_idx < len(body) and _is_import(body[insert_idx]):
        insert_idx += 1
    return insert_idx


def _runtime_import_index(body: Sequence[cst.CSTNode], runtime_alias: str) -> Optional[int]:
    for index, stmt in enumerate(body):
        if not isinstance(stmt, cst.SimpleStatementLine):
            continue
        for item in stmt.body:
            if not isinstance(item, cst.Import):
                continue
            for alias in item.names:
                if not isinstance(alias.name, cst.Name) or alias.name.value != RUNTIME_MODULE:
                    continue
                if alias.asname is not None and isinstance(alias.asname.name, cst.Name):
                    if alias.asname.name.value == runtime_alias:
                        return index
    return None


def _ensure_runtime_import(
    module: cst.Module,
    runtime_alias: str,
    extra: Iterable[cst.BaseStatement] = (),
) -> cst.Module:
    body = list(module.body)
    index = _runtime_import_index(body, runtime_alias)
    if index is None:
        index = _find_import_insert_index(body)
        body.insert(
            index,
            cst.SimpleStatementLine(
                [
                    cst.Import(
                        names=[
                            cst.ImportAlias(
                                name=cst.Name(RUNTIME_MODULE),
                                asname=cst.AsName(name=cst.Name(runtime_alias)),
                            )
                        ]
                    )
                ]
            ),
        )
    body[index + 1 : index + 1] = list(extra)
    return module.with_changes(body=body)


def _resolve_metadata(module: cst.Module) -> tuple[Positions, Scopes]:
    wrapper = MetadataWrapper(module, unsafe_skip_copy=True)
    return wrapper.resolve(PositionProvider), wrapper.resolve(ScopeProvider)


def _parse_failure(exc: cst.ParserSyntaxError, filename: Optional[str], source: str) -> RewriteResult:
    span = Span(exc.raw_line, exc.raw_column, exc.raw_line, exc.raw_column)
    return RewriteResult(
        code=source,
        diagnostics=[Diagnostic(span=span, message=exc.message)],
        changed=False,
        filename=filename,
    )


def rewrite_source(
    source: str,
    *,
    filename: Optional[str] = None,
    config: Optional[RewriteConfig] = None,
) -> RewriteResult:
    """Rewrite every ``@with_closure`` item of a module.

    With ``require_marker`` disabled the whole module is treated as one item.
    Diagnostics are returned and also rendered as ``compile_error`` markers.
    """
    config = config or RewriteConfig()
    alias = config.runtime_alias
    try:
        module = cst.parse_module(source)
    except cst.ParserSyntaxError as exc:
        return _parse_failure(exc, filename, source)
    positions, scopes = _resolve_metadata(module)
    sink = DiagnosticSink()
    if config.require_marker:
        locator = _ItemLocator(positions, scopes, sink, alias)
        new_module = module.visit(locator)
        if locator.uses_runtime:
            new_module = _ensure_runtime_import(new_module, alias)
    else:
        rewriter = CaptureRewriter(positions, sink, scopes=scopes, runtime_alias=alias)
        new_module = module.visit(rewriter)
        markers = [marker_statement(d, runtime_alias=alias) for d in sink.diagnostics]
        if rewriter.uses_runtime or markers:
            new_module = _ensure_runtime_import(new_module, alias, markers)
    code = new_module.code
    if sink:
        logger.debug("%s: %d diagnostic(s)", filename or "<unknown>", len(sink))
    return RewriteResult(
        code=code,
        diagnostics=list(sink.diagnostics),
        changed=code != source,
        filename=filename,
    )


def expand_item_source(
    source: str,
    *,
    filename: Optional[str] = None,
    line_offset: int = 0,
    strip_outer: bool = True,
    runtime_alias: str = RUNTIME_ALIAS,
) -> RewriteResult:
    """Expand the single function or class definition in ``source``.

    Diagnostic lines are shifted by ``line_offset``; no markers or imports
    are emitted, callers report diagnostics themselves.
    """
    try:
        module = cst.parse_module(source)
    except cst.ParserSyntaxError as exc:
        result = _parse_failure(exc, filename, source)
        result.diagnostics = [
            Diagnostic(span=d.span.shifted(line_offset), message=d.message)
            for d in result.diagnostics
        ]
        return result
    items = [
        (index, stmt)
        for index, stmt in enumerate(module.body)
        if isinstance(stmt, (cst.FunctionDef, cst.ClassDef))
    ]
    sink = DiagnosticSink()
    if len(items) != 1:
        sink.error(
            Span(1 + line_offset, 0, 1 + line_offset, 0),
            "expected a single function or class definition",
        )
        return RewriteResult(code=source, diagnostics=sink.diagnostics, filename=filename)
    index, item = items[0]
    positions, scopes = _resolve_metadata(module)
    statements, _ = expand_item(
        item,
        positions=positions,
        sink=sink,
        scopes=scopes,
        runtime_alias=runtime_alias,
        strip_outer=strip_outer,
    )
    body = list(module.body)
    body[index : index + 1] = statements
    code = module.with_changes(body=body).code
    return RewriteResult(
        code=code,
        diagnostics=[
            Diagnostic(span=d.span.shifted(line_offset), message=d.message)
            for d in sink.diagnostics
        ],
        changed=code != source,
        filename=filename,
    )
