"""Code generation for capture directives.

Python has no block expressions, so the block that holds the prelude
bindings is a factory: a function wrapping a ``def`` site, or a lambda
wrapping a lambda site. The factory's parameters are the prelude bindings and
its call arguments are evaluated once, in the enclosing scope, in directive
order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Container, List, Sequence

import libcst as cst

from closure_capture.directives import CaptureDirective, CaptureMode

RUNTIME_ALIAS = "_closure_capture"
FACTORY_PREFIX = "_capture_"
WEAK_PREFIX = "_capture_weak_"


@dataclass
class CapturePlan:
    parameters: List[str] = field(default_factory=list)
    arguments: List[cst.BaseExpression] = field(default_factory=list)
    nonlocal_names: List[str] = field(default_factory=list)
    global_names: List[str] = field(default_factory=list)
    upgrades: List[CaptureDirective] = field(default_factory=list)
    whole: List[str] = field(default_factory=list)

    @property
    def needs_factory(self) -> bool:
        return bool(self.parameters)

    @property
    def uses_runtime(self) -> bool:
        return bool(self.upgrades) or any(
            isinstance(argument, cst.Call) for argument in self.arguments
        )


def weak_name(name: str) -> str:
    return WEAK_PREFIX + name


def factory_name(name: str) -> str:
    return FACTORY_PREFIX + name


def runtime_call(runtime_alias: str, function: str, *args: cst.BaseExpression) -> cst.Call:
    return cst.Call(
        func=cst.Attribute(value=cst.Name(runtime_alias), attr=cst.Name(function)),
        args=[cst.Arg(arg) for arg in args],
    )


def parenthesized(expr: cst.BaseExpression) -> cst.BaseExpression:
    if expr.lpar:
        return expr
    return expr.with_changes(lpar=[cst.LeftParen()], rpar=[cst.RightParen()])


def plan_captures(
    directives: Sequence[CaptureDirective],
    *,
    runtime_alias: str = RUNTIME_ALIAS,
    module_bound: Container[str] = frozenset(),
) -> CapturePlan:
    """Bindings, declarations and checks for one site.

    ``module_bound`` names the ``ref mut`` captures that no enclosing function
    binds; they are declared ``global`` instead of ``nonlocal``.
    """
    plan = CapturePlan()
    for directive in directives:
        name = directive.name
        mode = directive.mode
        if mode.is_weak:
            plan.parameters.append(weak_name(name))
            plan.arguments.append(runtime_call(runtime_alias, "downgrade", cst.Name(name)))
            plan.upgrades.append(directive)
            continue
        plan.whole.append(name)
        if mode in (CaptureMode.CLONE, CaptureMode.CLONE_MUT):
            plan.parameters.append(name)
            plan.arguments.append(runtime_call(runtime_alias, "clone", cst.Name(name)))
        elif mode in (CaptureMode.MOVE, CaptureMode.MOVE_MUT):
            plan.parameters.append(name)
            plan.arguments.append(cst.Name(name))
        if mode is CaptureMode.REF_MUT and name in module_bound:
            plan.global_names.append(name)
        elif mode.is_mutable:
            plan.nonlocal_names.append(name)
    return plan


def _is_none(expr: cst.BaseExpression) -> cst.Comparison:
    return cst.Comparison(
        left=expr,
        comparisons=[cst.ComparisonTarget(operator=cst.Is(), comparator=cst.Name("None"))],
    )


def _name_tuple(names: Sequence[str]) -> cst.Tuple:
    return cst.Tuple(elements=[cst.Element(cst.Name(name)) for name in names])


def _upgrade_value(directive: CaptureDirective, runtime_alias: str) -> cst.Call:
    return runtime_call(runtime_alias, "upgrade", cst.Name(weak_name(directive.name)))


def _failure_statement(
    directive: CaptureDirective, runtime_alias: str
) -> cst.BaseSmallStatement:
    if directive.mode is CaptureMode.FAIL:
        return cst.Return(value=directive.fallback)
    if directive.mode is CaptureMode.PANIC:
        return cst.Expr(
            runtime_call(runtime_alias, "upgrade_failed", cst.SimpleString(repr(directive.name)))
        )
    return cst.Return()


def _failure_value(directive: CaptureDirective, runtime_alias: str) -> cst.BaseExpression:
    if directive.mode is CaptureMode.FAIL and directive.fallback is not None:
        return parenthesized(directive.fallback)
    if directive.mode is CaptureMode.PANIC:
        return runtime_call(runtime_alias, "upgrade_failed", cst.SimpleString(repr(directive.name)))
    return cst.Name("None")


def body_prologue(plan: CapturePlan, runtime_alias: str) -> list[cst.BaseStatement]:
    """Statements placed ahead of a ``def`` body.

    Declarations come first since Python rejects a name used before its
    ``nonlocal``/``global`` statement.
    """
    statements: list[cst.BaseStatement] = []
    if plan.nonlocal_names:
        statements.append(
            cst.SimpleStatementLine(
                [cst.Nonlocal(names=[cst.NameItem(cst.Name(n)) for n in plan.nonlocal_names])]
            )
        )
    if plan.global_names:
        statements.append(
            cst.SimpleStatementLine(
                [cst.Global(names=[cst.NameItem(cst.Name(n)) for n in plan.global_names])]
            )
        )
    for directive in plan.upgrades:
        statements.append(
            cst.SimpleStatementLine(
                [
                    cst.Assign(
                        targets=[cst.AssignTarget(cst.Name(directive.name))],
                        value=_upgrade_value(directive, runtime_alias),
                    )
                ]
            )
        )
        statements.append(
            cst.If(
                test=_is_none(cst.Name(directive.name)),
                body=cst.IndentedBlock(
                    body=[cst.SimpleStatementLine([_failure_statement(directive, runtime_alias)])]
                ),
            )
        )
    if plan.whole:
        # Never runs; naming the captures makes them closure cells.
        statements.append(
            cst.While(
                test=cst.Name("False"),
                body=cst.IndentedBlock(
                    body=[cst.SimpleStatementLine([cst.Expr(_name_tuple(plan.whole))])]
                ),
            )
        )
    return statements


def _is_docstring(stmt: cst.CSTNode) -> bool:
    if not isinstance(stmt, cst.SimpleStatementLine) or not stmt.body:
        return False
    expr = stmt.body[0]
    return isinstance(expr, cst.Expr) and isinstance(
        expr.value, (cst.SimpleString, cst.ConcatenatedString)
    )


def _indented_body(body: cst.BaseSuite) -> cst.IndentedBlock:
    if isinstance(body, cst.IndentedBlock):
        return body
    assert isinstance(body, cst.SimpleStatementSuite)
    return cst.IndentedBlock(
        body=[
            cst.SimpleStatementLine(
                body=body.body, trailing_whitespace=body.trailing_whitespace
            )
        ],
        header=cst.TrailingWhitespace(),
    )


def rewrite_function_body(
    function: cst.FunctionDef, plan: CapturePlan, runtime_alias: str
) -> cst.FunctionDef:
    prologue = body_prologue(plan, runtime_alias)
    if not prologue:
        return function
    block = _indented_body(function.body)
    statements = list(block.body)
    insert_at = 1 if statements and _is_docstring(statements[0]) else 0
    statements[insert_at:insert_at] = prologue
    return function.with_changes(body=block.with_changes(body=statements))


def _decorated(
    value: cst.BaseExpression, decorators: Sequence[cst.Decorator]
) -> cst.BaseExpression:
    for decorator in reversed(decorators):
        func = decorator.decorator
        if not isinstance(func, (cst.Name, cst.Attribute, cst.Call, cst.Subscript)):
            func = parenthesized(func)
        value = cst.Call(func=func, args=[cst.Arg(value)])
    return value


def rewrite_function(
    function: cst.FunctionDef,
    plan: CapturePlan,
    *,
    runtime_alias: str = RUNTIME_ALIAS,
) -> list[cst.BaseStatement]:
    """Rewrite a ``def`` site whose ``closure`` decorators are already gone.

    Without prelude arguments only the body changes. Otherwise the function
    moves into a factory and the remaining decorators are applied, in their
    original order, to the factory's result.
    """
    inner = rewrite_function_body(function, plan, runtime_alias)
    if not plan.needs_factory:
        return [inner]
    name = function.name.value
    factory = factory_name(name)
    inner = inner.with_changes(
        decorators=[],
        leading_lines=[],
        lines_after_decorators=[],
    )
    factory_def = cst.FunctionDef(
        name=cst.Name(factory),
        params=cst.Parameters(params=[cst.Param(cst.Name(p)) for p in plan.parameters]),
        body=cst.IndentedBlock(
            body=[inner, cst.SimpleStatementLine([cst.Return(value=cst.Name(name))])]
        ),
        leading_lines=function.leading_lines,
    )
    construction = cst.SimpleStatementLine(
        [
            cst.Assign(
                targets=[cst.AssignTarget(cst.Name(name))],
                value=_decorated(
                    cst.Call(func=cst.Name(factory), args=[cst.Arg(a) for a in plan.arguments]),
                    function.decorators,
                ),
            )
        ]
    )
    cleanup = cst.SimpleStatementLine([cst.Del(target=cst.Name(factory))])
    return [factory_def, construction, cleanup]


def rewrite_lambda(
    function: cst.Lambda,
    plan: CapturePlan,
    *,
    runtime_alias: str = RUNTIME_ALIAS,
) -> cst.BaseExpression:
    """Rewrite a lambda site into ``(lambda <prelude>: <lambda>)(<arguments>)``.

    Upgrades use assignment expressions, checked in directive order; the
    first dead reference selects the result.
    """
    body = function.body
    if plan.whole:
        body = cst.IfExp(
            test=cst.Name("True"),
            body=parenthesized(body),
            orelse=_name_tuple(plan.whole),
        )
    for directive in reversed(plan.upgrades):
        upgraded = cst.NamedExpr(
            target=cst.Name(directive.name),
            value=_upgrade_value(directive, runtime_alias),
            lpar=[cst.LeftParen()],
            rpar=[cst.RightParen()],
        )
        body = cst.IfExp(
            test=_is_none(upgraded),
            body=_failure_value(directive, runtime_alias),
            orelse=body,
        )
    inner = function.with_changes(body=body, lpar=[], rpar=[])
    if not plan.needs_factory:
        return parenthesized(inner)
    factory = cst.Lambda(
        params=cst.Parameters(params=[cst.Param(cst.Name(p)) for p in plan.parameters]),
        body=inner,
        lpar=[cst.LeftParen()],
        rpar=[cst.RightParen()],
    )
    return cst.Call(func=factory, args=[cst.Arg(a) for a in plan.arguments])
