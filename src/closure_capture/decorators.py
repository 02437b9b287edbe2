"""Import-time expansion for ``@with_closure`` items."""

from __future__ import annotations

import inspect
import logging
import sys
import textwrap
from typing import Any, Callable, TypeVar

from closure_capture.codegen import RUNTIME_ALIAS
from closure_capture.exceptions import CaptureError
from closure_capture.rewriter import expand_item_source

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def _namespace(item: Any) -> dict[str, Any]:
    if inspect.isfunction(item):
        return item.__globals__
    module = sys.modules.get(item.__module__)
    if module is None:
        raise CaptureError(f"module {item.__module__!r} of {item.__qualname__!r} is not loaded")
    return module.__dict__


def with_closure(*args: Any, **kwargs: Any) -> Any:
    """Expand every ``closure`` annotation inside a function or class.

    The item is recompiled from its source and re-executed in its module's
    globals. Decorators listed below ``@with_closure`` run again on the
    expanded item; those above it receive the result as usual.
    """
    if kwargs or len(args) != 1 or not (inspect.isfunction(args[0]) or inspect.isclass(args[0])):
        raise CaptureError("with_closure attribute takes no arguments")
    item = args[0]
    if inspect.isfunction(item) and item.__closure__:
        raise CaptureError(
            f"with_closure cannot expand {item.__qualname__!r}: it closes over variables of an enclosing function"
        )
    try:
        lines, firstlineno = inspect.getsourcelines(item)
        filename = inspect.getsourcefile(item) or inspect.getfile(item)
    except (OSError, TypeError) as exc:
        raise CaptureError(f"source of {item.__qualname__!r} is unavailable") from exc
    result = expand_item_source(
        textwrap.dedent("".join(lines)),
        filename=filename,
        line_offset=firstlineno - 1,
        strip_outer=True,
        runtime_alias=RUNTIME_ALIAS,
    )
    result.raise_for_diagnostics()
    code = compile("\n" * (firstlineno - 1) + result.code, filename, "exec")
    namespace = _namespace(item)
    namespace.setdefault(RUNTIME_ALIAS, sys.modules[__package__])
    scope: dict[str, Any] = {}
    exec(code, namespace, scope)
    logger.debug("expanded %s from %s:%d", item.__qualname__, filename, firstlineno)
    return scope[item.__name__]


def closure(*args: Any, **kwargs: Any) -> Callable[[F], F]:
    """Annotation naming a closure's capture directives.

    It is consumed by expansion; reaching it at runtime means the enclosing
    item was never expanded.
    """
    raise CaptureError(
        "closure annotation evaluated at runtime; decorate the enclosing function or class with @with_closure"
    )
