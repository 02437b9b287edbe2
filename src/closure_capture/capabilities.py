"""Runtime contracts used by rewritten closures.

Generated code only ever calls :func:`clone`, :func:`downgrade`,
:func:`upgrade`, :func:`upgrade_failed` and :func:`compile_error` through the
runtime alias, so any handle family can take part by implementing the
``Downgradeable``/``Upgradeable`` protocols or by registering with the
single-dispatch functions below.
"""

from __future__ import annotations

import copy
import functools
import types
import weakref
from typing import Protocol, TypeVar, runtime_checkable

from closure_capture.diagnostics import Diagnostic, Span
from closure_capture.exceptions import CaptureSyntaxError, UpgradeError

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)

UPGRADE_FAILED_MESSAGE = "Closure failed to upgrade weak reference"


@runtime_checkable
class Upgradeable(Protocol[T_co]):
    """A weak handle that can try to recover its strong value."""

    def upgrade(self) -> T_co | None: ...


@runtime_checkable
class Downgradeable(Protocol[T_co]):
    """A value that knows how to produce its own weak handle.

    The handle must not keep the value alive by itself.
    """

    def downgrade(self) -> Upgradeable[T_co]: ...


@functools.singledispatch
def downgrade(value: object) -> object:
    """Return a weak handle for ``value``."""
    if isinstance(value, Downgradeable):
        return value.downgrade()
    try:
        return weakref.ref(value)
    except TypeError:
        raise TypeError(
            f"cannot downgrade {type(value).__name__!r}: the type does not support weak references"
        ) from None


@downgrade.register
def _downgrade_method(value: types.MethodType) -> object:
    # A plain ref to a bound method dies immediately; track self and func instead.
    return weakref.WeakMethod(value)


@functools.singledispatch
def upgrade(handle: object) -> object | None:
    """Return the value behind ``handle``, or ``None`` once it is gone."""
    if isinstance(handle, Upgradeable):
        return handle.upgrade()
    raise TypeError(f"cannot upgrade {type(handle).__name__!r}: not a weak handle")


@upgrade.register
def _upgrade_ref(handle: weakref.ref) -> object | None:
    return handle()


@functools.singledispatch
def clone(value: T) -> T:
    """Copy a captured value; registered types may copy more deeply."""
    return copy.copy(value)


def upgrade_failed(name: str | None = None) -> object:
    raise UpgradeError(UPGRADE_FAILED_MESSAGE, name=name)


def compile_error(message: str, *, line: int = 1, column: int = 0) -> None:
    span = Span(line=line, column=column, end_line=line, end_column=column)
    raise CaptureSyntaxError([Diagnostic(span=span, message=message)])
