from __future__ import annotations

import weakref

import pytest

from closure_capture import closure, with_closure
from closure_capture.exceptions import CaptureError, CaptureSyntaxError, UpgradeError


class Node:
    def __init__(self, name: str = "node") -> None:
        self.name = name
        self.callbacks = []


@with_closure
def make_greeter(node):
    @closure("weak node")
    def greet(suffix):
        return node.name + suffix

    return greet


@with_closure
def make_owner():
    owner = Node("owner")

    @closure("weak owner")
    def describe():
        return owner.name

    owner.callbacks.append(describe)
    return weakref.ref(owner), describe


@with_closure
def make_fallback(target):
    return closure("fail(-1) target")(lambda: len(target.name))


@with_closure
def make_panicking(target):
    @closure("panic target")
    def read():
        return target.name

    return read


@with_closure
def make_ordered(first, second):
    @closure("panic first, fail('second gone') second")
    def read():
        return first.name, second.name

    return read


@with_closure
def keep_alive(target):
    @closure("move target")
    def noop():
        return None

    return noop


@with_closure
def keep_alive_lambda(target):
    return closure("move target")(lambda: None)


@with_closure
def snapshot():
    items = [1]

    @closure("clone items")
    def read():
        return list(items)

    items.append(2)
    return read, items


@with_closure
def counter():
    count = 0

    @closure("clone mut count")
    def bump():
        count += 1
        return count

    return bump, lambda: count


@with_closure
def accumulate(values):
    total = 0

    @closure("ref mut total")
    def add(value):
        total += value

    for value in values:
        add(value)
    return total


@with_closure
def late_reference():
    label = "before"
    read = closure("ref label")(lambda: label)
    label = "after"
    return read


@with_closure
def nested(a, node):
    @closure("clone a")
    def outer():
        @closure("weak node")
        def inner():
            return node.name

        return a, inner

    return outer


@with_closure
class Registry:
    def __init__(self):
        self.handlers = []

    def register(self, owner):
        @closure("weak owner")
        def handler():
            """Return the owner's name."""
            return owner.name

        self.handlers.append(handler)
        return handler


def _tagged(func):
    func.tagged = True
    return func


@with_closure
@_tagged
def tagged_item():
    return closure("")(lambda: "tagged")()


GRAND_TOTAL = 0


@with_closure
def add_to_grand_total(values):
    @closure("ref mut GRAND_TOTAL")
    def add(value):
        GRAND_TOTAL += value

    for value in values:
        add(value)


EVENTS = []


def _traced(label):
    EVENTS.append(f"decorator {label}")

    def apply(func):
        EVENTS.append(f"apply {label}")
        return func

    return apply


class Tracked:
    def __copy__(self):
        EVENTS.append("clone")
        return Tracked()


@with_closure
def traced_site(value):
    @_traced("outer")
    @closure("clone value")
    @_traced("inner")
    def read():
        return value

    return read


def test_weak_round_trip() -> None:
    node = Node("ada")
    greet = make_greeter(node)
    assert greet("!") == "ada!"


def test_weak_capture_returns_none_after_release() -> None:
    node = Node("ada")
    greet = make_greeter(node)
    del node
    assert greet("!") is None


def test_weak_capture_does_not_form_a_cycle() -> None:
    owner_ref, describe = make_owner()
    assert owner_ref() is None
    assert describe() is None


def test_fail_returns_fallback() -> None:
    node = Node("abc")
    read = make_fallback(node)
    assert read() == 3
    del node
    assert read() == -1


def test_panic_raises_upgrade_error() -> None:
    node = Node("ada")
    read = make_panicking(node)
    assert read() == "ada"
    del node
    with pytest.raises(UpgradeError, match="Closure failed to upgrade weak reference"):
        read()


def test_first_failing_upgrade_wins() -> None:
    first = Node("first")
    second = Node("second")
    read = make_ordered(first, second)
    assert read() == ("first", "second")
    del second
    assert read() == "second gone"
    del first
    with pytest.raises(UpgradeError):
        read()


def test_unread_move_capture_keeps_value_alive() -> None:
    node = Node()
    ref = weakref.ref(node)
    noop = keep_alive(node)
    del node
    assert ref() is not None
    assert noop() is None
    del noop
    assert ref() is None


def test_unread_lambda_capture_keeps_value_alive() -> None:
    node = Node()
    ref = weakref.ref(node)
    noop = keep_alive_lambda(node)
    del node
    assert ref() is not None
    assert noop() is None
    del noop
    assert ref() is None


def test_clone_copies_at_definition() -> None:
    read, items = snapshot()
    assert items == [1, 2]
    assert read() == [1]


def test_clone_mut_keeps_state_across_calls() -> None:
    bump, outer_count = counter()
    assert bump() == 1
    assert bump() == 2
    assert outer_count() == 0


def test_ref_mut_writes_through() -> None:
    assert accumulate([2, 3, 5]) == 10


def test_ref_reads_late() -> None:
    assert late_reference()() == "after"


def test_nested_sites() -> None:
    node = Node("inner")
    outer = nested([1], node)
    a, inner = outer()
    assert a == [1]
    assert inner() == "inner"
    # outer itself still closes over node through the inner factory call.
    del node, outer
    assert inner() is None


def test_class_item() -> None:
    registry = Registry()
    owner = Node("ada")
    handler = registry.register(owner)
    assert handler() == "ada"
    assert handler.__doc__ == "Return the owner's name."
    del owner
    assert handler() is None


def test_decorators_below_marker_are_reapplied() -> None:
    assert tagged_item.tagged is True
    assert tagged_item() == "tagged"


def test_nested_ref_mut_writes_module_global() -> None:
    global GRAND_TOTAL
    GRAND_TOTAL = 0
    add_to_grand_total([1, 2, 4])
    assert GRAND_TOTAL == 7


def test_decorators_evaluate_before_captures_and_apply_bottom_up() -> None:
    EVENTS.clear()
    original = Tracked()
    read = traced_site(original)
    assert EVENTS == [
        "decorator outer",
        "decorator inner",
        "clone",
        "apply inner",
        "apply outer",
    ]
    assert isinstance(read(), Tracked)
    assert read() is not original


def test_expanded_function_keeps_module_globals() -> None:
    assert make_greeter.__module__ == __name__
    assert make_greeter.__globals__ is globals()


def test_closure_outside_item_raises() -> None:
    with pytest.raises(CaptureError, match="evaluated at runtime"):
        closure("clone a")


def test_with_closure_rejects_arguments() -> None:
    with pytest.raises(CaptureError, match="takes no arguments"):
        with_closure(strict=True)


def test_with_closure_rejects_enclosed_functions() -> None:
    value = 1

    def enclosed():
        return value

    with pytest.raises(CaptureError, match="closes over variables"):
        with_closure(enclosed)


def test_with_closure_reports_diagnostics(tmp_path, monkeypatch) -> None:
    module_path = tmp_path / "broken_item.py"
    module_path.write_text(
        "from closure_capture import closure, with_closure\n"
        "\n"
        "\n"
        "@with_closure\n"
        "def broken(a):\n"
        "    return closure(\"copy a, weak\")(lambda: a)\n",
        encoding="utf-8",
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    with pytest.raises(CaptureSyntaxError) as excinfo:
        __import__("broken_item")
    error = excinfo.value
    assert isinstance(error, SyntaxError)
    assert error.lineno == 6
    assert error.diagnostics[0].message.endswith("(2)")
    assert error.filename == str(module_path)
