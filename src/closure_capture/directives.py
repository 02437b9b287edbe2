"""Capture directive grammar.

A capture list is the string argument of a ``closure`` annotation::

    list      := [directive ("," directive)*]
    directive := mode ["mut"] ident
               | "fail" "(" expr ")" ident
               | "panic" ident

``clone``, ``ref`` and ``move`` accept ``mut``; ``weak``, ``fail`` and
``panic`` capture through a weak reference. The empty string is an empty
list; a trailing comma is rejected.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
import io
import keyword
import tokenize
from typing import NoReturn, Sequence

import libcst as cst

from closure_capture.exceptions import DirectiveSyntaxError


class CaptureMode(StrEnum):
    CLONE = "clone"
    CLONE_MUT = "clone mut"
    REF = "ref"
    REF_MUT = "ref mut"
    MOVE = "move"
    MOVE_MUT = "move mut"
    WEAK = "weak"
    FAIL = "fail"
    PANIC = "panic"

    @property
    def is_weak(self) -> bool:
        return self in _WEAK_MODES

    @property
    def is_mutable(self) -> bool:
        return self in _MUTABLE_MODES


_WEAK_MODES = frozenset({CaptureMode.WEAK, CaptureMode.FAIL, CaptureMode.PANIC})
_MUTABLE_MODES = frozenset({CaptureMode.CLONE_MUT, CaptureMode.REF_MUT, CaptureMode.MOVE_MUT})

# The (1) and (2) suffixes tell apart a bad leading token from a bad composed mode.
MODE_EXPECTED = "expected clone, clone mut, ref, ref mut, move, move mut, weak, fail, or panic"

_SKIPPED_TOKENS = frozenset(
    {
        tokenize.NL,
        tokenize.NEWLINE,
        tokenize.COMMENT,
        tokenize.INDENT,
        tokenize.DEDENT,
        tokenize.ENDMARKER,
    }
)
_OPENING = frozenset({"(", "[", "{"})
_CLOSING = frozenset({")", "]", "}"})


@dataclass(frozen=True)
class CaptureDirective:
    mode: CaptureMode
    name: str
    fallback: cst.BaseExpression | None = None
    start: int = 0
    end: int = 0

    @property
    def fallback_source(self) -> str | None:
        if self.fallback is None:
            return None
        return cst.Module(body=[]).code_for_node(self.fallback)

    def describe(self) -> str:
        if self.mode is CaptureMode.FAIL:
            return f"fail({self.fallback_source}) {self.name}"
        return f"{self.mode.value} {self.name}"


CaptureList = list[CaptureDirective]


@dataclass(frozen=True)
class _Token:
    kind: int
    text: str
    start: int
    end: int


def _tokenize(text: str) -> list[_Token]:
    # Inside brackets the tokenizer ignores newlines and indentation.
    wrapped = "(" + text + ")"
    line_starts = [0]
    for index, char in enumerate(wrapped):
        if char == "\n":
            line_starts.append(index + 1)
    tokens: list[_Token] = []
    try:
        for token in tokenize.generate_tokens(io.StringIO(wrapped).readline):
            if token.type in _SKIPPED_TOKENS:
                continue
            start = line_starts[token.start[0] - 1] + token.start[1] - 1
            end = line_starts[token.end[0] - 1] + token.end[1] - 1
            tokens.append(_Token(kind=token.type, text=token.string, start=start, end=end))
    except (tokenize.TokenError, SyntaxError) as exc:
        raise DirectiveSyntaxError(
            "unbalanced brackets in capture list", 0, len(text)
        ) from exc
    return tokens[1:-1]


def _parse_expression(source: str) -> cst.BaseExpression:
    stripped = source.strip()
    if "\n" in stripped:
        stripped = f"({stripped})"
    return cst.parse_expression(stripped)


class _DirectiveParser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    def _peek(self) -> _Token | None:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def _advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _error(self, message: str, token: _Token | None) -> DirectiveSyntaxError:
        if token is None:
            return DirectiveSyntaxError(message, len(self.text), len(self.text))
        return DirectiveSyntaxError(message, token.start, token.end)

    def parse_list(self) -> CaptureList:
        directives: CaptureList = []
        if self._peek() is None:
            return directives
        while True:
            directives.append(self._parse_directive())
            token = self._peek()
            if token is None:
                return directives
            if token.text != ",":
                raise self._error("expected `,`", token)
            self._advance()

    def _parse_directive(self) -> CaptureDirective:
        first = self._peek()
        if first is None or first.kind != tokenize.NAME:
            raise self._error(f"{MODE_EXPECTED} (1)", first)
        self._advance()
        mode_text = first.text
        fallback = None
        if mode_text == "fail":
            fallback = self._parse_fallback()
        token = self._peek()
        if token is not None and token.kind == tokenize.NAME and token.text == "mut":
            self._advance()
            mode_text += " mut"
        try:
            mode = CaptureMode(mode_text)
        except ValueError:
            raise DirectiveSyntaxError(f"{MODE_EXPECTED} (2)", first.start, first.end) from None
        name = self._peek()
        if name is None or name.kind != tokenize.NAME:
            raise self._error("expected identifier", name)
        if keyword.iskeyword(name.text):
            raise self._error(f"expected identifier, found keyword `{name.text}`", name)
        self._advance()
        return CaptureDirective(
            mode=mode,
            name=name.text,
            fallback=fallback,
            start=first.start,
            end=name.end,
        )

    def _parse_fallback(self) -> cst.BaseExpression:
        opening = self._peek()
        if opening is None or opening.text != "(":
            raise self._error("expected parentheses", opening)
        self._advance()
        depth = 1
        inner: list[_Token] = []
        while True:
            token = self._peek()
            if token is None:
                raise self._error("expected `)`", None)
            self._advance()
            if token.kind == tokenize.OP and token.text in _OPENING:
                depth += 1
            elif token.kind == tokenize.OP and token.text in _CLOSING:
                depth -= 1
                if depth == 0:
                    closing = token
                    break
            inner.append(token)
        if not inner:
            raise DirectiveSyntaxError("expected an expression", opening.start, closing.end)
        source = self.text[opening.end : closing.start]
        try:
            expr = _parse_expression(source)
        except cst.ParserSyntaxError as exc:
            for cut in range(len(inner) - 1, 0, -1):
                prefix = self.text[opening.end : inner[cut].start]
                try:
                    _parse_expression(prefix)
                except cst.ParserSyntaxError:
                    continue
                raise DirectiveSyntaxError(
                    "expected end of expression", inner[cut].start, inner[-1].end
                ) from None
            raise DirectiveSyntaxError(exc.message, inner[0].start, inner[-1].end) from None
        wrapped = "\n" in source.strip()
        if isinstance(expr, cst.Tuple) and len(expr.lpar) <= int(wrapped):
            # A bare tuple: the fallback ends where its first element does.
            self._reject_tuple(opening, inner)
        return expr

    def _reject_tuple(self, opening: _Token, inner: Sequence[_Token]) -> NoReturn:
        depth = 0
        for token in inner:
            if token.kind != tokenize.OP:
                continue
            if token.text in _OPENING:
                depth += 1
            elif token.text in _CLOSING:
                depth -= 1
            elif token.text == "," and depth == 0:
                try:
                    _parse_expression(self.text[opening.end : token.start])
                except cst.ParserSyntaxError:
                    continue
                raise DirectiveSyntaxError(
                    "expected end of expression", token.start, inner[-1].end
                )
        raise DirectiveSyntaxError(
            "expected end of expression", inner[0].start, inner[-1].end
        )


def parse_capture_list(text: str) -> CaptureList:
    """Parse ``text`` into an ordered list of directives.

    Raises :class:`DirectiveSyntaxError` carrying offsets into ``text``.
    """
    return _DirectiveParser(text).parse_list()


def format_capture_list(directives: CaptureList) -> str:
    return ", ".join(directive.describe() for directive in directives)
