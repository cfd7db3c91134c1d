"""Response assertions: structural ``expect`` shapes and ``assert`` expressions.

Structural matching checks that the expected shape is contained in the
response: only keys named by the expectation are compared, and a string of the
form ``/regex/`` matches any scalar whose text form it finds.

Assertion expressions are a small side-effect-free language::

    $res.code == 200 and $res.msg =~ /^hi/
    not ($session.uid in $res.banned) or $env.ALLOW == "1"

Operands are literals (numbers, quoted strings, ``true``/``false``/``null``,
``/regex/``) or references into ``$res``/``$response``, ``$session``,
``$options``, ``$args`` and ``$env``.  Missing references evaluate to null.
"""

from __future__ import annotations

import ast
import json
import re
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Tuple, Union

from .errors import CompilationError, ExpectationError
from .templating import VariableScope, lookup_path

_UNDEFINED = object()
_REGEX_LITERAL = re.compile(r"^/(.+)/$", re.S)


def _kind(value: Any) -> str:
    if value is _UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return "object"


def _stringify(value: Any) -> str:
    if value is _UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _dump(value: Any) -> str:
    if value is _UNDEFINED:
        return "undefined"
    try:
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        return repr(value)


def _mismatch(actual: Any, expected: Any, path: str) -> ExpectationError:
    where = f" at {path}" if path else ""
    return ExpectationError(f"{_dump(actual)} !== {_dump(expected)}{where}")


def match_expected(actual: Any, expected: Any, path: str = "") -> None:
    """Raise ExpectationError unless ``expected`` is contained in ``actual``."""
    if isinstance(expected, str) and _kind(actual) != "object":
        pattern = _REGEX_LITERAL.match(expected)
        if pattern and re.search(pattern.group(1), _stringify(actual)):
            return
    if _kind(actual) != _kind(expected):
        raise _mismatch(actual, expected, path)
    if actual == expected:
        return
    if isinstance(expected, Mapping):
        if not isinstance(actual, Mapping):
            raise _mismatch(actual, expected, path)
        for key, item in expected.items():
            child = f"{path}.{key}" if path else str(key)
            match_expected(actual.get(key, _UNDEFINED), item, child)
        return
    if isinstance(expected, list):
        if not isinstance(actual, list):
            raise _mismatch(actual, expected, path)
        for index, item in enumerate(expected):
            child = f"{path}[{index}]"
            match_expected(actual[index] if index < len(actual) else _UNDEFINED, item, child)
        return
    raise _mismatch(actual, expected, path)


# ----------------------------------------------------------------------
# Expression language
# ----------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<regex>/(?:[^/\\]|\\.)+/)
  | (?P<ref>\$[A-Za-z_]\w*(?:\.[A-Za-z0-9_\-]+)*)
  | (?P<op>==|!=|<=|>=|=~|!~|<|>)
  | (?P<paren>[()])
  | (?P<word>[A-Za-z_]\w*)
    """,
    re.X,
)

_KEYWORDS = {"and", "or", "not", "in", "true", "false", "null"}
_REFERENCE_ROOTS = {"res", "response", "session", "options", "opts", "args", "env"}


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    pos: int


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise CompilationError(f"unexpected character {source[pos]!r} at {pos} in {source!r}")
        kind = match.lastgroup or ""
        text = match.group()
        if kind == "word":
            if text not in _KEYWORDS:
                raise CompilationError(f"unknown word {text!r} at {pos} in {source!r}")
            kind = "keyword"
        if kind != "ws":
            tokens.append(Token(kind, text, pos))
        pos = match.end()
    return tokens


# AST nodes are tuples: ("lit", value) | ("ref", root, path) | ("regex", pattern)
# | ("not", node) | ("and"/"or", left, right) | ("cmp", op, left, right)
Node = Tuple[Any, ...]


class _Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0

    def parse(self) -> Node:
        if not self.tokens:
            raise CompilationError("empty assertion expression")
        node = self._or()
        if self.index != len(self.tokens):
            token = self.tokens[self.index]
            raise CompilationError(f"unexpected {token.text!r} at {token.pos} in {self.source!r}")
        return node

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _accept(self, text: str) -> bool:
        token = self._peek()
        if token is not None and token.text == text and token.kind in ("keyword", "op", "paren"):
            self.index += 1
            return True
        return False

    def _or(self) -> Node:
        node = self._and()
        while self._accept("or"):
            node = ("or", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._not()
        while self._accept("and"):
            node = ("and", node, self._not())
        return node

    def _not(self) -> Node:
        if self._accept("not"):
            return ("not", self._not())
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._operand()
        token = self._peek()
        if token is not None and (token.kind == "op" or (token.kind == "keyword" and token.text == "in")):
            self.index += 1
            right = self._operand()
            if token.text in ("=~", "!~") and right[0] != "regex":
                raise CompilationError(f"{token.text} needs a /regex/ on its right in {self.source!r}")
            return ("cmp", token.text, left, right)
        return left

    def _operand(self) -> Node:
        token = self._peek()
        if token is None:
            raise CompilationError(f"unexpected end of expression {self.source!r}")
        self.index += 1
        if token.kind == "paren" and token.text == "(":
            node = self._or()
            if not self._accept(")"):
                raise CompilationError(f"missing ')' in {self.source!r}")
            return node
        if token.kind in ("number", "string"):
            try:
                return ("lit", ast.literal_eval(token.text))
            except (ValueError, SyntaxError) as exc:
                raise CompilationError(f"bad literal {token.text} in {self.source!r}") from exc
        if token.kind == "regex":
            try:
                return ("regex", re.compile(token.text[1:-1]))
            except re.error as exc:
                raise CompilationError(f"bad regex {token.text}: {exc}") from exc
        if token.kind == "ref":
            root, *path = token.text[1:].split(".")
            if root not in _REFERENCE_ROOTS:
                raise CompilationError(f"unknown reference root ${root} in {self.source!r}")
            return ("ref", root, tuple(path))
        if token.kind == "keyword" and token.text in ("true", "false", "null"):
            return ("lit", {"true": True, "false": False, "null": None}[token.text])
        raise CompilationError(f"unexpected {token.text!r} at {token.pos} in {self.source!r}")


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "==":
        return left == right and _kind(left) == _kind(right)
    if op == "!=":
        return not (left == right and _kind(left) == _kind(right))
    if op == "=~":
        return right.search(_stringify(left)) is not None
    if op == "!~":
        return right.search(_stringify(left)) is None
    try:
        if op == "in":
            if isinstance(right, str):
                return isinstance(left, str) and left in right
            if isinstance(right, (list, Mapping)):
                return left in right
            return False
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
    except TypeError:
        return False
    raise ValueError(f"unknown operator {op}")


class Assertion:
    """A compiled assertion expression."""

    def __init__(self, source: str) -> None:
        if not isinstance(source, str):
            raise CompilationError("assert expressions must be strings")
        self.source = source
        self._tree = _Parser(source).parse()

    def evaluate(self, response: Any, scope: VariableScope) -> Any:
        return self._eval(self._tree, response, scope)

    def check(self, response: Any, scope: VariableScope) -> None:
        if not self.evaluate(response, scope):
            raise ExpectationError(f"assertion failed: {self.source}")

    def _eval(self, node: Node, response: Any, scope: VariableScope) -> Any:
        tag = node[0]
        if tag == "lit":
            return node[1]
        if tag == "regex":
            return node[1]
        if tag == "ref":
            return self._reference(node[1], node[2], response, scope)
        if tag == "not":
            return not self._eval(node[1], response, scope)
        if tag == "and":
            return bool(self._eval(node[1], response, scope)) and bool(self._eval(node[2], response, scope))
        if tag == "or":
            return bool(self._eval(node[1], response, scope)) or bool(self._eval(node[2], response, scope))
        if tag == "cmp":
            left = self._eval(node[2], response, scope)
            right = self._eval(node[3], response, scope)
            return _compare(node[1], left, right)
        raise ValueError(f"unknown node {tag}")

    @staticmethod
    def _reference(root: str, path: Tuple[str, ...], response: Any, scope: VariableScope) -> Any:
        if root in ("res", "response"):
            return lookup_path(response, path, None) if path else response
        if not path:
            return None
        return scope.lookup(f"${root}." + ".".join(path), None)

    def __repr__(self) -> str:
        return f"Assertion({self.source!r})"


def compile_assertions(value: Union[str, List[str], None]) -> Tuple[Assertion, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (Assertion(value),)
    if isinstance(value, list):
        return tuple(Assertion(item) for item in value)
    raise CompilationError("assert must be a string or a list of strings")


__all__ = [
    "Assertion",
    "compile_assertions",
    "match_expected",
    "tokenize",
]
