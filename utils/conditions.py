"""
Shared condition evaluator and dot-path helpers.

Condition expressions are written against the actor's data bag, bound under
the root name ``data``:

    data.offer.price > 0 && data.offer.title != ''
    not data.human.email
    data.items[0].qty >= 2 or data.vip === true

Expressions are tokenized and evaluated by a small recursive-descent parser;
no Python code is ever executed. Any failure evaluates to False.
"""
from __future__ import annotations

import copy
import math
import operator as op
import re
from typing import Any

import structlog

logger = structlog.get_logger()


class ConditionError(Exception):
    """Raised internally when an expression cannot be parsed or evaluated."""


# ── Dot-path helpers ──────────────────────────────────────────

def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'order.status'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def set_nested_value(data: dict, field: str, value: Any) -> dict:
    """
    Set a value in a nested dict using dot notation, creating intermediate
    dicts as needed. Non-dict intermediates are replaced.
    """
    parts = field.split(".")
    current = data
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = copy.deepcopy(value)
    return data


# ── Tokenizer ─────────────────────────────────────────────────

_TOKEN_RE = re.compile(r"""
    \s*(?:
        (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||<|>|!|\(|\)|\[|\]|\.)
      | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    )""", re.VERBOSE)

_KEYWORD_LITERALS = {
    "true": True, "True": True,
    "false": False, "False": False,
    "null": None, "None": None,
}

_WORD_OPERATORS = {"and": "&&", "or": "||", "not": "!"}


def _tokenize(expr: str) -> list[tuple[str, Any]]:
    tokens: list[tuple[str, Any]] = []
    pos = 0
    expr = expr.rstrip()
    while pos < len(expr):
        match = _TOKEN_RE.match(expr, pos)
        if not match or match.end() == pos:
            raise ConditionError(f"Unexpected character at {pos}: {expr[pos:pos + 10]!r}")
        pos = match.end()
        kind = match.lastgroup
        text = match.group(kind)
        if kind == "number":
            tokens.append(("literal", float(text) if "." in text else int(text)))
        elif kind == "string":
            body = text[1:-1]
            tokens.append(("literal", re.sub(r"\\(.)", r"\1", body)))
        elif kind == "ident":
            if text in _KEYWORD_LITERALS:
                tokens.append(("literal", _KEYWORD_LITERALS[text]))
            elif text in _WORD_OPERATORS:
                tokens.append(("op", _WORD_OPERATORS[text]))
            else:
                tokens.append(("ident", text))
        else:
            tokens.append(("op", text))
    return tokens


# ── Comparison semantics ──────────────────────────────────────

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    """Numeric strings are coerced when compared against a number."""
    if _is_number(left) and isinstance(right, str):
        try:
            right = float(right)
        except ValueError:
            pass
    elif _is_number(right) and isinstance(left, str):
        try:
            left = float(left)
        except ValueError:
            pass
    return left, right


def _strict_eq(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    return type(left) is type(right) and left == right


def _ordered(fn):
    def compare(left: Any, right: Any) -> bool:
        left, right = _coerce_pair(left, right)
        if left is None or right is None:
            return False
        try:
            return fn(left, right)
        except TypeError as exc:
            raise ConditionError(f"Cannot compare {left!r} and {right!r}") from exc
    return compare


COMPARATORS: dict[str, Any] = {
    "==": lambda a, b: op.eq(*_coerce_pair(a, b)),
    "!=": lambda a, b: op.ne(*_coerce_pair(a, b)),
    "===": _strict_eq,
    "!==": lambda a, b: not _strict_eq(a, b),
    "<": _ordered(op.lt),
    "<=": _ordered(op.le),
    ">": _ordered(op.gt),
    ">=": _ordered(op.ge),
}


def _truthy(value: Any) -> bool:
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


# ── Parser / evaluator ────────────────────────────────────────

class _Evaluator:
    """Evaluates while parsing; one instance per expression."""

    def __init__(self, tokens: list[tuple[str, Any]], scope: dict[str, Any]):
        self.tokens = tokens
        self.pos = 0
        self.scope = scope
        self.skipping = 0              # >0 while parsing a short-circuited operand

    def peek(self) -> tuple[str, Any] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> tuple[str, Any]:
        token = self.peek()
        if token is None:
            raise ConditionError("Unexpected end of expression")
        self.pos += 1
        return token

    def accept(self, *ops: str) -> str | None:
        token = self.peek()
        if token and token[0] == "op" and token[1] in ops:
            self.pos += 1
            return token[1]
        return None

    def expect(self, symbol: str) -> None:
        if not self.accept(symbol):
            raise ConditionError(f"Expected {symbol!r}")

    def skip(self, parse) -> None:
        self.skipping += 1
        try:
            parse()
        finally:
            self.skipping -= 1

    def run(self) -> Any:
        value = self.parse_or()
        if self.peek() is not None:
            raise ConditionError(f"Unexpected token {self.peek()[1]!r}")
        return value

    def parse_or(self) -> Any:
        value = self.parse_and()
        while self.accept("||"):
            if _truthy(value):
                self.skip(self.parse_and)
            else:
                value = self.parse_and()
        return value

    def parse_and(self) -> Any:
        value = self.parse_not()
        while self.accept("&&"):
            if _truthy(value):
                value = self.parse_not()
            else:
                self.skip(self.parse_not)
        return value

    def parse_not(self) -> Any:
        if self.accept("!"):
            return not _truthy(self.parse_not())
        return self.parse_compare()

    def parse_compare(self) -> Any:
        left = self.parse_operand()
        symbol = self.accept(*COMPARATORS)
        if symbol is None:
            return left
        right = self.parse_operand()
        if self.skipping:
            return None
        return COMPARATORS[symbol](left, right)

    def parse_operand(self) -> Any:
        if self.accept("("):
            value = self.parse_or()
            self.expect(")")
            return value
        kind, value = self.take()
        if kind == "literal":
            return value
        if kind == "ident":
            return self.parse_path(value)
        raise ConditionError(f"Unexpected token {value!r}")

    def parse_path(self, root: str) -> Any:
        if root not in self.scope:
            raise ConditionError(f"Unknown name {root!r}")
        current = self.scope[root]
        while True:
            if self.accept("."):
                kind, key = self.take()
                if kind != "ident":
                    raise ConditionError(f"Expected attribute name, got {key!r}")
            elif self.accept("["):
                kind, key = self.take()
                if kind != "literal" or isinstance(key, bool) or key is None:
                    raise ConditionError(f"Invalid index {key!r}")
                self.expect("]")
            else:
                return current
            current = None if self.skipping else self._step(current, key)

    @staticmethod
    def _step(container: Any, key: Any) -> Any:
        # A missing leaf is None; walking through None or a scalar is an error
        if isinstance(container, dict):
            return container.get(key if isinstance(key, str) else str(key))
        if isinstance(container, (list, tuple)) and isinstance(key, int):
            return container[key] if -len(container) <= key < len(container) else None
        raise ConditionError(f"Cannot read {key!r} of {type(container).__name__}")


def evaluate_expression(expr: str, data: dict[str, Any], root: str = "data") -> bool:
    """
    Evaluate a condition expression against the data bag.
    Never raises: malformed or failing expressions evaluate to False.
    """
    try:
        if not isinstance(expr, str) or not expr.strip():
            raise ConditionError("Empty expression")
        result = _Evaluator(_tokenize(expr), {root: data}).run()
        return _truthy(result)
    except (ConditionError, RecursionError, TypeError, ValueError) as exc:
        logger.warning("condition_evaluation_failed", expression=expr, error=str(exc))
        return False
