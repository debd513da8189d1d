"""
JSONPath leaf expressions for metadata filters.

Parses the subset of the SQL/JSON path language that SQLite's JSON1 functions
can evaluate, and renders it as a SQL test against a JSON column:

    $.tag                                 path exists
    $.user."display name"                 quoted member names
    $.entities[0].label                   array index
    $.status ? (@ == "open")              comparison against a literal
    $.entities[*] ? (@.label == "DATE")   any array element matches
    $.scores[*] ? (@ >= 0.5)

Comparisons are type-strict: strings only match strings, numbers only match
numbers, and true/false/null only support == and !=. Single-quoted strings are
accepted as well as double-quoted ones.
"""

import json
import re
from dataclasses import dataclass
from typing import Optional, Union

from memquery.errors import MalformedFilterError

# Two-character operators first so "<=" is not read as "<"
COMPARISON_OPS = ("==", "!=", "<=", ">=", "<", ">")

_SQL_OPS = {"==": "=", "!=": "!=", "<": "<", "<=": "<=", ">": ">", ">=": ">="}
_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_INDEX_RE = re.compile(r"\[([0-9]+)\]")
_NUMBER_RE = re.compile(r"-?(?:0|[1-9][0-9]*)(?:\.[0-9]+)?(?:[eE][+-]?[0-9]+)?")
_KEYWORDS = {"true": True, "false": False, "null": None}

Literal = Union[str, int, float, bool, None]


@dataclass(frozen=True)
class Comparison:
    """``@<relative> <op> <value>`` inside a ``? (...)`` filter."""

    relative: str  # path fragment below the current item, "" for the item itself
    op: str
    value: Literal


@dataclass(frozen=True)
class JsonPath:
    """
    A parsed leaf expression.

    ``path`` is the SQLite path up to the ``[*]`` wildcard (or the whole path
    when there is none). ``element`` is the fragment after the wildcard, None
    when the expression has no wildcard.
    """

    expression: str
    path: str
    element: Optional[str] = None
    condition: Optional[Comparison] = None


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def error(self, message: str) -> MalformedFilterError:
        return MalformedFilterError(
            f"invalid jsonpath {self.text!r} at offset {self.pos}: {message}"
        )

    def skip_ws(self):
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def peek(self, token: str) -> bool:
        return self.text.startswith(token, self.pos)

    def expect(self, token: str):
        self.skip_ws()
        if not self.peek(token):
            raise self.error(f"expected {token!r}")
        self.pos += len(token)

    def parse(self) -> JsonPath:
        self.expect("$")
        prefix, element = self.segments(allow_wildcard=True)

        condition = None
        self.skip_ws()
        if self.peek("?"):
            self.pos += 1
            self.expect("(")
            self.expect("@")
            relative, _ = self.segments(allow_wildcard=False)
            op = self.operator()
            value = self.literal()
            self.expect(")")
            if (value is None or isinstance(value, bool)) and op not in ("==", "!="):
                raise self.error(f"operator {op!r} is not defined for {json.dumps(value)}")
            condition = Comparison(relative=relative, op=op, value=value)

        self.skip_ws()
        if self.pos != len(self.text):
            raise self.error("unexpected trailing input")

        return JsonPath(
            expression=self.text,
            path="$" + prefix,
            element=element,
            condition=condition,
        )

    def segments(self, allow_wildcard: bool) -> tuple[str, Optional[str]]:
        """Read member/index segments. Returns (prefix, element-after-wildcard)."""
        parts: list[str] = []
        prefix = None
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch == ".":
                self.pos += 1
                parts.append(self.member())
            elif self.peek("[*]"):
                if not allow_wildcard:
                    raise self.error("[*] is not allowed inside a filter")
                if prefix is not None:
                    raise self.error("only one [*] wildcard is supported")
                self.pos += 3
                prefix = "".join(parts)
                parts = []
            elif ch == "[":
                match = _INDEX_RE.match(self.text, self.pos)
                if not match:
                    raise self.error("expected an array index or [*]")
                self.pos = match.end()
                parts.append(f"[{match.group(1)}]")
            else:
                break

        rest = "".join(parts)
        if prefix is None:
            return rest, None
        return prefix, rest

    def member(self) -> str:
        if self.peek('"') or self.peek("'"):
            name = self.string()
        else:
            match = _NAME_RE.match(self.text, self.pos)
            if not match:
                raise self.error("expected a member name")
            self.pos = match.end()
            name = match.group(0)

        if _NAME_RE.fullmatch(name):
            return f".{name}"
        if '"' in name:
            raise self.error('member names cannot contain a double quote')
        return f'."{name}"'

    def operator(self) -> str:
        self.skip_ws()
        for op in COMPARISON_OPS:
            if self.peek(op):
                self.pos += len(op)
                return op
        raise self.error(f"expected one of {', '.join(COMPARISON_OPS)}")

    def literal(self) -> Literal:
        self.skip_ws()
        if self.peek('"') or self.peek("'"):
            return self.string()

        for word, value in _KEYWORDS.items():
            end = self.pos + len(word)
            if self.peek(word) and not _NAME_RE.match(self.text, end):
                self.pos = end
                return value

        match = _NUMBER_RE.match(self.text, self.pos)
        if not match:
            raise self.error("expected a string, number, true, false or null")
        self.pos = match.end()
        token = match.group(0)
        if any(c in token for c in ".eE"):
            return float(token)
        return int(token)

    def string(self) -> str:
        quote = self.text[self.pos]
        start = self.pos + 1
        i = start
        while i < len(self.text) and self.text[i] != quote:
            i += 2 if self.text[i] == "\\" else 1
        if i >= len(self.text):
            raise self.error("unterminated string")

        raw = self.text[start:i]
        if quote == "'":
            raw = raw.replace("\\'", "'").replace('"', '\\"')
        try:
            value = json.loads(f'"{raw}"')
        except json.JSONDecodeError as exc:
            raise self.error(f"bad string literal: {exc.msg}") from exc
        self.pos = i + 1
        return value


def parse_jsonpath(expression: str) -> JsonPath:
    """Parse a leaf expression. Raises MalformedFilterError on bad syntax."""
    return _Parser(expression.strip()).parse()




# A SQLite path expression and its parameters, e.g. ("?", ("$.tag",)) or
# ("je0.fullkey || ?", (".label",))
PathExpr = tuple[str, tuple]


def _join(path: PathExpr, suffix: str) -> PathExpr:
    sql, params = path
    if not suffix:
        return path
    if sql == "?":
        return sql, (params[0] + suffix,)
    return f"{sql} || ?", params + (suffix,)


def _each_item(column: str, path: PathExpr, depth: int, test) -> tuple[str, tuple]:
    """
    True when ``test`` holds for any item at ``path``: the elements when the
    value is an array, the value itself otherwise (lax-mode unwrapping).
    """
    sql, params = path
    alias = f"je{depth}"
    element_sql, element_params = test((f"{alias}.fullkey", ()))
    self_sql, self_params = test(path)
    return (
        f"((json_type({column}, {sql}) = 'array' AND EXISTS ("
        f"SELECT 1 FROM json_each({column}, {sql}) AS {alias} WHERE {element_sql}))"
        f" OR (json_type({column}, {sql}) != 'array' AND {self_sql}))",
        params + params + element_params + params + self_params,
    )


def _compare_sql(column: str, path: PathExpr, condition: Comparison) -> tuple[str, tuple]:
    sql, params = path
    type_expr = f"json_type({column}, {sql})"

    value = condition.value
    if value is None:
        if condition.op == "==":
            return f"{type_expr} = 'null'", params
        return f"{type_expr} NOT IN ('null', 'array', 'object')", params
    if isinstance(value, bool):
        wanted = value if condition.op == "==" else not value
        return f"{type_expr} = ?", params + ("true" if wanted else "false",)

    if isinstance(value, str):
        type_sql = f"{type_expr} = 'text'"
    else:
        type_sql = f"{type_expr} IN ('integer', 'real')"
    value_sql = f"json_extract({column}, {sql}) {_SQL_OPS[condition.op]} ?"
    return f"{type_sql} AND {value_sql}", params + params + (value,)


def _target_sql(
    column: str,
    target: PathExpr,
    condition: Optional[Comparison],
    depth: int,
) -> tuple[str, tuple]:
    if condition is None:
        sql, params = target
        return f"json_type({column}, {sql}) IS NOT NULL", params

    def compare(value_path: PathExpr) -> tuple[str, tuple]:
        return _compare_sql(column, value_path, condition)

    if not condition.relative:
        return _each_item(column, target, depth, compare)

    # @ is unwrapped, then so is the compared value below it
    def on_item(item: PathExpr) -> tuple[str, tuple]:
        return _each_item(column, _join(item, condition.relative), depth + 1, compare)

    return _each_item(column, target, depth, on_item)


def path_condition_sql(jsonpath: JsonPath, column: str) -> tuple[str, tuple]:
    """Render a parsed leaf as a SQL boolean expression over a JSON column."""
    root: PathExpr = ("?", (jsonpath.path,))

    if jsonpath.element is None:
        return _target_sql(column, root, jsonpath.condition, 0)

    # [*] on a non-array sees the value as a one-element array
    def on_element(item: PathExpr) -> tuple[str, tuple]:
        return _target_sql(column, _join(item, jsonpath.element), jsonpath.condition, 1)

    return _each_item(column, root, 0, on_element)
