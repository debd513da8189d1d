"""
memquery Metadata Filter Compiler

Parses the JSON-shaped metadata filter payload into a typed filter tree and
compiles it into a composable SQL predicate over the messages table.

Payload grammar:

    FilterNode     := {"jsonpath": str, "and": [FilterNode, ...], "or": [FilterNode, ...]}
    MetadataFilter := {"where": FilterNode, "start_date": ts, "end_date": ts}

A node's "and" children are conjoined, its "or" children disjoined, and its own
jsonpath condition is conjoined with both groups. start_date/end_date bound the
message creation time (inclusive) and are AND-ed with the tree.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from memquery.core.jsonpath import JsonPath, parse_jsonpath, path_condition_sql
from memquery.errors import MalformedFilterError
from memquery.utils import to_db_timestamp

logger = logging.getLogger(__name__)

METADATA_COLUMN = "m.metadata"
CREATED_AT_COLUMN = "m.created_at"

MAX_FILTER_DEPTH = 32

_NODE_KEYS = {"jsonpath", "and", "or"}
_FILTER_KEYS = {"where", "start_date", "end_date"}


# ============================================================================
# FILTER TREE
# ============================================================================

class BoolOp(str, Enum):
    AND = "AND"
    OR = "OR"


@dataclass(frozen=True)
class PathCondition:
    path: JsonPath


@dataclass(frozen=True)
class Combinator:
    op: BoolOp
    children: tuple["FilterNode", ...]


FilterNode = Union[PathCondition, Combinator]


@dataclass(frozen=True)
class MetadataFilter:
    where: Optional[FilterNode] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None


@dataclass(frozen=True)
class Predicate:
    """A SQL boolean expression with its positional parameters."""

    sql: str
    params: tuple = ()

    @classmethod
    def join(cls, op: BoolOp, predicates: list["Predicate"]) -> "Predicate":
        if not predicates:
            raise ValueError("cannot join an empty list of predicates")
        if len(predicates) == 1:
            return predicates[0]
        sql = f" {op.value} ".join(f"({p.sql})" for p in predicates)
        params = tuple(param for p in predicates for param in p.params)
        return cls(sql, params)

    def __and__(self, other: "Predicate") -> "Predicate":
        return Predicate.join(BoolOp.AND, [self, other])

    def __or__(self, other: "Predicate") -> "Predicate":
        return Predicate.join(BoolOp.OR, [self, other])


# ============================================================================
# PARSING
# ============================================================================

def parse_filter_node(node: Any, depth: int = 0) -> Optional[FilterNode]:
    """
    Parse one payload node (recursively) into a FilterNode.

    An empty node (no jsonpath, no non-empty children) is no condition and
    returns None. Raises MalformedFilterError for anything that is not a
    well-formed node.
    """
    if depth > MAX_FILTER_DEPTH:
        raise MalformedFilterError(f"filter nesting exceeds {MAX_FILTER_DEPTH} levels")
    if not isinstance(node, dict):
        raise MalformedFilterError(
            f"filter node must be an object, got {type(node).__name__}"
        )

    unknown = set(node) - _NODE_KEYS
    if unknown:
        raise MalformedFilterError(
            f"unknown filter node keys: {', '.join(sorted(map(str, unknown)))}"
        )

    parts: list[FilterNode] = []

    jsonpath = node.get("jsonpath")
    if jsonpath is not None:
        if not isinstance(jsonpath, str):
            raise MalformedFilterError(
                f"jsonpath must be a string, got {type(jsonpath).__name__}"
            )
        if jsonpath.strip():
            parts.append(PathCondition(parse_jsonpath(jsonpath)))

    for key, op in (("and", BoolOp.AND), ("or", BoolOp.OR)):
        children = node.get(key)
        if children is None:
            continue
        if not isinstance(children, list):
            raise MalformedFilterError(
                f"'{key}' must be a list of filter nodes, got {type(children).__name__}"
            )
        parsed = [parse_filter_node(child, depth + 1) for child in children]
        parsed = [child for child in parsed if child is not None]
        if parsed:
            parts.append(Combinator(op, tuple(parsed)))

    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return Combinator(BoolOp.AND, tuple(parts))


def _parse_date(payload: dict, key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    try:
        return to_db_timestamp(value)
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise MalformedFilterError(f"{key} is not a valid timestamp: {value!r}") from exc


def parse_metadata_filter(payload: Optional[dict]) -> MetadataFilter:
    """Parse the full metadata payload (where + date bounds) at the boundary."""
    if payload is None:
        return MetadataFilter()
    if not isinstance(payload, dict):
        raise MalformedFilterError(
            f"metadata filter must be an object, got {type(payload).__name__}"
        )

    where = None
    if payload.get("where") is not None:
        where = parse_filter_node(payload["where"])

    ignored = set(payload) - _FILTER_KEYS
    if ignored:
        logger.debug("Ignoring metadata filter keys: %s", sorted(map(str, ignored)))

    return MetadataFilter(
        where=where,
        start_date=_parse_date(payload, "start_date"),
        end_date=_parse_date(payload, "end_date"),
    )


# ============================================================================
# COMPILATION
# ============================================================================

def compile_node(node: FilterNode, column: str = METADATA_COLUMN) -> Predicate:
    """Compile a filter tree by structural recursion. No normalization."""
    if isinstance(node, PathCondition):
        sql, params = path_condition_sql(node.path, column)
        return Predicate(sql, params)
    if isinstance(node, Combinator):
        return Predicate.join(node.op, [compile_node(child, column) for child in node.children])
    raise TypeError(f"not a filter node: {node!r}")


def compile_filter(
    where: Optional[FilterNode],
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> Optional[Predicate]:
    """
    Compile a filter tree plus date bounds into one predicate.

    Returns None when there is nothing to constrain.
    """
    predicates = []
    if where is not None:
        predicates.append(compile_node(where))
    if start_date is not None:
        predicates.append(Predicate(f"{CREATED_AT_COLUMN} >= ?", (start_date,)))
    if end_date is not None:
        predicates.append(Predicate(f"{CREATED_AT_COLUMN} <= ?", (end_date,)))

    if not predicates:
        return None
    return Predicate.join(BoolOp.AND, predicates)


def compile_metadata_filter(payload: Optional[dict]) -> Optional[Predicate]:
    """Parse and compile a metadata filter payload in one step."""
    parsed = parse_metadata_filter(payload)
    predicate = compile_filter(parsed.where, parsed.start_date, parsed.end_date)
    if predicate is not None:
        logger.debug("Compiled metadata filter: %s %s", predicate.sql, predicate.params)
    return predicate
