"""
Metadata query algebra: the filter tree and selector that scope a send.

Wire form, e.g.::

    {
        "_debug": {"name": "someQuery"},
        "filter": [
            {"op": "$eq", "path": "/foo/bar", "value": {"value": "baz"}},
            {"op": "$or", "operands": [
                {"op": "$ne", "path": "/foo/baz", "value": {"path": "/foo/bar"}},
                {"op": "$exists", "path": "/foo/quux", "value": {"value": true}}
            ]}
        ],
        "select": {"ordering": [{"$asc": "/foo/bar"}], "limit": 10}
    }
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_serializer, model_validator

from uju.errors import DecodeError, ValidationError
from uju.models.wire import WireModel

MAX_FILTER_DEPTH = 32
MAX_FILTER_NODES = 1024


class BooleanOperator(str, Enum):
    EQUALS = "$eq"
    NOT_EQUALS = "$ne"
    GREATER_THAN = "$gt"
    GREATER_THAN_OR_EQUAL = "$gte"
    LESS_THAN = "$lt"
    LESS_THAN_OR_EQUAL = "$lte"
    IN = "$in"
    NOT_IN = "$nin"
    CONTAINS = "$contains"
    NOT_CONTAINS = "$ncontains"
    EXISTS = "$exists"


class LogicalOperator(str, Enum):
    AND = "$and"
    OR = "$or"
    NOT = "$not"
    XOR = "$xor"


class Ordering(str, Enum):
    ASCENDING = "$asc"
    DESCENDING = "$desc"


class MetadataPath(WireModel):
    """Deferred lookup against the target's metadata (RFC 6901 pointer)."""

    model_config = ConfigDict(extra="forbid")

    path: str


class MetadataLiteral(WireModel):
    model_config = ConfigDict(extra="forbid")

    value: Any


MetadataValue = Union[MetadataPath, MetadataLiteral]


class BooleanOperation(WireModel):
    model_config = ConfigDict(extra="forbid")

    op: BooleanOperator
    path: str
    value: MetadataValue


class LogicalOperation(WireModel):
    model_config = ConfigDict(extra="forbid")

    op: LogicalOperator
    operands: list[FilterNode] = Field(default_factory=list)


FilterNode = Union[BooleanOperation, LogicalOperation]
LogicalOperation.model_rebuild()


class OrderingTerm(BaseModel):
    direction: Ordering
    field: str

    @model_validator(mode="before")
    @classmethod
    def _from_wire(cls, data: Any) -> Any:
        if isinstance(data, dict) and len(data) == 1:
            key, value = next(iter(data.items()))
            if key in (Ordering.ASCENDING.value, Ordering.DESCENDING.value):
                return {"direction": key, "field": value}
        if isinstance(data, (list, tuple)) and len(data) == 2:
            return {"direction": data[0], "field": data[1]}
        return data

    @model_serializer
    def _to_wire(self) -> dict[str, str]:
        return {self.direction.value: self.field}


class Selector(WireModel):
    ordering: Optional[list[OrderingTerm]] = None
    limit: Optional[int] = Field(default=None, ge=0)


class MetadataQuery(WireModel):
    model_config = ConfigDict(populate_by_name=True)

    debug: Any = Field(default_factory=dict, alias="_debug")
    filter: list[FilterNode] = Field(default_factory=list)
    select: Optional[Selector] = None

    @model_validator(mode="before")
    @classmethod
    def _bound_filter(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("filter"), list):
            depth, nodes = measure_filter(data["filter"])
            if depth > MAX_FILTER_DEPTH or nodes > MAX_FILTER_NODES:
                raise ValueError(f"filter too large (depth {depth}, nodes {nodes})")
        return data

    def check(self) -> None:
        """Apply the operand-count rules the tree shape itself does not carry."""
        pending: list[tuple[FilterNode, int]] = [(node, 1) for node in self.filter]
        while pending:
            node, depth = pending.pop()
            if depth > MAX_FILTER_DEPTH:
                raise ValidationError(f"filter nests deeper than {MAX_FILTER_DEPTH} levels (or is cyclic)")
            if isinstance(node, LogicalOperation):
                _check_arity(node)
                pending.extend((child, depth + 1) for child in node.operands)


def _check_arity(node: LogicalOperation) -> None:
    count = len(node.operands)
    if node.op is LogicalOperator.NOT and count != 1:
        raise ValidationError(f"$not takes exactly one operand, got {count}", {"op": node.op.value})
    if node.op is LogicalOperator.XOR and count < 2:
        raise ValidationError(f"$xor takes at least two operands, got {count}", {"op": node.op.value})
    if node.op in (LogicalOperator.AND, LogicalOperator.OR) and count < 1:
        raise ValidationError(f"{node.op.value} takes at least one operand", {"op": node.op.value})


def measure_filter(raw: Iterable[Any]) -> tuple[int, int]:
    """Depth and node count of a raw (undecoded) filter list.

    Iterative and stops early once a bound is exceeded, so the cost is
    bounded no matter how large the input is.
    """
    max_depth = 0
    nodes = 0
    pending: list[tuple[Any, int]] = [(item, 1) for item in raw]
    while pending:
        item, depth = pending.pop()
        nodes += 1
        max_depth = max(max_depth, depth)
        if max_depth > MAX_FILTER_DEPTH or nodes > MAX_FILTER_NODES:
            break
        if isinstance(item, dict) and isinstance(item.get("operands"), list):
            pending.extend((child, depth + 1) for child in item["operands"])
    return max_depth, nodes


def check_filter_bounds(raw: Any) -> None:
    if not isinstance(raw, list):
        return
    depth, nodes = measure_filter(raw)
    if depth > MAX_FILTER_DEPTH or nodes > MAX_FILTER_NODES:
        raise DecodeError(
            f"filter exceeds bounds (depth {depth}/{MAX_FILTER_DEPTH}, nodes {nodes}/{MAX_FILTER_NODES})",
            code=DecodeError.FILTER_TOO_LARGE,
        )


def compare(op: Union[BooleanOperator, str], path: str, value: Any) -> BooleanOperation:
    """Leaf helper. Plain values become literals; pass ``MetadataPath`` for a reference."""
    if not isinstance(value, (MetadataPath, MetadataLiteral)):
        value = MetadataLiteral(value=value)
    return BooleanOperation(op=BooleanOperator(op), path=path, value=value)


def combine(op: Union[LogicalOperator, str], *operands: FilterNode) -> LogicalOperation:
    return LogicalOperation(op=LogicalOperator(op), operands=list(operands))
