"""
Condition Tree
==============

Composable, immutable predicate/ordering/grouping model consumed by the SQL
builder.

Nodes are frozen dataclasses holding tuples, so a tree can never be mutated
(and therefore never made cyclic) once built. Every "builder" method returns
a new node.

Usage
-----
.. code-block:: python

    from daokit.core.conditions import criteria, desc, eq, gt, order_by

    cond = criteria(
        (eq("lastName", "Doe") | eq("lastName", "Roe")) & gt("age", 18),
        order_by("lastName", desc("id")),
    ).limited(10, offset=20)
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Optional, Tuple, Union


class Operator(str, Enum):
    EQ = "="
    NE = "!="
    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="
    LIKE = "LIKE"
    NOT_LIKE = "NOT LIKE"
    IN = "IN"
    NOT_IN = "NOT IN"
    BETWEEN = "BETWEEN"
    IS_NULL = "IS NULL"
    IS_NOT_NULL = "IS NOT NULL"


class Direction(str, Enum):
    ASC = "ASC"
    DESC = "DESC"


class ConditionNode:
    """Marker base class for every node of the tree."""

    __slots__ = ()


class Predicate(ConditionNode):
    """A node that renders into a boolean SQL expression."""

    __slots__ = ()

    def __and__(self, other: "Predicate") -> "Junction":
        return and_(self, other)

    def __or__(self, other: "Predicate") -> "Junction":
        return or_(self, other)

    def __invert__(self) -> "Not":
        return Not(self)


@dataclass(frozen=True)
class Comparison(Predicate):
    property_name: str
    operator: Operator
    value: Any = None

    def __post_init__(self) -> None:
        op = Operator(self.operator)
        object.__setattr__(self, "operator", op)
        if op in (Operator.IN, Operator.NOT_IN):
            if isinstance(self.value, (str, bytes)) or not isinstance(self.value, Iterable):
                raise TypeError(f"{op.value} expects a collection, got {self.value!r}")
            object.__setattr__(self, "value", tuple(self.value))
        elif op is Operator.BETWEEN:
            value = tuple(self.value)
            if len(value) != 2:
                raise ValueError(f"BETWEEN expects (low, high), got {self.value!r}")
            object.__setattr__(self, "value", value)


@dataclass(frozen=True)
class Junction(Predicate):
    conjunction: str
    children: Tuple[Predicate, ...]

    def __post_init__(self) -> None:
        conjunction = self.conjunction.upper()
        if conjunction not in ("AND", "OR"):
            raise ValueError(f"Unknown conjunction: {self.conjunction}")
        object.__setattr__(self, "conjunction", conjunction)
        object.__setattr__(self, "children", tuple(self.children))


@dataclass(frozen=True)
class Not(Predicate):
    child: Predicate


@dataclass(frozen=True)
class AlwaysTrue(Predicate):
    """Explicit opt-in for an unscoped UPDATE/DELETE."""


@dataclass(frozen=True)
class Bind:
    """
    A comparison value resolved at execution time.

    ``eq("id", Bind("id"))`` renders a parameter whose value is looked up by
    name in the bind source (an entity or a mapping) of each execution, which
    is how batch UPDATE/DELETE templates are built.
    """

    name: str


@dataclass(frozen=True)
class OrderBy(ConditionNode):
    properties: Tuple[str, ...]
    directions: Tuple[Direction, ...] = ()

    def __post_init__(self) -> None:
        directions = tuple(Direction(d) for d in self.directions) or (Direction.ASC,) * len(self.properties)
        if len(directions) != len(self.properties):
            raise ValueError("OrderBy needs one direction per property")
        object.__setattr__(self, "properties", tuple(self.properties))
        object.__setattr__(self, "directions", directions)

    def __add__(self, other: "OrderBy") -> "OrderBy":
        return OrderBy(self.properties + other.properties, self.directions + other.directions)


@dataclass(frozen=True)
class GroupBy(ConditionNode):
    properties: Tuple[str, ...]


@dataclass(frozen=True)
class Having(ConditionNode):
    condition: Predicate


@dataclass(frozen=True)
class Limit(ConditionNode):
    count: int
    offset: int = 0

    def __post_init__(self) -> None:
        if self.count < 0 or self.offset < 0:
            raise ValueError(f"Invalid limit {self.count} offset {self.offset}")


@dataclass(frozen=True)
class Criteria(ConditionNode):
    """
    The full set of clauses for one statement.

    Clauses render in the fixed order WHERE, GROUP BY, HAVING, ORDER BY,
    LIMIT; ``distinct`` applies to the projection.
    """

    where: Optional[Predicate] = None
    group_by: Optional[GroupBy] = None
    having: Optional[Having] = None
    order_by: Optional[OrderBy] = None
    limit: Optional[Limit] = field(default=None)
    distinct: bool = False

    def and_where(self, predicate: Predicate) -> "Criteria":
        where = predicate if self.where is None else and_(self.where, predicate)
        return replace(self, where=where)

    def ordered_by(self, *items: Union[str, OrderBy]) -> "Criteria":
        return replace(self, order_by=order_by(*items))

    def grouped_by(self, *properties: str) -> "Criteria":
        return replace(self, group_by=GroupBy(tuple(properties)))

    def with_having(self, predicate: Predicate) -> "Criteria":
        return replace(self, having=Having(predicate))

    def limited(self, count: int, offset: int = 0) -> "Criteria":
        return replace(self, limit=Limit(count, offset))

    def with_distinct(self, distinct: bool = True) -> "Criteria":
        return replace(self, distinct=distinct)

    @property
    def is_empty(self) -> bool:
        return self == Criteria()


ConditionLike = Union[None, ConditionNode, Iterable[ConditionNode]]


def criteria(*nodes: ConditionNode) -> Criteria:
    """Fold predicates and clause nodes into one :class:`Criteria`. Predicates are AND-ed."""
    result = Criteria()
    for node in nodes:
        if node is None:
            continue
        if isinstance(node, Criteria):
            if node.where is not None:
                result = result.and_where(node.where)
            result = replace(
                result,
                group_by=node.group_by or result.group_by,
                having=node.having or result.having,
                order_by=node.order_by or result.order_by,
                limit=node.limit or result.limit,
                distinct=node.distinct or result.distinct,
            )
        elif isinstance(node, Predicate):
            result = result.and_where(node)
        elif isinstance(node, OrderBy):
            result = replace(result, order_by=node if result.order_by is None else result.order_by + node)
        elif isinstance(node, GroupBy):
            result = replace(result, group_by=node)
        elif isinstance(node, Having):
            result = replace(result, having=node)
        elif isinstance(node, Limit):
            result = replace(result, limit=node)
        else:
            raise TypeError(f"Not a condition node: {node!r}")
    return result


def to_criteria(condition: ConditionLike) -> Criteria:
    if condition is None:
        return Criteria()
    if isinstance(condition, Criteria):
        return condition
    if isinstance(condition, ConditionNode):
        return criteria(condition)
    return criteria(*condition)


# ---------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------

def eq(property_name: str, value: Any) -> Comparison:
    return Comparison(property_name, Operator.EQ, value)


def ne(property_name: str, value: Any) -> Comparison:
    return Comparison(property_name, Operator.NE, value)


def gt(property_name: str, value: Any) -> Comparison:
    return Comparison(property_name, Operator.GT, value)


def ge(property_name: str, value: Any) -> Comparison:
    return Comparison(property_name, Operator.GE, value)


def lt(property_name: str, value: Any) -> Comparison:
    return Comparison(property_name, Operator.LT, value)


def le(property_name: str, value: Any) -> Comparison:
    return Comparison(property_name, Operator.LE, value)


def like(property_name: str, pattern: str) -> Comparison:
    return Comparison(property_name, Operator.LIKE, pattern)


def not_like(property_name: str, pattern: str) -> Comparison:
    return Comparison(property_name, Operator.NOT_LIKE, pattern)


def in_(property_name: str, values: Iterable[Any]) -> Comparison:
    return Comparison(property_name, Operator.IN, values)


def not_in(property_name: str, values: Iterable[Any]) -> Comparison:
    return Comparison(property_name, Operator.NOT_IN, values)


def between(property_name: str, low: Any, high: Any) -> Comparison:
    return Comparison(property_name, Operator.BETWEEN, (low, high))


def is_null(property_name: str) -> Comparison:
    return Comparison(property_name, Operator.IS_NULL)


def is_not_null(property_name: str) -> Comparison:
    return Comparison(property_name, Operator.IS_NOT_NULL)


def and_(*predicates: Predicate) -> Junction:
    return Junction("AND", tuple(predicates))


def or_(*predicates: Predicate) -> Junction:
    return Junction("OR", tuple(predicates))


def not_(predicate: Predicate) -> Not:
    return Not(predicate)


def always_true() -> AlwaysTrue:
    return AlwaysTrue()


def asc(*properties: str) -> OrderBy:
    return OrderBy(tuple(properties), (Direction.ASC,) * len(properties))


def desc(*properties: str) -> OrderBy:
    return OrderBy(tuple(properties), (Direction.DESC,) * len(properties))


def order_by(*items: Union[str, OrderBy]) -> OrderBy:
    """``order_by("lastName", desc("id"))`` -> ``ORDER BY LAST_NAME ASC, ID DESC``."""
    result = OrderBy(())
    for item in items:
        result = result + (item if isinstance(item, OrderBy) else asc(item))
    return result


def group_by(*properties: str) -> GroupBy:
    return GroupBy(tuple(properties))


def having(predicate: Predicate) -> Having:
    return Having(predicate)


def limit(count: int, offset: int = 0) -> Limit:
    return Limit(count, offset)
