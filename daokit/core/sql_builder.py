"""
SQL Builder
===========

Composes SELECT / INSERT / UPDATE / DELETE text plus an ordered parameter
list from an :class:`~daokit.entities.descriptor.EntityDescriptor`, a
condition tree and a parameter style.

Behaviour
---------
- SELECT projects every column (or an explicit subset / minus exclusions),
  then appends WHERE, GROUP BY, HAVING, ORDER BY and LIMIT in that order.
- INSERT lists the non-READ_ONLY columns in descriptor order, so the
  parameter order is reproducible.
- UPDATE sets the target properties minus READ_ONLY, NON_UPDATABLE and ID
  columns.
- UPDATE and DELETE refuse to render without a WHERE clause
  (:class:`UnsafeStatementError`) unless the condition is an explicit
  :class:`~daokit.core.conditions.AlwaysTrue`.
- ``POSITIONAL`` renders ``?``; ``NAMED`` renders ``:propertyName``, numbering
  repeats (``:age``, ``:age_2``).
- Every property referenced by a condition is checked against the
  descriptor while building, so a typo fails here and not in the driver.

Example
-------
>>> stmt = SQLBuilder().select(user_descriptor, eq("id", 100))
>>> stmt.text
'SELECT ID, FIRST_NAME, LAST_NAME, EMAIL FROM user1 WHERE ID = ?'
>>> stmt.parameters
(100,)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from daokit.core.conditions import (
    AlwaysTrue,
    Bind,
    Comparison,
    ConditionLike,
    Criteria,
    Junction,
    Not,
    Operator,
    Predicate,
    and_,
    eq,
    to_criteria,
)
from daokit.core.errors import MixedKeyError, UnsafeStatementError
from daokit.entities.descriptor import ColumnSpec, EntityDescriptor
from daokit.entities.naming import NamingPolicy


class ParameterStyle(str, Enum):
    POSITIONAL = "POSITIONAL"
    NAMED = "NAMED"


class SQLOperation(str, Enum):
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class _Unbound:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNBOUND"


UNBOUND = _Unbound()
"""Marker for a parameter slot whose value comes from the bind source at execution time."""


@dataclass(frozen=True)
class SQLStatement:
    """
    Immutable SQL text plus its parameters.

    Attributes
    ----------
    text : str
        SQL with ``?`` (positional) or ``:token`` (named) placeholders.
    parameters : tuple
        One value per placeholder occurrence, left to right. ``UNBOUND``
        marks slots resolved from the bind source at execution time.
    style : ParameterStyle
        How placeholders are rendered.
    slots : tuple of str
        For each placeholder occurrence, the key looked up in a bind source.
    tokens : tuple of str
        NAMED only: the token rendered for each occurrence.
    returning : tuple of str
        Columns listed in a ``RETURNING`` clause, if any.
    operation : str, optional
        Label used in diagnostics.
    """

    text: str
    parameters: Tuple[Any, ...] = ()
    style: ParameterStyle = ParameterStyle.POSITIONAL
    slots: Tuple[str, ...] = ()
    tokens: Tuple[str, ...] = ()
    returning: Tuple[str, ...] = ()
    operation: Optional[str] = None

    @property
    def is_bound(self) -> bool:
        return all(p is not UNBOUND for p in self.parameters)

    def __str__(self) -> str:
        return self.text


class _SqlWriter:
    """Accumulates placeholders and values for one statement."""

    def __init__(self, descriptor: EntityDescriptor, policy: NamingPolicy, style: ParameterStyle, operation: str):
        self.descriptor = descriptor
        self.policy = policy
        self.style = style
        self.operation = operation
        self.values: List[Any] = []
        self.slots: List[str] = []
        self.tokens: List[str] = []
        self._token_counts: Dict[str, int] = {}
        self._used_tokens = set()

    def column(self, property_name: str) -> str:
        return self.descriptor.column(property_name, operation=self.operation).resolve_column_name(self.policy)

    def param(self, property_name: str, value: Any) -> str:
        if isinstance(value, Bind):
            slot, value = value.name, UNBOUND
        else:
            slot = property_name
        self.values.append(value)
        self.slots.append(slot)
        if self.style is ParameterStyle.POSITIONAL:
            return "?"
        token = self._next_token(slot)
        self.tokens.append(token)
        return f":{token}"

    def _next_token(self, base: str) -> str:
        count = self._token_counts.get(base, 0) + 1
        token = base if count == 1 else f"{base}_{count}"
        while token in self._used_tokens:
            count += 1
            token = f"{base}_{count}"
        self._token_counts[base] = count
        self._used_tokens.add(token)
        return token

    # -- predicates ----------------------------------------------------

    def predicate(self, node: Predicate, nested: bool = False) -> str:
        if isinstance(node, Comparison):
            return self._comparison(node)
        if isinstance(node, Junction):
            parts = [self.predicate(child, nested=True) for child in node.children if not _is_empty(child)]
            if len(parts) == 1:
                return parts[0]
            text = f" {node.conjunction} ".join(parts)
            return f"({text})" if nested else text
        if isinstance(node, Not):
            return f"NOT ({self.predicate(node.child)})"
        if isinstance(node, AlwaysTrue):
            return "1 = 1"
        raise TypeError(f"Not a predicate: {node!r}")

    def _comparison(self, node: Comparison) -> str:
        column = self.column(node.property_name)
        op = node.operator
        if op in (Operator.IS_NULL, Operator.IS_NOT_NULL):
            return f"{column} {op.value}"
        if node.value is None and op in (Operator.EQ, Operator.NE):
            return f"{column} {'IS NULL' if op is Operator.EQ else 'IS NOT NULL'}"
        if op in (Operator.IN, Operator.NOT_IN):
            if not node.value:
                return "1 = 0" if op is Operator.IN else "1 = 1"
            params = ", ".join(self.param(node.property_name, v) for v in node.value)
            return f"{column} {op.value} ({params})"
        if op is Operator.BETWEEN:
            low, high = node.value
            return f"{column} BETWEEN {self.param(node.property_name, low)} AND {self.param(node.property_name, high)}"
        return f"{column} {op.value} {self.param(node.property_name, node.value)}"

    # -- clauses -------------------------------------------------------

    def clauses(self, crit: Criteria) -> str:
        parts = []
        if not _is_empty(crit.where):
            parts.append(f" WHERE {self.predicate(crit.where)}")
        if crit.group_by is not None and crit.group_by.properties:
            parts.append(" GROUP BY " + ", ".join(self.column(p) for p in crit.group_by.properties))
        if crit.having is not None:
            parts.append(f" HAVING {self.predicate(crit.having.condition)}")
        if crit.order_by is not None and crit.order_by.properties:
            parts.append(
                " ORDER BY "
                + ", ".join(
                    f"{self.column(p)} {d.value}" for p, d in zip(crit.order_by.properties, crit.order_by.directions)
                )
            )
        if crit.limit is not None:
            parts.append(f" LIMIT {int(crit.limit.count)}")
            if crit.limit.offset:
                parts.append(f" OFFSET {int(crit.limit.offset)}")
        return "".join(parts)

    def statement(self, text: str, returning: Sequence[str] = ()) -> SQLStatement:
        return SQLStatement(
            text=text,
            parameters=tuple(self.values),
            style=self.style,
            slots=tuple(self.slots),
            tokens=tuple(self.tokens),
            returning=tuple(returning),
            operation=self.operation,
        )


def _is_empty(node: Optional[Predicate]) -> bool:
    if node is None:
        return True
    if isinstance(node, Junction):
        return all(_is_empty(child) for child in node.children)
    return False


def id_condition(descriptor: EntityDescriptor, id_value: Any = UNBOUND) -> Predicate:
    """
    ``ID = ?`` (or ``A = ? AND B = ?`` for composite keys).

    With the default ``UNBOUND`` the key is resolved per execution from the
    bind source, which is what batch UPDATE/DELETE templates need.
    """
    id_props = descriptor.id_property_names
    if not id_props:
        raise ValueError(f"Entity '{descriptor.name}' has no ID column")
    if id_value is UNBOUND:
        values = {p: Bind(p) for p in id_props}
    else:
        values = descriptor.id_values(id_value)
    predicates = [eq(p, values[p]) for p in id_props]
    return predicates[0] if len(predicates) == 1 else and_(*predicates)


def batch_keys_supplied(
    descriptor: EntityDescriptor, entities: Iterable[Any], operation: str = "batch_insert"
) -> bool:
    """
    Return ``True`` when every entity carries its primary key.

    A batch where only some entities carry one cannot share a column list,
    so it raises :class:`MixedKeyError` before anything is written.
    """
    if not descriptor.id_property_names:
        return False
    flags = {descriptor.id_of(e) is not None for e in entities}
    if len(flags) > 1:
        raise MixedKeyError(
            f"Mixed set and unset IDs in batch insert for '{descriptor.name}'", operation=operation
        )
    return flags == {True}


class SQLBuilder:
    """
    Builds :class:`SQLStatement` objects for one naming policy and parameter style.

    Instances hold no per-call state and can be shared between threads.
    """

    def __init__(
        self,
        naming_policy: NamingPolicy = NamingPolicy.UPPER_CASE_WITH_UNDERSCORE,
        parameter_style: ParameterStyle = ParameterStyle.POSITIONAL,
    ) -> None:
        self.naming_policy = NamingPolicy(naming_policy)
        self.parameter_style = ParameterStyle(parameter_style)

    def _writer(self, descriptor: EntityDescriptor, operation: str) -> _SqlWriter:
        return _SqlWriter(descriptor, self.naming_policy, self.parameter_style, operation)

    # -----------------------------------------------------------------
    # SELECT
    # -----------------------------------------------------------------

    def select(
        self,
        descriptor: EntityDescriptor,
        condition: ConditionLike = None,
        select_props: Optional[Iterable[str]] = None,
        exclude_props: Iterable[str] = (),
        distinct: Optional[bool] = None,
    ) -> SQLStatement:
        w = self._writer(descriptor, "select")
        crit = to_criteria(condition)
        excluded = set(exclude_props)
        for prop in excluded:
            descriptor.column(prop, operation="select")
        props = list(select_props) if select_props is not None else list(descriptor.property_names)
        projection = ", ".join(w.column(p) for p in props if p not in excluded)
        if not projection:
            raise ValueError(f"Nothing to select from '{descriptor.table}'")
        use_distinct = crit.distinct if distinct is None else distinct
        head = "SELECT DISTINCT " if use_distinct else "SELECT "
        return w.statement(f"{head}{projection} FROM {descriptor.table}{w.clauses(crit)}")

    def count(self, descriptor: EntityDescriptor, condition: ConditionLike = None) -> SQLStatement:
        w = self._writer(descriptor, "count")
        crit = to_criteria(condition)
        return w.statement(f"SELECT COUNT(*) FROM {descriptor.table}{w.clauses(crit)}")

    def exists(self, descriptor: EntityDescriptor, condition: ConditionLike = None) -> SQLStatement:
        w = self._writer(descriptor, "exists")
        crit = to_criteria(condition)
        text = f"SELECT 1 FROM {descriptor.table}{w.clauses(crit)}"
        if crit.limit is None:
            text += " LIMIT 1"
        return w.statement(text)

    # -----------------------------------------------------------------
    # INSERT
    # -----------------------------------------------------------------

    def insert(
        self,
        descriptor: EntityDescriptor,
        values: Any = None,
        returning: Sequence[str] = (),
    ) -> SQLStatement:
        """
        Build an INSERT.

        Parameters
        ----------
        descriptor : EntityDescriptor
        values : entity | Mapping | None
            An entity inserts every non-READ_ONLY column, skipping unset ID
            columns. A mapping inserts only the properties it contains. ``None``
            produces an unbound template over the non-READ_ONLY, non-ID columns.
        returning : sequence of str
            Properties to return (normally the generated ID columns).
        """
        w = self._writer(descriptor, "insert")
        columns = _insert_columns(descriptor, values)
        placeholders = []
        for column in columns:
            value = UNBOUND if values is None else descriptor.value_of(values, column.property_name)
            placeholders.append(w.param(column.property_name, value))
        names = ", ".join(w.column(c.property_name) for c in columns)
        text = f"INSERT INTO {descriptor.table} ({names}) VALUES ({', '.join(placeholders)})"
        return w.statement(text + _returning_clause(w, returning), returning=returning)

    def batch_insert(
        self,
        descriptor: EntityDescriptor,
        entities: Sequence[Any],
        returning: Sequence[str] = (),
    ) -> SQLStatement:
        """
        Build one multi-row INSERT for a chunk of entities.

        ID columns are included only when every entity carries an ID.
        """
        if not entities:
            raise ValueError("batch_insert needs at least one entity")
        w = self._writer(descriptor, "batch_insert")
        include_ids = batch_keys_supplied(descriptor, entities)
        columns = [c for c in descriptor.insertable_columns if include_ids or not c.is_id]
        rows = []
        for entity in entities:
            params = [w.param(c.property_name, descriptor.value_of(entity, c.property_name)) for c in columns]
            rows.append(f"({', '.join(params)})")
        names = ", ".join(w.column(c.property_name) for c in columns)
        text = f"INSERT INTO {descriptor.table} ({names}) VALUES {', '.join(rows)}"
        return w.statement(text + _returning_clause(w, returning), returning=returning)

    # -----------------------------------------------------------------
    # UPDATE / DELETE
    # -----------------------------------------------------------------

    def update(
        self,
        descriptor: EntityDescriptor,
        values: Any,
        condition: ConditionLike,
        props: Optional[Iterable[str]] = None,
    ) -> SQLStatement:
        """
        Build an UPDATE.

        ``values`` is an entity, a mapping or ``None`` (an unbound template).
        The SET list is ``props`` (or the mapping's keys, or every updatable
        column) minus READ_ONLY, NON_UPDATABLE and ID columns. SET values come
        before WHERE values in the parameter list.
        """
        w = self._writer(descriptor, "update")
        crit = to_criteria(condition)
        _require_where(crit, descriptor, "update")
        if props is not None:
            targets = [descriptor.column(p, operation="update") for p in props]
        elif isinstance(values, Mapping):
            targets = [descriptor.column(p, operation="update") for p in values]
        else:
            targets = list(descriptor.updatable_columns)
        targets = [c for c in targets if c.is_updatable]
        if not targets:
            raise ValueError(f"No updatable columns for '{descriptor.name}'")
        assignments = []
        for column in targets:
            value = UNBOUND if values is None else descriptor.value_of(values, column.property_name)
            assignments.append(f"{w.column(column.property_name)} = {w.param(column.property_name, value)}")
        text = f"UPDATE {descriptor.table} SET {', '.join(assignments)}{w.clauses(crit)}"
        return w.statement(text)

    def delete(self, descriptor: EntityDescriptor, condition: ConditionLike) -> SQLStatement:
        w = self._writer(descriptor, "delete")
        crit = to_criteria(condition)
        _require_where(crit, descriptor, "delete")
        return w.statement(f"DELETE FROM {descriptor.table}{w.clauses(crit)}")

    # -----------------------------------------------------------------
    # Generic entry point
    # -----------------------------------------------------------------

    def build(
        self,
        operation: SQLOperation,
        descriptor: EntityDescriptor,
        condition: ConditionLike = None,
        **options: Any,
    ) -> SQLStatement:
        operation = SQLOperation(operation)
        if operation is SQLOperation.SELECT:
            return self.select(descriptor, condition, **options)
        if operation is SQLOperation.INSERT:
            return self.insert(descriptor, **options)
        if operation is SQLOperation.UPDATE:
            return self.update(descriptor, options.pop("values", None), condition, **options)
        return self.delete(descriptor, condition)


def build(
    operation: SQLOperation,
    descriptor: EntityDescriptor,
    condition: ConditionLike = None,
    parameter_style: ParameterStyle = ParameterStyle.POSITIONAL,
    naming_policy: NamingPolicy = NamingPolicy.UPPER_CASE_WITH_UNDERSCORE,
    **options: Any,
) -> SQLStatement:
    """Functional form of :meth:`SQLBuilder.build`."""
    return SQLBuilder(naming_policy, parameter_style).build(operation, descriptor, condition, **options)


def _insert_columns(descriptor: EntityDescriptor, values: Any) -> List[ColumnSpec]:
    if values is None:
        return [c for c in descriptor.insertable_columns if not c.is_id]
    if isinstance(values, Mapping):
        for prop in values:
            descriptor.column(prop, operation="insert")
        return [c for c in descriptor.insertable_columns if c.property_name in values]
    return [
        c
        for c in descriptor.insertable_columns
        if not (c.is_id and descriptor.value_of(values, c.property_name) is None)
    ]


def _returning_clause(w: _SqlWriter, returning: Sequence[str]) -> str:
    if not returning:
        return ""
    return " RETURNING " + ", ".join(w.column(p) for p in returning)


def _require_where(crit: Criteria, descriptor: EntityDescriptor, operation: str) -> None:
    if _is_empty(crit.where):
        raise UnsafeStatementError(
            f"Refusing to {operation} every row of '{descriptor.table}' without a WHERE clause; "
            "pass AlwaysTrue() to opt in",
            operation=operation,
        )
