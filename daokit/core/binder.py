"""
Parameter Binder & Result Mapper
================================

Purpose
-------
- :class:`ParameterBinder` turns an :class:`SQLStatement` (plus an optional
  bind source: an entity or a mapping) into a SQLAlchemy ``TextClause`` and
  the bind dictionary that goes with it.
- :class:`ResultMapper` turns result rows back into entities, scalars or
  plain dicts, using the same naming policy that built the SQL.

Binding rules
-------------
- Positional statements keep strict left-to-right order. ``?`` markers are
  rewritten to ``:p0, :p1 ...`` so SQLAlchemy can translate them to whatever
  paramstyle the driver uses; markers inside quoted literals are left alone.
- Colons inside quoted literals are escaped in both styles, so a literal
  such as ``'a :b'`` never turns into a bind.
- Named statements resolve each token from the build-time value first and
  then from the bind source. An unresolved token raises
  :class:`MissingParameterError`.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.sql.elements import TextClause

from daokit.core.errors import MissingParameterError, ResultMappingError
from daokit.core.sql_builder import UNBOUND, ParameterStyle, SQLStatement
from daokit.entities.descriptor import EntityDescriptor
from daokit.entities.naming import NamingPolicy

MISSING = object()


def lookup(source: Any, name: str, default: Any = MISSING) -> Any:
    """Read ``name`` from a mapping key or an attribute."""
    if source is None:
        return default
    if isinstance(source, Mapping):
        return source.get(name, default)
    return getattr(source, name, default)


def adapt_value(value: Any) -> Any:
    """Convert values most DBAPI drivers reject into portable ones."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    return value


@lru_cache(maxsize=1024)
def escape_sql(sql: str, positional: bool = False) -> Tuple[str, int]:
    """
    Prepare ``sql`` for ``sqlalchemy.text()``.

    Colons inside quoted literals are escaped as ``\\:`` so ``text()`` does
    not read ``'a :b'`` as a bind. With ``positional`` the ``?`` markers
    outside literals are rewritten as ``:p0, :p1 ...``.

    Returns
    -------
    tuple
        The rewritten SQL and the number of ``?`` markers replaced.
    """
    out: List[str] = []
    count = 0
    quote: Optional[str] = None
    for ch in sql:
        if quote:
            out.append("\\:" if ch == ":" else ch)
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
            out.append(ch)
        elif ch == "?" and positional:
            out.append(f":p{count}")
            count += 1
        else:
            out.append(ch)
    return "".join(out), count


def positional_to_named(sql: str) -> Tuple[str, int]:
    """Rewrite ``?`` markers outside quoted literals as ``:p0, :p1 ...``."""
    return escape_sql(sql, positional=True)


@lru_cache(maxsize=1024)
def _text_clause(sql: str) -> TextClause:
    return text(sql)


class ParameterBinder:
    """Binds statement parameters for execution through SQLAlchemy."""

    def to_clause(self, statement: SQLStatement) -> TextClause:
        positional = statement.style is ParameterStyle.POSITIONAL
        sql, count = escape_sql(statement.text, positional)
        if positional and count != len(statement.parameters):
            raise ValueError(
                f"Statement has {count} markers but {len(statement.parameters)} parameters: {statement.text}"
            )
        return _text_clause(sql)

    def bind(self, statement: SQLStatement, source: Any = None) -> Dict[str, Any]:
        """
        Resolve every parameter slot of ``statement``.

        Parameters
        ----------
        statement : SQLStatement
        source : entity | Mapping, optional
            Supplies values for ``UNBOUND`` slots.

        Returns
        -------
        dict
            Bind dictionary keyed the way :meth:`to_clause` renders tokens.
        """
        params: Dict[str, Any] = {}
        named = statement.style is ParameterStyle.NAMED
        slots = statement.slots or (None,) * len(statement.parameters)
        for i, (slot, value) in enumerate(zip(slots, statement.parameters)):
            if value is UNBOUND:
                value = lookup(source, slot)
                if value is MISSING:
                    token = statement.tokens[i] if named else slot
                    raise MissingParameterError(token, operation=statement.operation, sql=statement.text)
            key = statement.tokens[i] if named else f"p{i}"
            params[key] = adapt_value(value)
        return params

    def bind_many(self, statement: SQLStatement, sources: Iterable[Any]) -> List[Dict[str, Any]]:
        return [self.bind(statement, source) for source in sources]


# ---------------------------------------------------------------------
# Result mapping
# ---------------------------------------------------------------------

def _to_datetime(value: Any) -> datetime:
    return value if isinstance(value, datetime) else datetime.fromisoformat(str(value))


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value if isinstance(value, date) else date.fromisoformat(str(value))


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "t", "y", "yes")
    return bool(value)


_CONVERTERS: Dict[type, Callable[[Any], Any]] = {
    bool: _to_bool,
    datetime: _to_datetime,
    date: _to_date,
    Decimal: lambda v: v if isinstance(v, Decimal) else Decimal(str(v)),
    UUID: lambda v: v if isinstance(v, UUID) else UUID(str(v)),
}


def coerce(value: Any, value_type: Optional[type]) -> Any:
    if value is None or value_type is None or isinstance(value, value_type):
        return value
    converter = _CONVERTERS.get(value_type)
    if converter is not None:
        return converter(value)
    return value_type(value)


class ResultMapper:
    """
    Maps result rows to entities of one descriptor.

    Column labels are matched case-insensitively against the column names the
    naming policy produces, so drivers that fold identifier case still map.
    Unknown columns are ignored.
    """

    def __init__(self, descriptor: EntityDescriptor, naming_policy: NamingPolicy) -> None:
        self.descriptor = descriptor
        self.naming_policy = NamingPolicy(naming_policy)
        self._by_label = {
            c.resolve_column_name(self.naming_policy).lower(): c for c in descriptor.columns
        }
        # Also accept labels that are already property names (e.g. "SELECT x AS firstName").
        for c in descriptor.columns:
            self._by_label.setdefault(c.property_name.lower(), c)

    def to_values(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for label, raw in row.items():
            column = self._by_label.get(str(label).lower())
            if column is None:
                continue
            values[column.property_name] = coerce(raw, column.value_type)
        return values

    def map_row(self, row: Mapping[str, Any], operation: Optional[str] = None) -> Any:
        try:
            return self.descriptor.create(self.to_values(row))
        except (TypeError, ValueError, ArithmeticError) as e:
            raise ResultMappingError(
                f"Cannot map row to '{self.descriptor.name}': {e}",
                operation=operation,
                parameters=dict(row),
            ) from e

    def map_rows(self, rows: Iterable[Mapping[str, Any]], operation: Optional[str] = None) -> List[Any]:
        return [self.map_row(row, operation) for row in rows]


def row_to_dict(row: Mapping[str, Any]) -> Dict[str, Any]:
    return dict(row)


def first_value(row: Optional[Tuple[Any, ...]]) -> Any:
    return None if row is None else row[0]
