"""
Entity Descriptors
==================

An :class:`EntityDescriptor` is the static metadata that maps one entity type
to a table: the table name and the ordered list of :class:`ColumnSpec`
entries. Descriptors are created once per entity type, are immutable after
creation and are shared by every DAO call, so they can be read from any
number of threads without locking.

Key features
~~~~~~~~~~~~
- Column flags (``ID``, ``READ_ONLY``, ``NON_UPDATABLE``) drive which
  columns appear in generated INSERT/UPDATE statements
- Simple and composite (ordered tuple of ``ID`` columns) primary keys
- Descriptors can be declared explicitly or derived from a ``@dataclass``
- :class:`DescriptorRegistry` holds one descriptor per entity type and is
  passed explicitly to the DAO engine
"""

import dataclasses
import threading
import typing
from dataclasses import dataclass, field
from enum import Flag, auto
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from daokit.core.errors import DescriptorNotFoundError, UnknownPropertyError
from daokit.entities.naming import NamingPolicy, convert_name


class ColumnFlag(Flag):
    """Per-column flags. Combine with ``|``."""

    NONE = 0
    ID = auto()
    READ_ONLY = auto()
    NON_UPDATABLE = auto()


@dataclass(frozen=True)
class ColumnSpec:
    """
    One mapped column.

    Attributes
    ----------
    property_name : str
        Attribute name on the entity.
    column_name : str, optional
        Explicit column identifier. When omitted the DAO's naming policy
        derives it from ``property_name``.
    value_type : type, optional
        Python type used to coerce values read back from the driver.
    flags : ColumnFlag
        Combination of ``ID``, ``READ_ONLY`` and ``NON_UPDATABLE``.
    """

    property_name: str
    column_name: Optional[str] = None
    value_type: Optional[type] = None
    flags: ColumnFlag = ColumnFlag.NONE

    @property
    def is_id(self) -> bool:
        return ColumnFlag.ID in self.flags

    @property
    def is_read_only(self) -> bool:
        return ColumnFlag.READ_ONLY in self.flags

    @property
    def is_updatable(self) -> bool:
        return not (self.flags & (ColumnFlag.READ_ONLY | ColumnFlag.NON_UPDATABLE | ColumnFlag.ID))

    def resolve_column_name(self, policy: NamingPolicy) -> str:
        return self.column_name or convert_name(self.property_name, policy)


@dataclass(frozen=True)
class EntityDescriptor:
    """
    Static mapping between an entity type and a table.

    Parameters
    ----------
    entity_type : type
        The entity class. Instances are built with ``entity_type(**values)``
        unless ``factory`` is given.
    table : str
        Table name, emitted as-is.
    columns : tuple of ColumnSpec
        Ordered column list. The order fixes the parameter order of
        generated INSERT statements.
    factory : callable, optional
        Alternative constructor receiving a ``{property: value}`` dict.
    """

    entity_type: type
    table: str
    columns: Tuple[ColumnSpec, ...]
    factory: Optional[Callable[[Dict[str, Any]], Any]] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        columns = tuple(self.columns)
        object.__setattr__(self, "columns", columns)
        if not columns:
            raise ValueError(f"Entity '{self.name}' declares no columns")
        by_property: Dict[str, ColumnSpec] = {}
        for column in columns:
            if column.property_name in by_property:
                raise ValueError(f"Duplicate property '{column.property_name}' in entity '{self.name}'")
            by_property[column.property_name] = column
        object.__setattr__(self, "_by_property", MappingProxyType(by_property))

    @property
    def name(self) -> str:
        return getattr(self.entity_type, "__name__", str(self.entity_type))

    @property
    def property_names(self) -> Tuple[str, ...]:
        return tuple(c.property_name for c in self.columns)

    @property
    def id_columns(self) -> Tuple[ColumnSpec, ...]:
        return tuple(c for c in self.columns if c.is_id)

    @property
    def id_property_names(self) -> Tuple[str, ...]:
        return tuple(c.property_name for c in self.id_columns)

    @property
    def insertable_columns(self) -> Tuple[ColumnSpec, ...]:
        return tuple(c for c in self.columns if not c.is_read_only)

    @property
    def updatable_columns(self) -> Tuple[ColumnSpec, ...]:
        return tuple(c for c in self.columns if c.is_updatable)

    def has_property(self, property_name: str) -> bool:
        return property_name in self._by_property

    def column(self, property_name: str, operation: Optional[str] = None) -> ColumnSpec:
        """Return the column for ``property_name`` or raise :class:`UnknownPropertyError`."""
        try:
            return self._by_property[property_name]
        except KeyError:
            raise UnknownPropertyError(property_name, self.name, operation=operation) from None

    def column_name(self, property_name: str, policy: NamingPolicy) -> str:
        return self.column(property_name).resolve_column_name(policy)

    # -----------------------------------------------------------------
    # Entity access
    # -----------------------------------------------------------------

    def value_of(self, entity: Any, property_name: str, default: Any = None) -> Any:
        if isinstance(entity, Mapping):
            return entity.get(property_name, default)
        return getattr(entity, property_name, default)

    def to_values(self, entity: Any) -> Dict[str, Any]:
        """Return ``{property: value}`` for every mapped column of ``entity``."""
        if isinstance(entity, Mapping):
            return {p: entity[p] for p in self.property_names if p in entity}
        return {p: getattr(entity, p, None) for p in self.property_names}

    def id_of(self, entity: Any) -> Any:
        """
        Return the primary-key value of ``entity``.

        A scalar for simple keys, a tuple for composite keys and ``None`` when
        any key component is unset.
        """
        ids = self.id_property_names
        if not ids:
            raise UnknownPropertyError("<id>", self.name, operation="id_of")
        values = tuple(self.value_of(entity, p) for p in ids)
        if any(v is None for v in values):
            return None
        return values[0] if len(values) == 1 else values

    def id_values(self, id_value: Any) -> Dict[str, Any]:
        """Spread a scalar/tuple key into ``{id_property: value}``."""
        ids = self.id_property_names
        if len(ids) == 1:
            return {ids[0]: id_value}
        if not isinstance(id_value, (tuple, list)) or len(id_value) != len(ids):
            raise ValueError(f"Entity '{self.name}' expects a {len(ids)}-part key, got {id_value!r}")
        return dict(zip(ids, id_value))

    def id_key(self, id_value: Any) -> Any:
        """Normalize a caller-supplied key to the hashable form :meth:`id_of` returns."""
        values = tuple(self.id_values(id_value).values())
        return values[0] if len(values) == 1 else values

    def set_id(self, entity: Any, id_value: Any) -> None:
        for prop, value in self.id_values(id_value).items():
            if isinstance(entity, dict):
                entity[prop] = value
            else:
                setattr(entity, prop, value)

    def create(self, values: Dict[str, Any]) -> Any:
        if self.factory is not None:
            return self.factory(values)
        return self.entity_type(**values)

    # -----------------------------------------------------------------
    # Construction helpers
    # -----------------------------------------------------------------

    @classmethod
    def from_dataclass(cls, entity_type: type, table: Optional[str] = None) -> "EntityDescriptor":
        """
        Derive a descriptor from a ``@dataclass``.

        Field metadata keys understood: ``flags`` (a :class:`ColumnFlag`),
        ``column`` (explicit column name) and ``transient`` (relation or
        computed fields that are not columns).

        Example
        -------
        >>> @dataclass
        ... class User:
        ...     id: Optional[int] = field(default=None, metadata={"flags": ColumnFlag.ID})
        ...     first_name: Optional[str] = None
        ...     devices: Optional[list] = field(default=None, metadata={"transient": True})
        >>> EntityDescriptor.from_dataclass(User, table="user1").property_names
        ('id', 'first_name')
        """
        if not dataclasses.is_dataclass(entity_type):
            raise TypeError(f"{entity_type!r} is not a dataclass")
        hints = typing.get_type_hints(entity_type)
        columns = []
        for f in dataclasses.fields(entity_type):
            if f.metadata.get("transient"):
                continue
            value_type = _plain_type(hints.get(f.name))
            columns.append(
                ColumnSpec(
                    property_name=f.name,
                    column_name=f.metadata.get("column"),
                    value_type=value_type,
                    flags=f.metadata.get("flags", ColumnFlag.NONE),
                )
            )
        return cls(entity_type=entity_type, table=table or entity_type.__name__.lower(), columns=tuple(columns))


class DescriptorRegistry:
    """
    Registry of descriptors keyed by entity type.

    Passed explicitly into the DAO engine instead of living in module-level
    state. Writes take a lock; reads do not, and after :meth:`freeze` the
    registry refuses further registrations.
    """

    def __init__(self, descriptors: Iterable[EntityDescriptor] = ()) -> None:
        self._lock = threading.Lock()
        self._descriptors: Dict[type, EntityDescriptor] = {}
        self._frozen = False
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: EntityDescriptor) -> EntityDescriptor:
        with self._lock:
            if self._frozen:
                raise RuntimeError("DescriptorRegistry is frozen")
            existing = self._descriptors.get(descriptor.entity_type)
            if existing is not None and existing != descriptor:
                raise ValueError(f"A different descriptor is already registered for '{descriptor.name}'")
            # Copy-on-write keeps concurrent readers on a consistent dict.
            updated = dict(self._descriptors)
            updated[descriptor.entity_type] = descriptor
            self._descriptors = updated
        return descriptor

    def get(self, entity_type: type) -> EntityDescriptor:
        try:
            return self._descriptors[entity_type]
        except KeyError:
            raise DescriptorNotFoundError(
                f"No descriptor registered for '{getattr(entity_type, '__name__', entity_type)}'"
            ) from None

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)


def _plain_type(hint: Any) -> Optional[type]:
    """Unwrap ``Optional[X]`` to ``X``; anything that is not a plain class maps to ``None``."""
    if typing.get_origin(hint) is typing.Union:
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        hint = args[0] if len(args) == 1 else None
    return hint if isinstance(hint, type) else None
