"""
DAO Engine
==========

Purpose
-------
The façade of the package. A :class:`DaoEngine` is built once per database
with an explicit connection provider, descriptor registry and settings, and
hands out one :class:`Dao` per registered entity type.

A :class:`Dao` offers:

- Generated CRUD: ``insert``, ``batch_insert``, ``update``, ``batch_update``,
  ``upsert``, ``batch_upsert``, ``update_by``, ``delete``, ``delete_by_id``,
  ``batch_delete``, ``batch_delete_by_ids``, ``delete_by``, ``find_by_id``, ``batch_get``,
  ``find_first``, ``list``, ``count``, ``exists``, ``paginate`` and ``stream``
- Declared operations: literal SQL templates (:class:`Query`,
  :class:`Statement`, :class:`BatchStatement`) compiled at registration and
  resolved to plain callables, reachable as ``dao.call(name, ...)`` or
  ``dao.<name>(...)``
- Join loading (and deletion of joined rows) through the relations declared
  at registration

Every call takes an optional ``tx`` (a
:class:`~daokit.helpers.transactionManagement.TransactionContext`) and
applies the operation's propagation rule to it. Generated CRUD defaults to
``SUPPORTS``: it joins the caller's transaction when there is one and runs
with autocommit otherwise.

Usage
-----
.. code-block:: python

    from daokit.config.connection_engine import EngineConnectionProvider, create_connection_engine
    from daokit.daos.dao_engine import DaoEngine, Query, Statement

    engine = DaoEngine(EngineConnectionProvider(create_connection_engine()))
    user_dao = engine.register(
        User,
        operations={
            "find_by_email": Query("SELECT * FROM {table} WHERE EMAIL = :email", shape=ResultShape.ENTITY),
            "rename": Statement("UPDATE {table} SET LAST_NAME = :lastName WHERE ID = :id"),
        },
    )

    user_id = user_dao.insert(User(first_name="Ada", last_name="Lovelace", email="ada@example.com"))
    ada = user_dao.find_by_email(email="ada@example.com")

    with engine.begin() as tx:
        user_dao.rename(id=user_id, lastName="King", tx=tx)
        tx.commit()

Error Handling
--------------
- Mutations on ``NO_UPDATE`` / ``READ_ONLY`` DAOs raise
  :class:`UnsupportedOperationError` before a connection is acquired.
- Template errors surface at registration as :class:`TemplateSyntaxError`.
- Driver failures surface as :class:`ExecutionError` (see the executor).
"""

import logging
import math
from collections import ChainMap
from collections.abc import Mapping as MappingABC
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Union

from daokit.config.config import Settings, settings as default_settings
from daokit.config.connection_engine import ConnectionProvider
from daokit.core.binder import ParameterBinder, ResultMapper
from daokit.core.conditions import ConditionLike, and_, eq, in_, or_, to_criteria
from daokit.core.errors import DescriptorNotFoundError, UnsupportedOperationError
from daokit.core.query_executor import QueryExecutor, ResultShape, RowStream, chunked
from daokit.core.sql_builder import SQLBuilder, id_condition
from daokit.core.sql_template import CompiledTemplate, compile_template
from daokit.daos.dao_cache import DEFAULT_INVALIDATION_PATTERN, CachedDao, DaoCache
from daokit.daos.join_loader import JoinLoader, JoinSpec
from daokit.entities.descriptor import DescriptorRegistry, EntityDescriptor
from daokit.helpers.transactionManagement import (
    IsolationLevel,
    Propagation,
    TransactionContext,
    TransactionManager,
)

logger = logging.getLogger(__name__)


class DaoMode(str, Enum):
    CRUD = "CRUD"
    NO_UPDATE = "NO_UPDATE"
    READ_ONLY = "READ_ONLY"


class _Kind(str, Enum):
    READ = "READ"
    INSERT = "INSERT"
    MODIFY = "MODIFY"


_CRUD_KINDS: Dict[str, _Kind] = {
    "find_by_id": _Kind.READ,
    "batch_get": _Kind.READ,
    "find_first": _Kind.READ,
    "list": _Kind.READ,
    "count": _Kind.READ,
    "exists": _Kind.READ,
    "paginate": _Kind.READ,
    "stream": _Kind.READ,
    "insert": _Kind.INSERT,
    "batch_insert": _Kind.INSERT,
    "update": _Kind.MODIFY,
    "batch_update": _Kind.MODIFY,
    "upsert": _Kind.MODIFY,
    "batch_upsert": _Kind.MODIFY,
    "update_by": _Kind.MODIFY,
    "delete": _Kind.MODIFY,
    "delete_by_id": _Kind.MODIFY,
    "batch_delete": _Kind.MODIFY,
    "batch_delete_by_ids": _Kind.MODIFY,
    "delete_by": _Kind.MODIFY,
    "delete_join_entities": _Kind.MODIFY,
}


# ---------------------------------------------------------------------
# Operation declarations
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Query:
    """A SELECT template. ``shape`` picks entities, rows, a scalar or a stream."""

    sql: str
    shape: ResultShape = ResultShape.ENTITIES
    propagation: Propagation = Propagation.SUPPORTS
    timeout: Optional[float] = None


@dataclass(frozen=True)
class Statement:
    """An INSERT/UPDATE/DELETE (or DDL) template returning the affected row count."""

    sql: str
    propagation: Propagation = Propagation.SUPPORTS
    timeout: Optional[float] = None


@dataclass(frozen=True)
class BatchStatement:
    """A template executed once per bind source, in chunks of ``batch_size``."""

    sql: str
    batch_size: Optional[int] = None
    propagation: Propagation = Propagation.SUPPORTS
    timeout: Optional[float] = None


@dataclass(frozen=True)
class Crud:
    """Overrides the propagation of the generated CRUD method it is registered under."""

    propagation: Propagation = Propagation.SUPPORTS


Operation = Union[Query, Statement, BatchStatement, Crud]


@dataclass
class Page:
    items: List[Any]
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


class _Attributes(MappingABC):
    """Read-only mapping view over an object's attributes."""

    def __init__(self, obj: Any) -> None:
        self._obj = obj

    def __getitem__(self, name: str) -> Any:
        try:
            return getattr(self._obj, name)
        except AttributeError:
            raise KeyError(name) from None

    def __iter__(self) -> Iterator[str]:
        return iter(getattr(self._obj, "__dict__", {}))

    def __len__(self) -> int:
        return len(getattr(self._obj, "__dict__", {}))


def _bind_source(bind: Any, binds: Mapping[str, Any]) -> Any:
    if not binds:
        return bind
    if bind is None:
        return binds
    return ChainMap(dict(binds), bind if isinstance(bind, MappingABC) else _Attributes(bind))


def _statement_kind(sql: str) -> _Kind:
    verb = sql.lstrip().split(None, 1)[0].upper() if sql.strip() else ""
    if verb in ("SELECT", "WITH", "VALUES"):
        return _Kind.READ
    if verb == "INSERT":
        return _Kind.INSERT
    return _Kind.MODIFY


# ---------------------------------------------------------------------
# DAO
# ---------------------------------------------------------------------

class Dao:
    """
    Data Access Object for one entity type.

    Instances are created by :meth:`DaoEngine.register`; they keep no
    per-call state and can be shared between threads.
    """

    def __init__(
        self,
        engine: "DaoEngine",
        descriptor: EntityDescriptor,
        mode: DaoMode = DaoMode.CRUD,
        propagation: Propagation = Propagation.SUPPORTS,
        joins: Optional[Mapping[str, JoinSpec]] = None,
    ) -> None:
        self.engine = engine
        self.descriptor = descriptor
        self.mode = DaoMode(mode)
        self.default_propagation = Propagation(propagation)
        self.joins: Dict[str, JoinSpec] = dict(joins or {})
        self.mapper = ResultMapper(descriptor, engine.builder.naming_policy)
        self._propagations: Dict[str, Propagation] = {}
        self._operations: Dict[str, Callable[..., Any]] = {}

    @property
    def table(self) -> str:
        return self.descriptor.table

    @property
    def operations(self) -> Sequence[str]:
        return tuple(self._operations)

    def __repr__(self) -> str:
        return f"Dao({self.descriptor.name}, table={self.table}, mode={self.mode.value})"

    # -----------------------------------------------------------------
    # Plumbing
    # -----------------------------------------------------------------

    def _check_mode(self, operation: str, kind: _Kind) -> None:
        if kind is _Kind.READ or self.mode is DaoMode.CRUD:
            return
        if self.mode is DaoMode.NO_UPDATE and kind is _Kind.INSERT:
            return
        raise UnsupportedOperationError(
            f"{self.mode.value} DAO for '{self.descriptor.name}' does not allow this operation",
            operation=operation,
        )

    def _scoped(self, operation: str, tx: Optional[TransactionContext], work: Callable[[TransactionContext], Any],
                propagation: Optional[Propagation] = None, kind: Optional[_Kind] = None) -> Any:
        self._check_mode(operation, kind or _CRUD_KINDS[operation])
        propagation = propagation or self._propagations.get(operation, self.default_propagation)
        with self.engine.transactions.begin(propagation, parent=tx) as ctx:
            result = work(ctx)
            ctx.commit()
        return result

    def _stream_source(self, tx: Optional[TransactionContext]):
        return tx if tx is not None else self.engine.provider

    @property
    def _executor(self) -> QueryExecutor:
        return self.engine.executor

    @property
    def _builder(self) -> SQLBuilder:
        return self.engine.builder

    def _returning_ids(self) -> Sequence[str]:
        return self.descriptor.id_property_names if self.engine.supports_returning else ()

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    def find_by_id(self, id_value: Any, select_props: Optional[Iterable[str]] = None, *, tx=None) -> Any:
        """Return the entity with primary key ``id_value`` or ``None``."""
        statement = self._builder.select(self.descriptor, id_condition(self.descriptor, id_value), select_props)
        return self._scoped(
            "find_by_id", tx, lambda ctx: self._executor.query_for_entity(statement, ctx, self.mapper)
        )

    def batch_get(self, ids: Sequence[Any], select_props: Optional[Iterable[str]] = None,
                  batch_size: Optional[int] = None, *, tx=None) -> List[Any]:
        """
        Fetch many entities by primary key with chunked ``IN`` queries.

        Results follow the order of ``ids``; ids with no row are skipped and
        duplicates are returned once per occurrence.
        """
        ids = [self.descriptor.id_key(i) for i in ids]
        if not ids:
            return []
        batch_size = batch_size or self.engine.settings.BATCH_SIZE
        id_props = self.descriptor.id_property_names
        distinct = list(dict.fromkeys(ids))

        def work(ctx):
            found: Dict[Any, Any] = {}
            for chunk in chunked(distinct, batch_size):
                if len(id_props) == 1:
                    condition = in_(id_props[0], chunk)
                else:
                    condition = or_(*[and_(*[eq(p, v) for p, v in zip(id_props, i)]) for i in chunk])
                statement = self._builder.select(self.descriptor, condition, select_props)
                for entity in self._executor.query_for_list(statement, ctx, self.mapper):
                    found[self.descriptor.id_of(entity)] = entity
            return [found[i] for i in ids if i in found]

        return self._scoped("batch_get", tx, work)

    def list(self, condition: ConditionLike = None, select_props: Optional[Iterable[str]] = None, *, tx=None) -> List[Any]:
        statement = self._builder.select(self.descriptor, condition, select_props)
        return self._scoped("list", tx, lambda ctx: self._executor.query_for_list(statement, ctx, self.mapper))

    def find_first(self, condition: ConditionLike = None, select_props: Optional[Iterable[str]] = None, *, tx=None) -> Any:
        crit = to_criteria(condition)
        if crit.limit is None:
            crit = crit.limited(1)
        statement = self._builder.select(self.descriptor, crit, select_props)
        return self._scoped(
            "find_first", tx, lambda ctx: self._executor.query_for_entity(statement, ctx, self.mapper)
        )

    def count(self, condition: ConditionLike = None, *, tx=None) -> int:
        statement = self._builder.count(self.descriptor, condition)
        return self._scoped("count", tx, lambda ctx: int(self._executor.query_for_scalar(statement, ctx) or 0))

    def exists(self, condition: ConditionLike = None, *, tx=None) -> bool:
        statement = self._builder.exists(self.descriptor, condition)
        return self._scoped("exists", tx, lambda ctx: self._executor.query_for_scalar(statement, ctx) is not None)

    def paginate(self, condition: ConditionLike, page: int = 1, page_size: int = 20, *, tx=None) -> Page:
        """
        Return page ``page`` (1-based) of ``page_size`` entities.

        The condition must carry an ORDER BY, otherwise pages would overlap.
        """
        crit = to_criteria(condition)
        if crit.order_by is None or not crit.order_by.properties:
            raise ValueError("paginate needs an ORDER BY to produce stable pages")
        if page < 1 or page_size < 1:
            raise ValueError(f"Invalid page {page} / page size {page_size}")
        count_statement = self._builder.count(self.descriptor, replace(crit, order_by=None, limit=None))
        page_statement = self._builder.select(self.descriptor, crit.limited(page_size, (page - 1) * page_size))

        def work(ctx):
            total = int(self._executor.query_for_scalar(count_statement, ctx) or 0)
            items = self._executor.query_for_list(page_statement, ctx, self.mapper) if total else []
            return Page(items=items, page=page, page_size=page_size, total=total)

        return self._scoped("paginate", tx, work)

    def stream(self, condition: ConditionLike = None, select_props: Optional[Iterable[str]] = None, *, tx=None) -> RowStream:
        """
        Return a lazy stream of entities.

        Without ``tx`` the stream holds its own connection until it is
        exhausted or closed; with ``tx`` it reads on the transaction's
        connection, which must stay open while the stream is consumed.
        """
        self._check_mode("stream", _Kind.READ)
        statement = self._builder.select(self.descriptor, condition, select_props)
        return self._executor.stream(statement, self._stream_source(tx), self.mapper)

    # -----------------------------------------------------------------
    # Inserts
    # -----------------------------------------------------------------

    def insert(self, entity: Any, *, tx=None) -> Any:
        """
        Insert ``entity`` and return its primary key.

        A generated key is also set on the entity.
        """
        has_id = bool(self.descriptor.id_property_names) and self.descriptor.id_of(entity) is not None
        returning = () if has_id else self._returning_ids()
        statement = self._builder.insert(self.descriptor, entity, returning=returning)

        def work(ctx):
            generated = self._executor.insert(statement, ctx)
            if has_id:
                return self.descriptor.id_of(entity)
            if generated is not None and self.descriptor.id_property_names:
                self.descriptor.set_id(entity, generated)
            return generated

        return self._scoped("insert", tx, work)

    def batch_insert(self, entities: Sequence[Any], batch_size: Optional[int] = None, *, tx=None) -> List[Any]:
        """
        Insert ``entities`` in chunks of ``batch_size`` (default ``BATCH_SIZE``).

        Returns one key per entity in input order and sets generated keys on
        the entities.
        """
        entities = list(entities)
        if not entities:
            return []

        def work(ctx):
            ids = self._executor.batch_insert(
                self.descriptor,
                entities,
                ctx,
                self._builder,
                batch_size=batch_size,
                returning=self.engine.supports_returning,
            )
            if self.descriptor.id_property_names:
                for entity, generated in zip(entities, ids):
                    if generated is not None and self.descriptor.id_of(entity) is None:
                        self.descriptor.set_id(entity, generated)
            return ids

        return self._scoped("batch_insert", tx, work)

    # -----------------------------------------------------------------
    # Updates
    # -----------------------------------------------------------------

    def _require_id(self, entity: Any, operation: str) -> Any:
        id_value = self.descriptor.id_of(entity)
        if id_value is None:
            raise ValueError(f"{operation}: entity '{self.descriptor.name}' has no ID value")
        return id_value

    def update(self, entity: Any, props: Optional[Iterable[str]] = None, *, tx=None) -> int:
        """Update ``entity`` by primary key; ``props`` narrows the SET list. Returns the row count."""
        id_value = self._require_id(entity, "update")
        statement = self._builder.update(self.descriptor, entity, id_condition(self.descriptor, id_value), props)
        return self._scoped("update", tx, lambda ctx: self._executor.update(statement, ctx))

    def batch_update(self, entities: Sequence[Any], props: Optional[Iterable[str]] = None,
                     batch_size: Optional[int] = None, *, tx=None) -> int:
        entities = list(entities)
        if not entities:
            return 0
        for entity in entities:
            self._require_id(entity, "batch_update")
        template = self._builder.update(self.descriptor, None, id_condition(self.descriptor), props)
        return self._scoped(
            "batch_update",
            tx,
            lambda ctx: sum(self._executor.batch_execute(template, entities, ctx, batch_size)),
        )

    def update_by(self, values: Mapping[str, Any], condition: ConditionLike, *, tx=None) -> int:
        """UPDATE ... SET ``values`` WHERE ``condition``."""
        statement = self._builder.update(self.descriptor, values, condition)
        return self._scoped("update_by", tx, lambda ctx: self._executor.update(statement, ctx))

    def upsert(self, entity: Any, *, tx=None) -> Any:
        """Update ``entity`` when a row with its ID exists, insert it otherwise. Returns the entity."""
        id_value = self.descriptor.id_of(entity)

        def work(ctx):
            if id_value is not None and self.exists(id_condition(self.descriptor, id_value), tx=ctx):
                self.update(entity, tx=ctx)
            else:
                self.insert(entity, tx=ctx)
            return entity

        return self._scoped("upsert", tx, work)

    def batch_upsert(self, entities: Sequence[Any], batch_size: Optional[int] = None, *, tx=None) -> List[Any]:
        """
        Update the entities whose key already has a row and insert the rest.

        Every chunk of ``batch_size`` runs one existence query for its keys,
        then a batch update of the existing rows and a batch insert of the
        new ones. Entities without a key are always inserted. Returns the
        entities, with generated keys set.
        """
        entities = list(entities)
        if not entities:
            return []
        batch_size = batch_size or self.engine.settings.BATCH_SIZE
        id_props = self.descriptor.id_property_names
        if not id_props:
            raise ValueError(f"batch_upsert: entity '{self.descriptor.name}' has no ID column")

        def work(ctx):
            for chunk in chunked(entities, batch_size):
                keyed = [e for e in chunk if self.descriptor.id_of(e) is not None]
                unkeyed = [e for e in chunk if self.descriptor.id_of(e) is None]
                existing = set()
                if keyed:
                    rows = self.batch_get([self.descriptor.id_of(e) for e in keyed], id_props, batch_size, tx=ctx)
                    existing = {self.descriptor.id_of(row) for row in rows}
                found = [e for e in keyed if self.descriptor.id_of(e) in existing]
                new = [e for e in keyed if self.descriptor.id_of(e) not in existing]
                if found:
                    self.batch_update(found, batch_size=batch_size, tx=ctx)
                for group in (new, unkeyed):
                    if group:
                        self.batch_insert(group, batch_size=batch_size, tx=ctx)
            return entities

        return self._scoped("batch_upsert", tx, work)

    # -----------------------------------------------------------------
    # Deletes
    # -----------------------------------------------------------------

    def delete(self, entity: Any, *, tx=None) -> int:
        id_value = self._require_id(entity, "delete")
        statement = self._builder.delete(self.descriptor, id_condition(self.descriptor, id_value))
        return self._scoped("delete", tx, lambda ctx: self._executor.update(statement, ctx))

    def delete_by_id(self, id_value: Any, *, tx=None) -> int:
        statement = self._builder.delete(self.descriptor, id_condition(self.descriptor, id_value))
        return self._scoped("delete_by_id", tx, lambda ctx: self._executor.update(statement, ctx))

    def batch_delete(self, entities: Sequence[Any], batch_size: Optional[int] = None, *, tx=None) -> int:
        entities = list(entities)
        if not entities:
            return 0
        for entity in entities:
            self._require_id(entity, "batch_delete")
        template = self._builder.delete(self.descriptor, id_condition(self.descriptor))
        return self._scoped(
            "batch_delete",
            tx,
            lambda ctx: sum(self._executor.batch_execute(template, entities, ctx, batch_size)),
        )

    def batch_delete_by_ids(self, ids: Sequence[Any], batch_size: Optional[int] = None, *, tx=None) -> int:
        sources = [self.descriptor.id_values(i) for i in ids]
        if not sources:
            return 0
        template = self._builder.delete(self.descriptor, id_condition(self.descriptor))
        return self._scoped(
            "batch_delete_by_ids",
            tx,
            lambda ctx: sum(self._executor.batch_execute(template, sources, ctx, batch_size)),
        )

    def delete_by(self, condition: ConditionLike, *, tx=None) -> int:
        statement = self._builder.delete(self.descriptor, condition)
        return self._scoped("delete_by", tx, lambda ctx: self._executor.update(statement, ctx))

    # -----------------------------------------------------------------
    # Joins
    # -----------------------------------------------------------------

    def _join(self, name: str, operation: str) -> JoinSpec:
        try:
            return self.joins[name]
        except KeyError:
            raise UnsupportedOperationError(
                f"No join '{name}' declared for '{self.descriptor.name}'", operation=operation
            ) from None

    def load_join(self, roots: Any, name: str, only_if_null: bool = False, *, tx=None) -> Any:
        """Load the relation declared as ``name`` onto ``roots`` (one entity or an iterable of them)."""
        spec = self._join(name, "load_join")
        return self.engine.join_loader.load(roots, spec, only_if_null, root_descriptor=self.descriptor, tx=tx)

    def delete_join_entities(self, roots: Any, name: str, *, tx=None) -> int:
        """
        Delete the rows related to ``roots`` through the join declared as ``name``.

        For a join through a middle table the linking rows are deleted too.
        Runs in one transaction (``REQUIRED`` unless overridden with
        :class:`Crud`) and returns the number of deleted rows.
        """
        spec = self._join(name, "delete_join_entities")
        return self._scoped(
            "delete_join_entities",
            tx,
            lambda ctx: self.engine.join_loader.delete(roots, spec, root_descriptor=self.descriptor, tx=ctx),
            propagation=self._propagations.get("delete_join_entities", Propagation.REQUIRED),
        )

    def load_all(self, roots: Any, names: Optional[Iterable[str]] = None, only_if_null: bool = False, *, tx=None) -> Any:
        """Load several declared relations (all of them when ``names`` is omitted)."""
        specs = [self._join(name, "load_all") for name in (names if names is not None else self.joins)]
        return self.engine.join_loader.load_all(roots, specs, only_if_null, root_descriptor=self.descriptor, tx=tx)

    # -----------------------------------------------------------------
    # Declared operations
    # -----------------------------------------------------------------

    def _compile(self, name: str, operation: Operation) -> None:
        if isinstance(operation, Crud):
            if name not in _CRUD_KINDS:
                raise ValueError(f"Crud declaration '{name}' does not name a generated operation")
            self._propagations[name] = Propagation(operation.propagation)
            return
        if name in _CRUD_KINDS or hasattr(type(self), name):
            raise ValueError(f"Operation '{name}' clashes with a built-in DAO method")
        template = compile_template(operation.sql)
        kind = _statement_kind(operation.sql)
        if isinstance(operation, Query):
            self._operations[name] = self._query_operation(name, template, operation, kind)
        elif isinstance(operation, Statement):
            self._operations[name] = self._statement_operation(name, template, operation, kind)
        elif isinstance(operation, BatchStatement):
            self._operations[name] = self._batch_operation(name, template, operation, kind)
        else:
            raise TypeError(f"Unsupported operation declaration for '{name}': {operation!r}")
        logger.debug("Compiled operation %s.%s (%s)", self.descriptor.name, name, type(operation).__name__)

    def _defines(self, defines: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        return {"table": self.descriptor.table, **(defines or {})}

    def _query_operation(self, name: str, template: CompiledTemplate, operation: Query, kind: _Kind):
        shape = ResultShape(operation.shape)

        def run(bind: Any = None, *, tx=None, defines=None, **binds):
            statement = template.render(
                self._defines(defines), _bind_source(bind, binds), self._builder.parameter_style, operation=name
            )
            mapper = self.mapper if shape in (ResultShape.ENTITIES, ResultShape.ENTITY, ResultShape.STREAM) else None
            if shape is ResultShape.STREAM:
                self._check_mode(name, kind)
                return self._executor.execute(
                    statement, self._stream_source(tx), shape, mapper=mapper, timeout=operation.timeout
                )
            return self._scoped(
                name,
                tx,
                lambda ctx: self._executor.execute(statement, ctx, shape, mapper=mapper, timeout=operation.timeout),
                propagation=operation.propagation,
                kind=kind,
            )

        run.__name__ = name
        return run

    def _statement_operation(self, name: str, template: CompiledTemplate, operation: Statement, kind: _Kind):
        def run(bind: Any = None, *, tx=None, defines=None, **binds):
            statement = template.render(
                self._defines(defines), _bind_source(bind, binds), self._builder.parameter_style, operation=name
            )
            return self._scoped(
                name,
                tx,
                lambda ctx: self._executor.update(statement, ctx, timeout=operation.timeout),
                propagation=operation.propagation,
                kind=kind,
            )

        run.__name__ = name
        return run

    def _batch_operation(self, name: str, template: CompiledTemplate, operation: BatchStatement, kind: _Kind):
        def run(sources: Sequence[Any], *, tx=None, defines=None, batch_size: Optional[int] = None):
            sources = list(sources)
            if not sources:
                return 0
            statement = template.render(
                self._defines(defines), style=self._builder.parameter_style, operation=name, bind_now=False
            )
            size = batch_size or operation.batch_size
            return self._scoped(
                name,
                tx,
                lambda ctx: sum(
                    self._executor.batch_execute(statement, sources, ctx, size, timeout=operation.timeout)
                ),
                propagation=operation.propagation,
                kind=kind,
            )

        run.__name__ = name
        return run

    def call(self, name: str, *args: Any, **kwargs: Any) -> Any:
        """Invoke a declared operation (or a generated CRUD method) by name."""
        operation = self._operations.get(name)
        if operation is None:
            if name in _CRUD_KINDS:
                return getattr(self, name)(*args, **kwargs)
            raise UnsupportedOperationError(
                f"No operation '{name}' declared for '{self.descriptor.name}'", operation=name
            )
        return operation(*args, **kwargs)

    def __getattr__(self, name: str) -> Any:
        operations = self.__dict__.get("_operations")
        if operations is not None and name in operations:
            return operations[name]
        raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")


# ---------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------

class DaoEngine:
    """
    Builds and owns the DAOs of one database.

    Parameters
    ----------
    provider : ConnectionProvider
        Lends connections; the engine never creates a pool itself.
    registry : DescriptorRegistry, optional
        Entity descriptors; a private registry is created when omitted.
    settings : Settings, optional
        Naming policy, parameter style, batch sizes, cache and logging options.
    returning : bool, optional
        Force (or forbid) ``RETURNING`` for generated keys. Detected from the
        provider's dialect when omitted.
    """

    def __init__(
        self,
        provider: ConnectionProvider,
        registry: Optional[DescriptorRegistry] = None,
        settings: Optional[Settings] = None,
        returning: Optional[bool] = None,
        default_isolation: Optional[IsolationLevel] = None,
    ) -> None:
        self.provider = provider
        self.registry = registry if registry is not None else DescriptorRegistry()
        self.settings = settings or default_settings
        self.builder = SQLBuilder(self.settings.NAMING_POLICY, self.settings.PARAMETER_STYLE)
        self.executor = QueryExecutor(self.settings, ParameterBinder())
        self.transactions = TransactionManager(provider, default_isolation)
        self.join_loader = JoinLoader(self)
        self._returning = returning
        self._daos: Dict[type, Any] = {}

    @property
    def supports_returning(self) -> bool:
        if self._returning is None:
            dialect = getattr(self.provider, "dialect", None)
            if dialect is None:
                connection = self.provider.acquire()
                try:
                    dialect = connection.dialect
                finally:
                    self.provider.release(connection)
            self._returning = bool(getattr(dialect, "insert_returning", False))
        return self._returning

    def register(
        self,
        entity: Union[type, EntityDescriptor],
        operations: Optional[Mapping[str, Operation]] = None,
        joins: Optional[Mapping[str, JoinSpec]] = None,
        mode: DaoMode = DaoMode.CRUD,
        propagation: Propagation = Propagation.SUPPORTS,
        cache: Union[bool, DaoCache] = False,
        table: Optional[str] = None,
    ) -> Any:
        """
        Register an entity and build its DAO.

        Parameters
        ----------
        entity : type | EntityDescriptor
            A descriptor, or a dataclass from which one is derived.
        operations : Mapping[str, Operation], optional
            Declared operations, compiled now.
        joins : Mapping[str, JoinSpec], optional
            Relations loadable with :meth:`Dao.load_join`.
        mode : DaoMode
            ``CRUD``, ``NO_UPDATE`` or ``READ_ONLY``.
        propagation : Propagation
            Default propagation of the generated CRUD methods.
        cache : bool | DaoCache
            Wrap the DAO in a :class:`CachedDao`.
        table : str, optional
            Table name when deriving the descriptor from a dataclass.

        Returns
        -------
        Dao | CachedDao

        Raises
        ------
        TemplateSyntaxError
            When a declared SQL template is malformed.
        """
        if isinstance(entity, EntityDescriptor):
            descriptor = entity
        elif entity in self.registry:
            descriptor = self.registry.get(entity)
        else:
            descriptor = EntityDescriptor.from_dataclass(entity, table=table)
        if descriptor.entity_type not in self.registry:
            self.registry.register(descriptor)

        dao = Dao(self, descriptor, mode=mode, propagation=propagation, joins=joins)
        for name, operation in (operations or {}).items():
            dao._compile(name, operation)
        if cache:
            store = cache if isinstance(cache, DaoCache) else DaoCache.from_settings(self.settings)
            dao = CachedDao(dao, store, DEFAULT_INVALIDATION_PATTERN)
        self._daos[descriptor.entity_type] = dao
        logger.debug("Registered %r", dao)
        return dao

    def dao_for(self, entity_type: type) -> Any:
        try:
            return self._daos[entity_type]
        except KeyError:
            raise DescriptorNotFoundError(
                f"No DAO registered for '{getattr(entity_type, '__name__', entity_type)}'"
            ) from None

    def begin(
        self,
        propagation: Propagation = Propagation.REQUIRED,
        isolation_level: Optional[IsolationLevel] = None,
        parent: Optional[TransactionContext] = None,
    ) -> TransactionContext:
        """Shortcut for ``engine.transactions.begin(...)``."""
        return self.transactions.begin(propagation, isolation_level, parent)
