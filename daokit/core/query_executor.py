"""
Query Executor
==============

Purpose
-------
Runs :class:`~daokit.core.sql_builder.SQLStatement` objects on a connection
lent by a transaction context (or straight from a connection provider) and
shapes the result:

- ``ROW_COUNT``: affected rows of an UPDATE/DELETE/INSERT
- ``SCALAR``: first column of the first row
- ``ROWS``: list of plain dicts
- ``ENTITIES`` / ``ENTITY``: mapped entities (all rows / first row)
- ``STREAM``: a lazy, forward-only :class:`RowStream`

Batches
-------
:meth:`QueryExecutor.batch_execute` partitions its input into chunks of
exactly ``batch_size`` (the last one may be smaller) and sends each chunk as
one ``executemany`` call. :meth:`QueryExecutor.batch_insert` renders one
multi-row INSERT per chunk (split further only to stay under
``MAX_BIND_PARAMETERS``) and returns the keys in input order.
On the first failing chunk the remaining chunks are abandoned and a
:class:`BatchExecutionError` reports how many chunks succeeded, unless an
``on_chunk_error`` callback asks to continue.

Diagnostics
-----------
- Every statement is logged at DEBUG when ``SQL_LOG_ENABLED`` is set.
- Statements slower than ``SLOW_SQL_THRESHOLD_MS`` are logged as warnings.
- Driver failures are logged at ERROR and re-raised as :class:`ExecutionError`
  carrying the SQL text and the bound parameters.

Timeouts
--------
A timeout arms a timer that interrupts the running statement through the
DBAPI connection (``interrupt()`` on sqlite3, ``cancel()`` on psycopg2) and
the call fails with :class:`StatementTimeoutError`.
"""

import logging
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Union

from sqlalchemy.exc import SQLAlchemyError

from daokit.config.config import Settings, settings as default_settings
from daokit.config.connection_engine import ConnectionProvider
from daokit.core.binder import ParameterBinder, ResultMapper, first_value, row_to_dict
from daokit.core.errors import (
    BatchExecutionError,
    DaoError,
    ExecutionError,
    ResultMappingError,
    StatementTimeoutError,
)
from daokit.core.sql_builder import SQLBuilder, SQLStatement, batch_keys_supplied
from daokit.entities.descriptor import ColumnSpec, EntityDescriptor
from daokit.helpers.transactionManagement import ConnectionLease, TransactionContext

logger = logging.getLogger(__name__)

ConnectionSource = Union[TransactionContext, ConnectionProvider]
ChunkErrorHandler = Callable[[int, DaoError], bool]


class ResultShape(str, Enum):
    ROW_COUNT = "ROW_COUNT"
    SCALAR = "SCALAR"
    ROWS = "ROWS"
    ENTITIES = "ENTITIES"
    ENTITY = "ENTITY"
    STREAM = "STREAM"


def lease_connection(source: ConnectionSource) -> ConnectionLease:
    """Borrow a connection from a transaction context or a bare provider."""
    if isinstance(source, TransactionContext):
        return source.lease()
    return ConnectionLease(source.acquire(), source.release, autocommit=True)


def chunked(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    if size < 1:
        raise ValueError(f"batch size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _sortable_key(id_columns: Sequence[ColumnSpec]) -> bool:
    """A single integer key is taken to be auto-incremented in insertion order."""
    if len(id_columns) != 1:
        return False
    value_type = id_columns[0].value_type
    return isinstance(value_type, type) and issubclass(value_type, int) and value_type is not bool


def _generated_keys(result: Any, expected: int, statement: SQLStatement) -> List[Any]:
    rows = result.all()
    if len(rows) != expected:
        raise ResultMappingError(
            f"INSERT returned {len(rows)} key(s) for {expected} row(s)",
            operation=statement.operation,
            sql=statement.text,
        )
    keys = [row[0] if len(row) == 1 else tuple(row) for row in rows]
    return sorted(keys) if len(keys) > 1 else keys


class _Timeout:
    """Interrupts the DBAPI connection of ``lease`` after ``seconds``."""

    def __init__(self, lease: ConnectionLease, seconds: Optional[float]) -> None:
        self.lease = lease
        self.seconds = seconds
        self.fired = False
        self._timer: Optional[threading.Timer] = None
        self._dbapi_connection = None

    def _cancel(self) -> None:
        self.fired = True
        dbapi_connection = self._dbapi_connection
        for method in ("interrupt", "cancel"):
            cancel = getattr(dbapi_connection, method, None)
            if cancel is not None:
                cancel()
                return
        logger.warning("Driver connection %r cannot be interrupted", type(dbapi_connection).__name__)

    def __enter__(self) -> "_Timeout":
        if self.seconds:
            self._dbapi_connection = self.lease.connection.connection.dbapi_connection
            self._timer = threading.Timer(self.seconds, self._cancel)
            self._timer.daemon = True
            self._timer.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._timer is not None:
            self._timer.cancel()


class RowStream:
    """
    Lazy, finite, forward-only sequence of rows.

    The cursor and (for autocommit leases) the connection are released
    exactly once: when the rows are exhausted, when :meth:`close` is called
    or when the ``with`` block exits, whichever comes first. A stream cannot
    be restarted.

    Callers must bound the lifetime of a stream; an abandoned stream keeps
    its connection out of the pool.
    """

    def __init__(self, result, lease: ConnectionLease, transform: Callable[[Mapping[str, Any]], Any], sql: str) -> None:
        self._result = result
        self._lease = lease
        self._transform = transform
        self._sql = sql
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> "RowStream":
        return self

    def __next__(self) -> Any:
        if self._closed:
            raise StopIteration
        try:
            row = self._result.fetchone()
        except SQLAlchemyError as e:
            self.close()
            logger.error("Stream fetch failed", exc_info=True)
            raise ExecutionError(f"Stream fetch failed: {e}", operation="stream", sql=self._sql) from e
        if row is None:
            self.close()
            raise StopIteration
        try:
            return self._transform(row._mapping)
        except Exception:
            self.close()
            raise

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._result.close()
        finally:
            self._lease.close()

    def __enter__(self) -> "RowStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class QueryExecutor:
    """
    Executes statements and shapes results.

    Parameters
    ----------
    settings : Settings, optional
        Logging switches, slow-SQL threshold, default batch size and timeout.
    binder : ParameterBinder, optional
        Binder used to turn statements into SQLAlchemy clauses.
    """

    def __init__(self, settings: Optional[Settings] = None, binder: Optional[ParameterBinder] = None) -> None:
        self.settings = settings or default_settings
        self.binder = binder or ParameterBinder()

    # -----------------------------------------------------------------
    # Core execution
    # -----------------------------------------------------------------

    def _log(self, statement: SQLStatement, parameters: Any, started: float) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000
        if self.settings.SQL_LOG_ENABLED:
            logger.debug("[%s] %s | %r (%.1f ms)", statement.operation or "sql", statement.text, parameters, elapsed_ms)
        if elapsed_ms >= self.settings.SLOW_SQL_THRESHOLD_MS:
            logger.warning("Slow SQL (%.1f ms) [%s]: %s", elapsed_ms, statement.operation or "sql", statement.text)

    def _run(
        self,
        lease: ConnectionLease,
        statement: SQLStatement,
        parameters: Union[Dict[str, Any], List[Dict[str, Any]]],
        timeout: Optional[float] = None,
        execution_options: Optional[Dict[str, Any]] = None,
    ):
        clause = self.binder.to_clause(statement)
        timeout = self.settings.QUERY_TIMEOUT_SECONDS if timeout is None else timeout
        started = time.perf_counter()
        guard = _Timeout(lease, timeout)
        try:
            with guard:
                result = lease.connection.execute(clause, parameters, execution_options=execution_options or {})
        except SQLAlchemyError as e:
            lease.rollback()
            if guard.fired:
                raise StatementTimeoutError(
                    f"Statement cancelled after {timeout} s",
                    operation=statement.operation,
                    sql=statement.text,
                    parameters=parameters,
                ) from e
            logger.error("Statement failed [%s]: %s", statement.operation or "sql", statement.text, exc_info=True)
            raise ExecutionError(
                str(getattr(e, "orig", None) or e),
                operation=statement.operation,
                sql=statement.text,
                parameters=parameters,
            ) from e
        self._log(statement, parameters, started)
        return result

    @contextmanager
    def _leased(self, source: ConnectionSource) -> Iterator[ConnectionLease]:
        lease = lease_connection(source)
        try:
            yield lease
            lease.commit()
        except BaseException:
            if not lease.closed:
                lease.rollback()
            raise
        finally:
            lease.close()

    def execute(
        self,
        statement: SQLStatement,
        source: ConnectionSource,
        shape: ResultShape = ResultShape.ROWS,
        mapper: Optional[ResultMapper] = None,
        bind: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Execute ``statement`` and return a result of the requested ``shape``.

        Parameters
        ----------
        statement : SQLStatement
        source : TransactionContext | ConnectionProvider
            Where the connection comes from.
        shape : ResultShape
            How to shape the result (see module docstring).
        mapper : ResultMapper, optional
            Required for ``ENTITIES`` and ``ENTITY``; optional for ``STREAM``.
        bind : entity | Mapping, optional
            Source for unbound parameter slots.
        timeout : float, optional
            Seconds before the statement is cancelled.

        Raises
        ------
        ExecutionError
            On driver failures; :class:`ResultMappingError` when a row cannot
            be mapped and :class:`StatementTimeoutError` on timeout.
        """
        shape = ResultShape(shape)
        if shape in (ResultShape.ENTITIES, ResultShape.ENTITY) and mapper is None:
            raise ValueError(f"Result shape {shape.value} needs a ResultMapper")
        parameters = self.binder.bind(statement, bind)
        if shape is ResultShape.STREAM:
            return self._stream(statement, parameters, source, mapper, timeout)
        with self._leased(source) as lease:
            result = self._run(lease, statement, parameters, timeout)
            if shape is ResultShape.ROW_COUNT:
                return result.rowcount
            if shape is ResultShape.SCALAR:
                return first_value(result.first())
            rows = result.mappings().all()
        if shape is ResultShape.ROWS:
            return [row_to_dict(row) for row in rows]
        if shape is ResultShape.ENTITY:
            return mapper.map_row(rows[0], statement.operation) if rows else None
        return mapper.map_rows(rows, statement.operation)

    def _stream(
        self,
        statement: SQLStatement,
        parameters: Dict[str, Any],
        source: ConnectionSource,
        mapper: Optional[ResultMapper],
        timeout: Optional[float],
    ) -> RowStream:
        lease = lease_connection(source)
        try:
            result = self._run(lease, statement, parameters, timeout, execution_options={"stream_results": True})
        except BaseException:
            lease.close()
            raise
        if mapper is not None:
            def transform(row):
                return mapper.map_row(row, statement.operation)
        else:
            transform = row_to_dict
        return RowStream(result, lease, transform, statement.text)

    # -----------------------------------------------------------------
    # Convenience shapes
    # -----------------------------------------------------------------

    def update(self, statement: SQLStatement, source: ConnectionSource, bind: Any = None, timeout=None) -> int:
        return self.execute(statement, source, ResultShape.ROW_COUNT, bind=bind, timeout=timeout)

    def query_for_scalar(self, statement: SQLStatement, source: ConnectionSource, bind: Any = None, timeout=None) -> Any:
        return self.execute(statement, source, ResultShape.SCALAR, bind=bind, timeout=timeout)

    def query_rows(self, statement: SQLStatement, source: ConnectionSource, bind: Any = None, timeout=None) -> List[dict]:
        return self.execute(statement, source, ResultShape.ROWS, bind=bind, timeout=timeout)

    def query_for_list(
        self, statement: SQLStatement, source: ConnectionSource, mapper: ResultMapper, bind: Any = None, timeout=None
    ) -> List[Any]:
        return self.execute(statement, source, ResultShape.ENTITIES, mapper=mapper, bind=bind, timeout=timeout)

    def query_for_entity(
        self, statement: SQLStatement, source: ConnectionSource, mapper: ResultMapper, bind: Any = None, timeout=None
    ) -> Any:
        return self.execute(statement, source, ResultShape.ENTITY, mapper=mapper, bind=bind, timeout=timeout)

    def stream(
        self,
        statement: SQLStatement,
        source: ConnectionSource,
        mapper: Optional[ResultMapper] = None,
        bind: Any = None,
        timeout=None,
    ) -> RowStream:
        return self.execute(statement, source, ResultShape.STREAM, mapper=mapper, bind=bind, timeout=timeout)

    def insert(self, statement: SQLStatement, source: ConnectionSource, bind: Any = None, timeout=None) -> Any:
        """
        Execute an INSERT and return the generated key.

        The key comes from the ``RETURNING`` clause when the statement has
        one, else from the cursor's ``lastrowid``. Returns a tuple for
        composite keys and ``None`` when the driver reports nothing.
        """
        parameters = self.binder.bind(statement, bind)
        with self._leased(source) as lease:
            result = self._run(lease, statement, parameters, timeout)
            if statement.returning:
                row = result.first()
                if row is None:
                    return None
                return row[0] if len(row) == 1 else tuple(row)
            return getattr(result, "lastrowid", None) or None

    # -----------------------------------------------------------------
    # Batches
    # -----------------------------------------------------------------

    def batch_execute(
        self,
        statement: SQLStatement,
        sources: Sequence[Any],
        source: ConnectionSource,
        batch_size: Optional[int] = None,
        on_chunk_error: Optional[ChunkErrorHandler] = None,
        timeout: Optional[float] = None,
    ) -> List[int]:
        """
        Run one template statement for every bind source, chunk by chunk.

        Parameters
        ----------
        statement : SQLStatement
            Template whose ``UNBOUND`` slots are resolved from each item of
            ``sources``.
        sources : sequence
            Entities or mappings, one per execution.
        source : TransactionContext | ConnectionProvider
        batch_size : int, optional
            Chunk size; defaults to ``BATCH_SIZE``.
        on_chunk_error : callable, optional
            ``on_chunk_error(chunk_index, error) -> bool``; returning ``True``
            skips the failed chunk and continues with the next.

        Returns
        -------
        list of int
            Affected row count of each chunk, in chunk order.

        Raises
        ------
        BatchExecutionError
            When a chunk fails and the remaining chunks are abandoned.
        """
        batch_size = batch_size or self.settings.BATCH_SIZE
        items = list(sources)
        counts: List[int] = []
        succeeded = 0
        with self._leased(source) as lease:
            for index, chunk in enumerate(chunked(items, batch_size)):
                try:
                    parameters = self.binder.bind_many(statement, chunk)
                    result = self._run(lease, statement, parameters, timeout)
                    lease.commit()
                except DaoError as e:
                    lease.rollback()
                    if on_chunk_error is not None and on_chunk_error(index, e):
                        counts.append(0)
                        continue
                    raise BatchExecutionError(
                        f"Batch chunk {index} failed after {succeeded} successful chunk(s): {e.message}",
                        chunks_succeeded=succeeded,
                        results=counts,
                        operation=statement.operation,
                        sql=statement.text,
                        failed_chunk=index,
                    ) from e
                counts.append(result.rowcount)
                succeeded += 1
        return counts

    def batch_insert(
        self,
        descriptor: EntityDescriptor,
        entities: Sequence[Any],
        source: ConnectionSource,
        builder: SQLBuilder,
        batch_size: Optional[int] = None,
        returning: bool = True,
        on_chunk_error: Optional[ChunkErrorHandler] = None,
        timeout: Optional[float] = None,
    ) -> List[Any]:
        """
        Insert ``entities`` with multi-row INSERTs, one chunk at a time.

        A chunk is split into several statements only when its rows would
        exceed ``MAX_BIND_PARAMETERS``. Keys the entities already carry are
        never read back. Generated keys are read with RETURNING and matched
        to their rows by sorting: an auto-increment integer key grows in
        VALUES order, whatever order RETURNING yields. Any other generated
        key is inserted one row per statement.

        Returns
        -------
        list
            One key per entity, in input order. Without ``returning`` the
            keys the entities already carry are returned (``None`` where
            unknown).

        Raises
        ------
        MixedKeyError
            Before the first chunk, when only some entities carry a key.
        BatchExecutionError
            When a chunk fails and the remaining chunks are abandoned.
        """
        batch_size = batch_size or self.settings.BATCH_SIZE
        items = list(entities)
        id_columns = descriptor.id_columns
        keys_supplied = batch_keys_supplied(descriptor, items)
        returning_props = (
            descriptor.id_property_names if returning and id_columns and not keys_supplied else ()
        )
        if returning_props and not _sortable_key(id_columns):
            per_statement = 1
        else:
            width = len([c for c in descriptor.insertable_columns if keys_supplied or not c.is_id])
            per_statement = max(1, self.settings.MAX_BIND_PARAMETERS // max(1, width))
        ids: List[Any] = []
        chunks_done = 0
        with self._leased(source) as lease:
            for index, chunk in enumerate(chunked(items, batch_size)):
                statement: Optional[SQLStatement] = None
                chunk_ids: List[Any] = []
                try:
                    for part in chunked(chunk, per_statement):
                        statement = builder.batch_insert(descriptor, part, returning=returning_props)
                        result = self._run(lease, statement, self.binder.bind(statement), timeout)
                        if returning_props:
                            chunk_ids.extend(_generated_keys(result, len(part), statement))
                        else:
                            chunk_ids.extend(descriptor.id_of(e) if id_columns else None for e in part)
                    lease.commit()
                except DaoError as e:
                    lease.rollback()
                    if on_chunk_error is not None and on_chunk_error(index, e):
                        ids.extend([None] * len(chunk))
                        continue
                    raise BatchExecutionError(
                        f"Batch insert chunk {index} failed after {chunks_done} successful chunk(s): {e.message}",
                        chunks_succeeded=chunks_done,
                        results=ids,
                        operation=statement.operation if statement is not None else "batch_insert",
                        sql=statement.text if statement is not None else None,
                        failed_chunk=index,
                    ) from e
                ids.extend(chunk_ids)
                chunks_done += 1
        return ids
