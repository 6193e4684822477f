import logging

import pytest

from conftest import User, make_users
from daokit.core.binder import ResultMapper
from daokit.core.conditions import Bind, asc, criteria, eq, order_by
from daokit.core.errors import BatchExecutionError, ExecutionError, StatementTimeoutError
from daokit.core.query_executor import QueryExecutor, ResultShape, chunked
from daokit.core.sql_builder import UNBOUND, SQLBuilder, SQLStatement
from daokit.entities.descriptor import EntityDescriptor
from daokit.entities.naming import NamingPolicy

USER = EntityDescriptor.from_dataclass(User, table="user1")
MAPPER = ResultMapper(USER, NamingPolicy.UPPER_CASE_WITH_UNDERSCORE)


@pytest.fixture()
def executor(settings):
    return QueryExecutor(settings)


@pytest.fixture()
def builder():
    return SQLBuilder()


@pytest.fixture()
def seeded(executor, builder, provider):
    executor.batch_insert(USER, make_users(5), provider, builder, batch_size=2)
    provider.acquired = provider.released = 0
    return provider


def test_chunked_sizes():
    assert [len(c) for c in chunked(list(range(7)), 3)] == [3, 3, 1]
    with pytest.raises(ValueError):
        list(chunked([1], 0))


def test_shapes(executor, builder, seeded):
    select = builder.select(USER, criteria(order_by("id")))
    assert [u.id for u in executor.execute(select, seeded, ResultShape.ENTITIES, mapper=MAPPER)] == [1, 2, 3, 4, 5]
    assert executor.query_for_entity(select, seeded, MAPPER).first_name == "user0"
    assert executor.query_for_scalar(builder.count(USER), seeded) == 5
    rows = executor.query_rows(builder.select(USER, eq("id", 2), select_props=["email"]), seeded)
    assert rows == [{"EMAIL": "user1@example.com"}]
    assert executor.update(builder.update(USER, {"last_name": "Roe"}, eq("id", 1)), seeded) == 1
    assert seeded.outstanding == 0


def test_entity_shape_needs_mapper(executor, builder, seeded):
    with pytest.raises(ValueError):
        executor.execute(builder.select(USER), seeded, ResultShape.ENTITY)


def test_insert_returns_generated_key(executor, builder, provider):
    new_id = executor.insert(builder.insert(USER, User(first_name="Ada"), returning=("id",)), provider)
    assert new_id == 1
    second = executor.insert(builder.insert(USER, User(first_name="Bob")), provider)
    assert second == 2


def test_stream_releases_connection_once(executor, builder, seeded):
    stream = executor.stream(builder.select(USER, criteria(asc("id"))), seeded, MAPPER)
    assert seeded.outstanding == 1
    assert [u.id for u in stream] == [1, 2, 3, 4, 5]
    assert stream.closed
    assert seeded.released == 1
    stream.close()
    assert list(stream) == []
    assert seeded.released == 1


def test_stream_closed_early(executor, builder, seeded):
    with executor.stream(builder.select(USER), seeded) as stream:
        first = next(stream)
    assert isinstance(first, dict)
    assert stream.closed
    assert seeded.outstanding == 0


def test_batch_execute_counts_per_chunk(executor, builder, seeded, counter):
    template = builder.update(USER, None, eq("id", Bind("id")), props=["last_name"])
    counter.reset()
    sources = [{"id": i, "last_name": f"L{i}"} for i in range(1, 6)]
    assert executor.batch_execute(template, sources, seeded, batch_size=2) == [2, 2, 1]
    assert len(counter.starting_with("UPDATE")) == 3
    assert executor.query_for_scalar(builder.count(USER, eq("last_name", "L5")), seeded) == 1


def test_batch_failure_reports_succeeded_chunks(executor, builder, seeded):
    template = builder.update(USER, None, eq("id", Bind("id")), props=["last_name"])
    sources = [{"id": 1, "last_name": "A"}, {"id": 2, "last_name": "B"}, {"id": 3}]
    with pytest.raises(BatchExecutionError) as info:
        executor.batch_execute(template, sources, seeded, batch_size=2)
    assert info.value.chunks_succeeded == 1
    assert info.value.results == [2]
    assert info.value.failed_chunk == 1
    assert seeded.outstanding == 0


def test_batch_chunk_error_callback_continues(executor, builder, seeded):
    template = builder.update(USER, None, eq("id", Bind("id")), props=["last_name"])
    sources = [{"id": 1}, {"id": 2, "last_name": "B"}]
    failures = []

    def skip(index, error):
        failures.append(index)
        return True

    assert executor.batch_execute(template, sources, seeded, batch_size=1, on_chunk_error=skip) == [0, 1]
    assert failures == [0]


def test_skipped_chunk_leaves_no_partial_rows(executor, seeded):
    template = SQLStatement(
        "INSERT INTO user1 (ID, FIRST_NAME) VALUES (?, ?)", (UNBOUND, UNBOUND), slots=("id", "first_name")
    )
    sources = [{"id": 10, "first_name": "x"}, {"id": 1, "first_name": "dup"}, {"id": 11, "first_name": "y"}]
    counts = executor.batch_execute(template, sources, seeded, batch_size=2, on_chunk_error=lambda i, e: True)
    assert counts == [0, 1]
    rows = executor.query_rows(SQLStatement("SELECT ID FROM user1 WHERE ID > 5 ORDER BY ID"), seeded)
    assert rows == [{"ID": 11}]


def test_driver_error_is_wrapped_and_logged(executor, provider, caplog):
    statement = SQLStatement("SELECT * FROM no_such_table", operation="broken")
    with caplog.at_level(logging.ERROR, logger="daokit.core.query_executor"):
        with pytest.raises(ExecutionError) as info:
            executor.query_rows(statement, provider)
    assert info.value.operation == "broken"
    assert info.value.sql == "SELECT * FROM no_such_table"
    assert info.value.__cause__ is not None
    assert "Statement failed" in caplog.text
    assert provider.outstanding == 0


def test_statement_timeout_cancels(executor, provider):
    forever = SQLStatement(
        "WITH RECURSIVE n(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM n) SELECT COUNT(*) FROM n",
        operation="forever",
    )
    with pytest.raises(StatementTimeoutError) as info:
        executor.query_for_scalar(forever, provider, timeout=0.2)
    assert isinstance(info.value, TimeoutError)
    assert provider.outstanding == 0


def test_sql_logging_and_slow_sql(settings, builder, provider, caplog):
    settings = settings.model_copy(update={"SQL_LOG_ENABLED": True, "SLOW_SQL_THRESHOLD_MS": 0})
    executor = QueryExecutor(settings)
    with caplog.at_level(logging.DEBUG, logger="daokit.core.query_executor"):
        executor.query_for_scalar(builder.count(USER), provider)
    levels = {r.levelname for r in caplog.records}
    assert {"DEBUG", "WARNING"} <= levels
