from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

import pytest

from conftest import User
from daokit.core.binder import ParameterBinder, ResultMapper, coerce, positional_to_named
from daokit.core.conditions import Bind, eq, gt
from daokit.core.errors import MissingParameterError, ResultMappingError
from daokit.core.sql_builder import ParameterStyle, SQLBuilder, SQLStatement
from daokit.entities.descriptor import ColumnFlag, EntityDescriptor
from daokit.entities.naming import NamingPolicy

USER = EntityDescriptor.from_dataclass(User, table="user1")


class Status(Enum):
    ACTIVE = "A"


def test_positional_markers_become_numbered_binds():
    assert positional_to_named("SELECT '?' , A FROM t WHERE A = ? AND B = ?") == (
        "SELECT '?' , A FROM t WHERE A = :p0 AND B = :p1",
        2,
    )


def test_bind_positional_in_order():
    stmt = SQLBuilder().select(USER, eq("id", 5) & gt("email", "a"))
    binder = ParameterBinder()
    assert binder.bind(stmt) == {"p0": 5, "p1": "a"}
    assert binder.to_clause(stmt).text.endswith("WHERE ID = :p0 AND EMAIL > :p1")


def test_bind_named_resolves_unbound_from_entity():
    builder = SQLBuilder(parameter_style=ParameterStyle.NAMED)
    stmt = builder.update(USER, None, eq("id", Bind("id")), props=["email"])
    params = ParameterBinder().bind(stmt, User(id=3, email="x@y.z"))
    assert params == {"email": "x@y.z", "id": 3}


def test_unresolved_token_raises():
    builder = SQLBuilder(parameter_style=ParameterStyle.NAMED)
    stmt = builder.update(USER, None, eq("id", Bind("id")), props=["email"])
    with pytest.raises(MissingParameterError) as info:
        ParameterBinder().bind(stmt, {"email": "x"})
    assert info.value.name == "id"


@pytest.mark.parametrize(
    "statement, bind_name",
    [
        (SQLStatement("SELECT 1 FROM t WHERE A <> 'a :b' AND EMAIL = ?", ("x",)), "p0"),
        (
            SQLStatement(
                "SELECT 1 FROM t WHERE A <> 'a :b' AND EMAIL = :email",
                ("x",),
                style=ParameterStyle.NAMED,
                tokens=("email",),
            ),
            "email",
        ),
    ],
)
def test_colons_in_literals_are_not_binds(statement, bind_name):
    clause = ParameterBinder().to_clause(statement)
    assert "'a \\:b'" in clause.text
    assert str(clause) == f"SELECT 1 FROM t WHERE A <> 'a :b' AND EMAIL = :{bind_name}"


def test_marker_count_mismatch_detected():
    with pytest.raises(ValueError):
        ParameterBinder().to_clause(SQLStatement("SELECT ? , ?", (1,)))


def test_enum_and_uuid_values_are_adapted():
    uid = UUID("12345678-1234-5678-1234-567812345678")
    stmt = SQLStatement("SELECT ?, ?", (Status.ACTIVE, uid), slots=("s", "u"))
    assert ParameterBinder().bind(stmt) == {"p0": "A", "p1": str(uid)}


@pytest.mark.parametrize(
    "value, value_type, expected",
    [
        ("2024-01-02T03:04:05", datetime, datetime(2024, 1, 2, 3, 4, 5)),
        ("2024-01-02", date, date(2024, 1, 2)),
        (1, bool, True),
        ("false", bool, False),
        ("1.50", Decimal, Decimal("1.50")),
        ("7", int, 7),
        (None, int, None),
    ],
)
def test_coerce(value, value_type, expected):
    assert coerce(value, value_type) == expected


def test_mapper_matches_labels_case_insensitively():
    mapper = ResultMapper(USER, NamingPolicy.UPPER_CASE_WITH_UNDERSCORE)
    row = {"id": 1, "FIRST_NAME": "Ada", "last_name": "Lovelace", "EMAIL": "ada@example.com", "EXTRA": 9}
    assert mapper.map_row(row) == User(id=1, first_name="Ada", last_name="Lovelace", email="ada@example.com")


def test_insert_then_map_round_trip():
    user = User(id=11, first_name="Grace", last_name="Hopper", email="grace@example.com")
    stmt = SQLBuilder().insert(USER, user)
    columns = stmt.text[stmt.text.index("(") + 1:stmt.text.index(")")].split(", ")
    row = dict(zip(columns, stmt.parameters))
    assert ResultMapper(USER, NamingPolicy.UPPER_CASE_WITH_UNDERSCORE).map_row(row) == user


@dataclass
class Strict:
    id: Optional[int] = field(default=None, metadata={"flags": ColumnFlag.ID})


def test_mapping_failure_raises_result_mapping_error():
    mapper = ResultMapper(EntityDescriptor.from_dataclass(Strict), NamingPolicy.UPPER_CASE_WITH_UNDERSCORE)
    with pytest.raises(ResultMappingError):
        mapper.map_rows([{"ID": 1}, {"ID": "not-a-number"}], operation="list")
