from dataclasses import dataclass, field
from typing import Any, List, Optional

import pytest
from sqlalchemy import event

from daokit.config.config import Settings
from daokit.config.connection_engine import EngineConnectionProvider, create_connection_engine
from daokit.daos.dao_engine import DaoEngine
from daokit.entities.descriptor import ColumnFlag, ColumnSpec, EntityDescriptor


# --------------------------------------------------------------------
# Sample entities
# --------------------------------------------------------------------

@dataclass
class User:
    id: Optional[int] = field(default=None, metadata={"flags": ColumnFlag.ID})
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    devices: Optional[list] = field(default=None, metadata={"transient": True})
    address: Optional[Any] = field(default=None, metadata={"transient": True})
    groups: Optional[list] = field(default=None, metadata={"transient": True})


@dataclass(unsafe_hash=True)
class Device:
    id: Optional[int] = field(default=None, metadata={"flags": ColumnFlag.ID})
    user_id: Optional[int] = None
    model: Optional[str] = None
    created_at: Optional[str] = field(default=None, metadata={"flags": ColumnFlag.READ_ONLY}, compare=False)


@dataclass
class Address:
    id: Optional[int] = field(default=None, metadata={"flags": ColumnFlag.ID})
    user_id: Optional[int] = None
    city: Optional[str] = None
    kind: Optional[str] = field(default=None, metadata={"flags": ColumnFlag.NON_UPDATABLE})


@dataclass
class Membership:
    group_id: Optional[int] = field(default=None, metadata={"flags": ColumnFlag.ID})
    user_id: Optional[int] = field(default=None, metadata={"flags": ColumnFlag.ID})
    role: Optional[str] = None


@dataclass
class Group:
    id: Optional[int] = field(default=None, metadata={"flags": ColumnFlag.ID})
    name: Optional[str] = None


SCHEMA = [
    "CREATE TABLE user1 (ID INTEGER PRIMARY KEY AUTOINCREMENT, FIRST_NAME TEXT, LAST_NAME TEXT, EMAIL TEXT)",
    "CREATE TABLE device (ID INTEGER PRIMARY KEY AUTOINCREMENT, USER_ID INTEGER, MODEL TEXT, "
    "CREATED_AT TEXT DEFAULT CURRENT_TIMESTAMP)",
    "CREATE TABLE address (ID INTEGER PRIMARY KEY AUTOINCREMENT, USER_ID INTEGER, "
    "CITY TEXT CHECK (CITY IS NULL OR CITY <> ''), KIND TEXT)",
    "CREATE TABLE membership (GROUP_ID INTEGER, USER_ID INTEGER, ROLE TEXT, PRIMARY KEY (GROUP_ID, USER_ID))",
    "CREATE TABLE group1 (ID INTEGER PRIMARY KEY AUTOINCREMENT, NAME TEXT)",
]


# --------------------------------------------------------------------
# Test doubles
# --------------------------------------------------------------------

class SpyProvider(EngineConnectionProvider):
    """Counts acquire/release calls of the wrapped engine provider."""

    def __init__(self, engine) -> None:
        super().__init__(engine)
        self.acquired = 0
        self.released = 0

    def acquire(self):
        self.acquired += 1
        return super().acquire()

    def release(self, connection) -> None:
        self.released += 1
        super().release(connection)

    @property
    def outstanding(self) -> int:
        return self.acquired - self.released


class StatementCounter:
    """Records every statement sent to a DBAPI cursor."""

    def __init__(self, engine) -> None:
        self.statements: List[str] = []
        event.listen(engine, "before_cursor_execute", self._on_execute)

    def _on_execute(self, conn, cursor, statement, parameters, context, executemany):
        self.statements.append(statement)

    def reset(self) -> None:
        self.statements.clear()

    @property
    def count(self) -> int:
        return len(self.statements)

    def starting_with(self, prefix: str) -> List[str]:
        return [s for s in self.statements if s.lstrip().upper().startswith(prefix.upper())]


# --------------------------------------------------------------------
# Fixtures
# --------------------------------------------------------------------

@pytest.fixture()
def settings(tmp_path):
    return Settings(DB_DRIVER_NAME="sqlite", DB_DATABASE_NAME=str(tmp_path / "daokit.db"))


@pytest.fixture()
def db_engine(settings):
    engine = create_connection_engine(settings, connect_args={"check_same_thread": False})
    with engine.begin() as conn:
        for ddl in SCHEMA:
            conn.exec_driver_sql(ddl)
    yield engine
    engine.dispose()


@pytest.fixture()
def provider(db_engine):
    return SpyProvider(db_engine)


@pytest.fixture()
def counter(db_engine):
    return StatementCounter(db_engine)


@pytest.fixture()
def engine(provider, settings):
    return DaoEngine(provider, settings=settings)


@pytest.fixture()
def user_dao(engine):
    return engine.register(User, table="user1")


@pytest.fixture()
def device_dao(engine):
    return engine.register(Device)


@pytest.fixture()
def user_descriptor():
    return EntityDescriptor(
        entity_type=User,
        table="user1",
        columns=(
            ColumnSpec("id", flags=ColumnFlag.ID),
            ColumnSpec("firstName"),
            ColumnSpec("lastName"),
            ColumnSpec("email"),
        ),
    )


def make_users(n: int, prefix: str = "user") -> List[User]:
    return [User(first_name=f"{prefix}{i}", last_name="Doe", email=f"{prefix}{i}@example.com") for i in range(n)]
