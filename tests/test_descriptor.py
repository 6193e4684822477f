from dataclasses import dataclass, field
from typing import Optional

import pytest

from conftest import Device, Membership, User
from daokit.core.errors import DescriptorNotFoundError, UnknownPropertyError
from daokit.entities.descriptor import ColumnFlag, ColumnSpec, DescriptorRegistry, EntityDescriptor
from daokit.entities.naming import NamingPolicy


def test_from_dataclass_skips_transient_fields():
    descriptor = EntityDescriptor.from_dataclass(User, table="user1")
    assert descriptor.table == "user1"
    assert descriptor.property_names == ("id", "first_name", "last_name", "email")
    assert descriptor.id_property_names == ("id",)
    assert descriptor.column("first_name").value_type is str


def test_flags_drive_insertable_and_updatable_columns():
    descriptor = EntityDescriptor.from_dataclass(Device)
    assert descriptor.table == "device"
    assert [c.property_name for c in descriptor.insertable_columns] == ["id", "user_id", "model"]
    assert [c.property_name for c in descriptor.updatable_columns] == ["user_id", "model"]


def test_explicit_column_name_wins_over_policy():
    spec = ColumnSpec("email", column_name="MAIL_ADDR")
    assert spec.resolve_column_name(NamingPolicy.LOWER_CASE_WITH_UNDERSCORE) == "MAIL_ADDR"


def test_unknown_property_raises():
    descriptor = EntityDescriptor.from_dataclass(User, table="user1")
    with pytest.raises(UnknownPropertyError) as info:
        descriptor.column("nickname", operation="select")
    assert info.value.property_name == "nickname"
    assert "nickname" in str(info.value)


def test_composite_key_values():
    descriptor = EntityDescriptor.from_dataclass(Membership)
    member = Membership(group_id=7, user_id=3, role="admin")
    assert descriptor.id_of(member) == (7, 3)
    assert descriptor.id_values((7, 3)) == {"group_id": 7, "user_id": 3}
    assert descriptor.id_of(Membership(group_id=7)) is None
    with pytest.raises(ValueError):
        descriptor.id_values(7)


def test_set_id_and_create():
    descriptor = EntityDescriptor.from_dataclass(User, table="user1")
    user = User(first_name="Ada")
    descriptor.set_id(user, 42)
    assert user.id == 42
    assert descriptor.create({"id": 1, "email": "a@b.c"}) == User(id=1, email="a@b.c")


def test_duplicate_property_rejected():
    with pytest.raises(ValueError):
        EntityDescriptor(User, "user1", (ColumnSpec("id"), ColumnSpec("id")))


def test_descriptor_is_immutable():
    descriptor = EntityDescriptor.from_dataclass(User, table="user1")
    with pytest.raises(Exception):
        descriptor.table = "other"


def test_registry_lookup_and_freeze():
    registry = DescriptorRegistry()
    descriptor = registry.register(EntityDescriptor.from_dataclass(User, table="user1"))
    assert registry.get(User) is descriptor
    assert User in registry and len(registry) == 1
    registry.freeze()
    with pytest.raises(RuntimeError):
        registry.register(EntityDescriptor.from_dataclass(Device))
    with pytest.raises(DescriptorNotFoundError):
        registry.get(Device)
    with pytest.raises(LookupError):
        registry.get(Membership)


def test_non_dataclass_rejected():
    class Plain:
        pass

    with pytest.raises(TypeError):
        EntityDescriptor.from_dataclass(Plain)


def test_explicit_column_metadata():
    @dataclass
    class Tagged:
        id: Optional[int] = field(default=None, metadata={"flags": ColumnFlag.ID | ColumnFlag.READ_ONLY})
        label: Optional[str] = field(default=None, metadata={"column": "TAG_LABEL"})

    descriptor = EntityDescriptor.from_dataclass(Tagged)
    assert descriptor.column_name("label", NamingPolicy.UPPER_CASE_WITH_UNDERSCORE) == "TAG_LABEL"
    assert descriptor.column("id").is_read_only
    assert descriptor.insertable_columns == (descriptor.column("label"),)
