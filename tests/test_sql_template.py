import pytest

from daokit.core.errors import MissingParameterError, TemplateSyntaxError
from daokit.core.sql_builder import UNBOUND, ParameterStyle
from daokit.core.sql_template import compile_template


def test_compile_collects_sites():
    tpl = compile_template("SELECT * FROM {table} WHERE EMAIL = :email AND LAST_NAME = :last OR EMAIL = :email")
    assert tpl.placeholders == ("table",)
    assert tpl.binds == ("email", "last")


def test_render_positional():
    tpl = compile_template("SELECT * FROM {table} WHERE EMAIL = :email")
    stmt = tpl.render({"table": "user1"}, {"email": "a@b.c"})
    assert stmt.text == "SELECT * FROM user1 WHERE EMAIL = ?"
    assert stmt.parameters == ("a@b.c",)


def test_render_named_keeps_tokens():
    tpl = compile_template("UPDATE t SET A = :a WHERE ID = :id")
    stmt = tpl.render(binds={"a": 1, "id": 2}, style=ParameterStyle.NAMED)
    assert stmt.text == "UPDATE t SET A = :a WHERE ID = :id"
    assert stmt.tokens == ("a", "id")


def test_list_bind_expands_per_element():
    tpl = compile_template("SELECT * FROM t WHERE ID IN (:ids)")
    positional = tpl.render(binds={"ids": [1, 2, 3]})
    assert positional.text == "SELECT * FROM t WHERE ID IN (?, ?, ?)"
    assert positional.parameters == (1, 2, 3)
    named = tpl.render(binds={"ids": (4, 5)}, style=ParameterStyle.NAMED)
    assert named.text == "SELECT * FROM t WHERE ID IN (:ids_1, :ids_2)"
    assert tpl.render(binds={"ids": []}).text == "SELECT * FROM t WHERE ID IN (NULL)"


def test_list_define_is_joined():
    tpl = compile_template("SELECT {columns} FROM t ORDER BY {order}")
    stmt = tpl.render({"columns": ["A", "B"], "order": "A DESC"})
    assert stmt.text == "SELECT A, B FROM t ORDER BY A DESC"


def test_quotes_casts_and_escapes_are_literal():
    tpl = compile_template("SELECT ':not_a_bind', '{x}', V::text, '{{', 1 {{literal}} FROM t WHERE A = :a")
    assert tpl.binds == ("a",)
    assert tpl.placeholders == ()
    stmt = tpl.render(binds={"a": 1})
    assert stmt.text == "SELECT ':not_a_bind', '{x}', V::text, '{{', 1 {literal} FROM t WHERE A = ?"


def test_time_literal_colon_is_not_a_bind():
    tpl = compile_template("SELECT * FROM t WHERE CREATED > '10:30' AND X = 1:2")
    assert tpl.binds == ()


@pytest.mark.parametrize("source", ["", "   ", "SELECT {", "SELECT {1abc}", "SELECT }", "SELECT 'open", "SELECT {}"])
def test_malformed_templates_fail_at_compile_time(source):
    with pytest.raises(TemplateSyntaxError):
        compile_template(source)


def test_missing_define_and_bind():
    tpl = compile_template("SELECT * FROM {table} WHERE A = :a")
    with pytest.raises(MissingParameterError) as info:
        tpl.render({}, {"a": 1}, operation="find")
    assert info.value.name == "table"
    with pytest.raises(MissingParameterError) as info:
        tpl.render({"table": "t"}, {})
    assert info.value.name == "a"


def test_bind_from_entity_attributes():
    class Row:
        a = 7

    stmt = compile_template("SELECT * FROM t WHERE A = :a").render(binds=Row())
    assert stmt.parameters == (7,)


def test_deferred_binding_leaves_slots_unbound():
    stmt = compile_template("UPDATE t SET A = :a WHERE ID = :id").render(bind_now=False)
    assert stmt.parameters == (UNBOUND, UNBOUND)
    assert stmt.slots == ("a", "id")
