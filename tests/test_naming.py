import pytest

from daokit.entities.naming import NamingPolicy, convert_name, split_words


@pytest.mark.parametrize(
    "name, policy, expected",
    [
        ("firstName", NamingPolicy.UPPER_CASE_WITH_UNDERSCORE, "FIRST_NAME"),
        ("first_name", NamingPolicy.UPPER_CASE_WITH_UNDERSCORE, "FIRST_NAME"),
        ("firstName", NamingPolicy.LOWER_CASE_WITH_UNDERSCORE, "first_name"),
        ("first_name", NamingPolicy.LOWER_CAMEL_CASE, "firstName"),
        ("firstName", NamingPolicy.NO_CHANGE, "firstName"),
        ("id", NamingPolicy.UPPER_CASE_WITH_UNDERSCORE, "ID"),
    ],
)
def test_convert_name(name, policy, expected):
    assert convert_name(name, policy) == expected
    assert policy.convert(name) == expected


def test_split_words_handles_acronyms_and_digits():
    assert split_words("HTTPStatus_code") == ("http", "status", "code")
    assert split_words("address2Line") == ("address2", "line")


def test_policy_accepts_string_values():
    assert convert_name("lastName", "UPPER_CASE_WITH_UNDERSCORE") == "LAST_NAME"
