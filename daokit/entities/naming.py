"""
Naming Strategy
===============

Converts entity property names into column identifiers.

Property names may be written in camelCase (``firstName``) or snake_case
(``first_name``); both are split into the same words before the policy is
applied, so ``firstName`` and ``first_name`` both become ``FIRST_NAME`` under
:attr:`NamingPolicy.UPPER_CASE_WITH_UNDERSCORE`.

The same policy must be used to build SQL and to map result rows back to
properties, otherwise the round trip breaks.
"""

import re
from enum import Enum
from functools import lru_cache
from typing import Tuple

_WORD_BOUNDARY = re.compile(r"[A-Z]+(?=[A-Z][a-z0-9])|[A-Z]?[a-z0-9]+|[A-Z]+")


class NamingPolicy(str, Enum):
    """Identifier conventions applied to every emitted column name."""

    LOWER_CAMEL_CASE = "LOWER_CAMEL_CASE"
    LOWER_CASE_WITH_UNDERSCORE = "LOWER_CASE_WITH_UNDERSCORE"
    UPPER_CASE_WITH_UNDERSCORE = "UPPER_CASE_WITH_UNDERSCORE"
    NO_CHANGE = "NO_CHANGE"

    def convert(self, name: str) -> str:
        """Apply this policy to ``name``."""
        return convert_name(name, self)


@lru_cache(maxsize=4096)
def split_words(name: str) -> Tuple[str, ...]:
    """
    Split a property name into lower-case words.

    >>> split_words("firstName")
    ('first', 'name')
    >>> split_words("HTTPStatus_code")
    ('http', 'status', 'code')
    """
    words = []
    for part in name.split("_"):
        words.extend(w.lower() for w in _WORD_BOUNDARY.findall(part))
    return tuple(words)


def to_snake_case(name: str) -> str:
    return "_".join(split_words(name))


def to_screaming_snake_case(name: str) -> str:
    return "_".join(split_words(name)).upper()


def to_camel_case(name: str) -> str:
    words = split_words(name)
    if not words:
        return name
    return words[0] + "".join(w.capitalize() for w in words[1:])


@lru_cache(maxsize=4096)
def convert_name(name: str, policy: NamingPolicy) -> str:
    """
    Convert ``name`` according to ``policy``.

    Parameters
    ----------
    name : str
        Property name in camelCase or snake_case.
    policy : NamingPolicy
        Target convention.

    Returns
    -------
    str
        The converted identifier. ``NO_CHANGE`` returns ``name`` untouched.
    """
    policy = NamingPolicy(policy)
    if policy is NamingPolicy.NO_CHANGE:
        return name
    if policy is NamingPolicy.LOWER_CAMEL_CASE:
        return to_camel_case(name)
    if policy is NamingPolicy.LOWER_CASE_WITH_UNDERSCORE:
        return to_snake_case(name)
    return to_screaming_snake_case(name)
