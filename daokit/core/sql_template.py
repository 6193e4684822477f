"""
SQL Template Compiler
=====================

Compiles literal SQL declared on a DAO operation into a typed list of
substitution sites, once, at registration time.

Two kinds of sites are recognised outside quoted literals:

- ``{name}``: text substitution resolved at call time from the caller's
  ``defines`` (table names, ORDER BY fragments ...). A list or tuple value is
  joined with ``", "``. ``{{`` and ``}}`` render literal braces.
- ``:name``: a bind parameter resolved from bind arguments or an entity.
  A list or tuple value expands into one parameter per element, so
  ``ID IN (:ids)`` works with any number of ids. ``::`` casts are left alone.

Example
-------
>>> tpl = compile_template("SELECT * FROM {table} WHERE EMAIL = :email")
>>> tpl.placeholders, tpl.binds
(('table',), ('email',))
>>> tpl.render({"table": "user1"}, {"email": "a@b.c"}).text
'SELECT * FROM user1 WHERE EMAIL = ?'
"""

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Tuple, Union

from daokit.core.binder import MISSING, lookup
from daokit.core.errors import MissingParameterError, TemplateSyntaxError
from daokit.core.sql_builder import UNBOUND, ParameterStyle, SQLStatement


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class Placeholder:
    name: str


@dataclass(frozen=True)
class BindSite:
    name: str


Segment = Union[Literal, Placeholder, BindSite]


def _is_ident_start(ch: str) -> bool:
    return ch.isalpha() or ch == "_"


def _is_ident_char(ch: str) -> bool:
    return ch.isalnum() or ch == "_"


def _parse(source: str) -> Tuple[Segment, ...]:
    segments: List[Segment] = []
    buf: List[str] = []
    i, n = 0, len(source)

    def flush() -> None:
        if buf:
            segments.append(Literal("".join(buf)))
            buf.clear()

    while i < n:
        ch = source[i]
        if ch in ("'", '"'):
            end = source.find(ch, i + 1)
            if end < 0:
                raise TemplateSyntaxError(f"Unterminated quote starting at offset {i}", sql=source)
            buf.append(source[i:end + 1])
            i = end + 1
        elif ch == "{":
            if source.startswith("{{", i):
                buf.append("{")
                i += 2
                continue
            end = source.find("}", i + 1)
            name = source[i + 1:end] if end > 0 else ""
            if end < 0 or not name or not _is_ident_start(name[0]) or not all(_is_ident_char(c) for c in name):
                raise TemplateSyntaxError(f"Malformed placeholder at offset {i}", sql=source)
            flush()
            segments.append(Placeholder(name))
            i = end + 1
        elif ch == "}":
            if source.startswith("}}", i):
                buf.append("}")
                i += 2
                continue
            raise TemplateSyntaxError(f"Unbalanced '}}' at offset {i}", sql=source)
        elif ch == ":":
            if source.startswith("::", i):
                buf.append("::")
                i += 2
                continue
            prev = source[i - 1] if i else ""
            if i + 1 < n and _is_ident_start(source[i + 1]) and not _is_ident_char(prev):
                j = i + 1
                while j < n and _is_ident_char(source[j]):
                    j += 1
                flush()
                segments.append(BindSite(source[i + 1:j]))
                i = j
            else:
                buf.append(ch)
                i += 1
        else:
            buf.append(ch)
            i += 1
    flush()
    return tuple(segments)


def _unique(names: List[str]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(names))


@dataclass(frozen=True)
class CompiledTemplate:
    """
    A parsed SQL template.

    Attributes
    ----------
    source : str
        The template as declared.
    segments : tuple
        Literal text, ``{placeholder}`` and ``:bind`` sites in order.
    placeholders : tuple of str
        Distinct placeholder names.
    binds : tuple of str
        Distinct bind names.
    """

    source: str
    segments: Tuple[Segment, ...]
    placeholders: Tuple[str, ...]
    binds: Tuple[str, ...]

    def render(
        self,
        defines: Optional[Mapping[str, Any]] = None,
        binds: Any = None,
        style: ParameterStyle = ParameterStyle.POSITIONAL,
        operation: Optional[str] = None,
        bind_now: bool = True,
    ) -> SQLStatement:
        """
        Produce a :class:`SQLStatement`.

        Parameters
        ----------
        defines : Mapping, optional
            Values for ``{placeholder}`` sites. Every placeholder must be present.
        binds : Mapping | entity, optional
            Values for ``:bind`` sites.
        style : ParameterStyle
            Rendering style of the bind sites.
        operation : str, optional
            Label used in error messages.
        bind_now : bool
            When ``False`` bind sites stay ``UNBOUND`` and are resolved per
            execution (batch templates); list expansion is then unavailable.
        """
        defines = defines or {}
        parts: List[str] = []
        values: List[Any] = []
        slots: List[str] = []
        tokens: List[str] = []
        named = ParameterStyle(style) is ParameterStyle.NAMED

        def emit(slot: str, token: str, value: Any) -> str:
            values.append(value)
            slots.append(slot)
            if named:
                tokens.append(token)
                return f":{token}"
            return "?"

        for segment in self.segments:
            if isinstance(segment, Literal):
                parts.append(segment.text)
            elif isinstance(segment, Placeholder):
                if segment.name not in defines:
                    raise MissingParameterError(segment.name, operation=operation, sql=self.source)
                value = defines[segment.name]
                parts.append(", ".join(map(str, value)) if isinstance(value, (list, tuple)) else str(value))
            elif not bind_now:
                parts.append(emit(segment.name, segment.name, UNBOUND))
            else:
                value = lookup(binds, segment.name)
                if value is MISSING:
                    raise MissingParameterError(segment.name, operation=operation, sql=self.source)
                if isinstance(value, (list, tuple, set, frozenset)):
                    items = list(value)
                    if not items:
                        parts.append("NULL")
                    else:
                        parts.append(", ".join(
                            emit(segment.name, f"{segment.name}_{k}", item) for k, item in enumerate(items, 1)
                        ))
                else:
                    parts.append(emit(segment.name, segment.name, value))
        return SQLStatement(
            text="".join(parts),
            parameters=tuple(values),
            style=ParameterStyle(style),
            slots=tuple(slots),
            tokens=tuple(tokens),
            operation=operation,
        )


def compile_template(source: str) -> CompiledTemplate:
    """
    Parse ``source`` into a :class:`CompiledTemplate`.

    Raises
    ------
    TemplateSyntaxError
        On unbalanced braces, malformed placeholder names or unterminated quotes.
    """
    if not source or not source.strip():
        raise TemplateSyntaxError("Empty SQL template")
    segments = _parse(source)
    placeholders = _unique([s.name for s in segments if isinstance(s, Placeholder)])
    binds = _unique([s.name for s in segments if isinstance(s, BindSite)])
    return CompiledTemplate(source=source, segments=segments, placeholders=placeholders, binds=binds)
