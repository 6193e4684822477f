"""
DAO Errors
==========

Every failure raised by the data-access layer derives from :class:`DaoError`.
Each error keeps enough context (operation name, generated SQL and the bound
parameter values) to reproduce the failure without re-instrumenting the
caller.

Hierarchy
---------
- DaoError
    - UnknownPropertyError
    - UnsafeStatementError
    - MixedKeyError
    - MissingParameterError
    - TemplateSyntaxError
    - JoinConfigurationError
    - TransactionStateError
    - UnsupportedOperationError
    - DescriptorNotFoundError
    - ExecutionError
        - ResultMappingError
        - BatchExecutionError
        - StatementTimeoutError

Driver failures (``sqlalchemy.exc.SQLAlchemyError``) are never surfaced raw:
the Query Executor wraps them in :class:`ExecutionError` and chains the
original with ``raise ... from``.
"""

from typing import Any, Optional, Sequence


class DaoError(Exception):
    """
    Base exception for all data-access errors.

    Parameters
    ----------
    message : str
        Human readable description.
    operation : str, optional
        Name of the DAO operation or builder step that failed.
    sql : str, optional
        Generated SQL text, when one exists.
    parameters : Sequence | Mapping, optional
        Bound parameter values, when known.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        sql: Optional[str] = None,
        parameters: Any = None,
    ) -> None:
        self.message = message
        self.operation = operation
        self.sql = sql
        self.parameters = parameters
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        text = self.message
        if self.operation:
            text = f"[{self.operation}] {text}"
        if self.sql:
            text = f"{text} | sql: {self.sql}"
        if self.parameters is not None:
            text = f"{text} | parameters: {_preview(self.parameters)}"
        return text


def _preview(parameters: Any, limit: int = 20) -> str:
    if isinstance(parameters, (list, tuple)) and len(parameters) > limit:
        head = ", ".join(repr(p) for p in parameters[:limit])
        return f"[{head}, ... ({len(parameters)} values)]"
    return repr(parameters)


class UnknownPropertyError(DaoError):
    """Raised at build time when a condition or projection names a property the descriptor lacks."""

    def __init__(self, property_name: str, entity_name: str, operation: Optional[str] = None) -> None:
        self.property_name = property_name
        self.entity_name = entity_name
        super().__init__(
            f"No property '{property_name}' in entity '{entity_name}'",
            operation=operation,
        )


class UnsafeStatementError(DaoError):
    """Raised instead of emitting an UPDATE or DELETE without a WHERE clause."""


class MixedKeyError(DaoError, ValueError):
    """Raised before a batch insert starts when only some entities carry a primary key."""


class MissingParameterError(DaoError):
    """Raised when a named token or a template placeholder has no value."""

    def __init__(self, name: str, operation: Optional[str] = None, sql: Optional[str] = None) -> None:
        self.name = name
        super().__init__(f"No value bound for parameter '{name}'", operation=operation, sql=sql)


class TemplateSyntaxError(DaoError):
    """Raised when a declared SQL template cannot be compiled."""


class JoinConfigurationError(DaoError):
    """Raised before any query is issued when a join declaration is invalid."""


class TransactionStateError(DaoError):
    """
    Raised on an illegal transaction transition.

    Examples are a double commit, a commit after rollback, a commit of a
    context owned by another thread, use of a suspended context or a
    propagation rule that cannot be satisfied (``MANDATORY``/``NEVER``).
    """


class UnsupportedOperationError(DaoError):
    """Raised when a read-only or no-update DAO is asked to mutate data."""


class DescriptorNotFoundError(DaoError, LookupError):
    """Raised when no entity descriptor is registered for a type."""


class ExecutionError(DaoError):
    """Wraps a driver failure together with the statement and its parameters."""


class ResultMappingError(ExecutionError):
    """Raised when a result row cannot be mapped; the whole call is aborted."""


class BatchExecutionError(ExecutionError):
    """
    Raised when a batch chunk fails and the remaining chunks are abandoned.

    Attributes
    ----------
    chunks_succeeded : int
        Number of chunks that completed before the failure.
    results : list
        Per-row results (row counts or generated ids) of the completed chunks.
    failed_chunk : int, optional
        Zero-based index of the chunk that failed.
    """

    def __init__(
        self,
        message: str,
        chunks_succeeded: int,
        results: Sequence[Any],
        operation: Optional[str] = None,
        sql: Optional[str] = None,
        parameters: Any = None,
        failed_chunk: Optional[int] = None,
    ) -> None:
        self.chunks_succeeded = chunks_succeeded
        self.results = list(results)
        self.failed_chunk = failed_chunk
        super().__init__(message, operation=operation, sql=sql, parameters=parameters)


class StatementTimeoutError(ExecutionError, TimeoutError):
    """Raised when a statement exceeds its timeout and is cancelled."""
