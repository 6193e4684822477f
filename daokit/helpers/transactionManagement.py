"""
Database Transaction Management
===============================

This module provides the transaction context used by every DAO call and a
decorator-based transaction wrapper.

A :class:`TransactionContext` is passed explicitly (``tx=...``) through the
call chain instead of living in ambient thread or task state. Opening a new
context with a ``parent`` applies the usual propagation rules: join it,
suspend it or refuse it.

State machine
~~~~~~~~~~~~~
``NONE -> ACTIVE -> COMMITTED | ROLLED_BACK``

- A context reaches exactly one terminal state.
- Leaving its ``with`` block without :meth:`TransactionContext.commit`
  rolls it back, on normal and on exceptional exit alike.
- Only the thread that opened a context may commit or roll it back.
- The isolation level is fixed when the physical transaction starts.

Key features
~~~~~~~~~~~~
- Propagation: ``REQUIRED``, ``REQUIRES_NEW``, ``SUPPORTS``,
  ``NOT_SUPPORTED``, ``MANDATORY`` and ``NEVER``
- Suspended parents are parked (their connection is not used) until the
  inner context terminates
- Rolling back a joined context marks the owning context rollback-only
- Decorator pattern (``@transactional``) for function-level transaction management

Example
-------
>>> manager = TransactionManager(provider)
>>> with manager.begin() as tx:
...     user_dao.insert(user, tx=tx)
...     with manager.begin(Propagation.REQUIRES_NEW, parent=tx) as audit_tx:
...         audit_dao.insert(entry, tx=audit_tx)
...         audit_tx.commit()
...     tx.commit()
"""

import logging
import threading
from enum import Enum
from functools import wraps
from typing import Any, Callable, Optional

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from daokit.config.connection_engine import ConnectionProvider
from daokit.core.errors import ExecutionError, TransactionStateError

logger = logging.getLogger(__name__)


class Propagation(str, Enum):
    REQUIRED = "REQUIRED"
    REQUIRES_NEW = "REQUIRES_NEW"
    SUPPORTS = "SUPPORTS"
    NOT_SUPPORTED = "NOT_SUPPORTED"
    MANDATORY = "MANDATORY"
    NEVER = "NEVER"


class IsolationLevel(str, Enum):
    """Values are the strings SQLAlchemy's ``isolation_level`` option accepts."""

    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


class TransactionState(str, Enum):
    NONE = "NONE"
    ACTIVE = "ACTIVE"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"


class ConnectionLease:
    """
    A connection lent to one executor call.

    ``autocommit`` leases own their connection: the executor commits after
    each successful statement and :meth:`close` hands the connection back to
    the provider. Leases on a transactional context borrow the context's
    connection and never release it.
    """

    def __init__(
        self,
        connection: Connection,
        release: Optional[Callable[[Connection], None]] = None,
        autocommit: bool = False,
    ) -> None:
        self.connection = connection
        self.autocommit = autocommit
        self._release = release
        self._closed = False

    def commit(self) -> None:
        if self.autocommit:
            self.connection.commit()

    def rollback(self) -> None:
        if self.autocommit:
            self.connection.rollback()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._release is not None:
            self._release(self.connection)

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "ConnectionLease":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class TransactionContext:
    """
    One logical transaction scope.

    A context either *owns* a physical transaction (its own connection), *joins*
    the physical transaction of its owner, or is *non-transactional* and
    leases a fresh autocommit connection for every call.

    Attributes
    ----------
    propagation : Propagation
        Rule the context was opened with.
    isolation_level : IsolationLevel, optional
        Isolation of the physical transaction (``None`` means driver default).
    depth : int
        Nesting depth; ``0`` for a context that owns its transaction.
    parent : TransactionContext, optional
        The context this one was opened inside.
    """

    def __init__(
        self,
        manager: "TransactionManager",
        propagation: Propagation,
        isolation_level: Optional[IsolationLevel] = None,
        parent: Optional["TransactionContext"] = None,
        owner: Optional["TransactionContext"] = None,
        transactional: bool = True,
    ) -> None:
        self.manager = manager
        self.propagation = propagation
        self.isolation_level = isolation_level
        self.parent = parent
        self.owner = owner or self
        self.transactional = transactional
        self.depth = parent.depth + 1 if owner is not None and parent is not None else 0
        self.thread_id = threading.get_ident()
        self.state = TransactionState.NONE
        self.rollback_only = False
        self.suspended = False
        self.connection: Optional[Connection] = None
        self._transaction = None
        self._suspended_parent: Optional["TransactionContext"] = None

    # -----------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.state is TransactionState.ACTIVE

    @property
    def is_owner(self) -> bool:
        return self.owner is self

    @property
    def in_transaction(self) -> bool:
        """True when this context runs inside a live physical transaction."""
        return self.transactional and self.is_active and self.owner.is_active

    def __repr__(self) -> str:
        return (
            f"TransactionContext(propagation={self.propagation.value}, state={self.state.value}, "
            f"depth={self.depth}, transactional={self.transactional}, suspended={self.suspended})"
        )

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def _start(self) -> "TransactionContext":
        if self.transactional and self.is_owner:
            connection = self.manager.provider.acquire()
            try:
                if self.isolation_level is not None:
                    connection.execution_options(isolation_level=self.isolation_level.value)
                self._transaction = connection.begin()
            except SQLAlchemyError as e:
                self.manager.provider.release(connection)
                logger.error("Failed to begin transaction", exc_info=True)
                raise ExecutionError(f"Cannot begin transaction: {e}", operation="begin") from e
            self.connection = connection
        self.state = TransactionState.ACTIVE
        logger.debug("Began %r", self)
        return self

    def _check_terminable(self, action: str) -> None:
        if self.state is not TransactionState.ACTIVE:
            raise TransactionStateError(f"Cannot {action} a transaction in state {self.state.value}", operation=action)
        if threading.get_ident() != self.thread_id:
            raise TransactionStateError(f"Cannot {action} a transaction owned by another thread", operation=action)
        if self.suspended:
            raise TransactionStateError(f"Cannot {action} a suspended transaction", operation=action)

    def commit(self) -> None:
        """
        Commit this context.

        A joined context only records that its scope finished; the owner
        decides. An owner marked rollback-only rolls back instead and raises
        :class:`TransactionStateError`.

        Raises
        ------
        TransactionStateError
            On double commit, commit after rollback, commit from a thread that
            does not own the context or commit of a rollback-only owner.
        """
        self._check_terminable("commit")
        if not (self.transactional and self.is_owner):
            self.state = TransactionState.COMMITTED
            logger.debug("Committed %r", self)
            self._finish()
            return
        if self.rollback_only:
            self._rollback_physical()
            self.state = TransactionState.ROLLED_BACK
            self._finish()
            raise TransactionStateError("Transaction was marked rollback-only and has been rolled back", operation="commit")
        try:
            self._transaction.commit()
        except SQLAlchemyError as e:
            logger.error("Commit failed", exc_info=True)
            self._rollback_physical()
            self.state = TransactionState.ROLLED_BACK
            self._finish()
            raise ExecutionError(f"Commit failed: {e}", operation="commit") from e
        self.state = TransactionState.COMMITTED
        logger.debug("Committed %r", self)
        self._finish()

    def rollback(self) -> None:
        """Roll back this context; a joined context marks its owner rollback-only."""
        self._check_terminable("rollback")
        if self.transactional and self.is_owner:
            self._rollback_physical()
        elif self.transactional:
            self.owner.rollback_only = True
        self.state = TransactionState.ROLLED_BACK
        logger.debug("Rolled back %r", self)
        self._finish()

    def set_rollback_only(self) -> None:
        self.owner.rollback_only = True

    def _rollback_physical(self) -> None:
        try:
            self._transaction.rollback()
        except SQLAlchemyError:
            logger.error("Rollback failed", exc_info=True)
            raise

    def _finish(self) -> None:
        if self.connection is not None and self.is_owner:
            connection, self.connection = self.connection, None
            self.manager.provider.release(connection)
        if self._suspended_parent is not None:
            parent, self._suspended_parent = self._suspended_parent, None
            parent.suspended = False
            logger.debug("Resumed %r", parent)

    def __enter__(self) -> "TransactionContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.state is TransactionState.ACTIVE:
            if exc_type is None:
                logger.debug("Scope exited without commit, rolling back %r", self)
            self.rollback()

    # -----------------------------------------------------------------
    # Connection access
    # -----------------------------------------------------------------

    def lease(self) -> ConnectionLease:
        """
        Lend a connection for one executor call.

        Inside a physical transaction this is the owner's connection.
        Otherwise a fresh autocommit connection is acquired from the provider.
        """
        if self.suspended or self.owner.suspended:
            raise TransactionStateError("Transaction is suspended", operation="lease")
        if not self.is_active:
            raise TransactionStateError(f"Transaction is {self.state.value}", operation="lease")
        if self.transactional:
            if not self.owner.is_active:
                raise TransactionStateError(f"Owning transaction is {self.owner.state.value}", operation="lease")
            return ConnectionLease(self.owner.connection)
        provider = self.manager.provider
        return ConnectionLease(provider.acquire(), provider.release, autocommit=True)


class TransactionManager:
    """
    Opens :class:`TransactionContext` objects over one connection provider.

    Parameters
    ----------
    provider : ConnectionProvider
        Source of connections. Transactional contexts hold one connection
        for their whole lifetime.
    default_isolation : IsolationLevel, optional
        Isolation used when :meth:`begin` is called without one.
    """

    def __init__(self, provider: ConnectionProvider, default_isolation: Optional[IsolationLevel] = None) -> None:
        self.provider = provider
        self.default_isolation = default_isolation

    def begin(
        self,
        propagation: Propagation = Propagation.REQUIRED,
        isolation_level: Optional[IsolationLevel] = None,
        parent: Optional[TransactionContext] = None,
    ) -> TransactionContext:
        """
        Open a context according to ``propagation`` relative to ``parent``.

        Parameters
        ----------
        propagation : Propagation
        isolation_level : IsolationLevel, optional
            Only honoured when a new physical transaction starts. Joining a
            parent with a different explicit isolation raises.
        parent : TransactionContext, optional
            The caller's current context, if any.

        Returns
        -------
        TransactionContext
            An ``ACTIVE`` context, to be used as a context manager.

        Raises
        ------
        TransactionStateError
            ``MANDATORY`` without an active transaction, ``NEVER`` with one,
            a suspended parent or an isolation conflict.
        """
        propagation = Propagation(propagation)
        isolation = IsolationLevel(isolation_level) if isolation_level is not None else None
        if parent is not None and (parent.suspended or parent.owner.suspended):
            raise TransactionStateError("Cannot open a transaction inside a suspended one", operation="begin")
        active = parent if parent is not None and parent.in_transaction else None

        if propagation is Propagation.MANDATORY and active is None:
            raise TransactionStateError("Propagation MANDATORY requires an active transaction", operation="begin")
        if propagation is Propagation.NEVER and active is not None:
            raise TransactionStateError("Propagation NEVER forbids an active transaction", operation="begin")

        if active is not None and propagation in (Propagation.REQUIRED, Propagation.SUPPORTS, Propagation.MANDATORY):
            owner = active.owner
            if isolation is not None and isolation is not owner.isolation_level:
                raise TransactionStateError(
                    f"Cannot join a {owner.isolation_level} transaction with isolation {isolation.value}",
                    operation="begin",
                )
            return TransactionContext(self, propagation, owner.isolation_level, parent=active, owner=owner)._start()

        transactional = propagation in (Propagation.REQUIRED, Propagation.REQUIRES_NEW, Propagation.MANDATORY)
        context = TransactionContext(
            self,
            propagation,
            (isolation or self.default_isolation) if transactional else None,
            parent=parent,
            transactional=transactional,
        )
        if active is not None:
            # REQUIRES_NEW / NOT_SUPPORTED park the enclosing transaction.
            active.owner.suspended = True
            context._suspended_parent = active.owner
            logger.debug("Suspended %r", active.owner)
        try:
            return context._start()
        except Exception:
            context._finish()
            raise

    def run(
        self,
        func: Callable[..., Any],
        *args: Any,
        propagation: Propagation = Propagation.REQUIRED,
        isolation_level: Optional[IsolationLevel] = None,
        parent: Optional[TransactionContext] = None,
        **kwargs: Any,
    ) -> Any:
        """Run ``func(*args, tx=context, **kwargs)`` inside a context; commit on success."""
        with self.begin(propagation, isolation_level, parent) as tx:
            result = func(*args, tx=tx, **kwargs)
            if tx.is_active:
                tx.commit()
        return result


def transactional(
    manager: TransactionManager,
    propagation: Propagation = Propagation.REQUIRED,
    isolation_level: Optional[IsolationLevel] = None,
):
    """
    Decorator to wrap functions in a managed transaction.

    Ensures that:
    - A ``tx`` passed by the caller is treated as the parent context and the
      propagation rule decides whether it is joined, suspended or refused.
    - The wrapped function receives the resulting context as ``tx``.
    - The context is committed when the function returns and rolled back
      when it raises.

    Parameters
    ----------
    manager : TransactionManager
        Manager opening the contexts.
    propagation : Propagation
        Rule applied to every call.
    isolation_level : IsolationLevel, optional
        Isolation of new physical transactions.

    Returns
    -------
    callable
        Decorator producing the wrapped function.

    Example
    -------
    >>> @transactional(manager)
    ... def create_user(user: User, tx=None):
    ...     return user_dao.insert(user, tx=tx)
    ...
    >>> new_id = create_user(User(...))
    """

    def decorator(func):
        @wraps(func)
        def wrap_func(*args, tx: Optional[TransactionContext] = None, **kwargs):
            return manager.run(
                func, *args, propagation=propagation, isolation_level=isolation_level, parent=tx, **kwargs
            )

        return wrap_func

    return decorator
