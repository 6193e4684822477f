import threading

import pytest

from conftest import User
from daokit.core.errors import TransactionStateError
from daokit.helpers.transactionManagement import (
    IsolationLevel,
    Propagation,
    TransactionState,
    transactional,
)


def test_commit_makes_writes_visible(engine, user_dao, provider):
    with engine.begin() as tx:
        user_dao.insert(User(first_name="Ada"), tx=tx)
        assert tx.in_transaction
        tx.commit()
    assert tx.state is TransactionState.COMMITTED
    assert user_dao.count() == 1
    assert provider.outstanding == 0


def test_exit_without_commit_rolls_back(engine, user_dao, provider):
    with engine.begin() as tx:
        user_dao.insert(User(first_name="Ada"), tx=tx)
    assert tx.state is TransactionState.ROLLED_BACK
    assert user_dao.count() == 0
    assert provider.outstanding == 0


def test_exception_rolls_back(engine, user_dao):
    with pytest.raises(RuntimeError):
        with engine.begin() as tx:
            user_dao.insert(User(first_name="Ada"), tx=tx)
            raise RuntimeError("boom")
    assert user_dao.count() == 0


def test_terminal_state_is_final(engine):
    tx = engine.begin()
    tx.commit()
    with pytest.raises(TransactionStateError):
        tx.commit()
    with pytest.raises(TransactionStateError):
        tx.rollback()
    with pytest.raises(TransactionStateError):
        tx.lease()


def test_requires_new_survives_outer_rollback(engine, user_dao):
    with engine.begin() as outer:
        with engine.begin(Propagation.REQUIRES_NEW, parent=outer) as inner:
            assert outer.suspended
            with pytest.raises(TransactionStateError):
                outer.lease()
            user_dao.insert(User(first_name="audit"), tx=inner)
            inner.commit()
        assert not outer.suspended
        user_dao.insert(User(first_name="work"), tx=outer)
        outer.rollback()
    assert [u.first_name for u in user_dao.list()] == ["audit"]


def test_suspended_parent_cannot_commit(engine):
    with engine.begin() as outer:
        with engine.begin(Propagation.NOT_SUPPORTED, parent=outer) as inner:
            assert not inner.in_transaction
            with pytest.raises(TransactionStateError):
                outer.commit()
            inner.commit()
        outer.commit()


def test_required_joins_the_parent(engine, user_dao):
    with engine.begin() as outer:
        with engine.begin(Propagation.REQUIRED, parent=outer) as inner:
            assert inner.owner is outer
            assert inner.depth == 1
            user_dao.insert(User(first_name="joined"), tx=inner)
            inner.commit()
        assert user_dao.count(tx=outer) == 1
        outer.rollback()
    assert user_dao.count() == 0


def test_joined_rollback_marks_owner_rollback_only(engine, user_dao):
    with engine.begin() as outer:
        user_dao.insert(User(first_name="x"), tx=outer)
        with engine.begin(parent=outer) as inner:
            inner.rollback()
        assert outer.rollback_only
        with pytest.raises(TransactionStateError):
            outer.commit()
    assert outer.state is TransactionState.ROLLED_BACK
    assert user_dao.count() == 0


def test_mandatory_and_never(engine):
    with pytest.raises(TransactionStateError):
        engine.begin(Propagation.MANDATORY)
    with engine.begin() as outer:
        with pytest.raises(TransactionStateError):
            engine.begin(Propagation.NEVER, parent=outer)
        with engine.begin(Propagation.MANDATORY, parent=outer) as inner:
            assert inner.owner is outer
            inner.commit()
        outer.commit()
    with engine.begin(Propagation.NEVER) as tx:
        assert not tx.in_transaction
        tx.commit()


def test_supports_without_parent_uses_autocommit_leases(engine, provider):
    with engine.begin(Propagation.SUPPORTS) as tx:
        lease = tx.lease()
        assert lease.autocommit
        lease.close()
        tx.commit()
    assert provider.outstanding == 0


def test_commit_from_another_thread_is_rejected(engine):
    errors = []
    with engine.begin() as tx:
        def finish():
            try:
                tx.commit()
            except TransactionStateError as e:
                errors.append(e)

        worker = threading.Thread(target=finish)
        worker.start()
        worker.join()
        assert tx.is_active
        tx.rollback()
    assert len(errors) == 1


def test_isolation_fixed_by_owner(engine):
    with engine.begin(isolation_level=IsolationLevel.SERIALIZABLE) as outer:
        with pytest.raises(TransactionStateError):
            engine.begin(Propagation.REQUIRED, IsolationLevel.READ_UNCOMMITTED, parent=outer)
        with engine.begin(parent=outer) as inner:
            assert inner.isolation_level is IsolationLevel.SERIALIZABLE
            inner.commit()
        outer.commit()


def test_transactional_decorator(engine, user_dao):
    @transactional(engine.transactions)
    def create(names, tx=None):
        for name in names:
            user_dao.insert(User(first_name=name), tx=tx)
        if "bad" in names:
            raise ValueError("bad name")
        return tx

    tx = create(["a", "b"])
    assert tx.state is TransactionState.COMMITTED
    with pytest.raises(ValueError):
        create(["c", "bad"])
    assert user_dao.count() == 2

    with engine.begin() as outer:
        inner = create(["d"], tx=outer)
        assert inner.owner is outer
        outer.rollback()
    assert user_dao.count() == 2
