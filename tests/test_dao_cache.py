import pytest

from conftest import User
from daokit.daos.dao_cache import DEFAULT_INVALIDATION_PATTERN, CachedDao, DaoCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


def test_lru_eviction_and_stats():
    cache = DaoCache(capacity=2)
    cache.put(1, "a")
    cache.put(2, "b")
    assert cache.get(1) == "a"
    cache.put(3, "c")
    assert 2 not in cache
    assert 1 in cache and 3 in cache
    assert cache.get(2) is None
    stats = cache.stats
    assert (stats.hits, stats.misses, stats.size, stats.evictions) == (1, 1, 2, 1)
    assert stats.hit_ratio == 0.5


def test_entries_are_snapshots():
    cache = DaoCache()
    user = User(id=1, first_name="Ada")
    cache.put(1, user)
    user.first_name = "changed"
    cached = cache.get(1)
    assert cached.first_name == "Ada"
    cached.first_name = "also changed"
    assert cache.get(1).first_name == "Ada"


def test_invalidation_is_delayed(clock):
    cache = DaoCache(evict_delay=3.0, clock=clock)
    cache.put(1, "a")
    cache.schedule_invalidation()
    clock.now = 2.9
    assert cache.get(1) == "a"
    clock.now = 3.0
    assert cache.get(1) is None
    assert len(cache) == 0


def test_zero_delay_clears_immediately():
    cache = DaoCache(evict_delay=0)
    cache.put(1, "a")
    cache.schedule_invalidation()
    assert len(cache) == 0


def test_invalid_capacity():
    with pytest.raises(ValueError):
        DaoCache(capacity=0)


@pytest.mark.parametrize(
    "name, invalidates",
    [
        ("update", True),
        ("batch_delete_by_ids", True),
        ("batchInsert", True),
        ("upsert", True),
        ("execute_cleanup", True),
        ("find_by_id", False),
        ("list", False),
        ("count_updates", False),
    ],
)
def test_default_invalidation_pattern(name, invalidates):
    assert (DEFAULT_INVALIDATION_PATTERN.search(name) is not None) is invalidates


def test_cached_dao_reads_through_and_invalidates(engine, counter, clock):
    dao = CachedDao(engine.register(User, table="user1"), DaoCache(evict_delay=3.0, clock=clock))
    user = User(first_name="Ada")
    dao.insert(user)
    clock.now = 10.0
    counter.reset()
    assert dao.find_by_id(user.id).first_name == "Ada"
    assert dao.find_by_id(user.id).first_name == "Ada"
    assert len(counter.starting_with("SELECT")) == 1

    user.first_name = "Grace"
    dao.update(user)
    assert dao.find_by_id(user.id).first_name == "Ada"
    clock.now = 13.0
    assert dao.find_by_id(user.id).first_name == "Grace"


def test_cached_dao_bypasses_cache(engine, counter, clock):
    dao = CachedDao(engine.register(User, table="user1"), DaoCache(clock=clock))
    user = User(first_name="Ada")
    dao.insert(user)
    counter.reset()
    dao.find_by_id(user.id, select_props=["id"])
    with engine.begin() as tx:
        dao.find_by_id(user.id, tx=tx)
        tx.commit()
    assert len(dao.cache) == 0
    assert len(counter.starting_with("SELECT")) == 2


def test_missing_rows_are_not_cached(engine, clock):
    dao = CachedDao(engine.register(User, table="user1"), DaoCache(clock=clock))
    assert dao.find_by_id(42) is None
    assert 42 not in dao.cache


def test_custom_filter_and_named_calls(engine, clock):
    dao = CachedDao(engine.register(User, table="user1"), DaoCache(evict_delay=0, clock=clock), invalidate_on="^insert$")
    user = User(first_name="Ada")
    dao.call("insert", user)
    dao.cache.put(user.id, user)
    dao.call("count")
    assert user.id in dao.cache
    dao.call("insert", User(first_name="Bob"))
    assert user.id not in dao.cache
    assert dao.descriptor.table == "user1"
