"""
DAOs Package
============

The `daos` package is the public face of the data-access layer.

Conventions
-----------
- One `Dao` per entity type, created by `DaoEngine.register`
- Every call takes an optional `tx` and applies its propagation rule
- DAOs surface exceptions so upper layers decide error policy

Contents
--------
- dao_engine
    `DaoEngine` and `Dao`:
    * Generated CRUD, batch and pagination operations
    * Declared SQL templates (`Query`, `Statement`, `BatchStatement`)
    * `NO_UPDATE` / `READ_ONLY` modes

- join_loader
    `JoinSpec` and `JoinLoader`: related entities attached with one batched
    query per relation instead of one per root

- dao_cache
    `DaoCache` and `CachedDao`: LRU read-through cache for lookups by id with
    delayed invalidation after mutations
"""
