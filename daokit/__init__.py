"""
The `daokit` package is a declarative data-access layer: typed entity
descriptors and operation declarations are turned into parameterized SQL,
executed through SQLAlchemy connections and mapped back into entities.

Contents:
    - config:
        Environment-driven settings and the SQLAlchemy connection bootstrap
        (`ConnectionProvider`).

    - entities:
        Entity descriptors, the descriptor registry and naming policies.

    - core:
        Condition trees, the SQL builder and template compiler, parameter
        binding, result mapping and the query executor.

    - helpers:
        Transaction contexts with propagation rules and the `@transactional`
        decorator.

    - daos:
        The DAO engine façade, the join-entity loader and the DAO cache.
"""
