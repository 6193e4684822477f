"""
The `helpers` package provides the transaction machinery shared by every
DAO call.

Transactions are passed explicitly (``tx=...``) rather than through ambient
state, so a DAO call always knows which connection it is running on.

Contents
--------
- transactionManagement
    Provides tools for database transaction management:
        - `TransactionManager.begin(...)` opening a `TransactionContext` per propagation rule:
            - Joins, suspends or refuses the caller's context
            - Rolls back on scope exit unless committed
            - Marks the owner rollback-only when a joined context rolls back
        - `ConnectionLease` lending a connection to one executor call
        - `@transactional` decorator for wrapping functions in a managed transaction
"""
