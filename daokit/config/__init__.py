"""
The `config` package provides two core building blocks for establishing and managing database connections.

Contents:
    - config: Configuration layer - strongly typed engine settings loaded from environment variables (with .env support), with a module-level default Settings object
    - connection_engine: Database layer - SQLAlchemy bootstrap that constructs a connection URL from those settings, creates the Engine and defines the ConnectionProvider capability the DAO engine borrows connections from

Together they keep connectivity environment-driven while the pool itself stays outside the DAO engine.
"""
