"""
SQLite persistence layer.

- connection: queue-serialized connection manager and read/write pool
- schema: DDL for all tables
- migrations: versioned migrations with savepoint rollback
- backup: logical export/import of configuration tables
"""

from dasharr.database.connection import ConnectionManager, ConnectionPool, PreparedStatement
from dasharr.database.migrations import MIGRATIONS, Migration, SchemaMigrator

__all__ = [
    "ConnectionManager",
    "ConnectionPool",
    "Migration",
    "MIGRATIONS",
    "PreparedStatement",
    "SchemaMigrator",
]
