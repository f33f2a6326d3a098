"""
Versioned schema migrations.

The schema version lives in the settings table under "db_version" (missing
means 0) and is compared numerically. Before any pending step runs, a logical
backup of the configuration tables is captured in memory. Each step runs in
its own savepoint:

    SAVEPOINT migration_<n>
        <step>
        db_version = n
    RELEASE migration_<n>

If a step fails, its savepoint is rolled back, the pre-migration backup is
restored, and MigrationError is raised. Steps that already ran are never
re-applied.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from dasharr.database.backup import export_tables, import_tables
from dasharr.database.connection import run_in_transaction
from dasharr.database.schema import SCHEMA_SQL
from dasharr.errors import MigrationError
from dasharr.logging import get_logger

if TYPE_CHECKING:
    from dasharr.database.connection import ConnectionManager
    from dasharr.security.cipher import CredentialCipher

logger = get_logger(__name__)

VERSION_KEY = "db_version"

CREDENTIAL_COLUMNS = ("api_key", "username", "password")


@dataclass(frozen=True)
class Migration:
    """A single schema or data migration step.

    Attributes:
        version: Version the database is at after this step.
        description: Short description for logs.
        apply: Function run on the connection thread inside the step's savepoint.
    """

    version: int
    description: str
    apply: Callable[[sqlite3.Connection, CredentialCipher], Any]


def read_version(conn: sqlite3.Connection) -> int:
    """Read the current schema version, 0 when unset."""
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (VERSION_KEY,)).fetchone()
    if row is None:
        return 0
    try:
        return int(row[0])
    except (TypeError, ValueError):
        logger.warning("Invalid schema version in settings, assuming 0", extra={"value": row[0]})
        return 0


def write_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        """
        INSERT INTO settings (key, value, type) VALUES (?, ?, 'string')
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, type = excluded.type
        """,
        (VERSION_KEY, str(version)),
    )


def encrypt_stored_credentials(conn: sqlite3.Connection, cipher: CredentialCipher) -> int:
    """
    Encrypt every stored credential that is not encrypted yet.

    Safe to re-run: encrypted values are left as they are.

    Returns:
        Number of instances updated.
    """
    rows = conn.execute(
        f"SELECT id, {', '.join(CREDENTIAL_COLUMNS)} FROM service_instances"
    ).fetchall()

    updated = 0
    for row in rows:
        changes = {}
        for column in CREDENTIAL_COLUMNS:
            value = row[column]
            if value and not cipher.is_encrypted(value):
                changes[column] = cipher.encrypt(value)
        if not changes:
            continue

        assignments = ", ".join(f"{column} = ?" for column in changes)
        conn.execute(
            f"UPDATE service_instances SET {assignments} WHERE id = ?",
            [*changes.values(), row["id"]],
        )
        updated += 1

    if updated:
        logger.info("Encrypted stored credentials", extra={"instances": updated})
    return updated


def _baseline(conn: sqlite3.Connection, cipher: CredentialCipher) -> None:
    # The base schema is applied idempotently before migrations run
    return None


MIGRATIONS: tuple[Migration, ...] = (
    Migration(version=1, description="Initial schema", apply=_baseline),
    Migration(
        version=2,
        description="Encrypt existing credentials",
        apply=encrypt_stored_credentials,
    ),
)


class SchemaMigrator:
    """
    Applies the base schema and pending migrations on the write connection.

    The whole run is a single queued task, so no other statement can
    interleave with a migration.

    Example:
        >>> migrator = SchemaMigrator(pool.get_write_connection(), cipher)
        >>> await migrator.run_migrations()
        2
    """

    def __init__(
        self,
        connection: ConnectionManager,
        cipher: CredentialCipher,
        migrations: Sequence[Migration] = MIGRATIONS,
    ) -> None:
        self._connection = connection
        self._cipher = cipher
        self._migrations = sorted(migrations, key=lambda m: m.version)

    @property
    def latest_version(self) -> int:
        """Version the database is at once every migration has run."""
        return self._migrations[-1].version if self._migrations else 0

    async def run_migrations(self) -> int:
        """
        Bring the database up to the latest version.

        Returns:
            The schema version after migrating.

        Raises:
            MigrationError: If a step fails. The database is restored to its
                pre-migration state when possible.
        """
        return await self._connection.execute(self._migrate)

    def _migrate(self, conn: sqlite3.Connection) -> int:
        conn.executescript(SCHEMA_SQL)

        current = read_version(conn)
        pending = [m for m in self._migrations if m.version > current]
        if not pending:
            logger.debug("Database schema is up to date", extra={"version": current})
            return current

        logger.info(
            "Running database migrations",
            extra={"from_version": current, "to_version": pending[-1].version},
        )

        backup: dict[str, Any] | None = None
        try:
            backup = export_tables(conn)
        except sqlite3.Error as e:
            logger.warning("Failed to create pre-migration backup", extra={"error": str(e)})

        for migration in pending:
            savepoint = f"migration_{migration.version}"
            conn.execute(f"SAVEPOINT {savepoint}")
            try:
                migration.apply(conn, self._cipher)
                write_version(conn, migration.version)
            except Exception as e:
                conn.execute(f"ROLLBACK TO {savepoint}")
                conn.execute(f"RELEASE {savepoint}")
                logger.error(
                    "Migration failed",
                    extra={
                        "version": migration.version,
                        "description": migration.description,
                        "error": str(e),
                    },
                )
                if backup is not None:
                    self._restore(conn, backup)
                raise MigrationError(
                    f"Migration {migration.version} failed: {e}",
                    details={"version": migration.version, "from_version": current},
                ) from e

            conn.execute(f"RELEASE {savepoint}")
            logger.info(
                "Migration applied",
                extra={"version": migration.version, "description": migration.description},
            )

        return pending[-1].version

    def _restore(self, conn: sqlite3.Connection, backup: dict[str, Any]) -> None:
        try:
            run_in_transaction(conn, lambda c: import_tables(c, backup))
        except sqlite3.Error as e:
            logger.error("Failed to restore pre-migration backup", extra={"error": str(e)})
            return
        logger.info("Restored database from pre-migration backup")
