"""
Logical backup and restore of the configuration tables.

A backup is a JSON-serializable dict holding every row of the tables in
BACKUP_TABLES. Credentials are exported as stored, i.e. encrypted. Metrics and
the persisted cache are not part of a backup.

These helpers take a raw sqlite3 connection and are meant to run on the
connection thread, inside whatever transaction the caller holds.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from typing import Any

from dasharr.database.schema import BACKUP_TABLES

# Format written by export_tables. Version 1 dumps hold plaintext credentials.
BACKUP_VERSION = 2


def _table_columns(conn: sqlite3.Connection, table: str) -> list[str]:
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]


def export_tables(conn: sqlite3.Connection) -> dict[str, Any]:
    """
    Export every backed-up table.

    Returns:
        {"version": 2, "exported_at": <iso>, <table>: [row, ...], ...}
    """
    dump: dict[str, Any] = {
        "version": BACKUP_VERSION,
        "exported_at": datetime.now(UTC).isoformat(),
    }
    for table in BACKUP_TABLES:
        dump[table] = [dict(row) for row in conn.execute(f"SELECT * FROM {table}").fetchall()]
    return dump


def import_tables(conn: sqlite3.Connection, dump: dict[str, Any]) -> dict[str, int]:
    """
    Replace the contents of each table present in dump.

    Tables missing from the dump are left untouched. Row keys that are not
    columns of the table are ignored.

    Returns:
        Rows restored per table.
    """
    restored: dict[str, int] = {}
    for table in BACKUP_TABLES:
        rows = dump.get(table)
        if rows is None:
            continue

        columns = set(_table_columns(conn, table))
        conn.execute(f"DELETE FROM {table}")
        for row in rows:
            names = [name for name in row if name in columns]
            if not names:
                continue
            placeholders = ", ".join("?" for _ in names)
            conn.execute(
                f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
                [row[name] for name in names],
            )
        restored[table] = len(rows)
    return restored
