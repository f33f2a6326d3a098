"""
Connection management for the SQLite store.

SQLite allows any number of readers but only one writer at a time. Instead of
letting callers race for the write lock, every call against a connection is
wrapped in a task and placed on a FIFO queue that a single drain loop works
through. The tasks run on a dedicated one-thread executor which owns the
sqlite3 connection, so the event loop never blocks on disk I/O and the
connection is only ever touched from one thread.

ConnectionPool adds an optional read/write split: one write connection plus a
small round-robin set of read-only connections for read-heavy queries.

Maintenance:
- WAL checkpoint (TRUNCATE) on a fixed interval and on close
- ANALYZE + VACUUM on demand, VACUUM skipped while work is queued
"""

from __future__ import annotations

import asyncio
import os
import sqlite3
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from dasharr.errors import FailedPreconditionError, UnavailableError
from dasharr.logging import get_logger

if TYPE_CHECKING:
    from dasharr.config import DatabaseConfig

logger = get_logger(__name__)

T = TypeVar("T")

# =============================================================================
# Constants
# =============================================================================

MEMORY_DATABASE = ":memory:"
DB_FILE_MODE = 0o600
SIDECAR_SUFFIXES = ("-wal", "-shm")

DEFAULT_BUSY_TIMEOUT_MS = 5000
DEFAULT_CACHE_SIZE_KIB = 32000
DEFAULT_CHECKPOINT_INTERVAL = 300  # seconds
DEFAULT_READ_CONNECTIONS = 2


def run_in_transaction(conn: sqlite3.Connection, fn: Callable[[sqlite3.Connection], T]) -> T:
    """
    Run fn inside an immediate transaction on conn.

    The write lock is taken up front so the transaction cannot fail halfway
    with SQLITE_BUSY on lock upgrade. Any exception rolls back and re-raises.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        result = fn(conn)
    except Exception:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")
    return result


@dataclass
class _QueuedTask:
    fn: Callable[[sqlite3.Connection], Any]
    future: asyncio.Future[Any]


class PreparedStatement:
    """
    A SQL statement bound to a connection manager for repeated execution.

    sqlite3 keeps compiled statements in a per-connection cache keyed by the
    SQL text, so reusing the same statement object skips re-parsing.

    Example:
        >>> insert = manager.prepare("INSERT INTO settings (key, value) VALUES (?, ?)")
        >>> await insert.run("theme", "dark")
    """

    def __init__(self, manager: ConnectionManager, sql: str) -> None:
        self._manager = manager
        self.sql = sql

    async def run(self, *params: Any) -> int:
        """Execute the statement and return the number of affected rows."""
        return await self._manager.execute(lambda conn: conn.execute(self.sql, params).rowcount)

    async def all(self, *params: Any) -> list[dict[str, Any]]:
        """Execute the statement and return every row."""
        return await self._manager.execute(
            lambda conn: [dict(row) for row in conn.execute(self.sql, params).fetchall()]
        )

    async def get(self, *params: Any) -> dict[str, Any] | None:
        """Execute the statement and return the first row, if any."""

        def _get(conn: sqlite3.Connection) -> dict[str, Any] | None:
            row = conn.execute(self.sql, params).fetchone()
            return dict(row) if row is not None else None

        return await self._manager.execute(_get)


# =============================================================================
# ConnectionManager Class
# =============================================================================


class ConnectionManager:
    """
    Owns one SQLite connection and serializes all access to it.

    Example:
        >>> manager = ConnectionManager("/app/config/dasharr.db")
        >>> await manager.open()
        >>> count = await manager.execute(
        ...     lambda conn: conn.execute("SELECT COUNT(*) FROM metrics").fetchone()[0]
        ... )
        >>> await manager.close()
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        readonly: bool = False,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        cache_size_kib: int = DEFAULT_CACHE_SIZE_KIB,
        checkpoint_interval_seconds: float | None = DEFAULT_CHECKPOINT_INTERVAL,
    ) -> None:
        """
        Initialize the ConnectionManager.

        Args:
            db_path: Path to the SQLite database file, or ":memory:".
            readonly: Open the connection read-only.
            busy_timeout_ms: How long to wait on a locked database.
            cache_size_kib: Page cache size.
            checkpoint_interval_seconds: WAL checkpoint interval, None disables it.
        """
        self.db_path = db_path if str(db_path) == MEMORY_DATABASE else Path(db_path)
        self.readonly = readonly
        self.connection_id = uuid.uuid4().hex[:8]
        self._busy_timeout_ms = busy_timeout_ms
        self._cache_size_kib = cache_size_kib
        self._checkpoint_interval = checkpoint_interval_seconds

        self._conn: sqlite3.Connection | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[_QueuedTask | None] | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._checkpoint_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._closing = False

        self._processing = False
        self._query_count = 0
        self._last_activity = time.time()

    @property
    def is_open(self) -> bool:
        """Whether the connection is open and accepting work."""
        return self._conn is not None and not self._closing

    @property
    def queue_length(self) -> int:
        """Number of tasks waiting to run."""
        return self._queue.qsize() if self._queue is not None else 0

    async def open(self) -> None:
        """
        Open the connection and start the drain loop.

        Idempotent.

        Raises:
            UnavailableError: If the database cannot be opened.
        """
        if self._conn is not None:
            return

        self._loop = asyncio.get_running_loop()
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"sqlite-{self.connection_id}"
        )

        logger.info(
            "Opening database connection",
            extra={
                "connection_id": self.connection_id,
                "db_path": str(self.db_path),
                "readonly": self.readonly,
            },
        )

        try:
            self._conn = await self._loop.run_in_executor(self._executor, self._connect)
        except (sqlite3.Error, OSError) as e:
            self._executor.shutdown(wait=False)
            self._executor = None
            logger.error(
                "Failed to open database connection",
                extra={"connection_id": self.connection_id, "error": str(e)},
            )
            raise UnavailableError(
                f"Failed to open database: {e}",
                details={"db_path": str(self.db_path)},
            ) from e

        self._closing = False
        self._stop_event.clear()
        self._queue = asyncio.Queue()
        self._drain_task = asyncio.create_task(self._drain())
        if self._checkpoint_interval and not self.readonly:
            self._checkpoint_task = asyncio.create_task(self._checkpoint_loop())

    def _connect(self) -> sqlite3.Connection:
        timeout = self._busy_timeout_ms / 1000.0
        if isinstance(self.db_path, Path):
            if self.readonly:
                uri = f"{self.db_path.resolve().as_uri()}?mode=ro"
                conn = sqlite3.connect(uri, uri=True, timeout=timeout, isolation_level=None)
            else:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self.db_path), timeout=timeout, isolation_level=None)
        else:
            conn = sqlite3.connect(MEMORY_DATABASE, timeout=timeout, isolation_level=None)

        conn.row_factory = sqlite3.Row
        self._apply_pragmas(conn)
        if isinstance(self.db_path, Path) and not self.readonly:
            self._restrict_permissions()
        return conn

    def _apply_pragmas(self, conn: sqlite3.Connection) -> None:
        pragmas = [
            "foreign_keys = ON",
            f"cache_size = -{self._cache_size_kib}",
            "temp_store = MEMORY",
            "synchronous = NORMAL",
            f"busy_timeout = {self._busy_timeout_ms}",
        ]
        if not self.readonly:
            # Must come first: the journal mode is a property of the file
            pragmas.insert(0, "journal_mode = WAL")

        for pragma in pragmas:
            try:
                conn.execute(f"PRAGMA {pragma}")
            except sqlite3.Error as e:
                logger.warning(
                    "Failed to apply pragma",
                    extra={"connection_id": self.connection_id, "pragma": pragma, "error": str(e)},
                )

    def _restrict_permissions(self) -> None:
        assert isinstance(self.db_path, Path)
        paths = [self.db_path] + [
            self.db_path.with_name(self.db_path.name + suffix) for suffix in SIDECAR_SUFFIXES
        ]
        for path in paths:
            if not path.exists():
                continue
            try:
                os.chmod(path, DB_FILE_MODE)
            except OSError as e:
                logger.warning(
                    "Could not set restrictive database file permissions",
                    extra={"path": str(path), "error": str(e)},
                )

    async def _drain(self) -> None:
        """Run queued tasks one at a time, in submission order."""
        assert self._queue is not None and self._loop is not None

        while True:
            task = await self._queue.get()
            if task is None:
                self._queue.task_done()
                break
            if task.future.cancelled():
                self._queue.task_done()
                continue

            self._processing = True
            self._last_activity = time.time()
            self._query_count += 1
            try:
                result = await self._loop.run_in_executor(self._executor, task.fn, self._conn)
            except Exception as e:
                logger.error(
                    "Query execution error",
                    extra={"connection_id": self.connection_id, "error": str(e)},
                )
                if not task.future.done():
                    task.future.set_exception(e)
            else:
                if not task.future.done():
                    task.future.set_result(result)
            finally:
                self._processing = False
                self._queue.task_done()

    async def execute(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """
        Queue fn for execution against the connection and wait for its result.

        fn runs on the connection thread and must not touch the event loop.

        Raises:
            UnavailableError: If the connection is not open.
            Exception: Whatever fn raised.
        """
        if not self.is_open or self._queue is None or self._loop is None:
            raise UnavailableError(
                "Database connection is not open",
                details={"connection_id": self.connection_id},
            )

        future: asyncio.Future[T] = self._loop.create_future()
        self._queue.put_nowait(_QueuedTask(fn=fn, future=future))
        return await future

    async def transaction(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """
        Run fn inside a single transaction as one queued task.

        Raises:
            FailedPreconditionError: On a read-only connection.
        """
        if self.readonly:
            raise FailedPreconditionError(
                "Transactions are not allowed on a read-only connection",
                details={"connection_id": self.connection_id},
            )
        return await self.execute(partial(run_in_transaction, fn=fn))

    def prepare(self, sql: str) -> PreparedStatement:
        """Bind a statement to this connection for reuse."""
        return PreparedStatement(self, sql)

    async def checkpoint(self) -> tuple[int, int, int] | None:
        """
        Merge the write-ahead log into the main database file.

        Returns:
            (busy, log_frames, checkpointed_frames), or None if skipped or failed.
        """
        if self.readonly or not self.is_open:
            return None

        def _checkpoint(conn: sqlite3.Connection) -> tuple[int, int, int]:
            row = conn.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchone()
            return int(row[0]), int(row[1]), int(row[2])

        try:
            busy, log_frames, checkpointed = await self.execute(_checkpoint)
        except sqlite3.Error as e:
            logger.warning(
                "Checkpoint failed",
                extra={"connection_id": self.connection_id, "error": str(e)},
            )
            return None

        if busy == 0 and (log_frames > 0 or checkpointed > 0):
            logger.debug(
                "Database checkpoint completed",
                extra={
                    "connection_id": self.connection_id,
                    "log_frames": log_frames,
                    "checkpointed_frames": checkpointed,
                },
            )
        return busy, log_frames, checkpointed

    async def _checkpoint_loop(self) -> None:
        assert self._checkpoint_interval is not None
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=float(self._checkpoint_interval),
                )
                break
            except TimeoutError:
                await self.checkpoint()

    async def optimize(self) -> bool:
        """
        Run ANALYZE, then VACUUM if no other work is waiting.

        Returns:
            True if VACUUM ran.
        """
        if self.readonly:
            logger.debug(
                "Skipping optimization on read-only connection",
                extra={"connection_id": self.connection_id},
            )
            return False

        logger.info("Running database optimization", extra={"connection_id": self.connection_id})
        try:
            await self.execute(lambda conn: conn.execute("ANALYZE"))
            # VACUUM needs exclusive access and cannot run inside a transaction
            if self.queue_length > 0:
                logger.info(
                    "Skipped VACUUM due to active operations",
                    extra={"connection_id": self.connection_id, "queue_length": self.queue_length},
                )
                return False
            await self.execute(lambda conn: conn.execute("VACUUM"))
        except sqlite3.Error as e:
            logger.error(
                "Database optimization failed",
                extra={"connection_id": self.connection_id, "error": str(e)},
            )
            return False

        logger.info("Database optimization completed", extra={"connection_id": self.connection_id})
        return True

    def is_idle(self, threshold_seconds: float = 60.0) -> bool:
        """Whether nothing has run on this connection for threshold_seconds."""
        return time.time() - self._last_activity > threshold_seconds

    async def get_stats(self) -> dict[str, Any]:
        """
        Get connection statistics.

        Returns:
            Counters plus the database size when it can be determined.
        """
        now = time.time()
        stats: dict[str, Any] = {
            "connection_id": self.connection_id,
            "readonly": self.readonly,
            "query_count": self._query_count,
            "queue_length": self.queue_length,
            "is_processing": self._processing,
            "last_activity": self._last_activity,
            "idle_time": now - self._last_activity,
        }

        if self.is_open:

            def _size(conn: sqlite3.Connection) -> int:
                page_count = conn.execute("PRAGMA page_count").fetchone()[0]
                page_size = conn.execute("PRAGMA page_size").fetchone()[0]
                return int(page_count) * int(page_size)

            try:
                stats["database_size_bytes"] = await self.execute(_size)
            except sqlite3.Error:
                pass

        return stats

    async def close(self) -> None:
        """
        Stop maintenance, checkpoint, drain pending work and close the connection.

        Idempotent.
        """
        if self._conn is None or self._closing:
            return

        self._stop_event.set()
        if self._checkpoint_task is not None:
            await self._checkpoint_task
            self._checkpoint_task = None

        await self.checkpoint()

        self._closing = True
        if self._queue is not None and self._drain_task is not None:
            self._queue.put_nowait(None)
            await self._drain_task
            self._drain_task = None

        assert self._loop is not None and self._executor is not None
        conn = self._conn
        await self._loop.run_in_executor(self._executor, conn.close)
        self._executor.shutdown(wait=True)
        self._executor = None
        self._conn = None
        self._queue = None

        logger.info(
            "Database connection closed",
            extra={"connection_id": self.connection_id, "query_count": self._query_count},
        )


# =============================================================================
# ConnectionPool Class
# =============================================================================


class ConnectionPool:
    """
    One write connection plus a round-robin set of read-only connections.

    With read_connections=0 (or an in-memory database) every read goes to the
    write connection.

    Example:
        >>> pool = ConnectionPool("/app/config/dasharr.db", read_connections=2)
        >>> await pool.open()
        >>> rows = await pool.read(lambda conn: conn.execute("SELECT 1").fetchall())
        >>> await pool.close_all()
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        read_connections: int = DEFAULT_READ_CONNECTIONS,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        cache_size_kib: int = DEFAULT_CACHE_SIZE_KIB,
        checkpoint_interval_seconds: float | None = DEFAULT_CHECKPOINT_INTERVAL,
    ) -> None:
        if str(db_path) == MEMORY_DATABASE:
            # Each :memory: connection is its own database
            read_connections = 0

        self.db_path = db_path
        self._write = ConnectionManager(
            db_path,
            busy_timeout_ms=busy_timeout_ms,
            cache_size_kib=cache_size_kib,
            checkpoint_interval_seconds=checkpoint_interval_seconds,
        )
        self._readers = [
            ConnectionManager(
                db_path,
                readonly=True,
                busy_timeout_ms=busy_timeout_ms,
                cache_size_kib=cache_size_kib,
                checkpoint_interval_seconds=None,
            )
            for _ in range(read_connections)
        ]
        self._read_index = 0

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> ConnectionPool:
        """Create a ConnectionPool from configuration."""
        return cls(
            config.path,
            read_connections=config.read_connections,
            busy_timeout_ms=config.busy_timeout_ms,
            cache_size_kib=config.cache_size_kib,
            checkpoint_interval_seconds=config.checkpoint_interval_seconds,
        )

    async def open(self) -> None:
        """Open the write connection first so the file exists for the readers."""
        await self._write.open()
        for reader in self._readers:
            await reader.open()
        logger.info(
            "Database connection pool initialized",
            extra={"write_connections": 1, "read_connections": len(self._readers)},
        )

    def get_write_connection(self) -> ConnectionManager:
        """Return the write connection."""
        return self._write

    def get_read_connection(self) -> ConnectionManager:
        """Return the next read connection (round-robin)."""
        if not self._readers:
            return self._write
        connection = self._readers[self._read_index]
        self._read_index = (self._read_index + 1) % len(self._readers)
        return connection

    async def read(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Execute a read-only function on a read connection."""
        return await self.get_read_connection().execute(fn)

    async def write(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Execute a function on the write connection."""
        return await self._write.execute(fn)

    async def transaction(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run a transaction on the write connection."""
        return await self._write.transaction(fn)

    async def get_stats(self) -> dict[str, Any]:
        """Get statistics for every connection in the pool."""
        write_stats = await self._write.get_stats()
        read_stats = [await reader.get_stats() for reader in self._readers]
        return {
            "write_connection": write_stats,
            "read_connections": read_stats,
            "total_queries": write_stats["query_count"]
            + sum(s["query_count"] for s in read_stats),
        }

    async def optimize_all(self) -> None:
        """Optimize every connection."""
        logger.info("Optimizing all database connections")
        await self._write.optimize()
        for reader in self._readers:
            await reader.optimize()

    async def close_all(self) -> None:
        """Close every connection, readers first."""
        logger.info("Closing all database connections")
        for reader in self._readers:
            await reader.close()
        await self._write.close()
