# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Durable checkpointer implementations.

Implementations:
    - SQLiteCheckpointer: File-based SQLite storage (default durable store)
    - JSONFileCheckpointer: One JSON file per checkpoint, for debugging

Both survive process restarts: a new process opening the same path sees
every checkpoint written before the old one exited. Each write is atomic,
so a crash mid-write leaves either the whole checkpoint or nothing.

Example:
    from superstep.framework.checkpointer import SQLiteCheckpointer
    from superstep.framework.graph import StateGraph

    checkpointer = SQLiteCheckpointer("~/.superstep/checkpoints.db")
    app = graph.compile(checkpointer=checkpointer)
    result = await app.invoke(initial_state, thread_id="my-thread")
"""

from __future__ import annotations

import asyncio
import builtins
import json
import logging
import os
import sqlite3
import tempfile
import threading
from collections.abc import AsyncIterator
from functools import partial
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar, Union
from urllib.parse import quote, unquote

from superstep.core.logging_config import TRACE
from superstep.framework.checkpoint import (
    BaseCheckpointer,
    CheckpointBackend,
    MemoryCheckpointer,
    Row,
)
from superstep.framework.errors import CheckpointIOError
from superstep.framework.serde import JsonSerializer

logger = logging.getLogger(__name__)

T = TypeVar("T")

_COLUMNS = (
    "thread_id",
    "checkpoint_id",
    "sequence_number",
    "parent_checkpoint_id",
    "state_blob",
    "active_frontier",
    "interrupts",
    "completed_nodes",
    "superstep_input",
    "pending_writes",
    "metadata",
    "created_at",
)


class SQLiteCheckpointer(BaseCheckpointer):
    """SQLite-based checkpointer for graph state persistence.

    Every save runs in a single transaction that computes the next
    sequence number and inserts the row, so a checkpoint is either fully
    stored or absent. Blocking sqlite calls run in the default executor.

    Attributes:
        db_path: Path to SQLite database file
        table_name: Name of the checkpoints table

    Example:
        checkpointer = SQLiteCheckpointer("~/.superstep/checkpoints.db")
        latest = await checkpointer.load_latest("thread-123")
    """

    backend = CheckpointBackend.SQLITE

    def __init__(
        self,
        db_path: Union[str, Path] = "~/.superstep/checkpoints.db",
        table_name: str = "checkpoints",
        serializer: Optional[JsonSerializer] = None,
        page_size: int = 64,
    ):
        """Initialize SQLite checkpointer.

        Args:
            db_path: Path to database file (will be created if not exists)
            table_name: Name for checkpoints table
            serializer: State serializer (defaults to JsonSerializer)
            page_size: Rows fetched per round-trip when iterating history
        """
        super().__init__(serializer)
        self.db_path = Path(os.path.expanduser(str(db_path)))
        self.table_name = table_name
        self.page_size = page_size
        self._conn: Optional[sqlite3.Connection] = None
        self._conn_lock = threading.RLock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # Used from executor threads; every access holds _conn_lock.
            conn = sqlite3.connect(
                str(self.db_path), check_same_thread=False, isolation_level=None
            )
            conn.row_factory = sqlite3.Row
            try:
                self._init_schema(conn)
            except sqlite3.Error:
                conn.close()
                raise
            self._conn = conn
        return self._conn

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        """Initialize database schema."""
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table_name} (
                thread_id TEXT NOT NULL,
                checkpoint_id TEXT NOT NULL,
                sequence_number INTEGER NOT NULL,
                parent_checkpoint_id TEXT,
                state_blob TEXT NOT NULL,
                active_frontier TEXT NOT NULL,
                interrupts TEXT NOT NULL,
                completed_nodes TEXT NOT NULL,
                superstep_input TEXT NOT NULL,
                pending_writes TEXT NOT NULL,
                metadata TEXT NOT NULL,
                created_at REAL NOT NULL,
                PRIMARY KEY (thread_id, checkpoint_id),
                UNIQUE (thread_id, sequence_number)
            )
        """)
        logger.debug(f"Initialized checkpoint schema: {self.db_path}")

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self._guarded, func, *args))

    def _guarded(self, func: Callable[..., T], *args: Any) -> T:
        try:
            with self._conn_lock:
                return func(self._get_connection(), *args)
        except (sqlite3.Error, OSError) as e:
            raise CheckpointIOError(
                f"SQLite checkpoint store failed ({self.db_path}): {e}",
                backend=self.backend.value,
            ) from e

    @staticmethod
    def _to_row(record: sqlite3.Row) -> Row:
        row = dict(record)
        row["active_frontier"] = json.loads(row["active_frontier"])
        row["completed_nodes"] = json.loads(row["completed_nodes"])
        return row

    async def _append(self, row: Row) -> int:
        return await self._run(self._append_sync, row)

    def _append_sync(self, conn: sqlite3.Connection, row: Row) -> int:
        conn.execute("BEGIN IMMEDIATE")
        try:
            (current,) = conn.execute(
                f"SELECT MAX(sequence_number) FROM {self.table_name} WHERE thread_id = ?",
                (row["thread_id"],),
            ).fetchone()
            sequence = 0 if current is None else current + 1
            values = {
                **row,
                "sequence_number": sequence,
                "active_frontier": json.dumps(row["active_frontier"]),
                "completed_nodes": json.dumps(row["completed_nodes"]),
            }
            conn.execute(
                f"INSERT INTO {self.table_name} ({', '.join(_COLUMNS)}) "
                f"VALUES ({', '.join('?' * len(_COLUMNS))})",
                tuple(values[c] for c in _COLUMNS),
            )
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        return sequence

    async def _fetch_latest(self, thread_id: str) -> Optional[Row]:
        def query(conn: sqlite3.Connection) -> Optional[Row]:
            record = conn.execute(
                f"""
                SELECT * FROM {self.table_name}
                WHERE thread_id = ?
                ORDER BY sequence_number DESC
                LIMIT 1
            """,
                (thread_id,),
            ).fetchone()
            return self._to_row(record) if record is not None else None

        return await self._run(query)

    async def _fetch(self, thread_id: str, checkpoint_id: str) -> Optional[Row]:
        def query(conn: sqlite3.Connection) -> Optional[Row]:
            record = conn.execute(
                f"SELECT * FROM {self.table_name} WHERE thread_id = ? AND checkpoint_id = ?",
                (thread_id, checkpoint_id),
            ).fetchone()
            return self._to_row(record) if record is not None else None

        return await self._run(query)

    async def _iter_rows(self, thread_id: str) -> AsyncIterator[Row]:
        def page(conn: sqlite3.Connection, after: int) -> List[Row]:
            records = conn.execute(
                f"""
                SELECT * FROM {self.table_name}
                WHERE thread_id = ? AND sequence_number > ?
                ORDER BY sequence_number ASC
                LIMIT ?
            """,
                (thread_id, after, self.page_size),
            ).fetchall()
            return [self._to_row(r) for r in records]

        after = -1
        while True:
            rows = await self._run(page, after)
            for row in rows:
                yield row
            if len(rows) < self.page_size:
                return
            after = rows[-1]["sequence_number"]

    async def list_threads(self) -> builtins.list[str]:
        def query(conn: sqlite3.Connection) -> List[str]:
            records = conn.execute(
                f"SELECT DISTINCT thread_id FROM {self.table_name} ORDER BY thread_id"
            ).fetchall()
            return [r[0] for r in records]

        return await self._run(query)

    async def delete_thread(self, thread_id: str) -> int:
        """Delete all checkpoints for a thread.

        Returns:
            Number of checkpoints deleted
        """

        def delete(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                f"DELETE FROM {self.table_name} WHERE thread_id = ?", (thread_id,)
            )
            return cursor.rowcount

        return await self._run(delete)

    async def prune(self, thread_id: Optional[str] = None, keep_last: int = 10) -> int:
        """Keep only the newest ``keep_last`` checkpoints per thread.

        Returns:
            Number of checkpoints deleted
        """

        def prune_sync(conn: sqlite3.Connection) -> int:
            if thread_id is None:
                threads = [
                    r[0]
                    for r in conn.execute(
                        f"SELECT DISTINCT thread_id FROM {self.table_name}"
                    ).fetchall()
                ]
            else:
                threads = [thread_id]
            deleted = 0
            conn.execute("BEGIN IMMEDIATE")
            try:
                for tid in threads:
                    cursor = conn.execute(
                        f"""
                        DELETE FROM {self.table_name}
                        WHERE thread_id = ? AND sequence_number NOT IN (
                            SELECT sequence_number FROM {self.table_name}
                            WHERE thread_id = ?
                            ORDER BY sequence_number DESC
                            LIMIT ?
                        )
                    """,
                        (tid, tid, keep_last),
                    )
                    deleted += cursor.rowcount
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return deleted

        deleted = await self._run(prune_sync)
        logger.info(f"Pruned {deleted} checkpoints")
        return deleted

    def close(self) -> None:
        """Close database connection."""
        with self._conn_lock:
            if self._conn:
                self._conn.close()
                self._conn = None


class JSONFileCheckpointer(BaseCheckpointer):
    """JSON file-based checkpointer for simple storage.

    Stores each checkpoint as a separate JSON file named after its
    sequence number, inside one directory per thread. Files are written
    to a temporary name and renamed into place.

    Attributes:
        base_dir: Directory to store checkpoint files
    """

    backend = CheckpointBackend.JSON

    def __init__(
        self,
        base_dir: Union[str, Path] = "~/.superstep/checkpoints",
        serializer: Optional[JsonSerializer] = None,
    ):
        super().__init__(serializer)
        self.base_dir = Path(os.path.expanduser(str(base_dir)))
        self._write_lock = threading.Lock()

    def _thread_dir(self, thread_id: str) -> Path:
        return self.base_dir / quote(thread_id, safe="")

    def _files(self, thread_id: str) -> List[Path]:
        thread_dir = self._thread_dir(thread_id)
        if not thread_dir.is_dir():
            return []
        return sorted(thread_dir.glob("*.json"))

    def _read(self, path: Path) -> Row:
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except OSError as e:
            raise CheckpointIOError(
                f"Cannot read checkpoint {path}: {e}", backend=self.backend.value
            ) from e
        except json.JSONDecodeError as e:
            raise CheckpointIOError(
                f"Corrupt checkpoint file {path}: {e}", backend=self.backend.value
            ) from e

    def _append_sync(self, row: Row) -> int:
        with self._write_lock:
            files = self._files(row["thread_id"])
            sequence = int(files[-1].name.split("_", 1)[0]) + 1 if files else 0
            record = {**row, "sequence_number": sequence}
            thread_dir = self._thread_dir(row["thread_id"])
            target = thread_dir / f"{sequence:010d}_{row['checkpoint_id']}.json"
            try:
                thread_dir.mkdir(parents=True, exist_ok=True)
                fd, tmp = tempfile.mkstemp(dir=thread_dir, suffix=".tmp")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        json.dump(record, f, indent=2)
                        f.flush()
                        os.fsync(f.fileno())
                    os.replace(tmp, target)
                except BaseException:
                    if os.path.exists(tmp):
                        os.unlink(tmp)
                    raise
            except OSError as e:
                raise CheckpointIOError(
                    f"Cannot write checkpoint {target}: {e}", backend=self.backend.value
                ) from e
        logger.log(TRACE, f"Saved checkpoint to: {target}")
        return sequence

    async def _append(self, row: Row) -> int:
        return await asyncio.to_thread(self._append_sync, row)

    async def _fetch_latest(self, thread_id: str) -> Optional[Row]:
        files = self._files(thread_id)
        return self._read(files[-1]) if files else None

    async def _fetch(self, thread_id: str, checkpoint_id: str) -> Optional[Row]:
        for path in self._files(thread_id):
            if path.stem.split("_", 1)[1] == checkpoint_id:
                return self._read(path)
        return None

    async def _iter_rows(self, thread_id: str) -> AsyncIterator[Row]:
        for path in self._files(thread_id):
            yield self._read(path)

    async def list_threads(self) -> builtins.list[str]:
        if not self.base_dir.is_dir():
            return []
        return sorted(
            unquote(d.name) for d in self.base_dir.iterdir() if d.is_dir() and any(d.glob("*.json"))
        )

    async def delete_thread(self, thread_id: str) -> int:
        deleted = 0
        with self._write_lock:
            for path in self._files(thread_id):
                path.unlink()
                deleted += 1
        return deleted

    async def prune(self, thread_id: Optional[str] = None, keep_last: int = 10) -> int:
        threads = [thread_id] if thread_id is not None else await self.list_threads()
        deleted = 0
        with self._write_lock:
            for tid in threads:
                files = self._files(tid)
                for path in files[: max(len(files) - keep_last, 0)]:
                    path.unlink()
                    deleted += 1
        logger.info(f"Pruned {deleted} checkpoint files")
        return deleted


def create_checkpointer(
    backend: Union[CheckpointBackend, str] = CheckpointBackend.MEMORY,
    path: Optional[Union[str, Path]] = None,
) -> BaseCheckpointer:
    """Create a checkpointer for the given backend.

    Args:
        backend: Backend type or its string value
        path: Database file (sqlite) or directory (json); defaults apply when None

    Raises:
        ValueError: If the backend name is unknown
    """
    backend = CheckpointBackend(backend)
    if backend is CheckpointBackend.SQLITE:
        return SQLiteCheckpointer(path) if path else SQLiteCheckpointer()
    if backend is CheckpointBackend.JSON:
        return JSONFileCheckpointer(path) if path else JSONFileCheckpointer()
    return MemoryCheckpointer()


__all__ = [
    "SQLiteCheckpointer",
    "JSONFileCheckpointer",
    "create_checkpointer",
]
