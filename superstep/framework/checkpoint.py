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

"""Checkpoint records and the checkpointer contract.

A checkpoint is written after every superstep and never changed again.
Checkpoints of one thread form a history ordered by ``sequence_number``;
``parent_checkpoint_id`` links them into a tree, which branches whenever a
historical checkpoint is forked with new state.

Every backend stores the same encoded row (state and interrupts as tagged
JSON, see ``superstep.framework.serde``), so swapping the in-memory store
for a durable one never changes what the executor observes.

Implementations:
    - MemoryCheckpointer: in-process, lost on exit (tests, ephemeral runs)
    - SQLiteCheckpointer / JSONFileCheckpointer: durable, in
      ``superstep.framework.checkpointer``
"""

from __future__ import annotations

import asyncio
import builtins
import copy
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from superstep.framework.errors import CheckpointNotFoundError
from superstep.framework.hitl import InterruptRequest
from superstep.framework.serde import JsonSerializer

logger = logging.getLogger(__name__)


class CheckpointBackend(Enum):
    """Available checkpoint backend types.

    Attributes:
        MEMORY: In-memory checkpointing (ephemeral, lost on restart)
        SQLITE: SQLite database for persistent checkpointing
        JSON: JSON file-based checkpointing
    """

    MEMORY = "memory"
    SQLITE = "sqlite"
    JSON = "json"

    @classmethod
    def is_persistent(cls, backend: "CheckpointBackend") -> bool:
        """Check if a backend provides persistent storage."""
        return backend is not cls.MEMORY


@dataclass(frozen=True)
class Checkpoint:
    """Immutable snapshot of a thread after one superstep.

    Attributes:
        thread_id: Thread the checkpoint belongs to
        checkpoint_id: Unique checkpoint identifier
        sequence_number: Position in the thread's history (0-based, creation order)
        state: Full state after the superstep's merge
        active_frontier: Nodes to run in the next superstep
        parent_checkpoint_id: Checkpoint this one continues from
        created_at: Unix timestamp of the write
        metadata: ``step``, ``source``, ``writes`` plus caller metadata
        interrupts: Pending interrupts (interrupted supersteps only)
        completed_nodes: Nodes that finished in an interrupted superstep
        superstep_input: State the interrupted superstep's nodes read
        pending_writes: ``(node, update)`` pairs of the interrupted superstep
            that are folded again, with the resumed nodes' updates, on resume
    """

    thread_id: str
    checkpoint_id: str
    sequence_number: int
    state: Dict[str, Any]
    active_frontier: Tuple[str, ...]
    parent_checkpoint_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)
    interrupts: Tuple[InterruptRequest, ...] = ()
    completed_nodes: Tuple[str, ...] = ()
    superstep_input: Optional[Dict[str, Any]] = None
    pending_writes: Tuple[Tuple[str, Dict[str, Any]], ...] = ()

    @property
    def is_interrupted(self) -> bool:
        return bool(self.interrupts)

    @property
    def is_terminal(self) -> bool:
        """True when nothing is left to run from this checkpoint."""
        return not self.active_frontier and not self.interrupts

    def find_interrupt(self, token: str) -> Optional[InterruptRequest]:
        for request in self.interrupts:
            if request.token == token:
                return request
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize checkpoint to a plain dictionary."""
        return {
            "thread_id": self.thread_id,
            "checkpoint_id": self.checkpoint_id,
            "sequence_number": self.sequence_number,
            "state": self.state,
            "active_frontier": list(self.active_frontier),
            "parent_checkpoint_id": self.parent_checkpoint_id,
            "created_at": self.created_at,
            "metadata": self.metadata,
            "interrupts": [r.to_dict() for r in self.interrupts],
            "completed_nodes": list(self.completed_nodes),
            "superstep_input": self.superstep_input,
            "pending_writes": [[node, update] for node, update in self.pending_writes],
        }


class ThreadLockRegistry:
    """Per-thread advisory locks.

    Backed by ``threading.Lock`` so runs driven from different event loops
    or OS threads still exclude each other on the same ``thread_id``.
    Waiting is done by polling so no worker thread is parked on the lock.
    """

    def __init__(self, poll_interval: float = 0.005):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._poll_interval = poll_interval

    def _lock_for(self, thread_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(thread_id)
            if lock is None:
                lock = self._locks[thread_id] = threading.Lock()
            return lock

    def locked(self, thread_id: str) -> bool:
        return self._lock_for(thread_id).locked()

    @asynccontextmanager
    async def hold(self, thread_id: str) -> AsyncIterator[None]:
        lock = self._lock_for(thread_id)
        while not lock.acquire(blocking=False):
            await asyncio.sleep(self._poll_interval)
        try:
            yield
        finally:
            lock.release()


Row = Dict[str, Any]


class BaseCheckpointer(ABC):
    """Contract shared by every checkpoint store.

    Subclasses persist encoded rows; encoding, decoding, lineage walks and
    the per-thread lock live here.

    Row layout (all backends):
        thread_id, checkpoint_id, sequence_number, parent_checkpoint_id,
        state_blob, active_frontier, interrupts, completed_nodes,
        superstep_input, pending_writes, metadata, created_at
    """

    backend: CheckpointBackend

    def __init__(self, serializer: Optional[JsonSerializer] = None):
        self.serde = serializer or JsonSerializer()
        self._thread_locks = ThreadLockRegistry()

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def save(
        self,
        thread_id: str,
        state: Mapping[str, Any],
        active_frontier: Iterable[str],
        parent_checkpoint_id: Optional[str],
        *,
        metadata: Optional[Mapping[str, Any]] = None,
        interrupts: Iterable[InterruptRequest] = (),
        completed_nodes: Iterable[str] = (),
        superstep_input: Optional[Mapping[str, Any]] = None,
        pending_writes: Iterable[Tuple[str, Mapping[str, Any]]] = (),
    ) -> str:
        """Write a new checkpoint and return its id.

        The sequence number is assigned by the store as one more than the
        highest sequence in the thread. The write is all-or-nothing.

        Raises:
            CheckpointIOError: If the store cannot write the record
        """
        checkpoint_id = uuid.uuid4().hex
        row: Row = {
            "thread_id": thread_id,
            "checkpoint_id": checkpoint_id,
            "parent_checkpoint_id": parent_checkpoint_id,
            "state_blob": self.serde.dumps(dict(state)),
            "active_frontier": list(active_frontier),
            "interrupts": self.serde.dumps([r.to_dict() for r in interrupts]),
            "completed_nodes": list(completed_nodes),
            "superstep_input": self.serde.dumps(
                dict(superstep_input) if superstep_input is not None else None
            ),
            "pending_writes": self.serde.dumps(
                [[node, dict(update)] for node, update in pending_writes]
            ),
            "metadata": self.serde.dumps(dict(metadata or {})),
            "created_at": time.time(),
        }
        sequence = await self._append(row)
        logger.debug(
            "Saved checkpoint %s (thread: %s, seq: %d, frontier: %s)",
            checkpoint_id,
            thread_id,
            sequence,
            row["active_frontier"],
        )
        return checkpoint_id

    async def load_latest(self, thread_id: str) -> Optional[Checkpoint]:
        """Load the newest checkpoint of a thread, or None for an unknown thread."""
        row = await self._fetch_latest(thread_id)
        return self._decode(row) if row is not None else None

    async def load(self, thread_id: str, checkpoint_id: str) -> Checkpoint:
        """Load one checkpoint.

        Raises:
            CheckpointNotFoundError: If the thread has no such checkpoint
        """
        row = await self._fetch(thread_id, checkpoint_id)
        if row is None:
            raise CheckpointNotFoundError(thread_id, checkpoint_id)
        return self._decode(row)

    async def list_history(self, thread_id: str) -> AsyncIterator[Checkpoint]:
        """Yield the thread's checkpoints from oldest to newest.

        Rows are decoded as they are consumed. Every call starts a fresh
        iteration, so the history can be walked again at any time.
        """
        async for row in self._iter_rows(thread_id):
            yield self._decode(row)

    async def get_lineage(self, thread_id: str, checkpoint_id: str) -> List[Checkpoint]:
        """Return the chain of ancestors ending at ``checkpoint_id`` (root first)."""
        chain: List[Checkpoint] = []
        current: Optional[str] = checkpoint_id
        while current is not None:
            checkpoint = await self.load(thread_id, current)
            chain.append(checkpoint)
            current = checkpoint.parent_checkpoint_id
        chain.reverse()
        return chain

    def thread_lock(self, thread_id: str) -> Any:
        """Async context manager serializing supersteps of one thread."""
        return self._thread_locks.hold(thread_id)

    @abstractmethod
    async def list_threads(self) -> builtins.list[str]:
        """Return every thread id with at least one checkpoint."""

    @abstractmethod
    async def delete_thread(self, thread_id: str) -> int:
        """Delete a thread's checkpoints; return how many were removed."""

    @abstractmethod
    async def prune(self, thread_id: Optional[str] = None, keep_last: int = 10) -> int:
        """Keep only the newest ``keep_last`` checkpoints per thread."""

    def close(self) -> None:
        """Release backend resources."""

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _append(self, row: Row) -> int:
        """Persist a row, assigning and returning its sequence number."""

    @abstractmethod
    async def _fetch_latest(self, thread_id: str) -> Optional[Row]: ...

    @abstractmethod
    async def _fetch(self, thread_id: str, checkpoint_id: str) -> Optional[Row]: ...

    @abstractmethod
    def _iter_rows(self, thread_id: str) -> AsyncIterator[Row]: ...

    def _decode(self, row: Row) -> Checkpoint:
        interrupts = tuple(
            InterruptRequest.from_dict(item) for item in self.serde.loads(row["interrupts"])
        )
        return Checkpoint(
            thread_id=row["thread_id"],
            checkpoint_id=row["checkpoint_id"],
            sequence_number=row["sequence_number"],
            state=self.serde.loads(row["state_blob"]),
            active_frontier=tuple(row["active_frontier"]),
            parent_checkpoint_id=row["parent_checkpoint_id"],
            created_at=row["created_at"],
            metadata=self.serde.loads(row["metadata"]),
            interrupts=interrupts,
            completed_nodes=tuple(row["completed_nodes"]),
            superstep_input=self.serde.loads(row["superstep_input"]),
            pending_writes=tuple(
                (node, update) for node, update in self.serde.loads(row["pending_writes"])
            ),
        )


class MemoryCheckpointer(BaseCheckpointer):
    """In-memory checkpoint storage.

    Suitable for development and testing. Rows are kept encoded, exactly
    as a durable backend would hold them.
    """

    backend = CheckpointBackend.MEMORY

    def __init__(self, serializer: Optional[JsonSerializer] = None) -> None:
        super().__init__(serializer)
        self._rows: Dict[str, List[Row]] = {}
        self._guard = threading.Lock()

    async def _append(self, row: Row) -> int:
        with self._guard:
            rows = self._rows.setdefault(row["thread_id"], [])
            sequence = rows[-1]["sequence_number"] + 1 if rows else 0
            rows.append({**row, "sequence_number": sequence})
            return sequence

    async def _fetch_latest(self, thread_id: str) -> Optional[Row]:
        with self._guard:
            rows = self._rows.get(thread_id)
            return copy.deepcopy(rows[-1]) if rows else None

    async def _fetch(self, thread_id: str, checkpoint_id: str) -> Optional[Row]:
        with self._guard:
            for row in self._rows.get(thread_id, []):
                if row["checkpoint_id"] == checkpoint_id:
                    return copy.deepcopy(row)
        return None

    async def _iter_rows(self, thread_id: str) -> AsyncIterator[Row]:
        with self._guard:
            rows = list(self._rows.get(thread_id, []))
        for row in rows:
            yield copy.deepcopy(row)

    async def list_threads(self) -> builtins.list[str]:
        with self._guard:
            return sorted(t for t, rows in self._rows.items() if rows)

    async def delete_thread(self, thread_id: str) -> int:
        with self._guard:
            return len(self._rows.pop(thread_id, []))

    async def prune(self, thread_id: Optional[str] = None, keep_last: int = 10) -> int:
        deleted = 0
        with self._guard:
            threads = [thread_id] if thread_id is not None else list(self._rows)
            for tid in threads:
                rows = self._rows.get(tid, [])
                if len(rows) > keep_last:
                    deleted += len(rows) - keep_last
                    self._rows[tid] = rows[len(rows) - keep_last :]
        if deleted:
            logger.info(f"Pruned {deleted} in-memory checkpoints")
        return deleted


__all__ = [
    "Checkpoint",
    "CheckpointBackend",
    "BaseCheckpointer",
    "MemoryCheckpointer",
    "ThreadLockRegistry",
]
