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

"""Error types raised by graph compilation, execution and persistence.

Compile-time problems raise GraphValidationError before anything runs.
Everything raised from a run derives from RunError, which carries the
thread, the superstep and the last durably committed checkpoint so the
caller can inspect or retry from a known-good point.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

from superstep.core.errors import ErrorCategory, ErrorSeverity, SuperstepError


class GraphValidationError(SuperstepError):
    """Graph definition is invalid.

    Attributes:
        errors: Every problem found, one message per entry
    """

    def __init__(self, errors: Sequence[str], **kwargs: Any) -> None:
        self.errors = list(errors)
        super().__init__(
            f"Invalid graph: {'; '.join(self.errors)}",
            category=ErrorCategory.GRAPH_VALIDATION,
            recovery_hint="Fix the graph definition; nothing was executed.",
            **kwargs,
        )
        self.details["errors"] = self.errors


class RunError(SuperstepError):
    """Base class for errors surfaced from a graph run.

    Attributes:
        thread_id: Thread the run belongs to
        superstep: Number of the superstep that failed (counted per thread)
        last_checkpoint_id: Last durably committed checkpoint, if any
    """

    def __init__(
        self,
        message: str,
        *,
        thread_id: Optional[str] = None,
        superstep: Optional[int] = None,
        last_checkpoint_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.thread_id = thread_id
        self.superstep = superstep
        self.last_checkpoint_id = last_checkpoint_id
        self._sync_details()

    def attach_run_context(
        self,
        *,
        thread_id: Optional[str] = None,
        superstep: Optional[int] = None,
        last_checkpoint_id: Optional[str] = None,
    ) -> "RunError":
        """Fill in run references that were unknown where the error was raised."""
        if self.thread_id is None:
            self.thread_id = thread_id
        if self.superstep is None:
            self.superstep = superstep
        if self.last_checkpoint_id is None:
            self.last_checkpoint_id = last_checkpoint_id
        self._sync_details()
        return self

    def _sync_details(self) -> None:
        self.details["thread_id"] = self.thread_id
        self.details["superstep"] = self.superstep
        self.details["last_checkpoint_id"] = self.last_checkpoint_id


class ConflictError(RunError):
    """Several nodes wrote a replace-reduced field in the same superstep."""

    def __init__(self, field: str, nodes: Sequence[str], **kwargs: Any) -> None:
        self.field = field
        self.nodes = list(nodes)
        super().__init__(
            f"Conflicting updates to '{field}' from nodes: {', '.join(self.nodes)}",
            category=ErrorCategory.STATE_CONFLICT,
            recovery_hint=(
                f"Give '{field}' a merging reducer (append, add, merge_dicts or a custom "
                "function) or make sure only one branch writes it per superstep."
            ),
            **kwargs,
        )
        self.details["field"] = field
        self.details["nodes"] = self.nodes


class InvalidUpdateError(RunError):
    """A partial update (or caller input) does not fit the state schema."""

    def __init__(self, message: str, *, keys: Optional[Sequence[str]] = None, **kwargs: Any):
        self.keys = list(keys or [])
        super().__init__(message, category=ErrorCategory.INVALID_UPDATE, **kwargs)
        self.details["keys"] = self.keys


class NodeExecutionError(RunError):
    """A node function (or its outgoing routing) raised.

    The original exception is chained as ``__cause__`` and kept in ``original``.
    """

    def __init__(
        self,
        node: str,
        original: Optional[BaseException] = None,
        *,
        message: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.NODE_EXECUTION,
        **kwargs: Any,
    ) -> None:
        self.node = node
        self.original = original
        if message is None:
            reason = f"{type(original).__name__}: {original}" if original else "unknown error"
            message = f"Node '{node}' failed: {reason}"
        kwargs.setdefault(
            "recovery_hint",
            "Fix the node and retry from the last checkpoint with invoke(None, thread_id=...).",
        )
        super().__init__(message, category=category, **kwargs)
        self.details["node"] = node
        if original is not None:
            self.__cause__ = original


class NodeTimeoutError(NodeExecutionError):
    """A node exceeded the configured per-node timeout."""

    def __init__(self, node: str, timeout: float, **kwargs: Any) -> None:
        self.timeout = timeout
        super().__init__(
            node,
            message=f"Node '{node}' timed out after {timeout} seconds",
            category=ErrorCategory.NODE_TIMEOUT,
            **kwargs,
        )
        self.details["timeout"] = timeout


class MaxIterationsExceeded(RunError):
    """Loop guard tripped: the run needed more supersteps than allowed."""

    def __init__(self, max_supersteps: int, **kwargs: Any) -> None:
        self.max_supersteps = max_supersteps
        super().__init__(
            f"Max supersteps ({max_supersteps}) exceeded",
            category=ErrorCategory.LOOP_GUARD,
            severity=ErrorSeverity.WARNING,
            recovery_hint="Check the graph's exit condition or raise max_supersteps.",
            **kwargs,
        )
        self.details["max_supersteps"] = max_supersteps


class RunCancelledError(RunError):
    """The caller cancelled the run between (or during) supersteps."""

    def __init__(self, message: str = "Run cancelled", **kwargs: Any) -> None:
        super().__init__(
            message,
            category=ErrorCategory.CANCELLED,
            severity=ErrorSeverity.INFO,
            **kwargs,
        )


class GraphStateError(RunError):
    """The thread is not in a state that allows the requested operation."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.INVALID_STATE, **kwargs)


class InvalidResumeTokenError(RunError):
    """A resume named a token that is not pending on the thread."""

    def __init__(self, token: str, **kwargs: Any) -> None:
        self.token = token
        super().__init__(
            f"No pending interrupt with token '{token}'",
            category=ErrorCategory.INTERRUPT_TOKEN,
            recovery_hint="Use the token from the latest InterruptResponse or get_state().",
            **kwargs,
        )
        self.details["token"] = token


class InterruptTimeout(RunError):
    """A resume arrived after the interrupt's time-to-live expired."""

    def __init__(self, token: str, ttl: float, **kwargs: Any) -> None:
        self.token = token
        self.ttl = ttl
        super().__init__(
            f"Interrupt '{token}' expired after {ttl} seconds",
            category=ErrorCategory.INTERRUPT_EXPIRED,
            **kwargs,
        )
        self.details["token"] = token
        self.details["ttl"] = ttl


class CheckpointIOError(RunError):
    """A checkpoint store failed to read or write a record."""

    def __init__(self, message: str, *, backend: Optional[str] = None, **kwargs: Any) -> None:
        self.backend = backend
        kwargs.setdefault("category", ErrorCategory.CHECKPOINT_IO)
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        super().__init__(message, **kwargs)
        self.details["backend"] = backend


class SerializationError(CheckpointIOError):
    """State could not be encoded to, or decoded from, the checkpoint format."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.SERIALIZATION, **kwargs)


class CheckpointNotFoundError(RunError):
    """No checkpoint with the given id exists in the thread."""

    def __init__(self, thread_id: str, checkpoint_id: str, **kwargs: Any) -> None:
        self.checkpoint_id = checkpoint_id
        super().__init__(
            f"Checkpoint '{checkpoint_id}' not found in thread '{thread_id}'",
            thread_id=thread_id,
            category=ErrorCategory.CHECKPOINT_NOT_FOUND,
            **kwargs,
        )
        self.details["checkpoint_id"] = checkpoint_id


__all__ = [
    "GraphValidationError",
    "RunError",
    "ConflictError",
    "InvalidUpdateError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "MaxIterationsExceeded",
    "RunCancelledError",
    "GraphStateError",
    "InvalidResumeTokenError",
    "InterruptTimeout",
    "CheckpointIOError",
    "SerializationError",
    "CheckpointNotFoundError",
]
