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

"""Per-node run context.

Node functions only receive the state view, so everything else a node may
need while it runs (which thread and superstep it belongs to, the
cancellation flag, the stream writer, answers to earlier interrupts) is
published through a context variable that the executor sets around each
node call. Context variables follow ``asyncio`` tasks and
``asyncio.to_thread`` calls, so sync and async nodes see the same thing.
"""

from __future__ import annotations

import contextvars
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a run.

    Thread-safe: sync nodes running on worker threads can poll it.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Run cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled})"


StreamWriter = Callable[[Any], None]


def _discard(_: Any) -> None:
    return None


@dataclass
class RunContext:
    """What a running node can learn about its surroundings.

    Attributes:
        thread_id: Thread the run belongs to
        superstep: Superstep index within the current invocation
        node: Name of the node being executed
        metadata: Caller-supplied run metadata
        cancellation: Cancellation token for cooperative checks
        writer: Sink for custom stream events (no-op outside ``stream``)
        answers: Values already supplied to this node's earlier interrupts
        resume_value: Latest human value supplied on resume, if any
    """

    thread_id: str
    superstep: int
    node: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    cancellation: Optional[CancellationToken] = None
    writer: StreamWriter = _discard
    answers: List[Any] = field(default_factory=list)
    resume_value: Any = None
    _interrupt_calls: int = field(default=0, init=False, repr=False)

    @property
    def is_cancelled(self) -> bool:
        return self.cancellation is not None and self.cancellation.is_cancelled

    def next_interrupt_index(self) -> int:
        index = self._interrupt_calls
        self._interrupt_calls += 1
        return index

    @property
    def interrupt_calls(self) -> int:
        return self._interrupt_calls


_run_context: contextvars.ContextVar[Optional[RunContext]] = contextvars.ContextVar(
    "superstep_run_context", default=None
)


def get_run_context() -> RunContext:
    """Return the context of the node currently executing.

    Raises:
        RuntimeError: If called outside a node function
    """
    ctx = _run_context.get()
    if ctx is None:
        raise RuntimeError("No run context: this must be called from inside a graph node")
    return ctx


def get_stream_writer() -> StreamWriter:
    """Return a callable that emits custom events to ``CompiledGraph.stream`` consumers.

    Example:
        async def generate(state):
            writer = get_stream_writer()
            for token in ["Hel", "lo"]:
                writer({"token": token})
            return {"text": "Hello"}
    """
    return get_run_context().writer


def set_run_context(ctx: RunContext) -> contextvars.Token:
    return _run_context.set(ctx)


def reset_run_context(token: contextvars.Token) -> None:
    _run_context.reset(token)


__all__ = [
    "CancellationToken",
    "RunContext",
    "StreamWriter",
    "get_run_context",
    "get_stream_writer",
    "set_run_context",
    "reset_run_context",
]
