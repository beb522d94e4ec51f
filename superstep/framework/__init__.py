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

"""Graph framework: state, reducers, graph DSL, executor, checkpoints, HITL.

Example:
    from superstep.framework import StateGraph, START, END

    graph = StateGraph()
    graph.add_node("a", lambda s: {"count": 1})
    graph.add_edge(START, "a")
    graph.add_edge("a", END)
    result = await graph.compile().invoke({"count": 0})
"""

from superstep.framework.checkpoint import (
    BaseCheckpointer,
    Checkpoint,
    CheckpointBackend,
    MemoryCheckpointer,
)
from superstep.framework.checkpointer import (
    JSONFileCheckpointer,
    SQLiteCheckpointer,
    create_checkpointer,
)
from superstep.framework.config import (
    CheckpointConfig,
    ExecutionConfig,
    GraphConfig,
    InterruptConfig,
    ObservabilityConfig,
)
from superstep.framework.context import (
    CancellationToken,
    RunContext,
    get_run_context,
    get_stream_writer,
)
from superstep.framework.errors import (
    CheckpointIOError,
    CheckpointNotFoundError,
    ConflictError,
    GraphStateError,
    GraphValidationError,
    InterruptTimeout,
    InvalidResumeTokenError,
    InvalidUpdateError,
    MaxIterationsExceeded,
    NodeExecutionError,
    NodeTimeoutError,
    RunCancelledError,
    RunError,
    SerializationError,
)
from superstep.framework.executor import RunStatus, StreamEvent
from superstep.framework.graph import CompiledGraph, StateGraph
from superstep.framework.hitl import (
    InterruptKind,
    InterruptRequest,
    InterruptResponse,
    interrupt,
    request_interrupt,
)
from superstep.framework.plan import END, START, ExecutablePlan
from superstep.framework.reducers import Reducer, add, append, merge_dicts, replace
from superstep.framework.serde import JsonSerializer
from superstep.framework.state import PartialUpdate, ReducerRegistry, StateView, apply_updates

__all__ = [
    # Graph
    "StateGraph",
    "CompiledGraph",
    "ExecutablePlan",
    "START",
    "END",
    "RunStatus",
    "StreamEvent",
    # State
    "StateView",
    "PartialUpdate",
    "ReducerRegistry",
    "apply_updates",
    "Reducer",
    "replace",
    "append",
    "add",
    "merge_dicts",
    # Config
    "GraphConfig",
    "ExecutionConfig",
    "CheckpointConfig",
    "InterruptConfig",
    "ObservabilityConfig",
    # Context
    "CancellationToken",
    "RunContext",
    "get_run_context",
    "get_stream_writer",
    # Checkpoints
    "Checkpoint",
    "CheckpointBackend",
    "BaseCheckpointer",
    "MemoryCheckpointer",
    "SQLiteCheckpointer",
    "JSONFileCheckpointer",
    "create_checkpointer",
    "JsonSerializer",
    # HITL
    "InterruptKind",
    "InterruptRequest",
    "InterruptResponse",
    "interrupt",
    "request_interrupt",
    # Errors
    "RunError",
    "GraphValidationError",
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
