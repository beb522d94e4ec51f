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

"""
superstep - stateful graph orchestration with checkpoints.

Nodes run in Pregel-style supersteps over a shared state merged by
per-field reducers. Every superstep is checkpointed, so a thread can be
continued later, paused for human input and resumed, or forked from any
point in its history.

Simple API:
    from superstep import StateGraph, START, END, interrupt

    graph = StateGraph(MyState)
    graph.add_node("draft", draft)
    graph.add_edge(START, "draft")
    graph.add_edge("draft", END)
    app = graph.compile()
    result = await app.invoke({"topic": "pregel"}, thread_id="t1")
"""

__version__ = "0.1.0"
__author__ = "Vijaykumar Singh"
__email__ = "singhvjd@gmail.com"
__license__ = "Apache-2.0"

from superstep.framework import (
    END,
    START,
    BaseCheckpointer,
    CancellationToken,
    Checkpoint,
    CompiledGraph,
    ExecutablePlan,
    GraphConfig,
    InterruptRequest,
    InterruptResponse,
    JSONFileCheckpointer,
    MemoryCheckpointer,
    RunStatus,
    SQLiteCheckpointer,
    StateGraph,
    StreamEvent,
    create_checkpointer,
    get_run_context,
    get_stream_writer,
    interrupt,
    request_interrupt,
)

__all__ = [
    "__version__",
    "StateGraph",
    "CompiledGraph",
    "ExecutablePlan",
    "START",
    "END",
    "GraphConfig",
    "RunStatus",
    "StreamEvent",
    "Checkpoint",
    "BaseCheckpointer",
    "MemoryCheckpointer",
    "SQLiteCheckpointer",
    "JSONFileCheckpointer",
    "create_checkpointer",
    "InterruptRequest",
    "InterruptResponse",
    "interrupt",
    "request_interrupt",
    "CancellationToken",
    "get_run_context",
    "get_stream_writer",
]
