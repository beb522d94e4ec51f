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

"""StateGraph DSL for stateful, cyclic agent workflows.

Build a graph with ``StateGraph``, compile it into a ``CompiledGraph`` and
run it superstep by superstep. State flows through the graph as partial
updates merged by per-field reducers; every superstep is checkpointed so a
thread can be continued, resumed after an interrupt, or forked from any
point in its history.

Example:
    from typing import Annotated, TypedDict
    from superstep.framework.graph import StateGraph, START, END
    from superstep.framework.reducers import append

    class ReviewState(TypedDict):
        draft: str
        notes: Annotated[list[str], append]

    graph = StateGraph(ReviewState)
    graph.add_node("write", write_draft)
    graph.add_node("review", review_draft)
    graph.add_edge(START, "write")
    graph.add_edge("write", "review")
    graph.add_conditional_edges("review", needs_rewrite, {"yes": "write", "no": END})

    app = graph.compile()
    result = await app.invoke({"draft": ""}, thread_id="doc-1")
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import suppress
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from superstep.config.settings import load_settings
from superstep.core.async_utils import run_sync
from superstep.framework.checkpoint import BaseCheckpointer, Checkpoint, CheckpointBackend
from superstep.framework.checkpointer import create_checkpointer
from superstep.framework.config import GraphConfig
from superstep.framework.errors import GraphValidationError
from superstep.framework.executor import (
    RunResult,
    RunStatus,
    StreamEvent,
    SuperstepExecutor,
)
from superstep.framework.hitl import InterruptResponse
from superstep.framework.plan import (
    END,
    RESERVED_NAMES,
    START,
    Branch,
    ExecutablePlan,
    NodeSpec,
)
from superstep.framework.reducers import ReducerLike
from superstep.framework.state import ReducerRegistry

logger = logging.getLogger(__name__)

ConfigLike = Union[GraphConfig, Mapping[str, Any], None]

STREAM_MODES = frozenset({"updates", "values"})

_DONE = object()
_UNSET = object()


class CompiledGraph:
    """Executable graph bound to a checkpointer.

    All run methods are async; ``invoke_sync`` and ``resume_sync`` wrap
    them for sync callers.
    """

    def __init__(
        self,
        plan: ExecutablePlan,
        registry: ReducerRegistry,
        checkpointer: BaseCheckpointer,
        config: Optional[GraphConfig] = None,
    ):
        self.plan = plan
        self.registry = registry
        self.checkpointer = checkpointer
        self._config = config or GraphConfig.from_settings()
        self._executor = SuperstepExecutor(plan, registry, checkpointer)

    @property
    def config(self) -> GraphConfig:
        return self._config

    def _resolve(self, config: ConfigLike, thread_id: Optional[str]) -> tuple[GraphConfig, str]:
        resolved = GraphConfig.coerce(config, base=self._config)
        return resolved, thread_id or resolved.thread_id or uuid.uuid4().hex

    async def invoke(
        self,
        input: Optional[Mapping[str, Any]],
        *,
        thread_id: Optional[str] = None,
        config: ConfigLike = None,
    ) -> RunResult:
        """Run until the graph completes, fails or is interrupted.

        Args:
            input: Initial state (or new input merged into the thread's latest
                state); None continues the thread from its latest checkpoint
            thread_id: Thread to run on (a new one is created when omitted)
            config: GraphConfig or dict of per-run options

        Returns:
            Final state, or an InterruptResponse when a node asked for input

        Raises:
            RunError: Any run failure, carrying thread, superstep and the
                last committed checkpoint id
        """
        exec_config, thread_id = self._resolve(config, thread_id)
        return await self._executor.run(thread_id, input, exec_config)

    async def resume(
        self,
        thread_id: str,
        token: Union[str, Mapping[str, Any]],
        human_value: Any = _UNSET,
        *,
        config: ConfigLike = None,
    ) -> RunResult:
        """Answer pending interrupt(s) and continue the run.

        Either ``resume(thread_id, token, value)`` or, to answer several
        interrupts at once, ``resume(thread_id, {token: value, ...})``.
        Interrupts left unanswered stay pending.
        """
        exec_config, thread_id = self._resolve(config, thread_id)
        return await self._executor.resume(
            thread_id, self._answers(token, human_value), exec_config
        )

    @staticmethod
    def _answers(token: Union[str, Mapping[str, Any]], human_value: Any) -> Dict[str, Any]:
        if isinstance(token, Mapping):
            if human_value is not _UNSET:
                raise TypeError("Pass either a token and a value, or a {token: value} mapping")
            return dict(token)
        if human_value is _UNSET:
            raise TypeError("resume() with a single token needs a human_value")
        return {token: human_value}

    async def stream(
        self,
        input: Optional[Mapping[str, Any]],
        *,
        thread_id: Optional[str] = None,
        config: ConfigLike = None,
        stream_mode: Union[str, Sequence[str]] = "updates",
        resume: Optional[Mapping[str, Any]] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run the graph and yield events as they happen.

        Yields one ``updates`` (node -> partial update) or ``values`` (full
        state) event per superstep, ``custom`` events written by nodes via
        ``get_stream_writer()``, an ``interrupt`` event when the run pauses,
        and a final ``end`` event whose data holds the status. Closing the
        generator early cancels the run; the superstep in flight is not
        committed.

        Args:
            input: As for ``invoke``
            thread_id: Thread to run on
            config: Per-run options
            stream_mode: "updates", "values", or both
            resume: ``{token: value}`` answers; streams a resume instead of a run
        """
        modes = {stream_mode} if isinstance(stream_mode, str) else set(stream_mode)
        unknown = modes - STREAM_MODES
        if unknown:
            raise ValueError(f"Unknown stream_mode(s): {sorted(unknown)}")

        exec_config, thread_id = self._resolve(config, thread_id)
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Any] = asyncio.Queue()

        def emit(event: StreamEvent) -> None:
            if event.event in STREAM_MODES and event.event not in modes:
                return
            # Custom events may come from sync nodes on worker threads.
            loop.call_soon_threadsafe(queue.put_nowait, event)

        if resume is not None:
            run = self._executor.resume(thread_id, dict(resume), exec_config, emit)
        else:
            run = self._executor.run(thread_id, input, exec_config, emit)
        task = asyncio.create_task(run, name=f"stream:{thread_id}")
        task.add_done_callback(lambda _: queue.put_nowait(_DONE))

        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                yield item

            error = task.exception()
            if error is not None:
                yield StreamEvent(
                    "end", {"status": RunStatus.FAILED, "error": error, "thread_id": thread_id}
                )
                raise error
            result = task.result()
            if isinstance(result, InterruptResponse):
                summary = {
                    "status": RunStatus.INTERRUPTED,
                    "interrupt": result,
                    "thread_id": thread_id,
                }
                yield StreamEvent("end", summary, checkpoint_id=result.checkpoint_id)
            else:
                summary = {"status": RunStatus.COMPLETED, "state": result, "thread_id": thread_id}
                yield StreamEvent("end", summary)
        finally:
            if not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
                logger.info(f"Stream on thread {thread_id} closed early; run cancelled")

    async def get_state(
        self, thread_id: str, checkpoint_id: Optional[str] = None
    ) -> Optional[Checkpoint]:
        """Latest checkpoint of a thread, or the one named by ``checkpoint_id``."""
        if checkpoint_id is not None:
            return await self.checkpointer.load(thread_id, checkpoint_id)
        return await self.checkpointer.load_latest(thread_id)

    def get_state_history(self, thread_id: str) -> AsyncIterator[Checkpoint]:
        """Every checkpoint of a thread, oldest first (lazy, restartable per call)."""
        return self.checkpointer.list_history(thread_id)

    async def update_and_fork(
        self,
        thread_id: str,
        checkpoint_id: str,
        state_overrides: Mapping[str, Any],
        *,
        config: ConfigLike = None,
    ) -> str:
        """Fork a new branch from a historical checkpoint.

        The overrides are merged into that checkpoint's state with the
        graph's reducers. The new checkpoint keeps the selected one as its
        parent, becomes the thread's latest, and continues with the same
        frontier; the original checkpoint is left untouched.

        Returns:
            Id of the new checkpoint
        """
        exec_config, thread_id = self._resolve(config, thread_id)
        return await self._executor.fork(thread_id, checkpoint_id, state_overrides, exec_config)

    def get_status(self, thread_id: str) -> RunStatus:
        """Last known run status of a thread in this process."""
        return self._executor.status(thread_id)

    def get_graph_schema(self) -> Dict[str, Any]:
        """Get graph structure as dictionary."""
        return self.plan.to_dict()

    def invoke_sync(
        self,
        input: Optional[Mapping[str, Any]],
        *,
        thread_id: Optional[str] = None,
        config: ConfigLike = None,
    ) -> RunResult:
        """Sync wrapper around ``invoke`` (not usable inside a running event loop)."""
        return run_sync(self.invoke(input, thread_id=thread_id, config=config))

    def resume_sync(
        self,
        thread_id: str,
        token: Union[str, Mapping[str, Any]],
        human_value: Any = _UNSET,
        *,
        config: ConfigLike = None,
    ) -> RunResult:
        """Sync wrapper around ``resume``."""
        return run_sync(self.resume(thread_id, token, human_value, config=config))


class StateGraph:
    """StateGraph builder for creating stateful workflows.

    Example:
        graph = StateGraph(AgentState)
        graph.add_node("analyze", analyze_func)
        graph.add_node("execute", execute_func)
        graph.set_entry_point("analyze")
        graph.add_edge("analyze", "execute")
        graph.add_conditional_edges(
            "execute",
            should_retry,
            {"retry": "analyze", "done": END}
        )

        app = graph.compile()
        result = await app.invoke(initial_state)
    """

    def __init__(
        self,
        state_schema: Optional[type] = None,
        *,
        reducers: Optional[Mapping[str, ReducerLike]] = None,
    ):
        """Initialize StateGraph.

        Args:
            state_schema: TypedDict, dataclass or pydantic model describing the
                state; ``Annotated[T, reducer]`` fields declare their reducer
            reducers: Explicit ``{field: reducer}`` overrides

        Raises:
            GraphValidationError: If a reducer is unknown or names a field
                missing from the schema
        """
        self._state_schema = state_schema
        try:
            self._registry = ReducerRegistry.from_schema(state_schema, reducers)
        except (ValueError, TypeError) as e:
            raise GraphValidationError([str(e)]) from e
        self._nodes: Dict[str, NodeSpec] = {}
        self._edges: List[tuple[str, str]] = []
        self._branches: List[Branch] = []

    @property
    def nodes(self) -> Dict[str, NodeSpec]:
        return dict(self._nodes)

    def add_node(
        self,
        name: str,
        func: Callable[[Any], Any],
        **metadata: Any,
    ) -> "StateGraph":
        """Add a node to the graph.

        Args:
            name: Unique node name
            func: Node function, sync or async
            **metadata: Additional metadata

        Returns:
            Self for chaining

        Raises:
            GraphValidationError: If the name is taken or reserved
        """
        if name in RESERVED_NAMES:
            raise GraphValidationError([f"Node name '{name}' is reserved"])
        if name in self._nodes:
            raise GraphValidationError([f"Node '{name}' already exists"])
        if not callable(func):
            raise GraphValidationError([f"Node '{name}' function is not callable"])

        self._nodes[name] = NodeSpec(name, func, tuple(sorted(metadata.items())))
        logger.debug(f"Added node: {name}")
        return self

    def add_edge(self, source: str, target: str) -> "StateGraph":
        """Add a static edge between nodes (either end may be START/END)."""
        edge = (source, target)
        if edge not in self._edges:
            self._edges.append(edge)
            logger.debug(f"Added edge: {source} -> {target}")
        return self

    def add_conditional_edges(
        self,
        source: str,
        path: Callable[[Any], Any],
        mapping: Union[Mapping[Any, str], Sequence[str]],
    ) -> "StateGraph":
        """Add conditional edges leaving ``source``.

        Args:
            source: Source node (or START)
            path: Routing function receiving the merged state; returns a key,
                or a list of keys to fan out to several nodes at once
            mapping: ``{key: target}``; a list of node names maps each name
                to itself

        Returns:
            Self for chaining
        """
        if isinstance(mapping, Mapping):
            table = tuple(mapping.items())
        else:
            table = tuple((name, name) for name in mapping)
        self._branches.append(Branch(source, path, table))
        logger.debug(f"Added conditional edges: {source} -> {[t for _, t in table]}")
        return self

    def set_entry_point(self, name: str) -> "StateGraph":
        """Set the entry point node (an edge from START)."""
        return self.add_edge(START, name)

    def set_finish_point(self, name: str) -> "StateGraph":
        """Set a node as finish point (adds edge to END)."""
        return self.add_edge(name, END)

    def compile(
        self,
        checkpointer: Optional[BaseCheckpointer] = None,
        **config: Any,
    ) -> CompiledGraph:
        """Validate the graph and bind it to a checkpointer.

        Args:
            checkpointer: Checkpoint store; defaults to the configured
                backend (in-memory unless settings say otherwise)
            **config: Default run options (see GraphConfig.from_dict)

        Raises:
            GraphValidationError: Listing every structural problem found
        """
        plan = self.build_plan()
        if checkpointer is None:
            settings = load_settings()
            backend = CheckpointBackend(settings.checkpoint_backend)
            path = settings.checkpoint_path if CheckpointBackend.is_persistent(backend) else None
            checkpointer = create_checkpointer(backend, path)
        graph_config = GraphConfig.from_dict(config)
        logger.debug(
            f"Compiled graph: {len(plan.nodes)} nodes, {len(plan.edges)} edges, "
            f"{len(plan.branches)} branches"
        )
        return CompiledGraph(plan, self._registry, checkpointer, graph_config)

    def build_plan(self) -> ExecutablePlan:
        """Validate and flatten the definition; pure and repeatable."""
        errors = self._validate()
        if errors:
            raise GraphValidationError(errors)
        fields = self._registry.fields
        return ExecutablePlan(
            nodes=tuple(self._nodes.values()),
            edges=tuple(self._edges),
            branches=tuple(self._branches),
            reducers=tuple(self._registry.names().items()),
            state_fields=tuple(sorted(fields)) if fields is not None else None,
        )

    def _validate(self) -> List[str]:
        """Validate graph structure.

        Returns:
            List of error messages
        """
        errors: List[str] = []

        if not self._nodes:
            errors.append("Graph has no nodes")

        if not any(s == START for s, _ in self._edges) and not any(
            b.source == START for b in self._branches
        ):
            errors.append("No entry point: add an edge from START")

        for source, target in self._edges:
            if source == END:
                errors.append(f"END cannot have outgoing edges (to '{target}')")
            elif source != START and source not in self._nodes:
                errors.append(f"Edge source '{source}' not found")
            if target == START:
                errors.append(f"START cannot be an edge target (from '{source}')")
            elif target != END and target not in self._nodes:
                errors.append(f"Edge target '{target}' not found (from '{source}')")

        for branch in self._branches:
            if branch.source == END:
                errors.append("END cannot have conditional edges")
            elif branch.source != START and branch.source not in self._nodes:
                errors.append(f"Conditional edge source '{branch.source}' not found")
            if not branch.mapping:
                errors.append(f"Conditional edges from '{branch.source}' have no targets")
            for key, target in branch.mapping:
                if target == START or (target != END and target not in self._nodes):
                    errors.append(
                        f"Conditional target '{target}' not found "
                        f"(branch: {key!r}, from '{branch.source}')"
                    )

        reachable = self._find_reachable()
        for name in self._nodes:
            if name not in reachable:
                errors.append(f"Node '{name}' is unreachable from START")

        sources = {s for s, _ in self._edges} | {b.source for b in self._branches}
        for name in self._nodes:
            if name not in sources:
                errors.append(
                    f"Node '{name}' has no outgoing edge; add an edge to END to mark it terminal"
                )

        return errors

    def _find_reachable(self) -> set[str]:
        """Find all nodes reachable from START."""
        reachable: set[str] = set()
        to_visit = [START]

        while to_visit:
            name = to_visit.pop()
            if name in reachable or name == END:
                continue
            reachable.add(name)
            to_visit.extend(t for s, t in self._edges if s == name)
            for branch in self._branches:
                if branch.source == name:
                    to_visit.extend(branch.targets)

        reachable.discard(START)
        return reachable


__all__ = [
    "StateGraph",
    "CompiledGraph",
    "ExecutablePlan",
    "START",
    "END",
    "STREAM_MODES",
]
