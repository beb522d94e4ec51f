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

"""Superstep (Pregel-style) scheduler.

One superstep:

1. Every node of the active frontier runs concurrently against the same
   read-only snapshot. Sync node functions run on worker threads.
2. Partial updates are folded into the state in node registration order,
   whatever order the nodes finished in.
3. Outgoing edges of the nodes that finished are evaluated against the
   merged state to get the next frontier.
4. State and frontier are checkpointed. Nothing is written if any step
   above failed, so a failed superstep leaves no trace.

If a node interrupts, the updates of its siblings are still applied and
checkpointed together with the pending interrupts; the interrupted nodes
become the frontier, and the siblings' edges are evaluated once the
interrupted nodes have been resumed and finished.

The executor holds the checkpointer's per-thread lock for a whole run, so
a thread never has more than one superstep in flight.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from superstep.core.errors import ErrorCategory
from superstep.core.logging_config import TRACE
from superstep.framework.checkpoint import BaseCheckpointer, Checkpoint
from superstep.framework.config import GraphConfig
from superstep.framework.context import RunContext, reset_run_context, set_run_context
from superstep.framework.errors import (
    GraphStateError,
    InterruptTimeout,
    InvalidResumeTokenError,
    InvalidUpdateError,
    MaxIterationsExceeded,
    NodeExecutionError,
    NodeTimeoutError,
    RunCancelledError,
    RunError,
)
from superstep.framework.hitl import (
    GraphInterrupt,
    InterruptKind,
    InterruptRequest,
    InterruptResponse,
    breakpoint_request,
)
from superstep.framework.plan import START, ExecutablePlan
from superstep.framework.state import PartialUpdate, ReducerRegistry, StateView, snapshot

logger = logging.getLogger(__name__)


class RunStatus(Enum):
    """Lifecycle of a thread's current run.

    IDLE -> RUNNING -> {INTERRUPTED, COMPLETED, FAILED}; INTERRUPTED -> RUNNING on resume.
    """

    IDLE = "idle"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class StreamEvent:
    """One item of ``CompiledGraph.stream``.

    Attributes:
        event: ``updates``, ``values``, ``custom``, ``interrupt`` or ``end``
        data: Node updates, full state, custom payload, InterruptResponse,
            or the terminal ``{"status": ..., ...}`` summary
        superstep: Superstep that produced the event
        checkpoint_id: Checkpoint written by that superstep, if any
        node: Emitting node (custom events)
    """

    event: str
    data: Any
    superstep: Optional[int] = None
    checkpoint_id: Optional[str] = None
    node: Optional[str] = None


EventSink = Callable[[StreamEvent], None]

RunResult = Union[Dict[str, Any], InterruptResponse]

# Writer name recorded for state overrides made by update_and_fork.
FORK_WRITER = "__fork__"


@dataclass
class _RunStart:
    """Where a run picks up: state, frontier and resume bookkeeping."""

    state: Dict[str, Any]
    frontier: Tuple[str, ...]
    parent_id: Optional[str]
    step: int
    source: str = "loop"
    answers: Dict[str, List[Any]] = field(default_factory=dict)
    resume_values: Dict[str, Any] = field(default_factory=dict)
    resumed: FrozenSet[str] = frozenset()
    pending: Tuple[InterruptRequest, ...] = ()
    completed: Tuple[str, ...] = ()
    superstep_input: Optional[Dict[str, Any]] = None
    carried_writes: Tuple[Tuple[str, Dict[str, Any]], ...] = ()


@dataclass
class _NodeResult:
    node: str
    update: Optional[Dict[str, Any]] = None
    interrupt: Optional[InterruptRequest] = None


def _next_step(checkpoint: Optional[Checkpoint]) -> int:
    if checkpoint is None:
        return 0
    return int(checkpoint.metadata.get("step", -1)) + 1


class SuperstepExecutor:
    """Runs an ExecutablePlan superstep by superstep.

    Holds no per-run state besides the last known status of each thread;
    everything a run needs to continue lives in the checkpoints.
    """

    def __init__(
        self,
        plan: ExecutablePlan,
        registry: ReducerRegistry,
        checkpointer: BaseCheckpointer,
    ):
        self.plan = plan
        self.registry = registry
        self.checkpointer = checkpointer
        self._statuses: Dict[str, RunStatus] = {}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def status(self, thread_id: str) -> RunStatus:
        return self._statuses.get(thread_id, RunStatus.IDLE)

    async def run(
        self,
        thread_id: str,
        input: Optional[Mapping[str, Any]],
        config: GraphConfig,
        emit: Optional[EventSink] = None,
    ) -> RunResult:
        """Start (or continue, when ``input`` is None) a run on a thread."""
        checkpointer = self._checkpointer(config)
        async with checkpointer.thread_lock(thread_id):
            # Rejected input leaves the thread's status untouched.
            try:
                start = await self._prepare_input(checkpointer, thread_id, input, config)
            except RunError as e:
                raise e.attach_run_context(thread_id=thread_id)
            self._statuses[thread_id] = RunStatus.RUNNING
            return await self._drive(checkpointer, thread_id, start, config, emit)

    async def resume(
        self,
        thread_id: str,
        answers: Mapping[str, Any],
        config: GraphConfig,
        emit: Optional[EventSink] = None,
    ) -> RunResult:
        """Answer pending interrupts (``{token: value}``) and continue the run."""
        if not answers:
            raise ValueError("resume() needs at least one token -> value answer")
        checkpointer = self._checkpointer(config)
        async with checkpointer.thread_lock(thread_id):
            try:
                start = await self._prepare_resume(checkpointer, thread_id, answers, config)
            except RunError as e:
                raise e.attach_run_context(thread_id=thread_id)
            self._statuses[thread_id] = RunStatus.RUNNING
            logger.info(
                f"Resuming thread {thread_id}: re-running {', '.join(start.frontier)}"
                + (f" ({len(start.pending)} interrupt(s) still pending)" if start.pending else "")
            )
            return await self._drive(checkpointer, thread_id, start, config, emit)

    async def fork(
        self,
        thread_id: str,
        checkpoint_id: str,
        overrides: Mapping[str, Any],
        config: GraphConfig,
    ) -> str:
        """Write a child of ``checkpoint_id`` whose state has ``overrides`` merged in."""
        checkpointer = self._checkpointer(config)
        async with checkpointer.thread_lock(thread_id):
            base = await checkpointer.load(thread_id, checkpoint_id)
            self.registry.validate_keys(overrides, source="State overrides")
            state = self.registry.apply(base.state, [PartialUpdate(FORK_WRITER, overrides)])
            pending_writes = base.pending_writes
            if base.interrupts:
                # Replayed after the node writes when the superstep is resumed.
                pending_writes += ((FORK_WRITER, dict(overrides)),)
            metadata = {
                **config.observability.metadata,
                "step": _next_step(base),
                "source": "fork",
                "writes": sorted(overrides),
                "forked_from": checkpoint_id,
            }
            new_id = await checkpointer.save(
                thread_id,
                state,
                base.active_frontier,
                base.checkpoint_id,
                metadata=metadata,
                interrupts=base.interrupts,
                completed_nodes=base.completed_nodes,
                superstep_input=base.superstep_input,
                pending_writes=pending_writes,
            )
        logger.info(f"Forked thread {thread_id} at {checkpoint_id} -> {new_id}")
        return new_id

    # ------------------------------------------------------------------
    # Run setup
    # ------------------------------------------------------------------

    def _checkpointer(self, config: GraphConfig) -> BaseCheckpointer:
        return config.checkpoint.checkpointer or self.checkpointer

    async def _load_base(
        self, checkpointer: BaseCheckpointer, thread_id: str, config: GraphConfig
    ) -> Optional[Checkpoint]:
        if config.checkpoint.checkpoint_id:
            return await checkpointer.load(thread_id, config.checkpoint.checkpoint_id)
        return await checkpointer.load_latest(thread_id)

    async def _prepare_input(
        self,
        checkpointer: BaseCheckpointer,
        thread_id: str,
        input: Optional[Mapping[str, Any]],
        config: GraphConfig,
    ) -> _RunStart:
        base = await self._load_base(checkpointer, thread_id, config)
        if base is not None and base.interrupts:
            raise GraphStateError(
                f"Thread '{thread_id}' has {len(base.interrupts)} pending interrupt(s); "
                "answer them with resume()",
                thread_id=thread_id,
                last_checkpoint_id=base.checkpoint_id,
            )

        if input is None:
            if base is None:
                raise GraphStateError(
                    f"Thread '{thread_id}' has no checkpoint to continue from",
                    thread_id=thread_id,
                )
            logger.info(
                f"Continuing thread {thread_id} from checkpoint {base.checkpoint_id} "
                f"(frontier: {list(base.active_frontier)})"
            )
            return _RunStart(
                state=dict(base.state),
                frontier=base.active_frontier,
                parent_id=base.checkpoint_id,
                step=_next_step(base),
            )

        if not isinstance(input, Mapping):
            raise InvalidUpdateError(
                f"Input must be a mapping of state fields, got {type(input).__name__}",
                thread_id=thread_id,
            )
        self.registry.validate_keys(input, source="Input")
        current = base.state if base is not None else {}
        state = self.registry.apply(current, [PartialUpdate(START, input)])
        return _RunStart(
            state=state,
            frontier=self._successors([START], state),
            parent_id=base.checkpoint_id if base is not None else None,
            step=_next_step(base),
            source="input",
        )

    async def _prepare_resume(
        self,
        checkpointer: BaseCheckpointer,
        thread_id: str,
        answers: Mapping[str, Any],
        config: GraphConfig,
    ) -> _RunStart:
        base = await self._load_base(checkpointer, thread_id, config)
        if base is None or not base.interrupts:
            raise GraphStateError(
                f"Thread '{thread_id}' has no pending interrupt to resume",
                thread_id=thread_id,
                last_checkpoint_id=base.checkpoint_id if base is not None else None,
            )

        ttl = config.interrupt.interrupt_ttl
        now = time.time()
        answered: Dict[str, InterruptRequest] = {}
        node_answers: Dict[str, List[Any]] = {}
        resume_values: Dict[str, Any] = {}
        for token, value in answers.items():
            request = base.find_interrupt(token)
            if request is None:
                raise InvalidResumeTokenError(
                    token, thread_id=thread_id, last_checkpoint_id=base.checkpoint_id
                )
            if request.is_expired(ttl, now):
                logger.warning(f"Interrupt {token} on node '{request.node}' expired")
                raise InterruptTimeout(
                    token, ttl, thread_id=thread_id, last_checkpoint_id=base.checkpoint_id
                )
            answered[token] = request
            prior = list(request.answers)
            # A breakpoint answer approves the node; it is not an interrupt() result.
            node_answers[request.node] = (
                prior if request.kind is InterruptKind.BREAKPOINT else prior + [value]
            )
            resume_values[request.node] = value

        resumed = frozenset(r.node for r in answered.values())
        return _RunStart(
            state=dict(base.state),
            frontier=self.plan.order(resumed),
            parent_id=base.checkpoint_id,
            step=_next_step(base),
            source="resume",
            answers=node_answers,
            resume_values=resume_values,
            resumed=resumed,
            pending=tuple(r for r in base.interrupts if r.token not in answered),
            completed=base.completed_nodes,
            superstep_input=(
                base.superstep_input if base.superstep_input is not None else dict(base.state)
            ),
            carried_writes=base.pending_writes,
        )

    # ------------------------------------------------------------------
    # Superstep loop
    # ------------------------------------------------------------------

    async def _drive(
        self,
        checkpointer: BaseCheckpointer,
        thread_id: str,
        start: _RunStart,
        config: GraphConfig,
        emit: Optional[EventSink],
    ) -> RunResult:
        state = start.state
        frontier = start.frontier
        parent_id = start.parent_id
        step = start.step
        executed = 0
        limit = config.execution.max_supersteps
        token = config.cancellation_token
        run_started = time.time()

        try:
            while frontier:
                if token is not None and token.is_cancelled:
                    raise RunCancelledError(token.reason or "Run cancelled")
                if executed >= limit:
                    logger.warning(
                        f"Loop guard tripped on thread {thread_id}: {executed} supersteps run, "
                        f"frontier still {list(frontier)}"
                    )
                    raise MaxIterationsExceeded(limit)

                logger.debug(f"Superstep {step} on thread {thread_id}: running {list(frontier)}")
                first = executed == 0
                # A resumed superstep reads the snapshot its siblings read.
                resuming = first and start.superstep_input is not None
                superstep_input = start.superstep_input if resuming else state
                carried_writes = start.carried_writes if first else ()
                results = await self._run_nodes(
                    thread_id,
                    step,
                    frontier,
                    snapshot(self._with_overrides(superstep_input, carried_writes)),
                    config,
                    emit,
                    start if first else None,
                )
                if token is not None and token.is_cancelled:
                    raise RunCancelledError(token.reason or "Run cancelled")

                updates = [
                    PartialUpdate(name, results[name].update)
                    for name in frontier
                    if results[name].update
                ]
                finished = tuple(n for n in frontier if results[n].interrupt is None)
                interrupts = tuple(
                    results[n].interrupt for n in frontier if results[n].interrupt is not None
                )
                carried_pending = start.pending if first else ()
                carried_completed = start.completed if first else ()

                writes = carried_writes + tuple(
                    (name, results[name].update or {}) for name in finished
                )
                merged = self._merge(superstep_input, writes)
                pending = carried_pending + interrupts
                completed = self.plan.order(carried_completed + finished)

                if pending:
                    next_frontier = self.plan.order(r.node for r in pending)
                else:
                    next_frontier = self._successors(completed, merged)

                metadata = {
                    **config.observability.metadata,
                    "step": step,
                    "source": start.source if first else "loop",
                    "writes": list(finished),
                }
                checkpoint_id = await checkpointer.save(
                    thread_id,
                    merged,
                    next_frontier,
                    parent_id,
                    metadata=metadata,
                    interrupts=pending,
                    completed_nodes=completed if pending else (),
                    superstep_input=superstep_input if pending else None,
                    pending_writes=writes if pending else (),
                )
                executed += 1
                state, frontier, parent_id = merged, next_frontier, checkpoint_id
                logger.debug(
                    f"Superstep {step} committed as {checkpoint_id} "
                    f"(next: {list(frontier) or 'END'})"
                )

                if emit is not None:
                    emit(
                        StreamEvent(
                            "updates",
                            {u.node: dict(u.values) for u in updates},
                            step,
                            checkpoint_id,
                        )
                    )
                    emit(StreamEvent("values", copy.deepcopy(merged), step, checkpoint_id))

                if pending:
                    response = InterruptResponse(thread_id, checkpoint_id, pending)
                    self._statuses[thread_id] = RunStatus.INTERRUPTED
                    logger.info(
                        f"Thread {thread_id} interrupted at superstep {step} by "
                        f"{', '.join(r.node for r in pending)}"
                    )
                    if emit is not None:
                        emit(StreamEvent("interrupt", response, step, checkpoint_id))
                    return response
                step += 1

        except RunError as e:
            self._statuses[thread_id] = RunStatus.FAILED
            e.attach_run_context(thread_id=thread_id, superstep=step, last_checkpoint_id=parent_id)
            if isinstance(e, NodeExecutionError):
                logger.error(f"Thread {thread_id} failed at superstep {step}: {e.message}")
            else:
                logger.warning(f"Thread {thread_id} stopped at superstep {step}: {e.message}")
            raise
        except BaseException:
            self._statuses[thread_id] = RunStatus.FAILED
            raise

        self._statuses[thread_id] = RunStatus.COMPLETED
        logger.info(
            f"Thread {thread_id} completed: {executed} superstep(s) "
            f"in {time.time() - run_started:.3f}s"
        )
        return state

    async def _run_nodes(
        self,
        thread_id: str,
        step: int,
        frontier: Tuple[str, ...],
        view: StateView,
        config: GraphConfig,
        emit: Optional[EventSink],
        start: Optional[_RunStart],
    ) -> Dict[str, _NodeResult]:
        order = list(frontier)
        if config.execution.randomize_order:
            random.shuffle(order)
        limit = config.execution.max_concurrency
        semaphore = asyncio.Semaphore(limit) if limit else None

        async def run_one(name: str) -> _NodeResult:
            if semaphore is None:
                return await self._run_node(thread_id, step, name, view, config, emit, start)
            async with semaphore:
                return await self._run_node(thread_id, step, name, view, config, emit, start)

        tasks = {name: asyncio.create_task(run_one(name), name=f"node:{name}") for name in order}
        try:
            await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks.values():
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)

        for name in frontier:
            task = tasks[name]
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()  # type: ignore[misc]
        return {name: tasks[name].result() for name in frontier}

    async def _run_node(
        self,
        thread_id: str,
        step: int,
        name: str,
        view: StateView,
        config: GraphConfig,
        emit: Optional[EventSink],
        start: Optional[_RunStart],
    ) -> _NodeResult:
        resumed = start is not None and name in start.resumed
        if name in config.interrupt.interrupt_before and not resumed:
            logger.info(f"Breakpoint before node '{name}' on thread {thread_id}")
            return _NodeResult(name, interrupt=breakpoint_request(name))

        answers = list(start.answers.get(name, [])) if start is not None else []
        resume_value = start.resume_values.get(name) if resumed else None
        node_view = view.with_resume_value(resume_value) if resumed else view

        def writer(payload: Any) -> None:
            if emit is not None:
                emit(StreamEvent("custom", payload, step, node=name))

        ctx = RunContext(
            thread_id=thread_id,
            superstep=step,
            node=name,
            metadata=dict(config.observability.metadata),
            cancellation=config.cancellation_token,
            writer=writer,
            answers=answers,
            resume_value=resume_value,
        )
        timeout = config.execution.node_timeout
        func = self.plan.node(name).func
        logger.log(TRACE, f"Starting node '{name}' at superstep {step} (resumed={resumed})")
        started = time.time()
        token = set_run_context(ctx)
        try:
            if timeout is None:
                result = await self._call(func, node_view)
            else:
                result = await asyncio.wait_for(self._call(func, node_view), timeout)
        except GraphInterrupt as gi:
            logger.debug(f"Node '{name}' interrupted: {gi.request.prompt!r}")
            return _NodeResult(name, interrupt=gi.request)
        except asyncio.TimeoutError as e:
            if timeout is None:
                raise NodeExecutionError(name, e) from e
            logger.error(f"Node '{name}' timed out after {timeout}s")
            raise NodeTimeoutError(name, timeout) from None
        except Exception as e:
            logger.error(f"Node '{name}' raised {type(e).__name__}: {e}")
            raise NodeExecutionError(name, e) from e
        finally:
            reset_run_context(token)
        logger.debug(f"Node '{name}' finished in {time.time() - started:.3f}s")
        return self._to_result(name, result, ctx)

    @staticmethod
    async def _call(func: Callable[[Any], Any], view: StateView) -> Any:
        if inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
            getattr(func, "__call__", None)
        ):
            result = await func(view)
        else:
            result = await asyncio.to_thread(func, view)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _to_result(self, name: str, result: Any, ctx: RunContext) -> _NodeResult:
        if isinstance(result, InterruptRequest):
            return _NodeResult(
                name, interrupt=result.bind(name, ctx.interrupt_calls, tuple(ctx.answers))
            )
        if result is None:
            return _NodeResult(name, update={})
        if not isinstance(result, Mapping):
            raise NodeExecutionError(
                name,
                message=(
                    f"Node '{name}' returned {type(result).__name__}; "
                    "expected a mapping of changed fields, None or InterruptRequest"
                ),
                category=ErrorCategory.INVALID_UPDATE,
            )
        try:
            self.registry.validate_keys(result, source=f"Node '{name}'")
        except InvalidUpdateError as e:
            raise NodeExecutionError(
                name, e, message=e.message, category=ErrorCategory.INVALID_UPDATE
            ) from e
        return _NodeResult(name, update=dict(result))

    def _merge(
        self,
        superstep_input: Mapping[str, Any],
        writes: Iterable[Tuple[str, Dict[str, Any]]],
    ) -> Dict[str, Any]:
        """Fold one superstep's writes into its input.

        Node writes are folded together in registration order (and checked
        for conflicts) whatever order they arrived in across resumes; state
        overrides from forks are applied on top, in the order they were made.
        """
        writes = tuple(writes)
        node_writes = {node: update for node, update in writes if node != FORK_WRITER}
        merged = self.registry.apply(
            superstep_input,
            [
                PartialUpdate(node, node_writes[node])
                for node in self.plan.order(node_writes)
                if node_writes[node]
            ],
        )
        return self._with_overrides(merged, writes)

    def _with_overrides(
        self,
        state: Mapping[str, Any],
        writes: Iterable[Tuple[str, Dict[str, Any]]],
    ) -> Dict[str, Any]:
        for node, update in writes:
            if node == FORK_WRITER:
                state = self.registry.apply(state, [PartialUpdate(node, update)])
        return dict(state)

    def _successors(self, sources: Iterable[str], state: Mapping[str, Any]) -> Tuple[str, ...]:
        """Next frontier from the edges leaving ``sources``, in registration order."""
        view = snapshot(state)
        targets: List[str] = []
        for source in sources:
            targets.extend(self.plan.static_targets(source))
            for branch in self.plan.branches_from(source):
                try:
                    targets.extend(branch.resolve(view))
                except Exception as e:
                    raise NodeExecutionError(
                        source,
                        e,
                        message=f"Routing from '{source}' via '{branch.name}' failed: {e}",
                    ) from e
        return self.plan.order(targets)


__all__ = ["SuperstepExecutor", "RunStatus", "StreamEvent", "EventSink", "RunResult"]
