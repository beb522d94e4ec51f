# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
# SPDX-License-Identifier: Apache-2.0

"""Tests for CompiledGraph.stream."""

import asyncio
import time
from typing import Annotated, List, TypedDict

import pytest

from superstep.framework.checkpoint import MemoryCheckpointer
from superstep.framework.context import get_stream_writer
from superstep.framework.errors import NodeExecutionError, NodeTimeoutError
from superstep.framework.executor import RunStatus, StreamEvent
from superstep.framework.graph import END, START, StateGraph
from superstep.framework.hitl import InterruptResponse, interrupt
from superstep.framework.reducers import append


class ChatState(TypedDict):
    prompt: str
    tokens: Annotated[List[str], append]
    reply: str


def chat_app(respond=None):
    def generate(state):
        writer = get_stream_writer()
        words = state["prompt"].split()
        for word in words:
            writer({"token": word})
        return {"tokens": words}

    def finish(state):
        return {"reply": " ".join(state["tokens"])}

    graph = StateGraph(ChatState)
    graph.add_node("generate", generate)
    graph.add_node("respond", respond or finish)
    graph.add_edge(START, "generate").add_edge("generate", "respond").add_edge("respond", END)
    return graph.compile(checkpointer=MemoryCheckpointer())


async def collect(stream):
    return [event async for event in stream]


INITIAL = {"prompt": "hello there", "tokens": [], "reply": ""}


class TestStreamModes:
    """Tests for updates, values and custom events."""

    @pytest.mark.asyncio
    async def test_updates(self):
        app = chat_app()
        events = await collect(app.stream(INITIAL, thread_id="s"))

        updates = [e for e in events if e.event == "updates"]
        assert [e.data for e in updates] == [
            {"generate": {"tokens": ["hello", "there"]}},
            {"respond": {"reply": "hello there"}},
        ]
        assert [e.superstep for e in updates] == [0, 1]
        assert all(e.checkpoint_id for e in updates)
        assert not [e for e in events if e.event == "values"]

    @pytest.mark.asyncio
    async def test_values(self):
        app = chat_app()
        events = await collect(app.stream(INITIAL, thread_id="s", stream_mode="values"))

        values = [e.data for e in events if e.event == "values"]
        assert values[-1] == {
            "prompt": "hello there",
            "tokens": ["hello", "there"],
            "reply": "hello there",
        }
        assert len(values) == 2
        assert not [e for e in events if e.event == "updates"]

    @pytest.mark.asyncio
    async def test_both_modes_in_order(self):
        app = chat_app()
        events = await collect(app.stream(INITIAL, stream_mode=["updates", "values"]))

        kinds = [e.event for e in events if e.event in ("updates", "values")]
        assert kinds == ["updates", "values", "updates", "values"]

    @pytest.mark.asyncio
    async def test_custom_events_precede_step_update(self):
        app = chat_app()
        events = await collect(app.stream(INITIAL))

        custom = [e for e in events if e.event == "custom"]
        assert [e.data for e in custom] == [{"token": "hello"}, {"token": "there"}]
        assert all(e.node == "generate" for e in custom)
        first_update = next(i for i, e in enumerate(events) if e.event == "updates")
        assert events.index(custom[-1]) < first_update

    @pytest.mark.asyncio
    async def test_stream_writer_is_noop_for_invoke(self):
        app = chat_app()
        result = await app.invoke(INITIAL)
        assert result["reply"] == "hello there"

    @pytest.mark.asyncio
    async def test_end_event(self):
        app = chat_app()
        events = await collect(app.stream(INITIAL, thread_id="s"))

        end = events[-1]
        assert end.event == "end"
        assert end.data["status"] is RunStatus.COMPLETED
        assert end.data["thread_id"] == "s"
        assert end.data["state"]["reply"] == "hello there"

    @pytest.mark.asyncio
    async def test_unknown_mode(self):
        app = chat_app()
        with pytest.raises(ValueError, match="stream_mode"):
            await collect(app.stream(INITIAL, stream_mode="tokens"))

    @pytest.mark.asyncio
    async def test_stream_is_restartable_per_call(self):
        app = chat_app()
        first = await collect(app.stream(INITIAL, thread_id="a"))
        second = await collect(app.stream(INITIAL, thread_id="b"))
        assert [e.event for e in first] == [e.event for e in second]


class TestStreamTermination:
    """Tests for interrupted, failed and abandoned streams."""

    @pytest.mark.asyncio
    async def test_interrupt_then_resume(self):
        def respond(state):
            return {"reply": interrupt("Send this reply?")}

        app = chat_app(respond)
        events = await collect(app.stream(INITIAL, thread_id="s"))

        interrupt_events = [e for e in events if e.event == "interrupt"]
        assert len(interrupt_events) == 1
        response = interrupt_events[0].data
        assert isinstance(response, InterruptResponse)
        assert events[-1].data["status"] is RunStatus.INTERRUPTED
        assert events[-1].checkpoint_id == response.checkpoint_id

        resumed = await collect(
            app.stream(None, thread_id="s", resume={response.token: "edited reply"})
        )

        assert resumed[0] == StreamEvent(
            "updates", {"respond": {"reply": "edited reply"}}, 2, resumed[0].checkpoint_id
        )
        assert resumed[-1].data["state"]["reply"] == "edited reply"

    @pytest.mark.asyncio
    async def test_failure_ends_stream_and_raises(self):
        def respond(state):
            raise RuntimeError("model offline")

        app = chat_app(respond)
        events = []
        with pytest.raises(NodeExecutionError, match="model offline"):
            async for event in app.stream(INITIAL, thread_id="s"):
                events.append(event)

        assert events[-1].event == "end"
        assert events[-1].data["status"] is RunStatus.FAILED
        assert isinstance(events[-1].data["error"], NodeExecutionError)
        assert app.get_status("s") is RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_closing_early_cancels_run(self):
        async def respond(state):
            await asyncio.sleep(5)
            return {"reply": "too late"}

        app = chat_app(respond)
        stream = app.stream(INITIAL, thread_id="s")

        started = time.monotonic()
        async for event in stream:
            if event.event == "updates":
                break
        await stream.aclose()

        history = [cp async for cp in app.get_state_history("s")]
        assert time.monotonic() - started < 2
        assert len(history) == 1
        assert history[0].active_frontier == ("respond",)

        # The thread lock was released with the cancelled run.
        with pytest.raises(NodeTimeoutError):
            await app.invoke(None, thread_id="s", config={"node_timeout": 0.01})
