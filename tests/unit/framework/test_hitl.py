# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
# SPDX-License-Identifier: Apache-2.0

"""Unit tests for Human-in-the-Loop (HITL) interrupts and resume.

Tests cover:
- interrupt() inside nodes and InterruptRequest return values
- Resume with a token and value, or a token -> value mapping
- Sibling updates applied while a node is interrupted
- Several interrupts in one superstep or one node
- interrupt_before breakpoints
- Invalid tokens, expired interrupts and invalid thread states
"""

import asyncio
from typing import Annotated, Any, List, TypedDict

import pytest

from superstep.framework.checkpoint import MemoryCheckpointer
from superstep.framework.errors import (
    ConflictError,
    GraphStateError,
    InterruptTimeout,
    InvalidResumeTokenError,
)
from superstep.framework.executor import RunStatus
from superstep.framework.graph import END, START, StateGraph
from superstep.framework.hitl import (
    InterruptKind,
    InterruptRequest,
    InterruptResponse,
    interrupt,
    request_interrupt,
)
from superstep.framework.reducers import append


class EmailState(TypedDict):
    to: str
    body: str
    approved: bool
    sent: Annotated[List[str], append]


class ParallelState(TypedDict):
    answers: Annotated[List[Any], append]
    log: Annotated[List[str], append]


class SiblingState(TypedDict):
    log: Annotated[List[str], append]
    seen: int
    total: int


def email_app(send_calls, approve=None, **config):
    def draft(state):
        return {"body": f"Hello {state['to']}"}

    def ask(state):
        answer = request_interrupt("Confirm send?")
        return {"approved": answer == "yes"}

    def send(state):
        send_calls.append(state["body"])
        return {"sent": [state["to"]] if state["approved"] else []}

    graph = StateGraph(EmailState)
    graph.add_node("draft", draft)
    graph.add_node("approve", approve or ask)
    graph.add_node("send", send)
    graph.add_edge(START, "draft")
    graph.add_edge("draft", "approve")
    graph.add_edge("approve", "send")
    graph.add_edge("send", END)
    return graph.compile(checkpointer=MemoryCheckpointer(), **config)


INITIAL = {"to": "ops@example.com", "body": "", "approved": False, "sent": []}


class TestInterruptAndResume:
    """Tests for a single node interrupt."""

    @pytest.mark.asyncio
    async def test_invoke_returns_interrupt_response(self):
        calls = []
        app = email_app(calls)

        response = await app.invoke(INITIAL, thread_id="mail")

        assert isinstance(response, InterruptResponse)
        assert response.thread_id == "mail"
        assert response.prompt == "Confirm send?"
        assert response.token
        assert response.get("approve").kind is InterruptKind.NODE
        assert calls == []
        assert app.get_status("mail") is RunStatus.INTERRUPTED

    @pytest.mark.asyncio
    async def test_interrupted_checkpoint(self):
        app = email_app([])
        response = await app.invoke(INITIAL, thread_id="mail")

        checkpoint = await app.get_state("mail")

        assert checkpoint.checkpoint_id == response.checkpoint_id
        assert checkpoint.is_interrupted
        assert checkpoint.active_frontier == ("approve",)
        assert checkpoint.state["body"] == "Hello ops@example.com"
        assert checkpoint.find_interrupt(response.token).node == "approve"

    @pytest.mark.asyncio
    async def test_resume_runs_downstream_exactly_once(self):
        calls = []
        app = email_app(calls)
        response = await app.invoke(INITIAL, thread_id="mail")

        result = await app.resume("mail", response.token, "yes")

        assert result["approved"] is True
        assert result["sent"] == ["ops@example.com"]
        assert calls == ["Hello ops@example.com"]
        assert app.get_status("mail") is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_history(self):
        app = email_app([])
        response = await app.invoke(INITIAL, thread_id="mail")
        await app.resume("mail", response.token, "no")

        history = [cp async for cp in app.get_state_history("mail")]

        assert [cp.metadata["source"] for cp in history] == ["input", "loop", "resume", "loop"]
        assert [cp.metadata["step"] for cp in history] == [0, 1, 2, 3]
        assert history[2].parent_checkpoint_id == response.checkpoint_id
        assert not history[-1].is_interrupted

    @pytest.mark.asyncio
    async def test_resume_matches_direct_input(self):
        paused = email_app([])
        response = await paused.invoke(INITIAL, thread_id="paused")
        resumed = await paused.resume("paused", response.token, "yes")

        direct = email_app([], approve=lambda state: {"approved": "yes" == "yes"})
        expected = await direct.invoke(INITIAL, thread_id="direct")

        assert resumed == expected

    @pytest.mark.asyncio
    async def test_resume_with_mapping(self):
        app = email_app([])
        response = await app.invoke(INITIAL, thread_id="mail")
        result = await app.resume("mail", {response.token: "yes"})
        assert result["approved"] is True

    @pytest.mark.asyncio
    async def test_resume_value_on_state_view(self):
        seen = []

        def approve(state):
            if state.resume_value is None:
                return InterruptRequest("Pick a recipient")
            seen.append(state.resume_value)
            return {"to": state.resume_value}

        app = email_app([], approve=approve)
        response = await app.invoke(INITIAL, thread_id="mail")
        assert response.prompt == "Pick a recipient"
        assert response.get("approve").node == "approve"

        result = await app.resume("mail", response.token, "dev@example.com")

        assert seen == ["dev@example.com"]
        assert result["to"] == "dev@example.com"

    @pytest.mark.asyncio
    async def test_async_node_interrupt(self):
        async def approve(state):
            await asyncio.sleep(0)
            return {"approved": interrupt({"question": "ok?", "choices": ["yes", "no"]}) == "yes"}

        app = email_app([], approve=approve)
        response = await app.invoke(INITIAL, thread_id="mail")
        assert response.prompt == {"question": "ok?", "choices": ["yes", "no"]}

        result = await app.resume("mail", response.token, "yes")
        assert result["approved"] is True

    def test_sync_wrappers(self):
        app = email_app([])
        response = app.invoke_sync(INITIAL, thread_id="mail")
        result = app.resume_sync("mail", response.token, "yes")
        assert result["sent"] == ["ops@example.com"]


class TestMultipleInterrupts:
    """Tests for several interrupts at once."""

    @staticmethod
    def parallel_app():
        def ask(name):
            def node(state):
                return {"answers": [interrupt(f"{name}?")], "log": [name]}

            return node

        graph = StateGraph(ParallelState)
        graph.add_node("a", ask("a"))
        graph.add_node("b", ask("b"))
        graph.add_node("work", lambda s: {"log": ["work"]})
        graph.add_node("join", lambda s: {"log": ["join"]})
        for name in ("a", "b", "work"):
            graph.add_edge(START, name)
            graph.add_edge(name, "join")
        graph.add_edge("join", END)
        return graph.compile(checkpointer=MemoryCheckpointer())

    @pytest.mark.asyncio
    async def test_sibling_updates_applied_while_interrupted(self):
        app = self.parallel_app()
        response = await app.invoke({"answers": [], "log": []}, thread_id="p")

        checkpoint = await app.get_state("p")

        assert [r.node for r in response.interrupts] == ["a", "b"]
        assert checkpoint.state["log"] == ["work"]
        assert checkpoint.completed_nodes == ("work",)
        assert checkpoint.active_frontier == ("a", "b")

    @pytest.mark.asyncio
    async def test_partial_resume_keeps_other_interrupt(self):
        app = self.parallel_app()
        response = await app.invoke({"answers": [], "log": []}, thread_id="p")
        token_a = response.get("a").token
        token_b = response.get("b").token

        second = await app.resume("p", token_a, 1)

        assert isinstance(second, InterruptResponse)
        assert [r.token for r in second.interrupts] == [token_b]
        checkpoint = await app.get_state("p")
        assert checkpoint.state["log"] == ["a", "work"]
        assert checkpoint.completed_nodes == ("a", "work")

        result = await app.resume("p", token_b, 2)

        assert result["answers"] == [1, 2]
        assert result["log"] == ["a", "b", "work", "join"]

    @pytest.mark.asyncio
    async def test_resume_all_at_once(self):
        app = self.parallel_app()
        response = await app.invoke({"answers": [], "log": []}, thread_id="p")

        result = await app.resume("p", {r.token: r.node.upper() for r in response.interrupts})

        assert result["answers"] == ["A", "B"]
        assert result["log"] == ["a", "b", "work", "join"]

    @pytest.mark.asyncio
    async def test_node_with_two_interrupts(self):
        def interview(state):
            name = interrupt("Name?")
            role = interrupt("Role?")
            return {"answers": [name, role]}

        graph = StateGraph(ParallelState)
        graph.add_node("interview", interview)
        graph.add_edge(START, "interview").add_edge("interview", END)
        app = graph.compile(checkpointer=MemoryCheckpointer())

        first = await app.invoke({"answers": [], "log": []}, thread_id="i")
        assert first.prompt == "Name?"

        second = await app.resume("i", first.token, "Ada")
        assert second.prompt == "Role?"
        assert second.interrupts[0].index == 1
        assert second.interrupts[0].answers == ("Ada",)

        result = await app.resume("i", second.token, "engineer")
        assert result["answers"] == ["Ada", "engineer"]


class TestResumedSuperstep:
    """A resumed node sees and merges exactly as it would without the interrupt."""

    @staticmethod
    def sibling_app(b_node, a_update=None):
        graph = StateGraph(SiblingState)
        graph.add_node("a", lambda s: a_update or {"log": ["a"]})
        graph.add_node("b", b_node)
        graph.add_edge(START, "a").add_edge(START, "b")
        graph.add_edge("a", END).add_edge("b", END)
        return graph.compile(checkpointer=MemoryCheckpointer())

    @pytest.mark.asyncio
    async def test_resumed_node_reads_superstep_snapshot(self):
        def count_log(state):
            approved = interrupt("Count the log?")
            return {"seen": len(state["log"]) if approved else -1}

        def count_log_directly(state):
            return {"seen": len(state["log"])}

        initial = {"log": [], "seen": -1, "total": 0}
        direct = await self.sibling_app(count_log_directly).invoke(initial, thread_id="d")

        app = self.sibling_app(count_log)
        response = await app.invoke(initial, thread_id="r")
        assert (await app.get_state("r")).state["log"] == ["a"]
        resumed = await app.resume("r", response.token, True)

        assert direct == {"log": ["a"], "seen": 0, "total": 0}
        assert resumed == direct

    @pytest.mark.asyncio
    async def test_interrupted_checkpoint_keeps_superstep_input(self):
        app = self.sibling_app(lambda s: {"seen": interrupt("?")})
        await app.invoke({"log": ["start"], "seen": 0, "total": 0}, thread_id="r")

        checkpoint = await app.get_state("r")

        assert checkpoint.superstep_input == {"log": ["start"], "seen": 0, "total": 0}
        assert checkpoint.pending_writes == (("a", {"log": ["a"]}),)
        assert checkpoint.state["log"] == ["start", "a"]

    @pytest.mark.asyncio
    async def test_conflict_with_finished_sibling_on_resume(self):
        app = self.sibling_app(
            lambda s: {"total": interrupt("Total?")}, a_update={"total": 1}
        )
        response = await app.invoke({"log": [], "seen": 0, "total": 0}, thread_id="c")

        with pytest.raises(ConflictError) as exc_info:
            await app.resume("c", response.token, 2)

        assert exc_info.value.last_checkpoint_id == response.checkpoint_id
        assert app.get_status("c") is RunStatus.FAILED
        latest = await app.get_state("c")
        assert latest.checkpoint_id == response.checkpoint_id
        assert latest.state["total"] == 1

    @pytest.mark.asyncio
    async def test_same_graph_without_interrupt_conflicts(self):
        app = self.sibling_app(lambda s: {"total": 2}, a_update={"total": 1})
        with pytest.raises(ConflictError):
            await app.invoke({"log": [], "seen": 0, "total": 0}, thread_id="c")

    @pytest.mark.asyncio
    async def test_fork_overrides_survive_resume(self):
        app = self.sibling_app(lambda s: {"log": [interrupt("Next entry?")]})
        response = await app.invoke({"log": [], "seen": 0, "total": 0}, thread_id="f")

        await app.update_and_fork("f", response.checkpoint_id, {"log": ["edited"], "seen": 7})
        result = await app.resume("f", response.token, "b")

        assert result == {"log": ["a", "b", "edited"], "seen": 7, "total": 0}


class TestBreakpoints:
    """Tests for interrupt_before."""

    @pytest.mark.asyncio
    async def test_pauses_before_node(self):
        calls = []
        app = email_app(
            calls,
            approve=lambda s: {"approved": True},
            interrupt_before=["send"],
        )

        response = await app.invoke(INITIAL, thread_id="bp")

        request = response.get("send")
        assert request.kind is InterruptKind.BREAKPOINT
        assert "send" in request.prompt
        assert calls == []

        result = await app.resume("bp", request.token, True)

        assert calls == ["Hello ops@example.com"]
        assert result["sent"] == ["ops@example.com"]

    @pytest.mark.asyncio
    async def test_breakpoint_per_run(self):
        calls = []
        app = email_app(calls, approve=lambda s: {"approved": True})

        response = await app.invoke(INITIAL, thread_id="bp", config={"interrupt_before": ["draft"]})

        assert response.get("draft") is not None
        assert await app.get_state("bp") is not None


class TestInvalidResume:
    """Tests for rejected resumes."""

    @pytest.mark.asyncio
    async def test_unknown_token(self):
        app = email_app([])
        response = await app.invoke(INITIAL, thread_id="mail")

        with pytest.raises(InvalidResumeTokenError) as exc_info:
            await app.resume("mail", "not-a-token", "yes")

        assert exc_info.value.token == "not-a-token"
        assert exc_info.value.last_checkpoint_id == response.checkpoint_id
        assert app.get_status("mail") is RunStatus.INTERRUPTED
        assert (await app.get_state("mail")).checkpoint_id == response.checkpoint_id

    @pytest.mark.asyncio
    async def test_token_cannot_be_reused(self):
        app = email_app([])
        response = await app.invoke(INITIAL, thread_id="mail")
        await app.resume("mail", response.token, "yes")

        with pytest.raises(GraphStateError, match="no pending interrupt"):
            await app.resume("mail", response.token, "yes")

    @pytest.mark.asyncio
    async def test_resume_unknown_thread(self):
        app = email_app([])
        with pytest.raises(GraphStateError):
            await app.resume("ghost", "token", "yes")

    @pytest.mark.asyncio
    async def test_new_input_while_interrupted(self):
        app = email_app([])
        await app.invoke(INITIAL, thread_id="mail")

        with pytest.raises(GraphStateError, match="pending interrupt"):
            await app.invoke(INITIAL, thread_id="mail")

    @pytest.mark.asyncio
    async def test_expired_interrupt(self):
        app = email_app([], interrupt_ttl=0.05)
        response = await app.invoke(INITIAL, thread_id="mail")
        await asyncio.sleep(0.1)

        with pytest.raises(InterruptTimeout) as exc_info:
            await app.resume("mail", response.token, "yes")

        assert exc_info.value.ttl == 0.05
        assert (await app.get_state("mail")).is_interrupted

    @pytest.mark.asyncio
    async def test_empty_answers(self):
        app = email_app([])
        with pytest.raises(ValueError):
            await app.resume("mail", {})

    @pytest.mark.asyncio
    async def test_token_without_value(self):
        app = email_app([])
        with pytest.raises(TypeError):
            await app.resume("mail", "token")


class TestInterruptRequest:
    """Tests for the request record itself."""

    def test_round_trip(self):
        request = InterruptRequest("Proceed?").bind("node", 1, ("earlier",))
        restored = InterruptRequest.from_dict(request.to_dict())
        assert restored == request

    def test_bind_keeps_existing_token(self):
        request = InterruptRequest("q", token="fixed").bind("n", 0, ())
        assert request.token == "fixed"

    def test_expiry(self):
        request = InterruptRequest("q", created_at=100.0)
        assert not request.is_expired(None, now=1_000_000.0)
        assert not request.is_expired(10.0, now=105.0)
        assert request.is_expired(10.0, now=111.0)

    def test_interrupt_outside_node(self):
        with pytest.raises(RuntimeError, match="inside a graph node"):
            interrupt("nobody is listening")
