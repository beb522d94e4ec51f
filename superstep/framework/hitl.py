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

"""Human-in-the-Loop (HITL) interrupts for graph workflows.

A node pauses the run by calling ``interrupt(prompt)`` (or by returning an
``InterruptRequest``). The executor applies whatever the node's siblings
produced, checkpoints, and hands an ``InterruptResponse`` back to the
caller. Resuming with the human's answer re-runs only the interrupted
node; this time the matching ``interrupt()`` call returns the answer
instead of raising.

Example:
    from superstep.framework.hitl import interrupt

    def approve(state):
        answer = interrupt(f"Send email to {state['to']}?")
        return {"approved": answer == "yes"}

    result = await app.invoke({"to": "ops@example.com"}, thread_id="t1")
    if isinstance(result, InterruptResponse):
        final = await app.resume("t1", result.token, "yes")
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from superstep.framework.context import get_run_context


class InterruptKind(str, Enum):
    """Where an interrupt came from.

    Attributes:
        NODE: The node function asked for input
        BREAKPOINT: A configured ``interrupt_before`` breakpoint fired
    """

    NODE = "node"
    BREAKPOINT = "breakpoint"


def new_token() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class InterruptRequest:
    """A pending request for human input.

    Nodes can return ``InterruptRequest(prompt)`` directly; the executor
    fills in the remaining fields.

    Attributes:
        prompt: Human-readable question (any serializable payload)
        token: Opaque resumption token
        node: Node that interrupted
        index: Position of the interrupt among the node's interrupt calls
        kind: Node interrupt or configured breakpoint
        answers: Values given to the node's earlier interrupts
        created_at: Unix timestamp when the interrupt was raised
    """

    prompt: Any
    token: str = ""
    node: str = ""
    index: int = 0
    kind: InterruptKind = InterruptKind.NODE
    answers: Tuple[Any, ...] = ()
    created_at: float = field(default_factory=time.time)

    def bind(self, node: str, index: int, answers: Tuple[Any, ...]) -> "InterruptRequest":
        """Attach engine-side bookkeeping to a request raised by a node."""
        return replace(
            self,
            token=self.token or new_token(),
            node=node,
            index=index,
            answers=tuple(answers),
        )

    def is_expired(self, ttl: Optional[float], now: Optional[float] = None) -> bool:
        if ttl is None:
            return False
        return ((now or time.time()) - self.created_at) > ttl

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "prompt": self.prompt,
            "token": self.token,
            "node": self.node,
            "index": self.index,
            "kind": self.kind.value,
            "answers": list(self.answers),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InterruptRequest":
        return cls(
            prompt=data["prompt"],
            token=data["token"],
            node=data["node"],
            index=data.get("index", 0),
            kind=InterruptKind(data.get("kind", InterruptKind.NODE.value)),
            answers=tuple(data.get("answers", ())),
            created_at=data.get("created_at", time.time()),
        )


class GraphInterrupt(Exception):
    """Raised inside a node to suspend it; caught by the executor."""

    def __init__(self, request: InterruptRequest):
        super().__init__(f"Interrupted: {request.prompt!r}")
        self.request = request


@dataclass(frozen=True)
class InterruptResponse:
    """Returned by invoke/resume when the run stopped for human input.

    Attributes:
        thread_id: Thread to resume
        checkpoint_id: Checkpoint holding the pending interrupts
        interrupts: Every pending interrupt (fan-out can raise several)
    """

    thread_id: str
    checkpoint_id: str
    interrupts: Tuple[InterruptRequest, ...]

    @property
    def token(self) -> str:
        """Token of the first pending interrupt."""
        return self.interrupts[0].token

    @property
    def prompt(self) -> Any:
        """Prompt of the first pending interrupt."""
        return self.interrupts[0].prompt

    def get(self, node: str) -> Optional[InterruptRequest]:
        for request in self.interrupts:
            if request.node == node:
                return request
        return None


def interrupt(prompt: Any) -> Any:
    """Ask a human for input from inside a node.

    On the first run this raises ``GraphInterrupt`` and the node stops.
    When the run is resumed with an answer, the node runs again from the
    top and this call returns the answer. A node may interrupt several
    times; answers are matched to calls by position.

    Raises:
        GraphInterrupt: When no answer exists yet for this call
        RuntimeError: If called outside a node
    """
    ctx = get_run_context()
    index = ctx.next_interrupt_index()
    if index < len(ctx.answers):
        return ctx.answers[index]
    raise GraphInterrupt(
        InterruptRequest(prompt=prompt).bind(ctx.node, index, tuple(ctx.answers))
    )


request_interrupt = interrupt


def breakpoint_request(node: str) -> InterruptRequest:
    """Interrupt raised by the executor for an ``interrupt_before`` node."""
    return InterruptRequest(
        prompt=f"Approve execution of '{node}'?",
        kind=InterruptKind.BREAKPOINT,
    ).bind(node, 0, ())


__all__ = [
    "InterruptKind",
    "InterruptRequest",
    "InterruptResponse",
    "GraphInterrupt",
    "interrupt",
    "request_interrupt",
    "breakpoint_request",
    "new_token",
]
