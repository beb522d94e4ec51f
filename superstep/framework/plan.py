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

"""Executable plan produced by ``StateGraph.compile``.

The plan is a frozen, flattened copy of the graph definition. Two plans
compiled from the same definition compare equal, and the executor never
looks back at the (mutable) builder once a plan exists.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from superstep.framework.state import StateView

START = "__start__"
END = "__end__"

RESERVED_NAMES = frozenset({START, END})


class EdgeType(Enum):
    """Types of edges in the graph."""

    NORMAL = "normal"
    CONDITIONAL = "conditional"


@dataclass(frozen=True)
class NodeSpec:
    """A registered node.

    Attributes:
        name: Unique node name
        func: ``func(state_view) -> Mapping | None | InterruptRequest``, sync or async
        metadata: Free-form tags given to ``add_node``
    """

    name: str
    func: Callable[[Any], Any]
    metadata: Tuple[Tuple[str, Any], ...] = ()

    @property
    def meta(self) -> Dict[str, Any]:
        return dict(self.metadata)


@dataclass(frozen=True)
class Branch:
    """Conditional edges leaving one node.

    Attributes:
        source: Node the branch leaves from (or START)
        path: Routing function; returns a key or a list of keys
        mapping: ``(key, target)`` pairs; a target may be END
    """

    source: str
    path: Callable[[Any], Any]
    mapping: Tuple[Tuple[Any, str], ...]

    @property
    def targets(self) -> Tuple[str, ...]:
        return tuple(target for _, target in self.mapping)

    @property
    def name(self) -> str:
        return getattr(self.path, "__name__", repr(self.path))

    def resolve(self, view: StateView) -> List[str]:
        """Run the routing function and map its keys to target nodes.

        Raises:
            KeyError: If the routing function returned an unmapped key
        """
        result = self.path(view)
        keys: Iterable[Any]
        if isinstance(result, (list, tuple, set, frozenset)):
            keys = result
        else:
            keys = [result]
        table = dict(self.mapping)
        targets = []
        for key in keys:
            if key not in table:
                raise KeyError(
                    f"Routing function '{self.name}' returned '{key}', "
                    f"expected one of {list(table)}"
                )
            targets.append(table[key])
        return targets


@dataclass(frozen=True)
class ExecutablePlan:
    """Immutable, validated graph structure.

    Attributes:
        nodes: Nodes in registration order
        edges: Static ``(source, target)`` edges, START and END included
        branches: Conditional edge tables
        reducers: ``(field, reducer name)`` for explicitly reduced fields
        state_fields: Declared schema fields (None without a schema)
    """

    nodes: Tuple[NodeSpec, ...]
    edges: Tuple[Tuple[str, str], ...]
    branches: Tuple[Branch, ...]
    reducers: Tuple[Tuple[str, str], ...] = ()
    state_fields: Optional[Tuple[str, ...]] = None
    _order: Dict[str, int] = field(default_factory=dict, init=False, compare=False, repr=False)

    def __post_init__(self) -> None:
        self._order.update({spec.name: i for i, spec in enumerate(self.nodes)})

    @property
    def node_names(self) -> Tuple[str, ...]:
        return tuple(spec.name for spec in self.nodes)

    @property
    def terminal_nodes(self) -> Tuple[str, ...]:
        """Nodes with a static edge to END or an END branch target."""
        terminal = {s for s, t in self.edges if t == END}
        terminal.update(b.source for b in self.branches if END in b.targets)
        return tuple(n for n in self.node_names if n in terminal)

    def node(self, name: str) -> NodeSpec:
        return self.nodes[self._order[name]]

    def order(self, names: Iterable[str]) -> Tuple[str, ...]:
        """Deduplicate node names and sort them by registration order."""
        return tuple(sorted({n for n in names if n != END}, key=self._order.__getitem__))

    def static_targets(self, source: str) -> List[str]:
        return [t for s, t in self.edges if s == source]

    def branches_from(self, source: str) -> List[Branch]:
        return [b for b in self.branches if b.source == source]

    def to_dict(self) -> Dict[str, Any]:
        """Export the structure for visualization or debugging."""
        return {
            "nodes": {
                spec.name: {"metadata": spec.meta, "terminal": spec.name in self.terminal_nodes}
                for spec in self.nodes
            },
            "edges": [
                {"source": s, "target": t, "type": EdgeType.NORMAL.value} for s, t in self.edges
            ]
            + [
                {
                    "source": b.source,
                    "targets": dict(b.mapping),
                    "type": EdgeType.CONDITIONAL.value,
                    "condition": b.name,
                }
                for b in self.branches
            ],
            "entry_points": [t for s, t in self.edges if s == START]
            + [t for b in self.branches_from(START) for t in b.targets],
            "reducers": dict(self.reducers),
            "state_fields": list(self.state_fields) if self.state_fields is not None else None,
        }


__all__ = ["START", "END", "EdgeType", "NodeSpec", "Branch", "ExecutablePlan"]
