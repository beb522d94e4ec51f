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

"""State container and reducer registry.

The authoritative state of a run is a plain dict owned by the executor.
Nodes never see it directly: each superstep hands every active node the
same read-only StateView of a snapshot, and nodes answer with partial
updates that the ReducerRegistry folds back in.

Example:
    registry = ReducerRegistry.from_schema(MyState)
    new_state = registry.apply(
        {"count": 0, "scores": []},
        [PartialUpdate("x", {"scores": [5]}), PartialUpdate("y", {"scores": [7]})],
    )
"""

from __future__ import annotations

import copy
import dataclasses
import logging
from collections.abc import Iterator, Mapping
from typing import (
    Annotated,
    Any,
    Dict,
    List,
    NamedTuple,
    Optional,
    Sequence,
    get_args,
    get_origin,
    get_type_hints,
)

from superstep.framework.errors import ConflictError, InvalidUpdateError
from superstep.framework.reducers import MISSING, Reducer, ReducerLike, as_reducer, replace

logger = logging.getLogger(__name__)


class PartialUpdate(NamedTuple):
    """Update emitted by one node: only the keys it changed."""

    node: str
    values: Mapping[str, Any]


class StateView(Mapping[str, Any]):
    """Read-only view over a state snapshot.

    Lookups behave like a dict; assignment raises TypeError so that nodes
    report changes by returning a partial update instead of mutating the
    container. Attribute access is offered as a convenience
    (``state.messages``). When a node is re-run after an interrupt, the
    human's answer is available as ``resume_value``.
    """

    __slots__ = ("_data", "_resume_value")

    def __init__(self, data: Mapping[str, Any], resume_value: Any = None):
        object.__setattr__(self, "_data", data)
        object.__setattr__(self, "_resume_value", resume_value)

    @property
    def resume_value(self) -> Any:
        return self._resume_value

    def with_resume_value(self, value: Any) -> "StateView":
        """Same snapshot, carrying a human answer for a resumed node."""
        return StateView(self._data, value)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._data[name]
        except KeyError:
            raise AttributeError(name) from None

    def __setitem__(self, key: str, value: Any) -> None:
        raise TypeError(
            f"State is read-only inside a node; return {{'{key}': ...}} as a partial update"
        )

    def __delitem__(self, key: str) -> None:
        raise TypeError("State is read-only inside a node")

    def __setattr__(self, name: str, value: Any) -> None:
        raise TypeError("State is read-only inside a node")

    def to_dict(self) -> Dict[str, Any]:
        """Return a mutable deep copy of the viewed state."""
        return copy.deepcopy(dict(self._data))

    def __repr__(self) -> str:
        return f"StateView({dict(self._data)!r})"


def snapshot(state: Mapping[str, Any]) -> StateView:
    """Take the immutable snapshot nodes read during one superstep."""
    return StateView(copy.deepcopy(dict(state)))


def schema_fields(schema: Optional[type]) -> Dict[str, Any]:
    """Return ``{field: annotation}`` for a TypedDict, dataclass or pydantic model.

    Annotations keep their ``Annotated`` extras so reducers can be read off.
    """
    if schema is None:
        return {}
    if dataclasses.is_dataclass(schema):
        hints = get_type_hints(schema, include_extras=True)
        return {f.name: hints.get(f.name, Any) for f in dataclasses.fields(schema)}
    model_fields = getattr(schema, "model_fields", None)
    if isinstance(model_fields, Mapping):
        # pydantic moves Annotated extras into FieldInfo.metadata
        return {
            name: Annotated[(info.annotation, *info.metadata)] if info.metadata else info.annotation
            for name, info in model_fields.items()
        }
    return dict(get_type_hints(schema, include_extras=True))


def _reducer_from_annotation(annotation: Any) -> Optional[Reducer]:
    if get_origin(annotation) is not Annotated:
        return None
    for extra in reversed(get_args(annotation)[1:]):
        if isinstance(extra, (Reducer, str)) or callable(extra):
            try:
                return as_reducer(extra)
            except (ValueError, TypeError):
                continue
    return None


class ReducerRegistry:
    """Per-field reducers for one graph.

    Lookups fall back to ``replace`` for any field without an explicit
    reducer, so undeclared schemas still work.
    """

    def __init__(
        self,
        reducers: Optional[Mapping[str, ReducerLike]] = None,
        fields: Optional[Sequence[str]] = None,
    ):
        self._reducers: Dict[str, Reducer] = {
            name: as_reducer(value) for name, value in (reducers or {}).items()
        }
        self._fields: Optional[frozenset[str]] = frozenset(fields) if fields else None

    @classmethod
    def from_schema(
        cls,
        schema: Optional[type] = None,
        overrides: Optional[Mapping[str, ReducerLike]] = None,
    ) -> "ReducerRegistry":
        """Build the registry from ``Annotated`` schema metadata plus explicit overrides."""
        fields = schema_fields(schema)
        reducers: Dict[str, ReducerLike] = {}
        for name, annotation in fields.items():
            reducer = _reducer_from_annotation(annotation)
            if reducer is not None:
                reducers[name] = reducer
        reducers.update(overrides or {})
        if fields and overrides:
            unknown = sorted(set(overrides) - set(fields))
            if unknown:
                raise ValueError(f"Reducers given for fields not in the schema: {unknown}")
        return cls(reducers, fields=list(fields) or None)

    @property
    def fields(self) -> Optional[frozenset[str]]:
        """Declared field names, or None when the state has no schema."""
        return self._fields

    def get(self, field: str) -> Reducer:
        return self._reducers.get(field, replace)

    def names(self) -> Dict[str, str]:
        """Reducer name per explicitly registered field."""
        return {field: r.name for field, r in sorted(self._reducers.items())}

    def validate_keys(self, values: Mapping[str, Any], *, source: str) -> None:
        """Reject keys that are not declared in the schema.

        Raises:
            InvalidUpdateError: If the schema is declared and a key is unknown
        """
        if self._fields is None:
            return
        unknown = sorted(k for k in values if k not in self._fields)
        if unknown:
            raise InvalidUpdateError(
                f"{source} wrote keys not in the state schema: {', '.join(unknown)}",
                keys=unknown,
            )

    def apply(
        self,
        current: Mapping[str, Any],
        updates: Sequence[PartialUpdate],
    ) -> Dict[str, Any]:
        """Fold partial updates into the current state.

        Updates are folded field by field, in the order given (the caller
        passes them in emission order). Fields no update mentions keep their
        value. Neither ``current`` nor the updates are mutated.

        Raises:
            ConflictError: If two updates write the same field and that
                field's reducer is not associative
        """
        writers: Dict[str, List[str]] = {}
        for update in updates:
            for key in update.values:
                writers.setdefault(key, []).append(update.node)

        for key, nodes in writers.items():
            if len(nodes) > 1 and not self.get(key).associative:
                raise ConflictError(key, nodes)

        new_state = copy.deepcopy(dict(current))
        for update in updates:
            for key, value in update.values.items():
                reducer = self.get(key)
                old = new_state.get(key, MISSING)
                new_state[key] = reducer.merge(old, copy.deepcopy(value))
        if updates:
            logger.debug(
                "Applied %d update(s) touching %s", len(updates), sorted(writers)
            )
        return new_state


def apply_updates(
    current: Mapping[str, Any],
    updates: Sequence[PartialUpdate],
    registry: Optional[ReducerRegistry] = None,
) -> Dict[str, Any]:
    """Module-level form of ``ReducerRegistry.apply`` (replace everywhere by default)."""
    return (registry or ReducerRegistry()).apply(current, updates)


__all__ = [
    "PartialUpdate",
    "StateView",
    "ReducerRegistry",
    "apply_updates",
    "schema_fields",
    "snapshot",
]
