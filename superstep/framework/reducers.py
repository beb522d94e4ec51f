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

"""Built-in reducers for merging partial state updates.

A reducer is a pure function ``merge(old, new) -> merged`` attached to one
state field. Reducers are folded over every update a superstep produced for
that field, so anything other than ``replace`` must be associative and must
not care which branch finished first.

Example:
    from typing import Annotated, TypedDict
    from superstep.framework.reducers import append, add

    class ResearchState(TypedDict):
        query: str                          # replace (default)
        notes: Annotated[list[str], append]
        score: Annotated[float, add]
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Union


class _Missing:
    """Marker for a field that is not present in the state yet."""

    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


@dataclass(frozen=True)
class Reducer:
    """A named merge function for one state field.

    Attributes:
        name: Registry name (built-ins) or the function's qualified name
        func: ``func(old, new) -> merged``; ``old`` may be MISSING
        associative: False for last-writer-wins reducers that cannot
            combine concurrent writes; such fields are conflict-checked
    """

    name: str
    func: Callable[[Any, Any], Any]
    associative: bool = True

    def merge(self, old: Any, new: Any) -> Any:
        return self.func(old, new)


def _replace(old: Any, new: Any) -> Any:
    return new


def _append(old: Any, new: Any) -> Any:
    items = list(new) if isinstance(new, (list, tuple)) else [new]
    if old is MISSING or old is None:
        return items
    return list(old) + items


def _add(old: Any, new: Any) -> Any:
    if old is MISSING or old is None:
        return new
    return old + new


def _merge_dicts(old: Any, new: Any) -> Any:
    if old is MISSING or old is None:
        return dict(new)
    merged = dict(old)
    merged.update(new)
    return merged


replace = Reducer("replace", _replace, associative=False)
append = Reducer("append", _append)
add = Reducer("add", _add)
merge_dicts = Reducer("merge_dicts", _merge_dicts)

BUILTIN_REDUCERS: Dict[str, Reducer] = {
    r.name: r for r in (replace, append, add, merge_dicts)
}

ReducerLike = Union[Reducer, str, Callable[[Any, Any], Any]]


def as_reducer(value: ReducerLike) -> Reducer:
    """Normalize a reducer given by name, Reducer or plain callable.

    Plain callables are treated as associative; the graph author vouches
    for them. A custom callable is never handed the MISSING marker: the
    first value written to an absent field is taken as-is, the way
    ``Annotated[list, operator.add]`` fields start out.

    Raises:
        ValueError: If a name does not match a built-in reducer
        TypeError: If the value is neither a name nor callable
    """
    if isinstance(value, Reducer):
        return value
    if isinstance(value, str):
        try:
            return BUILTIN_REDUCERS[value]
        except KeyError:
            raise ValueError(
                f"Unknown reducer '{value}'. Built-ins: {', '.join(BUILTIN_REDUCERS)}"
            ) from None
    if callable(value):
        func = value

        def _custom(old: Any, new: Any) -> Any:
            if old is MISSING:
                return new
            return func(old, new)

        name = getattr(func, "__qualname__", None) or getattr(func, "__name__", repr(func))
        return Reducer(name, _custom)
    raise TypeError(f"Cannot use {value!r} as a reducer")


__all__ = [
    "MISSING",
    "Reducer",
    "ReducerLike",
    "BUILTIN_REDUCERS",
    "as_reducer",
    "replace",
    "append",
    "add",
    "merge_dicts",
]
