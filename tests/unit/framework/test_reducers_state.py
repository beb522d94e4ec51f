# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
# SPDX-License-Identifier: Apache-2.0

"""Tests for reducers, the reducer registry and the read-only state view."""

import operator
from dataclasses import dataclass, field
from typing import Annotated, List, TypedDict

import pytest
from pydantic import BaseModel

from superstep.framework.errors import ConflictError, InvalidUpdateError
from superstep.framework.reducers import (
    MISSING,
    Reducer,
    add,
    append,
    as_reducer,
    merge_dicts,
    replace,
)
from superstep.framework.state import (
    PartialUpdate,
    ReducerRegistry,
    StateView,
    apply_updates,
    schema_fields,
    snapshot,
)


class ScoreState(TypedDict):
    count: int
    scores: Annotated[List[int], append]
    total: Annotated[float, "add"]
    tags: Annotated[dict, merge_dicts]


@dataclass
class DataclassState:
    name: str = ""
    items: Annotated[List[str], operator.add] = field(default_factory=list)


class ModelState(BaseModel):
    query: str = ""
    hits: Annotated[List[int], append] = []


class TestBuiltinReducers:
    """Tests for the built-in merge functions."""

    def test_replace_takes_new_value(self):
        assert replace.merge(1, 2) == 2
        assert replace.merge(MISSING, "x") == "x"
        assert replace.associative is False

    def test_append_extends_lists(self):
        assert append.merge([1], [2, 3]) == [1, 2, 3]

    def test_append_wraps_scalars(self):
        assert append.merge([1], 2) == [1, 2]

    def test_append_starts_from_missing(self):
        assert append.merge(MISSING, [5]) == [5]
        assert append.merge(None, (5, 6)) == [5, 6]

    def test_append_does_not_mutate_old(self):
        old = [1]
        append.merge(old, [2])
        assert old == [1]

    def test_add(self):
        assert add.merge(1, 2) == 3
        assert add.merge(MISSING, 2.5) == 2.5

    def test_merge_dicts(self):
        assert merge_dicts.merge({"a": 1, "b": 1}, {"b": 2}) == {"a": 1, "b": 2}
        assert merge_dicts.merge(MISSING, {"a": 1}) == {"a": 1}


class TestAsReducer:
    """Tests for reducer normalization."""

    def test_by_name(self):
        assert as_reducer("append") is append

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown reducer"):
            as_reducer("concat")

    def test_reducer_passthrough(self):
        custom = Reducer("mine", lambda a, b: b)
        assert as_reducer(custom) is custom

    def test_callable_is_associative(self):
        reducer = as_reducer(operator.add)
        assert reducer.associative is True
        assert reducer.merge([1], [2]) == [1, 2]

    def test_callable_never_sees_missing(self):
        reducer = as_reducer(operator.add)
        assert reducer.merge(MISSING, [1]) == [1]

    def test_rejects_non_callable(self):
        with pytest.raises(TypeError):
            as_reducer(42)


class TestSchemaFields:
    """Tests for reading fields off supported schema types."""

    def test_typed_dict(self):
        assert set(schema_fields(ScoreState)) == {"count", "scores", "total", "tags"}

    def test_dataclass(self):
        assert set(schema_fields(DataclassState)) == {"name", "items"}

    def test_pydantic_model(self):
        assert set(schema_fields(ModelState)) == {"query", "hits"}

    def test_no_schema(self):
        assert schema_fields(None) == {}


class TestReducerRegistry:
    """Tests for ReducerRegistry."""

    def test_reducers_from_annotations(self):
        registry = ReducerRegistry.from_schema(ScoreState)

        assert registry.get("scores") is append
        assert registry.get("total") is add
        assert registry.get("tags") is merge_dicts
        assert registry.get("count") is replace

    def test_callable_annotation(self):
        registry = ReducerRegistry.from_schema(DataclassState)
        assert registry.get("items").associative
        assert registry.get("items").merge(["a"], ["b"]) == ["a", "b"]

    def test_pydantic_annotation(self):
        registry = ReducerRegistry.from_schema(ModelState)
        assert registry.get("hits") is append

    def test_overrides_win(self):
        registry = ReducerRegistry.from_schema(ScoreState, {"count": "add"})
        assert registry.get("count") is add

    def test_override_for_unknown_field(self):
        with pytest.raises(ValueError, match="not in the schema"):
            ReducerRegistry.from_schema(ScoreState, {"missing": "add"})

    def test_undeclared_fields_default_to_replace(self):
        registry = ReducerRegistry()
        assert registry.get("anything") is replace
        assert registry.fields is None

    def test_names(self):
        registry = ReducerRegistry.from_schema(ScoreState)
        assert registry.names() == {"scores": "append", "tags": "merge_dicts", "total": "add"}

    def test_apply_folds_in_order(self):
        registry = ReducerRegistry.from_schema(ScoreState)
        state = registry.apply(
            {"count": 0, "scores": []},
            [PartialUpdate("x", {"scores": [5]}), PartialUpdate("y", {"scores": [7]})],
        )
        assert state == {"count": 0, "scores": [5, 7]}

    def test_apply_does_not_mutate_inputs(self):
        registry = ReducerRegistry.from_schema(ScoreState)
        current = {"scores": [1]}
        update = {"scores": [2]}
        registry.apply(current, [PartialUpdate("x", update)])

        assert current == {"scores": [1]}
        assert update == {"scores": [2]}

    def test_untouched_fields_are_kept(self):
        registry = ReducerRegistry.from_schema(ScoreState)
        state = registry.apply({"count": 3, "total": 1.0}, [PartialUpdate("x", {"total": 2.0})])
        assert state == {"count": 3, "total": 3.0}

    def test_conflicting_replace_writes(self):
        registry = ReducerRegistry.from_schema(ScoreState)
        with pytest.raises(ConflictError) as exc_info:
            registry.apply(
                {"count": 0},
                [PartialUpdate("left", {"count": 1}), PartialUpdate("right", {"count": 2})],
            )

        assert exc_info.value.field == "count"
        assert exc_info.value.nodes == ["left", "right"]
        assert "count" in exc_info.value.message

    def test_single_replace_write_is_fine(self):
        registry = ReducerRegistry.from_schema(ScoreState)
        state = registry.apply(
            {"count": 0},
            [PartialUpdate("left", {"count": 1}), PartialUpdate("right", {"scores": [1]})],
        )
        assert state["count"] == 1

    def test_validate_keys(self):
        registry = ReducerRegistry.from_schema(ScoreState)
        registry.validate_keys({"count": 1}, source="Input")

        with pytest.raises(InvalidUpdateError) as exc_info:
            registry.validate_keys({"count": 1, "bogus": 2}, source="Input")
        assert exc_info.value.keys == ["bogus"]

    def test_validate_keys_without_schema(self):
        ReducerRegistry().validate_keys({"anything": 1}, source="Input")

    def test_apply_updates_helper(self):
        assert apply_updates({"a": 1}, [PartialUpdate("n", {"a": 2})]) == {"a": 2}


class TestStateView:
    """Tests for the read-only state view handed to nodes."""

    def test_mapping_access(self):
        view = StateView({"count": 1, "name": "x"})

        assert view["count"] == 1
        assert view.get("missing", "d") == "d"
        assert len(view) == 2
        assert set(view) == {"count", "name"}
        assert dict(view) == {"count": 1, "name": "x"}

    def test_attribute_access(self):
        view = StateView({"messages": ["hi"]})
        assert view.messages == ["hi"]
        with pytest.raises(AttributeError):
            view.missing

    def test_is_read_only(self):
        view = StateView({"count": 1})
        with pytest.raises(TypeError, match="partial update"):
            view["count"] = 2
        with pytest.raises(TypeError):
            del view["count"]
        with pytest.raises(TypeError):
            view.count = 2

    def test_to_dict_is_a_copy(self):
        view = StateView({"items": [1]})
        data = view.to_dict()
        data["items"].append(2)
        assert view["items"] == [1]

    def test_resume_value(self):
        view = StateView({"a": 1})
        assert view.resume_value is None
        resumed = view.with_resume_value("yes")
        assert resumed.resume_value == "yes"
        assert resumed["a"] == 1

    def test_snapshot_is_detached(self):
        state = {"items": [1]}
        view = snapshot(state)
        state["items"].append(2)
        assert view["items"] == [1]
