# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
# SPDX-License-Identifier: Apache-2.0

"""Tests for checkpoint state serialization."""

import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from uuid import UUID

import pytest
from pydantic import BaseModel

from superstep.framework.errors import CheckpointIOError, SerializationError
from superstep.framework.serde import TYPE_KEY, JsonSerializer


class Priority(str, Enum):
    LOW = "low"
    HIGH = "high"


@dataclass
class Ticket:
    title: str
    priority: Priority
    tags: tuple


class Message(BaseModel):
    role: str
    content: str


@pytest.fixture
def serde():
    return JsonSerializer()


class TestJsonSerializer:
    """Tests for lossless encoding of state values."""

    def test_plain_json_is_untouched(self, serde):
        state = {"count": 1, "name": "x", "items": [1, 2.5, None, True], "nested": {"a": "b"}}
        encoded = serde.dumps(state)

        assert json.loads(encoded) == state
        assert serde.loads(encoded) == state

    def test_rich_values(self, serde):
        state = {
            "pair": (1, "a"),
            "unique": {3, 1, 2},
            "frozen": frozenset({"x"}),
            "blob": b"\x00\xff",
            "when": datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
            "day": date(2025, 1, 2),
            "amount": Decimal("10.25"),
            "id": UUID("12345678123456781234567812345678"),
            "path": Path("/tmp/report.txt"),
            "int_keys": {1: "one", 2: "two"},
            "tuple_keys": {(1, 2): "pair"},
            "nan_free": float("inf"),
        }

        restored = serde.loads(serde.dumps(state))

        assert restored == state
        assert isinstance(restored["pair"], tuple)
        assert isinstance(restored["frozen"], frozenset)

    def test_enum_dataclass_and_model(self, serde):
        state = {
            "ticket": Ticket("Fix login", Priority.HIGH, ("auth", "web")),
            "messages": [Message(role="user", content="hi")],
            "priority": Priority.LOW,
        }

        restored = serde.loads(serde.dumps(state))

        assert restored == state
        assert restored["priority"] is Priority.LOW
        assert isinstance(restored["messages"][0], Message)

    def test_dict_with_reserved_key(self, serde):
        state = {"payload": {TYPE_KEY: "not a tag", "x": 1}}
        assert serde.loads(serde.dumps(state)) == state

    def test_output_is_stable(self, serde):
        assert serde.dumps({"b": 1, "a": {3, 2, 1}}) == serde.dumps({"a": {1, 2, 3}, "b": 1})

    def test_unsupported_value(self, serde):
        with pytest.raises(SerializationError, match="object"):
            serde.dumps({"handle": object()})

    def test_serialization_error_is_checkpoint_error(self, serde):
        with pytest.raises(CheckpointIOError):
            serde.dumps({"handle": lambda: None})

    def test_corrupt_payload(self, serde):
        with pytest.raises(SerializationError, match="Corrupt"):
            serde.loads("{not json")

    def test_unknown_tag(self, serde):
        with pytest.raises(SerializationError, match="Unknown serialized type"):
            serde.loads(json.dumps({TYPE_KEY: "mystery"}))

    def test_unimportable_class(self, serde):
        payload = {TYPE_KEY: "enum", "cls": "no_such_module:Thing", "value": 1}
        with pytest.raises(SerializationError, match="Cannot import"):
            serde.loads(json.dumps(payload))
