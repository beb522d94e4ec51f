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

"""JSON serialization for checkpoint state.

Plain JSON would turn tuples into lists and drop sets, bytes and dates, so
values JSON cannot express are written as tagged objects
(``{"__type__": "tuple", "items": [...]}``) and rebuilt on load. Enums,
dataclasses and pydantic models are restored by import path, which means
their classes must be importable by the process that loads the checkpoint.
"""

from __future__ import annotations

import base64
import dataclasses
import importlib
import json
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from pathlib import PurePath
from typing import Any, Callable, Dict
from uuid import UUID

from pydantic import BaseModel

from superstep.framework.errors import SerializationError

TYPE_KEY = "__type__"


def _import_path(cls: type) -> str:
    return f"{cls.__module__}:{cls.__qualname__}"


def _resolve(path: str) -> Any:
    module_name, _, qualname = path.partition(":")
    try:
        obj: Any = importlib.import_module(module_name)
        for part in qualname.split("."):
            obj = getattr(obj, part)
    except (ImportError, AttributeError) as e:
        raise SerializationError(f"Cannot import '{path}' while decoding state") from e
    return obj


class JsonSerializer:
    """Lossless JSON encoding for state snapshots and interrupt payloads."""

    def dumps(self, value: Any) -> str:
        """Encode a value to a JSON string.

        Raises:
            SerializationError: If the value holds an unsupported object
        """
        return json.dumps(self.encode(value), ensure_ascii=False, sort_keys=True)

    def loads(self, data: str) -> Any:
        """Decode a JSON string produced by ``dumps``."""
        try:
            raw = json.loads(data)
        except json.JSONDecodeError as e:
            raise SerializationError(f"Corrupt checkpoint payload: {e}") from e
        return self.decode(raw)

    def encode(self, value: Any) -> Any:
        # Before the primitives: str and int enums are instances of str/int.
        if isinstance(value, Enum):
            return {
                TYPE_KEY: "enum",
                "cls": _import_path(type(value)),
                "value": self.encode(value.value),
            }
        if value is None or isinstance(value, (bool, int, str)):
            return value
        if isinstance(value, float):
            if value != value or value in (float("inf"), float("-inf")):
                return {TYPE_KEY: "float", "value": repr(value)}
            return value
        if isinstance(value, dict):
            if all(isinstance(k, str) for k in value) and TYPE_KEY not in value:
                return {k: self.encode(v) for k, v in value.items()}
            return {
                TYPE_KEY: "dict",
                "items": [[self.encode(k), self.encode(v)] for k, v in value.items()],
            }
        if isinstance(value, list):
            return [self.encode(v) for v in value]
        if isinstance(value, tuple):
            return {TYPE_KEY: "tuple", "items": [self.encode(v) for v in value]}
        if isinstance(value, (set, frozenset)):
            items = sorted(
                (self.encode(v) for v in value),
                key=lambda v: json.dumps(v, sort_keys=True),
            )
            kind = "frozenset" if isinstance(value, frozenset) else "set"
            return {TYPE_KEY: kind, "items": items}
        if isinstance(value, (bytes, bytearray)):
            return {TYPE_KEY: "bytes", "b64": base64.b64encode(bytes(value)).decode("ascii")}
        if isinstance(value, datetime):
            return {TYPE_KEY: "datetime", "iso": value.isoformat()}
        if isinstance(value, date):
            return {TYPE_KEY: "date", "iso": value.isoformat()}
        if isinstance(value, time):
            return {TYPE_KEY: "time", "iso": value.isoformat()}
        if isinstance(value, Decimal):
            return {TYPE_KEY: "decimal", "value": str(value)}
        if isinstance(value, UUID):
            return {TYPE_KEY: "uuid", "hex": value.hex}
        if isinstance(value, PurePath):
            return {TYPE_KEY: "path", "cls": _import_path(type(value)), "value": str(value)}
        if isinstance(value, BaseModel):
            return {
                TYPE_KEY: "pydantic",
                "cls": _import_path(type(value)),
                "data": self.encode(value.model_dump(mode="python")),
            }
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            fields = {
                f.name: self.encode(getattr(value, f.name))
                for f in dataclasses.fields(value)
                if f.init
            }
            return {TYPE_KEY: "dataclass", "cls": _import_path(type(value)), "fields": fields}
        raise SerializationError(
            f"Cannot serialize value of type {type(value).__name__} into a checkpoint"
        )

    def decode(self, raw: Any) -> Any:
        if isinstance(raw, list):
            return [self.decode(v) for v in raw]
        if not isinstance(raw, dict):
            return raw
        kind = raw.get(TYPE_KEY)
        if kind is None:
            return {k: self.decode(v) for k, v in raw.items()}
        decoder = self._decoders.get(kind)
        if decoder is None:
            raise SerializationError(f"Unknown serialized type tag '{kind}'")
        return decoder(self, raw)

    def _decode_dict(self, raw: Dict[str, Any]) -> Any:
        return {self._hashable(self.decode(k)): self.decode(v) for k, v in raw["items"]}

    def _hashable(self, value: Any) -> Any:
        # Keys come back through decode(); lists cannot be dict keys.
        if isinstance(value, list):
            return tuple(self._hashable(v) for v in value)
        return value

    def _decode_enum(self, raw: Dict[str, Any]) -> Any:
        return _resolve(raw["cls"])(self.decode(raw["value"]))

    def _decode_pydantic(self, raw: Dict[str, Any]) -> Any:
        return _resolve(raw["cls"]).model_validate(self.decode(raw["data"]))

    def _decode_dataclass(self, raw: Dict[str, Any]) -> Any:
        fields = {k: self.decode(v) for k, v in raw["fields"].items()}
        return _resolve(raw["cls"])(**fields)

    _decoders: Dict[str, Callable[["JsonSerializer", Dict[str, Any]], Any]] = {
        "float": lambda self, raw: float(raw["value"]),
        "dict": _decode_dict,
        "tuple": lambda self, raw: tuple(self.decode(v) for v in raw["items"]),
        "set": lambda self, raw: {self._hashable(self.decode(v)) for v in raw["items"]},
        "frozenset": lambda self, raw: frozenset(
            self._hashable(self.decode(v)) for v in raw["items"]
        ),
        "bytes": lambda self, raw: base64.b64decode(raw["b64"]),
        "datetime": lambda self, raw: datetime.fromisoformat(raw["iso"]),
        "date": lambda self, raw: date.fromisoformat(raw["iso"]),
        "time": lambda self, raw: time.fromisoformat(raw["iso"]),
        "decimal": lambda self, raw: Decimal(raw["value"]),
        "uuid": lambda self, raw: UUID(hex=raw["hex"]),
        "path": lambda self, raw: _resolve(raw["cls"])(raw["value"]),
        "enum": _decode_enum,
        "pydantic": _decode_pydantic,
        "dataclass": _decode_dataclass,
    }


__all__ = ["JsonSerializer", "TYPE_KEY"]
