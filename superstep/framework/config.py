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

"""Run configuration for compiled graphs.

GraphConfig is a facade composing focused configs, so each part of the
executor only depends on the options it reads:

- ExecutionConfig: loop guard, timeouts, concurrency
- CheckpointConfig: checkpoint store and the checkpoint to start from
- InterruptConfig: breakpoints and interrupt expiry
- ObservabilityConfig: metadata attached to checkpoints

Example:
    config = GraphConfig.from_dict({"max_supersteps": 5, "metadata": {"user": "u1"}})
    result = await app.invoke(state, thread_id="t1", config=config)
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Tuple, Union

from superstep.config.settings import Settings, load_settings
from superstep.core.errors import ConfigurationError
from superstep.framework.context import CancellationToken

if TYPE_CHECKING:
    from superstep.framework.checkpoint import BaseCheckpointer


@dataclass(frozen=True)
class ExecutionConfig:
    """Execution limits.

    Attributes:
        max_supersteps: Loop guard; supersteps allowed per invocation
        node_timeout: Per-node wall-clock limit in seconds (None = no limit)
        max_concurrency: Upper bound on nodes running at once (None = no limit)
        randomize_order: Shuffle node start order within a superstep
    """

    max_supersteps: int = 25
    node_timeout: Optional[float] = None
    max_concurrency: Optional[int] = None
    randomize_order: bool = False


@dataclass(frozen=True)
class CheckpointConfig:
    """State persistence.

    Attributes:
        checkpointer: Store overriding the one given at compile time
        checkpoint_id: Checkpoint to continue from (default: latest)
    """

    checkpointer: Optional["BaseCheckpointer"] = None
    checkpoint_id: Optional[str] = None


@dataclass(frozen=True)
class InterruptConfig:
    """Interrupt behavior.

    Attributes:
        interrupt_before: Nodes that pause for approval before they run
        interrupt_ttl: Seconds a pending interrupt stays resumable (None = forever)
    """

    interrupt_before: Tuple[str, ...] = ()
    interrupt_ttl: Optional[float] = None


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability tags.

    Attributes:
        metadata: Opaque tags copied into every checkpoint's metadata
        graph_id: Optional label for log records
    """

    metadata: Dict[str, Any] = field(default_factory=dict)
    graph_id: Optional[str] = None


_RECOGNIZED_KEYS = {
    "thread_id",
    "max_supersteps",
    "node_timeout",
    "max_concurrency",
    "randomize_order",
    "checkpointer",
    "checkpoint_id",
    "interrupt_before",
    "interrupt_ttl",
    "metadata",
    "graph_id",
    "cancellation_token",
}


@dataclass(frozen=True)
class GraphConfig:
    """Facade composing the focused configs for one run."""

    thread_id: Optional[str] = None
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)
    interrupt: InterruptConfig = field(default_factory=InterruptConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    cancellation_token: Optional[CancellationToken] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "GraphConfig":
        """Defaults taken from engine settings."""
        settings = settings or load_settings()
        return cls(
            execution=ExecutionConfig(
                max_supersteps=settings.max_supersteps,
                node_timeout=settings.node_timeout,
                max_concurrency=settings.max_concurrency,
            ),
            interrupt=InterruptConfig(interrupt_ttl=settings.interrupt_ttl),
        )

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        base: Optional["GraphConfig"] = None,
    ) -> "GraphConfig":
        """Build a config from flat keys, on top of ``base`` (settings by default).

        Raises:
            ConfigurationError: For unknown keys or invalid values
        """
        unknown = sorted(set(data) - _RECOGNIZED_KEYS)
        if unknown:
            raise ConfigurationError(
                f"Unknown config option(s): {', '.join(unknown)}", config_key=unknown[0]
            )
        config = base or cls.from_settings()

        execution = _override(
            config.execution,
            data,
            ("max_supersteps", "node_timeout", "max_concurrency", "randomize_order"),
        )
        checkpoint = _override(config.checkpoint, data, ("checkpointer", "checkpoint_id"))
        interrupt = _override(config.interrupt, data, ("interrupt_ttl",))
        if "interrupt_before" in data:
            interrupt = replace(interrupt, interrupt_before=tuple(data["interrupt_before"] or ()))
        observability = _override(config.observability, data, ("graph_id",))
        if "metadata" in data:
            observability = replace(observability, metadata=dict(data["metadata"] or {}))

        result = replace(
            config,
            thread_id=data.get("thread_id", config.thread_id),
            execution=execution,
            checkpoint=checkpoint,
            interrupt=interrupt,
            observability=observability,
            cancellation_token=data.get("cancellation_token", config.cancellation_token),
        )
        result.validate()
        return result

    @classmethod
    def coerce(
        cls,
        config: Union["GraphConfig", Mapping[str, Any], None],
        base: Optional["GraphConfig"] = None,
    ) -> "GraphConfig":
        """Accept a GraphConfig, a plain dict or None."""
        if isinstance(config, GraphConfig):
            return config
        return cls.from_dict(config or {}, base=base)

    def validate(self) -> None:
        """Raise ConfigurationError for values the executor cannot honor."""
        if self.execution.max_supersteps < 1:
            raise ConfigurationError(
                "max_supersteps must be at least 1", config_key="max_supersteps"
            )
        if self.execution.node_timeout is not None and self.execution.node_timeout <= 0:
            raise ConfigurationError("node_timeout must be positive", config_key="node_timeout")
        if self.execution.max_concurrency is not None and self.execution.max_concurrency < 1:
            raise ConfigurationError(
                "max_concurrency must be at least 1", config_key="max_concurrency"
            )
        if self.interrupt.interrupt_ttl is not None and self.interrupt.interrupt_ttl <= 0:
            raise ConfigurationError("interrupt_ttl must be positive", config_key="interrupt_ttl")

    def to_dict(self) -> Dict[str, Any]:
        """Flat view of the options (the checkpointer and token are omitted)."""
        return {
            "thread_id": self.thread_id,
            "max_supersteps": self.execution.max_supersteps,
            "node_timeout": self.execution.node_timeout,
            "max_concurrency": self.execution.max_concurrency,
            "randomize_order": self.execution.randomize_order,
            "checkpoint_id": self.checkpoint.checkpoint_id,
            "interrupt_before": list(self.interrupt.interrupt_before),
            "interrupt_ttl": self.interrupt.interrupt_ttl,
            "metadata": dict(self.observability.metadata),
            "graph_id": self.observability.graph_id,
        }


def _override(section: Any, data: Mapping[str, Any], keys: Tuple[str, ...]) -> Any:
    names = {f.name for f in fields(section)}
    changes = {k: data[k] for k in keys if k in data and k in names}
    return replace(section, **changes) if changes else section


__all__ = [
    "GraphConfig",
    "ExecutionConfig",
    "CheckpointConfig",
    "InterruptConfig",
    "ObservabilityConfig",
]
