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

"""Configuration management for superstep.

Values come from (highest priority first) explicit constructor arguments,
``SUPERSTEP_*`` environment variables, a YAML file named by
``SUPERSTEP_CONFIG_FILE``, then the defaults below.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from superstep.core.errors import ConfigurationError

GLOBAL_SUPERSTEP_DIR = Path.home() / ".superstep"

_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_BACKENDS = {"memory", "sqlite", "json"}


class Settings(BaseSettings):
    """Engine-wide defaults."""

    model_config = SettingsConfigDict(
        env_prefix="SUPERSTEP_",
        env_file=".env" if not os.getenv("SUPERSTEP_SKIP_ENV_FILE") else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Execution limits
    max_supersteps: int = Field(default=25, ge=1)
    node_timeout: Optional[float] = Field(default=None, gt=0)
    max_concurrency: Optional[int] = Field(default=None, ge=1)

    # Human-in-the-loop: None waits forever for a resume
    interrupt_ttl: Optional[float] = Field(default=None, gt=0)

    # Persistence
    checkpoint_backend: str = "memory"
    checkpoint_path: str = str(GLOBAL_SUPERSTEP_DIR / "checkpoints.db")

    # Logging
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}")
        return level

    @field_validator("checkpoint_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        backend = value.lower()
        if backend not in _BACKENDS:
            raise ValueError(f"checkpoint_backend must be one of {sorted(_BACKENDS)}")
        return backend

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **overrides: Any) -> "Settings":
        """Load settings from a YAML mapping; keyword overrides win.

        Raises:
            ConfigurationError: If the file is missing or not a mapping
        """
        config_file = Path(os.path.expanduser(str(path)))
        try:
            with open(config_file, "r") as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read config file {config_file}: {e}", config_key="config_file"
            ) from e
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in {config_file}: {e}", config_key="config_file"
            ) from e
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Config file {config_file} must contain a mapping", config_key="config_file"
            )
        values: Dict[str, Any] = {**data, **overrides}
        return cls(**values)


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Return the process-wide settings (cached).

    Call ``load_settings.cache_clear()`` after changing the environment.
    """
    config_file = os.getenv("SUPERSTEP_CONFIG_FILE")
    if config_file:
        return Settings.from_yaml(config_file)
    return Settings()


__all__ = ["Settings", "load_settings", "GLOBAL_SUPERSTEP_DIR"]
