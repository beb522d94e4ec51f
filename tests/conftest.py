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

"""Shared pytest fixtures and configuration."""

import os

# Must be set before superstep.config.settings is imported.
os.environ.setdefault("SUPERSTEP_SKIP_ENV_FILE", "1")

import pytest

from superstep.config.settings import load_settings
from superstep.framework.checkpoint import MemoryCheckpointer
from superstep.framework.checkpointer import JSONFileCheckpointer, SQLiteCheckpointer


@pytest.fixture(autouse=True)
def isolate_environment_variables(monkeypatch):
    """Isolate tests from SUPERSTEP_* variables, .env files and cached settings."""
    monkeypatch.setenv("SUPERSTEP_SKIP_ENV_FILE", "1")
    for var in list(os.environ):
        if var.startswith("SUPERSTEP_") and var != "SUPERSTEP_SKIP_ENV_FILE":
            monkeypatch.delenv(var, raising=False)
    load_settings.cache_clear()
    yield
    load_settings.cache_clear()


@pytest.fixture
def memory_checkpointer():
    """Fresh in-memory checkpoint store."""
    return MemoryCheckpointer()


@pytest.fixture
def sqlite_checkpointer(tmp_path):
    """SQLite checkpoint store in a temporary directory."""
    checkpointer = SQLiteCheckpointer(tmp_path / "checkpoints.db")
    yield checkpointer
    checkpointer.close()


@pytest.fixture
def json_checkpointer(tmp_path):
    """JSON-file checkpoint store in a temporary directory."""
    return JSONFileCheckpointer(tmp_path / "checkpoints")


@pytest.fixture(params=["memory", "sqlite", "json"])
def any_checkpointer(request, tmp_path):
    """Each checkpoint backend in turn."""
    if request.param == "memory":
        checkpointer = MemoryCheckpointer()
    elif request.param == "sqlite":
        checkpointer = SQLiteCheckpointer(tmp_path / "checkpoints.db")
    else:
        checkpointer = JSONFileCheckpointer(tmp_path / "checkpoints")
    yield checkpointer
    checkpointer.close()
