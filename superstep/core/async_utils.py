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

"""Async/Sync Bridging Utilities.

The engine is async-first; sync entry points exist only at the public API
boundary (``CompiledGraph.invoke_sync``, the CLI) and go through
``run_sync``. Never nest ``asyncio.run()`` calls.

Example usage:
    from superstep.core.async_utils import run_sync

    result = run_sync(app.invoke({"count": 0}, thread_id="t1"))
"""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine, TypeVar

T = TypeVar("T")


def run_sync(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine to completion from sync code.

    Args:
        coro: The coroutine to run

    Returns:
        The result of the coroutine

    Raises:
        RuntimeError: If called while an event loop is running in this
            thread (use ``await`` there instead)
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    coro.close()
    raise RuntimeError("Cannot use run_sync() from within an async context. Use 'await' instead.")


__all__ = ["run_sync"]
