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

"""Logging setup for superstep.

Log levels:
- TRACE (5): Per-node and per-row detail
- DEBUG (10): Superstep start/commit, node timings, checkpoint writes
- INFO (20): Run completion, interrupts, resumes, forks
- WARNING (30): Loop guard, expired interrupts, stopped runs
- ERROR (40): Node failures and timeouts

Every module logs through ``logging.getLogger(__name__)``; this module only
sets levels and, for applications without their own logging setup, a
console handler.
"""

import logging
import sys
from typing import Any, Optional

# Custom TRACE level for very verbose logging (below DEBUG)
TRACE = 5
logging.addLevelName(TRACE, "TRACE")


def trace(self: logging.Logger, message: str, *args: Any, **kwargs: Any) -> None:
    """Log at TRACE level (5)."""
    if self.isEnabledFor(TRACE):
        self._log(TRACE, message, args, **kwargs)


logging.Logger.trace = trace  # type: ignore[attr-defined]

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Third-party loggers to silence
NOISY_LOGGERS = [
    "asyncio",
]


def resolve_level(log_level: str) -> int:
    """Map a level name (TRACE included) to its numeric value."""
    level_upper = log_level.upper()
    if level_upper == "TRACE":
        return TRACE
    return getattr(logging, level_upper, logging.INFO)


def configure_logging(
    log_level: Optional[str] = None,
    add_handler: bool = False,
) -> int:
    """Configure the ``superstep`` logger level and silence noisy loggers.

    Args:
        log_level: Level name; defaults to the ``log_level`` setting
        add_handler: Attach a stderr handler to the ``superstep`` logger
            (only once; useful for scripts and the CLI)

    Returns:
        The numeric level applied
    """
    if log_level is None:
        from superstep.config.settings import load_settings

        log_level = load_settings().log_level
    level = resolve_level(log_level)

    package_logger = logging.getLogger("superstep")
    package_logger.setLevel(level)
    if add_handler and not any(
        getattr(h, "_superstep_handler", False) for h in package_logger.handlers
    ):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._superstep_handler = True  # type: ignore[attr-defined]
        package_logger.addHandler(handler)

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
    return level


__all__ = ["TRACE", "configure_logging", "resolve_level", "NOISY_LOGGERS"]
