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

"""Core infrastructure: error types, logging setup and async/sync bridging."""

from superstep.core.async_utils import run_sync
from superstep.core.errors import ConfigurationError, ErrorCategory, ErrorSeverity, SuperstepError
from superstep.core.logging_config import TRACE, configure_logging

__all__ = [
    "SuperstepError",
    "ConfigurationError",
    "ErrorCategory",
    "ErrorSeverity",
    "configure_logging",
    "TRACE",
    "run_sync",
]
