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

"""Centralized error handling for superstep.

This module provides:
- Error categories and severities for classification
- The SuperstepError base type with structured details
- Recovery hints and correlation IDs for tracing a failed run
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# =============================================================================
# Error Categories
# =============================================================================


class ErrorCategory(Enum):
    """Categories of errors for classification and handling."""

    # Graph definition
    GRAPH_VALIDATION = "graph_validation"

    # Execution
    STATE_CONFLICT = "state_conflict"
    INVALID_UPDATE = "invalid_update"
    NODE_EXECUTION = "node_execution"
    NODE_TIMEOUT = "node_timeout"
    LOOP_GUARD = "loop_guard"
    CANCELLED = "cancelled"
    INVALID_STATE = "invalid_state"

    # Human-in-the-loop
    INTERRUPT_EXPIRED = "interrupt_expired"
    INTERRUPT_TOKEN = "interrupt_token"

    # Persistence
    CHECKPOINT_IO = "checkpoint_io"
    CHECKPOINT_NOT_FOUND = "checkpoint_not_found"
    SERIALIZATION = "serialization"

    # Configuration
    CONFIG_INVALID = "config_invalid"

    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# =============================================================================
# Base Exception
# =============================================================================


class SuperstepError(Exception):
    """Base exception for all superstep errors.

    Provides structured error information including:
    - Error category and severity
    - Correlation ID for tracking
    - Recovery suggestions
    - Arbitrary details (node, superstep, checkpoint references)
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        recovery_hint: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.recovery_hint = recovery_hint
        self.correlation_id = correlation_id or str(uuid.uuid4())[:8]
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.message,
            "type": type(self).__name__,
            "category": self.category.value,
            "severity": self.severity.value,
            "correlation_id": self.correlation_id,
            "recovery_hint": self.recovery_hint,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        result = f"[{self.correlation_id}] {self.message}"
        if self.recovery_hint:
            result += f"\nRecovery hint: {self.recovery_hint}"
        return result


class ConfigurationError(SuperstepError):
    """Configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(
            message,
            category=ErrorCategory.CONFIG_INVALID,
            **kwargs,
        )
        self.config_key = config_key
        self.details["config_key"] = config_key


__all__ = [
    "ErrorCategory",
    "ErrorSeverity",
    "SuperstepError",
    "ConfigurationError",
]
