"""Shared enums and defaults for flowgate."""

from __future__ import annotations

from enum import Enum

DEFAULT_INPUT_TIMEOUT_MINUTES = 60
DEFAULT_EXPIRING_WINDOW_MINUTES = 15
DEFAULT_CLEANUP_INTERVAL_SECONDS = 300
DEFAULT_LOCK_TTL_SECONDS = 600
DEFAULT_RETENTION_DAYS = 90
DEFAULT_PROVIDER = "openrouter"

CLEANUP_LOCK_NAME = "cleanup-expired-inputs"

# Node type fragments that mark a workflow as able to suspend.
SUSPEND_NODE_MARKERS = ("wait", "webhook")


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.TIMEOUT}
)


class InputStatus(str, Enum):
    PENDING = "pending"
    RECEIVED = "received"
    EXPIRED = "expired"


class ApiKeyType(str, Enum):
    CUSTOMER = "customer"
    PLATFORM = "platform"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


PRIORITY_RANK = {Priority.LOW.value: 1, Priority.MEDIUM.value: 2, Priority.HIGH.value: 3}
