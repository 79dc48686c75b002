"""Flowgate: workflow execution orchestration with human-in-the-loop pauses."""

__version__ = "0.1.0"

from .config import FlowgateConfig, load_config
from .context import Caller
from .coordinator import ExecutionCoordinator, ExecutionHandle
from .db import get_database
from .engine import get_engine_client
from .errors import FlowgateError
from .runtime import Runtime, create_runtime
from .sweeper import ExpiryCleanupSweeper
from .webhooks import WebhookResumeHandler

__all__ = [
    "Caller",
    "ExecutionCoordinator",
    "ExecutionHandle",
    "ExpiryCleanupSweeper",
    "FlowgateConfig",
    "FlowgateError",
    "Runtime",
    "WebhookResumeHandler",
    "create_runtime",
    "get_database",
    "get_engine_client",
    "load_config",
]
