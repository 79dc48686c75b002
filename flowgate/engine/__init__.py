"""Engine client factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowgateConfig, load_config
from .base import (
    DEFAULT_INPUT_SCHEMA,
    DynamicExecution,
    EngineClient,
    EngineCredentials,
    EngineResult,
    InputRequirement,
    find_suspend_nodes,
    has_suspend_nodes,
    suspend_schema,
)
from .inmemory import InMemoryEngineClient, ScriptedWorkflow


def get_engine_client(
    backend: Optional[str] = None, config: Optional[FlowgateConfig] = None
) -> EngineClient:
    """Factory function to get the configured engine client."""

    config = config or load_config()
    backend = (backend or os.getenv("FLOWGATE_ENGINE") or config.engine.backend).lower()

    if backend == "inmemory":
        return InMemoryEngineClient(base_url=config.engine.base_url)
    elif backend == "http":
        from .http import HttpEngineClient

        return HttpEngineClient(
            base_url=config.engine.base_url,
            api_key=config.engine.api_key,
            api_key_header=config.engine.api_key_header,
            timeout=config.engine.timeout_seconds,
        )
    else:
        raise ValueError(f"Unsupported engine backend: {backend}")


__all__ = [
    "DEFAULT_INPUT_SCHEMA",
    "DynamicExecution",
    "EngineClient",
    "EngineCredentials",
    "EngineResult",
    "InMemoryEngineClient",
    "InputRequirement",
    "ScriptedWorkflow",
    "find_suspend_nodes",
    "get_engine_client",
    "has_suspend_nodes",
    "suspend_schema",
]
