"""Contract for the external workflow execution engine."""

from __future__ import annotations

import abc
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..constants import SUSPEND_NODE_MARKERS

EngineCredentials = Dict[str, Dict[str, str]]

DEFAULT_INPUT_SCHEMA: Dict[str, Any] = {
    "userInput": {
        "type": "string",
        "required": True,
        "description": "Please provide your input to continue the workflow",
    }
}


class EngineResult(BaseModel):
    """Outcome of one engine call."""

    finished: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)
    execution_id: Optional[str] = None
    mode: Optional[str] = None
    wait_till: Optional[str] = None

    @property
    def result_data(self) -> Dict[str, Any]:
        return self.data.get("resultData") or {}

    @property
    def is_waiting(self) -> bool:
        return not self.finished and (self.mode == "waiting" or self.wait_till is not None)


class InputRequirement(BaseModel):
    """A suspend point reported by the engine: what to ask and where to post it."""

    step: int = 1
    webhook_url: str
    input_schema: Optional[Dict[str, Any]] = None
    timeout_at: datetime


class DynamicExecution(BaseModel):
    """Result of the two-phase dynamic-input entrypoint.

    The engine returns as soon as the run either finishes or suspends; any
    suspension is described in ``inputs_required`` for the caller to persist.
    """

    execution: EngineResult
    inputs_required: List[InputRequirement] = Field(default_factory=list)

    @property
    def suspended(self) -> bool:
        return bool(self.inputs_required)


def find_suspend_nodes(nodes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Return the nodes whose type marks a wait or inbound-webhook capability."""
    found = []
    for node in nodes or []:
        node_type = str(node.get("type", "")).lower()
        if any(marker in node_type for marker in SUSPEND_NODE_MARKERS):
            found.append(node)
    return found


def has_suspend_nodes(nodes: List[Dict[str, Any]]) -> bool:
    return bool(find_suspend_nodes(nodes))


def suspend_schema(nodes: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Input schema declared on the first suspend node, or the generic fallback."""
    for node in find_suspend_nodes(nodes):
        schema = (node.get("parameters") or {}).get("inputSchema")
        if isinstance(schema, dict) and schema:
            return schema
        break
    return dict(DEFAULT_INPUT_SCHEMA)


class EngineClient(metaclass=abc.ABCMeta):
    """Abstract client for the remote engine that runs workflow node graphs."""

    base_url: str

    async def aclose(self) -> None:
        """Release network resources (no-op by default)."""
        pass

    def webhook_url(self, webhook_id: str) -> str:
        """Full callback address for ``webhook_id``."""
        return f"{self.base_url.rstrip('/')}/webhook/{webhook_id}"

    def new_webhook_url(self, workflow_id: str, step: int) -> str:
        """Generate a fresh single-use callback address for one pause."""
        return self.webhook_url(f"{workflow_id}-step-{step}-{uuid.uuid4().hex[:12]}")

    @abc.abstractmethod
    async def execute_workflow(
        self, workflow_id: str, data: Dict[str, Any]
    ) -> EngineResult:
        """Run the workflow once and wait for it to finish."""
        raise NotImplementedError

    @abc.abstractmethod
    async def execute_workflow_with_credentials(
        self, workflow_id: str, data: Dict[str, Any], credentials: EngineCredentials
    ) -> EngineResult:
        """Run the workflow with provider credentials injected."""
        raise NotImplementedError

    @abc.abstractmethod
    async def execute_workflow_with_dynamic_input(
        self,
        workflow_id: str,
        data: Dict[str, Any],
        credentials: Optional[EngineCredentials] = None,
        timeout_minutes: int = 60,
        step: int = 1,
    ) -> DynamicExecution:
        """Run a workflow that may suspend to wait for external input."""
        raise NotImplementedError

    @abc.abstractmethod
    async def resume_workflow_with_input(
        self,
        engine_execution_id: Optional[str],
        webhook_url: str,
        payload: Dict[str, Any],
    ) -> EngineResult:
        """Deliver ``payload`` to a suspended run and report its new state."""
        raise NotImplementedError
