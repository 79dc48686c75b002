"""Scripted in-process engine for tests and local runs."""

from __future__ import annotations

import asyncio
import itertools
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..errors import EngineError
from ..utils.clock import utcnow
from .base import (
    DynamicExecution,
    EngineClient,
    EngineCredentials,
    EngineResult,
    InputRequirement,
    suspend_schema,
)


class ScriptedWorkflow(BaseModel):
    """How the fake engine behaves for one workflow id."""

    result_data: Dict[str, Any] = Field(default_factory=dict)
    finished: bool = True
    error: Optional[str] = None

    # Dynamic-input behaviour
    suspends: bool = False
    input_schema: Optional[Dict[str, Any]] = None
    extra_requirements: int = 0
    resume_result_data: Optional[Dict[str, Any]] = None
    resume_finished: bool = True
    resume_error: Optional[str] = None


class InMemoryEngineClient(EngineClient):
    """Engine double that answers from scripts and records every call."""

    def __init__(self, base_url: str = "http://engine.local") -> None:
        self.base_url = base_url.rstrip("/")
        self.scripts: Dict[str, ScriptedWorkflow] = {}
        self.calls: List[Dict[str, Any]] = []
        self.resume_calls: List[Dict[str, Any]] = []
        # When set, resume calls block until the event fires.
        self.resume_gate: Optional[asyncio.Event] = None
        self._executions: Dict[str, str] = {}
        self._ids = itertools.count(1)

    def script(self, workflow_id: str, **behaviour: Any) -> ScriptedWorkflow:
        scripted = ScriptedWorkflow(**behaviour)
        self.scripts[workflow_id] = scripted
        return scripted

    def _start(
        self,
        method: str,
        workflow_id: str,
        data: Dict[str, Any],
        credentials: Optional[EngineCredentials],
    ) -> tuple[ScriptedWorkflow, str]:
        self.calls.append(
            {
                "method": method,
                "workflow_id": workflow_id,
                "data": dict(data or {}),
                "credentials": credentials,
            }
        )
        scripted = self.scripts.get(workflow_id) or ScriptedWorkflow()
        if scripted.error:
            raise EngineError(scripted.error)
        execution_id = f"mem-{next(self._ids)}"
        self._executions[execution_id] = workflow_id
        return scripted, execution_id

    async def execute_workflow(self, workflow_id: str, data: Dict[str, Any]) -> EngineResult:
        scripted, execution_id = self._start("execute_workflow", workflow_id, data, None)
        return EngineResult(
            finished=scripted.finished,
            data={"resultData": scripted.result_data},
            execution_id=execution_id,
            mode="manual",
        )

    async def execute_workflow_with_credentials(
        self, workflow_id: str, data: Dict[str, Any], credentials: EngineCredentials
    ) -> EngineResult:
        scripted, execution_id = self._start(
            "execute_workflow_with_credentials", workflow_id, data, credentials
        )
        return EngineResult(
            finished=scripted.finished,
            data={"resultData": scripted.result_data},
            execution_id=execution_id,
            mode="manual",
        )

    async def execute_workflow_with_dynamic_input(
        self,
        workflow_id: str,
        data: Dict[str, Any],
        credentials: Optional[EngineCredentials] = None,
        timeout_minutes: int = 60,
        step: int = 1,
    ) -> DynamicExecution:
        scripted, execution_id = self._start(
            "execute_workflow_with_dynamic_input", workflow_id, data, credentials
        )
        if not scripted.suspends:
            return DynamicExecution(
                execution=EngineResult(
                    finished=scripted.finished,
                    data={"resultData": scripted.result_data},
                    execution_id=execution_id,
                    mode="manual",
                )
            )

        timeout_at = utcnow() + timedelta(minutes=timeout_minutes)
        schema = scripted.input_schema or suspend_schema([])
        requirements = [
            InputRequirement(
                step=step + offset,
                webhook_url=self.new_webhook_url(workflow_id, step + offset),
                input_schema=schema,
                timeout_at=timeout_at,
            )
            for offset in range(1 + scripted.extra_requirements)
        ]
        return DynamicExecution(
            execution=EngineResult(
                finished=False,
                data={"resultData": scripted.result_data},
                execution_id=execution_id,
                mode="waiting",
            ),
            inputs_required=requirements,
        )

    async def resume_workflow_with_input(
        self,
        engine_execution_id: Optional[str],
        webhook_url: str,
        payload: Dict[str, Any],
    ) -> EngineResult:
        self.resume_calls.append(
            {
                "engine_execution_id": engine_execution_id,
                "webhook_url": webhook_url,
                "payload": payload,
            }
        )
        if self.resume_gate is not None:
            await self.resume_gate.wait()
        workflow_id = self._executions.get(engine_execution_id or "")
        scripted = self.scripts.get(workflow_id or "") or ScriptedWorkflow()
        if scripted.resume_error:
            raise EngineError(f"Failed to resume workflow: {scripted.resume_error}")
        result_data = scripted.resume_result_data
        if result_data is None:
            result_data = scripted.result_data
        return EngineResult(
            finished=scripted.resume_finished,
            data={"resultData": result_data},
            execution_id=engine_execution_id,
            mode="webhook",
        )
