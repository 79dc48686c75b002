"""HTTP routes under ``/engines``."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query

from ..context import Caller
from ..errors import ValidationFailed
from ..runtime import Runtime
from .auth import get_caller, get_runtime, require_admin
from .schemas import CleanupRequest, ExecuteRequest, ExecutionInputRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/engines", tags=["engines"])


@router.post("/execute")
async def execute_workflow(
    request: ExecuteRequest,
    caller: Caller = Depends(get_caller),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    handle = await runtime.coordinator.submit(
        caller,
        request.workflow_id,
        request.input_data,
        request.api_key_type,
        request.api_key_id,
        request.email_results,
    )
    return {"success": handle.success, "data": handle.view().to_json()}


@router.get("/executions")
async def list_executions(
    status: Optional[str] = None,
    workflow_id: Optional[str] = Query(default=None, alias="workflowId"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(get_caller),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    views = await runtime.coordinator.list_executions(caller, status, workflow_id, limit, offset)
    return {
        "success": True,
        "data": [view.to_json() for view in views],
        "pagination": {"limit": limit, "offset": offset, "count": len(views)},
    }


@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    caller: Caller = Depends(get_caller),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    handle = await runtime.coordinator.get_execution(caller, execution_id)
    return {"success": True, "data": handle.view().to_json()}


@router.get("/executions/{execution_id}/input")
async def get_execution_input(
    execution_id: str,
    caller: Caller = Depends(get_caller),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    view = await runtime.webhooks.input_requirement(caller, execution_id)
    return {"success": True, "data": view.to_json()}


@router.post("/executions/{execution_id}/input")
async def submit_execution_input(
    execution_id: str,
    request: ExecutionInputRequest,
    caller: Caller = Depends(get_caller),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    if request.validate_only:
        result = await runtime.webhooks.validate_for_execution(
            caller, execution_id, request.input_data
        )
        return {
            "success": result.is_valid,
            "valid": result.is_valid,
            "errors": result.error_dicts(),
            "sanitizedData": result.sanitized_data,
        }

    outcome = await runtime.webhooks.submit_for_execution(caller, execution_id, request.input_data)
    body: dict[str, Any] = {
        "success": outcome.success,
        "executionId": str(outcome.execution_id),
        "status": outcome.status,
    }
    if outcome.error_message:
        body["errorMessage"] = outcome.error_message
    return body


@router.get("/input/pending")
async def pending_inputs(
    limit: int = Query(default=10, ge=1, le=100),
    priority: Optional[str] = None,
    workflow_id: Optional[str] = Query(default=None, alias="workflowId"),
    caller: Caller = Depends(get_caller),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    pending = await runtime.tracker.list_pending(caller, limit, priority, workflow_id)
    return {"success": True, **pending.to_json()}


@router.post("/input/webhook/{webhook_id}")
async def webhook_input(
    webhook_id: str,
    payload: Any = Body(default=None),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    outcome = await runtime.webhooks.resume(webhook_id, payload)
    body: dict[str, Any] = {
        "success": outcome.success,
        "executionId": str(outcome.execution_id),
        "status": outcome.status,
        "message": "Input received and workflow resumed",
    }
    if outcome.error_message:
        body["message"] = outcome.error_message
    return body


@router.get("/input/webhook/{webhook_id}")
async def webhook_status(
    webhook_id: str,
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    status = await runtime.webhooks.status(webhook_id)
    return {"success": True, "data": status.to_json()}


@router.get("/jobs/cleanup")
async def cleanup_status(
    caller: Caller = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    status = await runtime.sweeper.status()
    return {"success": True, **status.to_json()}


@router.post("/jobs/cleanup")
async def run_cleanup(
    request: CleanupRequest,
    caller: Caller = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    if request.action != "run":
        raise ValidationFailed(
            "Invalid action. Use 'run' to trigger cleanup",
            errors=[{"field": "action", "message": "Must be 'run'"}],
        )
    logger.info(f"Cleanup sweep triggered by admin {caller.user_id}")
    stats = await runtime.sweeper.run_once(triggered_by=f"admin:{caller.user_id}")
    return {"success": True, "message": "Cleanup job completed", "stats": stats.to_json()}
