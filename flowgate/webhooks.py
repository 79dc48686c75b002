"""Resume suspended executions when their input arrives.

Both the public webhook and the authenticated execution-input route funnel
into :meth:`WebhookResumeHandler._deliver`, which settles the pending input
and moves the execution back to ``running`` in one conditional transaction
before the engine is contacted. A duplicate delivery, or a delivery racing
the cleanup sweep, loses that transaction and never reaches the engine.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel

from .constants import ExecutionStatus, InputStatus
from .context import Caller
from .coordinator import finalize_execution
from .db import ExecutionDB, UserInput, WorkflowExecution
from .engine import EngineClient
from .errors import Conflict, EngineError, Gone, NotFound, ValidationFailed
from .inputs import InputRequirementTracker
from .usage import UsageAccountant
from .utils.clock import Clock, utcnow
from .validation import ValidationResult, validate_input
from .views import (
    ExecutionInputView,
    ExecutionSummary,
    InputRequirementView,
    PendingInputRef,
    WebhookStatus,
)

logger = logging.getLogger(__name__)


class ResumeResult(BaseModel):
    execution_id: UUID
    status: str
    success: bool
    error_message: Optional[str] = None


class WebhookResumeHandler:
    """Accept inputs for waiting executions and resume them in the engine."""

    def __init__(
        self,
        db: ExecutionDB,
        engine: EngineClient,
        tracker: InputRequirementTracker,
        usage: UsageAccountant,
        clock: Clock = utcnow,
    ) -> None:
        self.db = db
        self.engine = engine
        self.tracker = tracker
        self.usage = usage
        self.clock = clock

    async def _lookup(self, webhook_id: str) -> tuple[UserInput, WorkflowExecution]:
        webhook_url = self.engine.webhook_url(webhook_id)
        user_input = await self.db.get_input_by_webhook_url(webhook_url)
        if user_input is None:
            raise NotFound("Webhook not found or expired")
        execution = await self.db.get_execution(user_input.execution_id)
        if execution is None:
            raise NotFound("Execution not found")
        return user_input, execution

    async def resume(self, webhook_id: str, payload: Any) -> ResumeResult:
        """Deliver ``payload`` posted to the public webhook ``webhook_id``.

        Raises:
            NotFound: No input was ever registered for the webhook.
            Gone: The input expired or its execution timed out.
            Conflict: The input was already received or the execution is
                no longer waiting.
            ValidationFailed: The payload is not an object or is missing
                required fields.
        """
        user_input, execution = await self._lookup(webhook_id)
        return await self._deliver(user_input, execution, payload, strict=False)

    async def status(self, webhook_id: str) -> WebhookStatus:
        user_input, execution = await self._lookup(webhook_id)
        now = self.clock()

        requirement = None
        if execution.is_waiting_for_input:
            requirement = InputRequirementView(
                step=execution.current_step,
                input_schema=execution.input_schema,
                timeout_at=execution.timeout_at,
                is_expired=execution.timeout_at is not None and execution.timeout_at <= now,
            )

        pending = None
        if user_input.status == InputStatus.PENDING.value:
            pending = PendingInputRef(
                id=user_input.id,
                metadata=user_input.metadata_view(),
                time_remaining=user_input.time_remaining_ms(now),
            )

        return WebhookStatus(
            execution=ExecutionSummary(
                id=execution.id,
                workflow_name=user_input.workflow_name,
                status=execution.status,
                started_at=execution.started_at,
            ),
            input_requirement=requirement,
            pending_input=pending,
        )

    async def _owned_pending(
        self, caller: Caller, execution_id: UUID | str
    ) -> tuple[UserInput, WorkflowExecution]:
        execution = await self.db.find_execution(execution_id, caller.user_id, caller.workspace_id)
        if execution is None:
            raise NotFound("Execution not found")
        user_input = await self.tracker.get_pending(execution.id)
        if user_input is None:
            if execution.status == ExecutionStatus.TIMEOUT.value:
                raise Gone("Input timeout has expired")
            raise Conflict("Execution is not waiting for input")
        return user_input, execution

    async def validate_for_execution(
        self, caller: Caller, execution_id: UUID | str, payload: Any
    ) -> ValidationResult:
        """Check ``payload`` with typed rules without changing any state."""
        user_input, _ = await self._owned_pending(caller, execution_id)
        if not isinstance(payload, dict):
            raise ValidationFailed(
                "Input data must be a JSON object",
                errors=[{"field": "inputData", "message": "Must be an object"}],
            )
        return validate_input(payload, user_input.input_schema, strict=True)

    async def submit_for_execution(
        self, caller: Caller, execution_id: UUID | str, payload: Any
    ) -> ResumeResult:
        user_input, execution = await self._owned_pending(caller, execution_id)
        return await self._deliver(user_input, execution, payload, strict=True)

    async def input_requirement(
        self, caller: Caller, execution_id: UUID | str
    ) -> ExecutionInputView:
        execution = await self.db.find_execution(execution_id, caller.user_id, caller.workspace_id)
        if execution is None:
            raise NotFound("Execution not found")
        now = self.clock()
        requirement = None
        if execution.is_waiting_for_input:
            remaining = None
            if execution.timeout_at is not None:
                remaining = max(0, int((execution.timeout_at - now).total_seconds() * 1000))
            requirement = InputRequirementView(
                step=execution.current_step,
                input_schema=execution.input_schema,
                timeout_at=execution.timeout_at,
                is_expired=execution.timeout_at is not None and execution.timeout_at <= now,
                time_remaining=remaining,
                webhook_url=execution.webhook_url,
            )
        return ExecutionInputView(
            execution_id=execution.id,
            status=execution.status,
            is_waiting_for_input=execution.is_waiting_for_input,
            input_requirement=requirement,
            input_history=execution.input_history or [],
        )

    async def _expire_and_raise(
        self, user_input: UserInput, execution: WorkflowExecution, now: datetime
    ) -> None:
        _, execution_won = await self.tracker.expire(user_input, now, execution)
        if execution_won:
            latest = await self.db.get_execution(execution.id)
            await self.usage.record(latest)
        raise Gone("Input timeout has expired")

    async def _deliver(
        self,
        user_input: UserInput,
        execution: WorkflowExecution,
        payload: Any,
        strict: bool,
    ) -> ResumeResult:
        now = self.clock()

        if (
            user_input.status == InputStatus.EXPIRED.value
            or execution.status == ExecutionStatus.TIMEOUT.value
        ):
            raise Gone("Input timeout has expired")
        if user_input.is_expired(now):
            await self._expire_and_raise(user_input, execution, now)
        if user_input.status == InputStatus.RECEIVED.value:
            raise Conflict("Input already received")
        if execution.status != ExecutionStatus.WAITING_FOR_INPUT.value:
            raise Conflict("Execution is not waiting for input")

        if not isinstance(payload, dict):
            raise ValidationFailed(
                "Input data must be a JSON object",
                errors=[{"field": None, "message": "Input data must be a JSON object"}],
            )
        result = validate_input(payload, user_input.input_schema, strict=strict)
        if not result.is_valid:
            raise ValidationFailed("Input validation failed", errors=result.error_dicts())
        received: Dict[str, Any] = result.sanitized_data or {}

        history_entry = {
            "step": user_input.step,
            "inputData": received,
            "receivedAt": now.isoformat(),
            "webhookUrl": user_input.webhook_url,
        }
        input_won, _ = await self.db.settle_input(
            user_input.id,
            {"status": InputStatus.RECEIVED, "received_data": received, "received_at": now},
            execution.id,
            ExecutionStatus.WAITING_FOR_INPUT,
            {
                "status": ExecutionStatus.RUNNING,
                "is_waiting_for_input": False,
                "webhook_url": None,
                "input_schema": None,
                "timeout_at": None,
                "input_history": [*(execution.input_history or []), history_entry],
                "updated_at": now,
            },
        )
        if not input_won:
            latest = await self.db.get_input(user_input.id)
            logger.warning(f"Lost race delivering input {user_input.id} for execution {execution.id}")
            if latest is not None and latest.status == InputStatus.EXPIRED.value:
                raise Gone("Input timeout has expired")
            raise Conflict("Input already received")

        logger.info(f"Input received for execution {execution.id} at step {user_input.step}")
        execution = await self.db.get_execution(execution.id)

        try:
            engine_result = await self.engine.resume_workflow_with_input(
                execution.engine_execution_id, user_input.webhook_url, payload
            )
        except EngineError as exc:
            message = str(exc)
            if not message.startswith("Failed to resume workflow"):
                message = f"Failed to resume workflow: {message}"
            logger.error(f"Engine resume failed for execution {execution.id}: {message}")
            final = await finalize_execution(
                self.db, self.usage, execution, self.clock(), error_message=message
            )
            return ResumeResult(
                execution_id=final.id,
                status=final.status,
                success=False,
                error_message=final.error_message,
            )

        if engine_result.finished:
            final = await finalize_execution(
                self.db, self.usage, execution, self.clock(), engine_result
            )
            return ResumeResult(
                execution_id=final.id,
                status=final.status,
                success=final.status == ExecutionStatus.COMPLETED.value,
                error_message=final.error_message,
            )

        await self.db.update_execution(
            execution.id,
            output_data={**(execution.output_data or {}), **engine_result.result_data},
            engine_execution_id=engine_result.execution_id or execution.engine_execution_id,
            updated_at=self.clock(),
        )
        logger.info(f"Execution {execution.id} resumed and still running")
        return ResumeResult(
            execution_id=execution.id, status=ExecutionStatus.RUNNING.value, success=True
        )
