"""Track the human inputs a suspended execution is waiting for."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from uuid import UUID

from .constants import ExecutionStatus, InputStatus, Priority
from .context import Caller
from .db import ExecutionDB, UserInput, WorkflowExecution
from .errors import Conflict, ValidationFailed
from .utils.clock import Clock, elapsed_ms, utcnow
from .views import Pagination, PendingInputItem, PendingInputs, PendingSummary

logger = logging.getLogger(__name__)


class InputRequirementTracker:
    """Create and list :class:`UserInput` records.

    At most one input per execution is ``pending`` at any time. Opening a new
    requirement and moving the execution into ``waiting_for_input`` happen in
    one transaction.
    """

    def __init__(
        self,
        db: ExecutionDB,
        expiring_window_minutes: int = 15,
        clock: Clock = utcnow,
    ) -> None:
        self.db = db
        self.expiring_window = timedelta(minutes=expiring_window_minutes)
        self.clock = clock

    async def create_requirement(
        self,
        execution: WorkflowExecution,
        schema: Optional[Dict[str, Any]],
        webhook_url: str,
        timeout_minutes: int,
        workflow_name: Optional[str] = None,
        priority: Priority = Priority.MEDIUM,
        step_description: Optional[str] = None,
    ) -> UserInput:
        """Open the next input step for ``execution`` and park it.

        Raises:
            Conflict: Another input is already pending for the execution, or
                the execution left ``running`` before it could be parked.
        """
        if await self.db.get_pending_input(execution.id) is not None:
            raise Conflict(f"Execution {execution.id} already has a pending input")

        now = self.clock()
        step = execution.current_step + 1
        timeout_at = now + timedelta(minutes=timeout_minutes)
        user_input = UserInput(
            execution_id=execution.id,
            user_id=execution.user_id,
            workspace_id=execution.workspace_id,
            step=step,
            webhook_url=webhook_url,
            input_schema=schema,
            status=InputStatus.PENDING.value,
            timeout_at=timeout_at,
            priority=Priority(priority).value,
            step_description=step_description or f"Step {step} - User input required",
            requires_immediate=False,
            workflow_name=workflow_name,
            created_at=now,
        )
        won = await self.db.open_requirement(
            user_input,
            ExecutionStatus.RUNNING,
            {
                "status": ExecutionStatus.WAITING_FOR_INPUT,
                "is_waiting_for_input": True,
                "current_step": step,
                "webhook_url": webhook_url,
                "input_schema": schema,
                "timeout_at": timeout_at,
                "updated_at": now,
            },
        )
        if not won:
            raise Conflict(f"Could not open input step {step} for execution {execution.id}")

        logger.info(
            f"Execution {execution.id} waiting for input at step {step} (times out {timeout_at.isoformat()})"
        )
        return user_input

    async def get_pending(self, execution_id: UUID) -> Optional[UserInput]:
        return await self.db.get_pending_input(execution_id)

    async def list_pending(
        self,
        caller: Caller,
        limit: int = 10,
        priority: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> PendingInputs:
        now = self.clock()
        if priority is not None:
            try:
                priority = Priority(priority).value
            except ValueError as exc:
                raise ValidationFailed(
                    f"Invalid priority: {priority}",
                    errors=[{"field": "priority", "message": "Must be one of: low, medium, high"}],
                ) from exc
        records = await self.db.list_pending_inputs(
            caller.user_id, caller.workspace_id, now, limit, priority, workflow_id
        )
        total = await self.db.count_pending_inputs(
            caller.user_id, caller.workspace_id, now, priority, workflow_id
        )
        high = await self.db.count_high_priority_inputs(
            caller.user_id, caller.workspace_id, now, workflow_id
        )
        expiring = await self.db.count_pending_inputs(
            caller.user_id,
            caller.workspace_id,
            now,
            priority,
            workflow_id,
            expiring_before=now + self.expiring_window,
        )

        items = [
            PendingInputItem.from_record(record, now, execution) for record, execution in records
        ]

        return PendingInputs(
            inputs=items,
            pagination=Pagination(total=total, limit=limit, has_more=total > limit),
            summary=PendingSummary(
                total_pending=total,
                high_priority_count=high,
                expiring_count=expiring,
            ),
        )

    async def expire(
        self,
        user_input: UserInput,
        now: datetime,
        execution: Optional[WorkflowExecution] = None,
    ) -> tuple[bool, bool]:
        """Expire a lapsed input and time out its execution together.

        Returns ``(input_won, execution_won)``. The execution is only moved
        when it is still ``waiting_for_input``; a caller that gets
        ``execution_won`` is the one that must record usage.
        """
        if execution is None:
            execution = await self.db.get_execution(user_input.execution_id)
        started_at = (execution.started_at or execution.created_at) if execution else None
        input_won, execution_won = await self.db.settle_input(
            user_input.id,
            {"status": InputStatus.EXPIRED},
            user_input.execution_id,
            ExecutionStatus.WAITING_FOR_INPUT,
            {
                "status": ExecutionStatus.TIMEOUT,
                "is_waiting_for_input": False,
                "completed_at": now,
                "updated_at": now,
                "execution_time_ms": elapsed_ms(started_at, now),
                "error_message": f"Workflow timed out waiting for user input at step {user_input.step}",
            },
            require_execution=False,
        )
        if input_won:
            logger.info(f"Input {user_input.id} for execution {user_input.execution_id} expired")
        if execution_won:
            logger.info(
                f"Execution {user_input.execution_id} timed out waiting for input at step {user_input.step}"
            )
        return input_won, execution_won
