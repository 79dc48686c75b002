"""Execution coordinator: submit catalog workflows to the engine and track them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from .constants import ApiKeyType, ExecutionStatus
from .context import Caller
from .credentials import CredentialResolver, ResolvedCredential
from .db import ExecutionDB, UserInput, Workflow, WorkflowExecution
from .engine import EngineClient, EngineResult, has_suspend_nodes
from .errors import Conflict, EngineError, FlowgateError, NotFound, ValidationFailed
from .inputs import InputRequirementTracker
from .usage import UsageAccountant, extract_tokens_used
from .utils.clock import Clock, elapsed_ms, utcnow
from .views import ExecutionView

logger = logging.getLogger(__name__)

UNFINISHED_RUN_MESSAGE = "Engine reported the run did not finish"


@dataclass
class ExecutionHandle:
    """Execution record plus the input it is waiting on, if any."""

    execution: WorkflowExecution
    pending_input: Optional[UserInput] = None

    @property
    def success(self) -> bool:
        return self.execution.status != ExecutionStatus.FAILED.value

    def view(self) -> ExecutionView:
        return ExecutionView.from_record(self.execution, self.pending_input)


async def finalize_execution(
    db: ExecutionDB,
    usage: UsageAccountant,
    execution: WorkflowExecution,
    now: datetime,
    result: Optional[EngineResult] = None,
    error_message: Optional[str] = None,
) -> WorkflowExecution:
    """Move a ``running`` execution to its terminal status.

    Engine output is merged into ``output_data`` and its token usage added
    to ``api_key_used``. Usage is recorded only when this call wins the
    conditional write.
    """
    values: Dict[str, Any] = {
        "completed_at": now,
        "updated_at": now,
        "execution_time_ms": elapsed_ms(execution.started_at or execution.created_at, now),
    }
    if result is not None:
        values["output_data"] = {**(execution.output_data or {}), **result.result_data}
        if result.execution_id:
            values["engine_execution_id"] = result.execution_id
        key_used = dict(execution.api_key_used or {})
        key_used["tokensUsed"] = int(key_used.get("tokensUsed") or 0) + extract_tokens_used(
            result.result_data
        )
        values["api_key_used"] = key_used

    if error_message is not None:
        status = ExecutionStatus.FAILED
        values["error_message"] = error_message
    elif result is not None and result.finished:
        status = ExecutionStatus.COMPLETED
    else:
        status = ExecutionStatus.FAILED
        values["error_message"] = UNFINISHED_RUN_MESSAGE

    won = await db.transition_execution(
        execution.id, ExecutionStatus.RUNNING, status=status, **values
    )
    latest = await db.get_execution(execution.id)
    if not won:
        logger.warning(
            f"Execution {execution.id} left running before it could be marked {status.value}"
        )
        return latest or execution

    if status is ExecutionStatus.COMPLETED:
        logger.info(f"Execution {execution.id} completed in {values['execution_time_ms']}ms")
    else:
        logger.info(f"Execution {execution.id} failed: {values.get('error_message')}")
    await usage.record(latest)
    return latest


class ExecutionCoordinator:
    """Create executions, resolve credentials and drive the engine call.

    Runs whose workflow contains a wait or webhook node use the engine's
    two-phase entrypoint; when the engine reports a suspend point the run is
    parked in ``waiting_for_input`` through the input tracker.
    """

    def __init__(
        self,
        db: ExecutionDB,
        engine: EngineClient,
        credentials: CredentialResolver,
        tracker: InputRequirementTracker,
        usage: UsageAccountant,
        input_timeout_minutes: int = 60,
        clock: Clock = utcnow,
    ) -> None:
        self.db = db
        self.engine = engine
        self.credentials = credentials
        self.tracker = tracker
        self.usage = usage
        self.input_timeout_minutes = input_timeout_minutes
        self.clock = clock

    @staticmethod
    def has_suspend_nodes(workflow: Workflow) -> bool:
        return has_suspend_nodes(workflow.nodes or [])

    async def submit(
        self,
        caller: Caller,
        workflow_id: str,
        input_data: Optional[Dict[str, Any]] = None,
        api_key_type: ApiKeyType | str = ApiKeyType.PLATFORM,
        api_key_id: Optional[str] = None,
        email_results: bool = False,
    ) -> ExecutionHandle:
        """Start one run of ``workflow_id`` on behalf of ``caller``.

        Raises:
            NotFound: The workflow is missing or inactive, or the customer
                key does not exist for the caller.
            ValidationFailed: The key type is unknown or a customer key id
                is missing.
            ConfigurationError: No usable key could be decrypted or configured.
        """
        workflow = await self.db.get_workflow(workflow_id)
        if workflow is None or not workflow.is_active:
            raise NotFound("Workflow not found or inactive")
        try:
            key_type = ApiKeyType(api_key_type)
        except ValueError as exc:
            raise ValidationFailed(
                f"Unsupported API key type: {api_key_type}",
                errors=[{"field": "apiKeyType", "message": "Must be 'customer' or 'platform'"}],
            ) from exc

        now = self.clock()
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            user_id=caller.user_id,
            workspace_id=caller.workspace_id,
            status=ExecutionStatus.PENDING.value,
            input_data=input_data or {},
            api_key_type=key_type.value,
            email_results=email_results,
            created_at=now,
            updated_at=now,
        )
        await self.db.create_execution(execution)
        logger.info(
            f"Execution {execution.id} submitted for workflow {workflow.id} by user {caller.user_id}"
        )

        try:
            credential = await self.credentials.resolve(
                key_type,
                api_key_id,
                caller.workspace_id,
                caller.user_id,
                workflow.estimated_cost,
            )
        except FlowgateError as exc:
            await self._fail_pending(execution, exc.message)
            raise

        started = self.clock()
        won = await self.db.transition_execution(
            execution.id,
            ExecutionStatus.PENDING,
            status=ExecutionStatus.RUNNING,
            started_at=started,
            updated_at=started,
            api_key_id=credential.key_id,
            api_key_used={
                "type": credential.key_type.value,
                "provider": credential.provider,
                "cost": credential.cost_basis,
                "tokensUsed": 0,
            },
        )
        if not won:
            raise Conflict(f"Execution {execution.id} was modified before it could start")
        execution = await self.db.get_execution(execution.id)

        if self.has_suspend_nodes(workflow):
            return await self._run_dynamic(workflow, execution, credential)
        return await self._run_sync(workflow, execution, credential)

    async def _fail_pending(self, execution: WorkflowExecution, message: str) -> None:
        now = self.clock()
        won = await self.db.transition_execution(
            execution.id,
            ExecutionStatus.PENDING,
            status=ExecutionStatus.FAILED,
            error_message=message,
            completed_at=now,
            execution_time_ms=0,
            updated_at=now,
        )
        logger.info(f"Execution {execution.id} failed before start: {message}")
        if won:
            latest = await self.db.get_execution(execution.id)
            await self.usage.record(latest)

    async def _run_sync(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        credential: ResolvedCredential,
    ) -> ExecutionHandle:
        try:
            if workflow.requires_api_key:
                result = await self.engine.execute_workflow_with_credentials(
                    workflow.engine_workflow_id,
                    execution.input_data,
                    credential.engine_credentials(),
                )
            else:
                result = await self.engine.execute_workflow(
                    workflow.engine_workflow_id, execution.input_data
                )
        except EngineError as exc:
            logger.error(f"Engine call failed for execution {execution.id}: {exc}")
            final = await finalize_execution(
                self.db, self.usage, execution, self.clock(), error_message=str(exc)
            )
            return ExecutionHandle(execution=final)

        final = await finalize_execution(self.db, self.usage, execution, self.clock(), result)
        return ExecutionHandle(execution=final)

    async def _run_dynamic(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        credential: ResolvedCredential,
    ) -> ExecutionHandle:
        credentials = credential.engine_credentials() if workflow.requires_api_key else None
        try:
            dynamic = await self.engine.execute_workflow_with_dynamic_input(
                workflow.engine_workflow_id,
                execution.input_data,
                credentials,
                timeout_minutes=self.input_timeout_minutes,
                step=execution.current_step + 1,
            )
        except EngineError as exc:
            logger.error(f"Engine call failed for execution {execution.id}: {exc}")
            final = await finalize_execution(
                self.db, self.usage, execution, self.clock(), error_message=str(exc)
            )
            return ExecutionHandle(execution=final)

        if not dynamic.suspended:
            final = await finalize_execution(
                self.db, self.usage, execution, self.clock(), dynamic.execution
            )
            return ExecutionHandle(execution=final)

        requirement, *extra = dynamic.inputs_required
        if extra:
            logger.warning(
                f"Engine reported {len(extra)} additional input requirement(s) for execution "
                f"{execution.id}; only step {requirement.step} is tracked"
            )

        await self.db.update_execution(
            execution.id,
            engine_execution_id=dynamic.execution.execution_id,
            output_data=dynamic.execution.result_data,
            updated_at=self.clock(),
        )
        execution = await self.db.get_execution(execution.id)
        try:
            pending = await self.tracker.create_requirement(
                execution,
                requirement.input_schema,
                requirement.webhook_url,
                self.input_timeout_minutes,
                workflow_name=workflow.name,
            )
        except Conflict as exc:
            logger.error(f"Could not park execution {execution.id}: {exc}")
            final = await finalize_execution(
                self.db,
                self.usage,
                execution,
                self.clock(),
                error_message=f"Could not record input requirement: {exc.message}",
            )
            return ExecutionHandle(execution=final)

        latest = await self.db.get_execution(execution.id)
        return ExecutionHandle(execution=latest, pending_input=pending)

    async def get_execution(self, caller: Caller, execution_id: UUID | str) -> ExecutionHandle:
        execution = await self.db.find_execution(execution_id, caller.user_id, caller.workspace_id)
        if execution is None:
            raise NotFound("Execution not found")
        pending = None
        if execution.is_waiting_for_input:
            pending = await self.tracker.get_pending(execution.id)
        return ExecutionHandle(execution=execution, pending_input=pending)

    async def list_executions(
        self,
        caller: Caller,
        status: Optional[str] = None,
        workflow_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ExecutionView]:
        if status is not None:
            try:
                status = ExecutionStatus(status).value
            except ValueError as exc:
                raise ValidationFailed(
                    f"Invalid status: {status}",
                    errors=[{"field": "status", "message": "Unknown execution status"}],
                ) from exc
        records = await self.db.list_executions(
            caller.user_id, caller.workspace_id, status, workflow_id, limit, offset
        )
        return [ExecutionView.from_record(record) for record in records]
