"""Read models returned by services and serialized by the API and CLI."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .db import UserInput, WorkflowExecution


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class RequirementView(CamelModel):
    step: int
    webhook_url: str
    input_schema: Optional[Dict[str, Any]] = None
    timeout_at: datetime


class DynamicInputView(CamelModel):
    is_waiting_for_input: bool = False
    current_step: int = 0
    webhook_url: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = None
    timeout_at: Optional[datetime] = None
    inputs_required: Optional[List[RequirementView]] = None


class ExecutionView(CamelModel):
    """Client-facing projection of a :class:`WorkflowExecution`."""

    id: UUID
    workflow_id: str
    status: str
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    engine_execution_id: Optional[str] = None
    execution_time_ms: Optional[int] = None
    api_key_used: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    dynamic_input: DynamicInputView = Field(default_factory=DynamicInputView)

    @classmethod
    def from_record(
        cls, execution: WorkflowExecution, pending: Optional[UserInput] = None
    ) -> "ExecutionView":
        dynamic = DynamicInputView(
            is_waiting_for_input=execution.is_waiting_for_input,
            current_step=execution.current_step,
            webhook_url=execution.webhook_url,
            input_schema=execution.input_schema,
            timeout_at=execution.timeout_at,
        )
        if pending is not None:
            dynamic.inputs_required = [
                RequirementView(
                    step=pending.step,
                    webhook_url=pending.webhook_url,
                    input_schema=pending.input_schema,
                    timeout_at=pending.timeout_at,
                )
            ]
        return cls(
            id=execution.id,
            workflow_id=execution.workflow_id,
            status=execution.status,
            input_data=execution.input_data or {},
            output_data=execution.output_data or None,
            engine_execution_id=execution.engine_execution_id,
            execution_time_ms=execution.execution_time_ms,
            api_key_used=execution.api_key_used,
            error_message=execution.error_message,
            created_at=execution.created_at,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            dynamic_input=dynamic,
        )


class ExecutionSummary(CamelModel):
    id: UUID
    workflow_name: Optional[str] = None
    status: str
    started_at: Optional[datetime] = None


class PendingInputItem(CamelModel):
    id: UUID
    execution_id: UUID
    step: int
    webhook_url: str
    input_schema: Optional[Dict[str, Any]] = None
    status: str
    timeout_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    time_remaining: int
    time_remaining_minutes: int
    is_expired: bool
    execution: Optional[ExecutionSummary] = None

    @classmethod
    def from_record(
        cls,
        user_input: UserInput,
        now: datetime,
        execution: Optional[WorkflowExecution] = None,
    ) -> "PendingInputItem":
        remaining = user_input.time_remaining_ms(now)
        summary = None
        if execution is not None:
            summary = ExecutionSummary(
                id=execution.id,
                workflow_name=user_input.workflow_name or execution.workflow_id,
                status=execution.status,
                started_at=execution.started_at,
            )
        return cls(
            id=user_input.id,
            execution_id=user_input.execution_id,
            step=user_input.step,
            webhook_url=user_input.webhook_url,
            input_schema=user_input.input_schema,
            status=user_input.status,
            timeout_at=user_input.timeout_at,
            metadata=user_input.metadata_view(),
            created_at=user_input.created_at,
            time_remaining=remaining,
            time_remaining_minutes=remaining // 60000,
            is_expired=user_input.is_expired(now),
            execution=summary,
        )


class Pagination(CamelModel):
    total: int
    limit: int
    has_more: bool


class PendingSummary(CamelModel):
    total_pending: int
    high_priority_count: int
    expiring_count: int


class PendingInputs(CamelModel):
    inputs: List[PendingInputItem] = Field(default_factory=list)
    pagination: Pagination
    summary: PendingSummary


class InputRequirementView(CamelModel):
    """Current input request of a waiting execution."""

    step: int
    input_schema: Optional[Dict[str, Any]] = None
    timeout_at: Optional[datetime] = None
    is_expired: bool = False
    time_remaining: Optional[int] = None
    webhook_url: Optional[str] = None


class PendingInputRef(CamelModel):
    id: UUID
    metadata: Dict[str, Any] = Field(default_factory=dict)
    time_remaining: int


class WebhookStatus(CamelModel):
    execution: ExecutionSummary
    input_requirement: Optional[InputRequirementView] = None
    pending_input: Optional[PendingInputRef] = None


class ExecutionInputView(CamelModel):
    execution_id: UUID
    status: str
    is_waiting_for_input: bool
    input_requirement: Optional[InputRequirementView] = None
    input_history: List[Dict[str, Any]] = Field(default_factory=list)
