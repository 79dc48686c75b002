from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from ..constants import ExecutionStatus, InputStatus, Priority
from ..utils.clock import utcnow


class Workflow(SQLModel, table=True):
    """Catalog entry for a workflow that the external engine can run."""

    id: str = Field(primary_key=True)
    engine_workflow_id: str = Field(index=True, unique=True)
    name: str
    description: str = ""
    is_active: bool = Field(default=True, index=True)
    requires_api_key: bool = True
    estimated_cost: float = 0.0
    api_key_provider: str = "openrouter"
    nodes: list = Field(default_factory=list, sa_column=Column(JSON))
    input_schema: dict = Field(default_factory=dict, sa_column=Column(JSON))

    # Rolling usage aggregate, maintained by the usage accountant.
    total_executions: int = 0
    successful_executions: int = 0
    avg_execution_time_ms: float = 0.0
    success_rate: float = 100.0
    last_executed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class CustomerApiKey(SQLModel, table=True):
    """Caller-owned provider key, stored encrypted."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(index=True)
    workspace_id: str = Field(index=True)
    name: str = ""
    provider: str = "openrouter"
    encrypted_api_key: str
    is_active: bool = True
    total_requests: int = 0
    total_tokens: int = 0
    last_used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowExecution(SQLModel, table=True):
    """One run of a catalog workflow against specific input data."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    workflow_id: str = Field(foreign_key="workflow.id", index=True)
    user_id: str = Field(index=True)
    workspace_id: str = Field(index=True)
    status: str = Field(default=ExecutionStatus.PENDING.value, index=True)
    input_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    output_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    engine_execution_id: Optional[str] = None
    api_key_type: str = "platform"
    api_key_id: Optional[UUID] = None
    email_results: bool = False
    api_key_used: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    # Dynamic input state
    is_waiting_for_input: bool = Field(default=False, index=True)
    current_step: int = 0
    webhook_url: Optional[str] = Field(default=None, index=True)
    input_schema: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    timeout_at: Optional[datetime] = Field(default=None, index=True)
    input_history: list = Field(default_factory=list, sa_column=Column(JSON))

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    execution_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def dynamic_input(self) -> dict[str, Any]:
        return {
            "isWaitingForInput": self.is_waiting_for_input,
            "currentStep": self.current_step,
            "webhookUrl": self.webhook_url,
            "inputSchema": self.input_schema,
            "timeoutAt": self.timeout_at,
        }


class UserInput(SQLModel, table=True):
    """A single pending request for human-supplied data at one execution step."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    execution_id: UUID = Field(foreign_key="workflowexecution.id", index=True)
    user_id: str = Field(index=True)
    workspace_id: str = Field(index=True)
    step: int
    webhook_url: str = Field(unique=True, index=True)
    input_schema: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    status: str = Field(default=InputStatus.PENDING.value, index=True)
    timeout_at: datetime = Field(index=True)
    received_data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    received_at: Optional[datetime] = None

    # Informational metadata, used for prioritized listing
    priority: str = Priority.MEDIUM.value
    step_description: str = ""
    requires_immediate: bool = False
    workflow_name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def metadata_view(self) -> dict[str, Any]:
        return {
            "priority": self.priority,
            "stepDescription": self.step_description,
            "requiresImmediate": self.requires_immediate,
            "workflowName": self.workflow_name,
        }

    def time_remaining_ms(self, now: datetime) -> int:
        if self.status != InputStatus.PENDING.value:
            return 0
        return max(0, int((self.timeout_at - now).total_seconds() * 1000))

    def is_expired(self, now: datetime) -> bool:
        # A deadline equal to ``now`` has already passed.
        return self.status == InputStatus.PENDING.value and self.timeout_at <= now


class SweepLock(SQLModel, table=True):
    """Persisted single-flight lock shared by every cleanup sweep trigger."""

    name: str = Field(primary_key=True)
    owner: Optional[str] = None
    acquired_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_stats: Optional[dict] = Field(default=None, sa_column=Column(JSON))
