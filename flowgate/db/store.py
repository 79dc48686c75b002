"""Async persistence for executions, inputs, catalog entries and the sweep lock.

Every status change goes through a conditional ``UPDATE ... WHERE status =
:expected`` so that concurrent writers (a webhook resume racing the cleanup
sweep, duplicate webhook deliveries) detect a lost race through the affected
row count instead of overwriting each other.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Optional, Union
from uuid import UUID

from sqlalchemy import case, delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, col, select

from ..constants import PRIORITY_RANK, ExecutionStatus, InputStatus, Priority
from ..utils.clock import utcnow
from .models import CustomerApiKey, SweepLock, UserInput, Workflow, WorkflowExecution

logger = logging.getLogger(__name__)

StatusLike = Union[str, Iterable[str]]


def parse_id(value: UUID | str) -> Optional[UUID]:
    """Coerce ``value`` to a UUID, returning ``None`` for malformed ids."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def _statuses(expected: StatusLike) -> list[str]:
    if isinstance(expected, str):
        return [getattr(expected, "value", expected)]
    return [getattr(s, "value", s) for s in expected]


class ExecutionDB:
    """Async database helper for workflow execution persistence."""

    def __init__(self, database_url: str) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.database_url = database_url
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    # ------------------------------------------------------------------
    # Catalog
    async def add_workflow(self, workflow: Workflow) -> Workflow:
        async with self.session() as session:
            merged = await session.merge(workflow)
            await session.commit()
        return merged

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        async with self.session() as session:
            return await session.get(Workflow, workflow_id)

    async def record_workflow_usage(
        self, workflow_id: str, execution_time_ms: int, success: bool, at: datetime
    ) -> bool:
        """Fold one terminal execution into the workflow's rolling aggregate.

        The new values are computed from the old column values inside a single
        UPDATE, so concurrent terminal transitions never lose an increment.
        """
        won = 1 if success else 0
        total = col(Workflow.total_executions)
        successes = col(Workflow.successful_executions)
        avg = col(Workflow.avg_execution_time_ms)
        stmt = (
            update(Workflow)
            .where(col(Workflow.id) == workflow_id)
            .values(
                total_executions=total + 1,
                successful_executions=successes + won,
                avg_execution_time_ms=case(
                    (avg == 0, float(execution_time_ms)),
                    else_=(avg + execution_time_ms) / 2.0,
                ),
                success_rate=(successes + won) * 100.0 / (total + 1),
                last_executed_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Customer API keys
    async def add_api_key(self, api_key: CustomerApiKey) -> CustomerApiKey:
        async with self.session() as session:
            session.add(api_key)
            await session.commit()
        return api_key

    async def get_api_key(self, key_id: UUID | str) -> CustomerApiKey | None:
        parsed = parse_id(key_id)
        if parsed is None:
            return None
        async with self.session() as session:
            return await session.get(CustomerApiKey, parsed)

    async def get_active_api_key(
        self, key_id: UUID | str, user_id: str, workspace_id: str
    ) -> CustomerApiKey | None:
        parsed = parse_id(key_id)
        if parsed is None:
            return None
        stmt = select(CustomerApiKey).where(
            col(CustomerApiKey.id) == parsed,
            col(CustomerApiKey.user_id) == user_id,
            col(CustomerApiKey.workspace_id) == workspace_id,
            col(CustomerApiKey.is_active).is_(True),
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def record_key_usage(self, key_id: UUID, tokens_used: int, at: datetime) -> bool:
        stmt = (
            update(CustomerApiKey)
            .where(col(CustomerApiKey.id) == key_id)
            .values(
                total_requests=col(CustomerApiKey.total_requests) + 1,
                total_tokens=col(CustomerApiKey.total_tokens) + tokens_used,
                last_used_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self.session() as session:
            session.add(execution)
            await session.commit()
        return execution

    async def get_execution(self, execution_id: UUID | str) -> WorkflowExecution | None:
        parsed = parse_id(execution_id)
        if parsed is None:
            return None
        async with self.session() as session:
            return await session.get(WorkflowExecution, parsed)

    async def find_execution(
        self, execution_id: UUID | str, user_id: str, workspace_id: str
    ) -> WorkflowExecution | None:
        execution = await self.get_execution(execution_id)
        if execution is None:
            return None
        if execution.user_id != user_id or execution.workspace_id != workspace_id:
            return None
        return execution

    async def list_executions(
        self,
        user_id: str,
        workspace_id: str,
        status: Optional[str] = None,
        workflow_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        stmt = select(WorkflowExecution).where(
            col(WorkflowExecution.user_id) == user_id,
            col(WorkflowExecution.workspace_id) == workspace_id,
        )
        if status:
            stmt = stmt.where(col(WorkflowExecution.status) == status)
        if workflow_id:
            stmt = stmt.where(col(WorkflowExecution.workflow_id) == workflow_id)
        stmt = stmt.order_by(col(WorkflowExecution.created_at).desc()).offset(offset).limit(limit)
        async with self.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def transition_execution(
        self, execution_id: UUID, expected: StatusLike, **values: Any
    ) -> bool:
        """Apply ``values`` only if the execution is still in ``expected`` status."""
        async with self.session() as session:
            won = await self._cas_execution(session, execution_id, expected, values)
            await session.commit()
        return won

    async def update_execution(self, execution_id: UUID, **values: Any) -> None:
        """Write non-status bookkeeping fields (usage, engine ids)."""
        values.pop("status", None)
        stmt = (
            update(WorkflowExecution)
            .where(col(WorkflowExecution.id) == execution_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def find_stale_waiting_executions(self, now: datetime) -> list[WorkflowExecution]:
        stmt = select(WorkflowExecution).where(
            col(WorkflowExecution.status) == ExecutionStatus.WAITING_FOR_INPUT.value,
            col(WorkflowExecution.is_waiting_for_input).is_(True),
            col(WorkflowExecution.timeout_at) <= now,
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def _cas_execution(
        self,
        session: AsyncSession,
        execution_id: UUID,
        expected: StatusLike,
        values: dict[str, Any],
    ) -> bool:
        values = dict(values)
        if "status" in values:
            values["status"] = getattr(values["status"], "value", values["status"])
        values.setdefault("updated_at", utcnow())
        stmt = (
            update(WorkflowExecution)
            .where(
                col(WorkflowExecution.id) == execution_id,
                col(WorkflowExecution.status).in_(_statuses(expected)),
            )
            .values(version=col(WorkflowExecution.version) + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def _cas_input(
        self,
        session: AsyncSession,
        input_id: UUID,
        expected: StatusLike,
        values: dict[str, Any],
    ) -> bool:
        values = dict(values)
        if "status" in values:
            values["status"] = getattr(values["status"], "value", values["status"])
        stmt = (
            update(UserInput)
            .where(
                col(UserInput.id) == input_id,
                col(UserInput.status).in_(_statuses(expected)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Paired input/execution transitions
    async def open_requirement(
        self,
        user_input: UserInput,
        expected_execution_status: StatusLike,
        execution_values: dict[str, Any],
    ) -> bool:
        """Insert ``user_input`` and park its execution in one transaction.

        Returns ``False`` (and persists nothing) when the execution has already
        left ``expected_execution_status`` or the webhook URL is taken.
        """
        async with self.session() as session:
            try:
                session.add(user_input)
                await session.flush()
                won = await self._cas_execution(
                    session, user_input.execution_id, expected_execution_status, execution_values
                )
            except IntegrityError:
                await session.rollback()
                logger.warning(f"Webhook URL already registered: {user_input.webhook_url}")
                return False
            if not won:
                await session.rollback()
                return False
            await session.commit()
        return True

    async def settle_input(
        self,
        input_id: UUID,
        input_values: dict[str, Any],
        execution_id: UUID,
        expected_execution_status: StatusLike,
        execution_values: dict[str, Any],
        require_execution: bool = True,
    ) -> tuple[bool, bool]:
        """Move a pending input to a terminal status together with its execution.

        Returns ``(input_won, execution_won)``. When ``require_execution`` is
        true, losing the execution write rolls back the input write as well.
        """
        async with self.session() as session:
            input_won = await self._cas_input(
                session, input_id, InputStatus.PENDING.value, input_values
            )
            if not input_won:
                await session.rollback()
                return False, False
            execution_won = await self._cas_execution(
                session, execution_id, expected_execution_status, execution_values
            )
            if require_execution and not execution_won:
                await session.rollback()
                return False, False
            await session.commit()
        return True, execution_won

    # ------------------------------------------------------------------
    # User inputs
    async def get_input(self, input_id: UUID | str) -> UserInput | None:
        parsed = parse_id(input_id)
        if parsed is None:
            return None
        async with self.session() as session:
            return await session.get(UserInput, parsed)

    async def get_input_by_webhook_url(self, webhook_url: str) -> UserInput | None:
        stmt = select(UserInput).where(col(UserInput.webhook_url) == webhook_url)
        async with self.session() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def get_pending_input(self, execution_id: UUID) -> UserInput | None:
        stmt = select(UserInput).where(
            col(UserInput.execution_id) == execution_id,
            col(UserInput.status) == InputStatus.PENDING.value,
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def list_inputs(self, execution_id: UUID) -> list[UserInput]:
        stmt = (
            select(UserInput)
            .where(col(UserInput.execution_id) == execution_id)
            .order_by(col(UserInput.step))
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    def _pending_query(
        self,
        stmt: Any,
        user_id: str,
        workspace_id: str,
        now: datetime,
        priority: Optional[str],
        workflow_id: Optional[str],
        joined: bool = False,
    ) -> Any:
        stmt = stmt.where(
            col(UserInput.user_id) == user_id,
            col(UserInput.workspace_id) == workspace_id,
            col(UserInput.status) == InputStatus.PENDING.value,
            col(UserInput.timeout_at) > now,
        )
        if priority:
            stmt = stmt.where(col(UserInput.priority) == priority)
        if workflow_id:
            if not joined:
                stmt = stmt.join(
                    WorkflowExecution, col(WorkflowExecution.id) == col(UserInput.execution_id)
                )
            stmt = stmt.where(col(WorkflowExecution.workflow_id) == workflow_id)
        return stmt

    async def list_pending_inputs(
        self,
        user_id: str,
        workspace_id: str,
        now: datetime,
        limit: int = 10,
        priority: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> list[tuple[UserInput, WorkflowExecution]]:
        """Pending inputs with their executions, most urgent first."""
        rank = case(
            *[(col(UserInput.priority) == name, value) for name, value in PRIORITY_RANK.items()],
            else_=0,
        )
        stmt = select(UserInput, WorkflowExecution).join(
            WorkflowExecution, col(WorkflowExecution.id) == col(UserInput.execution_id)
        )
        stmt = self._pending_query(
            stmt, user_id, workspace_id, now, priority, workflow_id, joined=True
        )
        stmt = stmt.order_by(rank.desc(), col(UserInput.timeout_at).asc()).limit(limit)
        async with self.session() as session:
            result = await session.execute(stmt)
            return [(user_input, execution) for user_input, execution in result.all()]

    async def count_pending_inputs(
        self,
        user_id: str,
        workspace_id: str,
        now: datetime,
        priority: Optional[str] = None,
        workflow_id: Optional[str] = None,
        expiring_before: Optional[datetime] = None,
    ) -> int:
        stmt = self._pending_query(
            select(func.count()).select_from(UserInput),
            user_id,
            workspace_id,
            now,
            priority,
            workflow_id,
        )
        if expiring_before is not None:
            stmt = stmt.where(col(UserInput.timeout_at) < expiring_before)
        async with self.session() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def count_high_priority_inputs(
        self, user_id: str, workspace_id: str, now: datetime, workflow_id: Optional[str] = None
    ) -> int:
        return await self.count_pending_inputs(
            user_id, workspace_id, now, priority=Priority.HIGH.value, workflow_id=workflow_id
        )

    async def find_expired_inputs(self, now: datetime) -> list[UserInput]:
        stmt = select(UserInput).where(
            col(UserInput.status) == InputStatus.PENDING.value,
            col(UserInput.timeout_at) <= now,
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def purge_inputs(self, before: datetime) -> int:
        stmt = (
            delete(UserInput)
            .where(
                col(UserInput.status).in_(
                    [InputStatus.RECEIVED.value, InputStatus.EXPIRED.value]
                ),
                col(UserInput.created_at) < before,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # Sweep lock
    async def get_lock(self, name: str) -> SweepLock | None:
        async with self.session() as session:
            return await session.get(SweepLock, name)

    async def acquire_lock(self, name: str, owner: str, now: datetime, expires_at: datetime) -> bool:
        """Claim the named lock if it is free or its lease has lapsed."""
        async with self.session() as session:
            if await session.get(SweepLock, name) is None:
                try:
                    session.add(SweepLock(name=name))
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
            stmt = (
                update(SweepLock)
                .where(
                    col(SweepLock.name) == name,
                    or_(col(SweepLock.owner).is_(None), col(SweepLock.expires_at) <= now),
                )
                .values(owner=owner, acquired_at=now, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def release_lock(
        self, name: str, owner: str, now: datetime, stats: Optional[dict] = None
    ) -> bool:
        stmt = (
            update(SweepLock)
            .where(col(SweepLock.name) == name, col(SweepLock.owner) == owner)
            .values(owner=None, expires_at=None, last_run_at=now, last_stats=stats)
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1
