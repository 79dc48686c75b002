"""Tests for the input requirement tracker."""

import pytest

from flowgate.constants import ExecutionStatus, Priority
from flowgate.context import Caller
from flowgate.db import WorkflowExecution
from flowgate.errors import Conflict, ValidationFailed

SCHEMA = {"answer": {"type": "string", "required": True}}


async def _running(runtime, workflow_id="summarize", user_id="user-1"):
    now = runtime.clock()
    return await runtime.db.create_execution(
        WorkflowExecution(
            workflow_id=workflow_id,
            user_id=user_id,
            workspace_id="ws-1",
            status=ExecutionStatus.RUNNING.value,
            started_at=now,
        )
    )


@pytest.mark.asyncio
async def test_create_requirement_parks_execution(runtime, seed_workflow, clock):
    await seed_workflow("summarize")
    execution = await _running(runtime)

    user_input = await runtime.tracker.create_requirement(
        execution, SCHEMA, "http://engine.test/webhook/s-1", 30, workflow_name="Summarize"
    )

    assert user_input.step == 1
    assert user_input.status == "pending"
    assert user_input.step_description == "Step 1 - User input required"
    assert user_input.priority == "medium"
    assert user_input.timeout_at == clock.now.replace(minute=30)

    parked = await runtime.db.get_execution(execution.id)
    assert parked.status == "waiting_for_input"
    assert parked.is_waiting_for_input
    assert parked.current_step == 1
    assert parked.webhook_url == "http://engine.test/webhook/s-1"
    assert parked.input_schema == SCHEMA
    assert parked.timeout_at == user_input.timeout_at


@pytest.mark.asyncio
async def test_second_pending_requirement_is_rejected(runtime, seed_workflow):
    await seed_workflow("summarize")
    execution = await _running(runtime)
    await runtime.tracker.create_requirement(execution, SCHEMA, "http://engine.test/webhook/a", 30)

    with pytest.raises(Conflict):
        await runtime.tracker.create_requirement(
            execution, SCHEMA, "http://engine.test/webhook/b", 30
        )
    assert await runtime.db.get_input_by_webhook_url("http://engine.test/webhook/b") is None


@pytest.mark.asyncio
async def test_requirement_needs_running_execution(runtime, seed_workflow):
    await seed_workflow("summarize")
    execution = await _running(runtime)
    await runtime.db.transition_execution(
        execution.id, ExecutionStatus.RUNNING, status=ExecutionStatus.FAILED
    )

    with pytest.raises(Conflict):
        await runtime.tracker.create_requirement(
            execution, SCHEMA, "http://engine.test/webhook/late", 30
        )
    assert await runtime.tracker.get_pending(execution.id) is None


@pytest.mark.asyncio
async def test_list_pending_orders_by_priority_then_deadline(runtime, seed_workflow, caller, clock):
    await seed_workflow("summarize")
    await seed_workflow("translate")

    soon = await runtime.tracker.create_requirement(
        await _running(runtime), SCHEMA, "http://engine.test/webhook/soon", 10
    )
    later = await runtime.tracker.create_requirement(
        await _running(runtime), SCHEMA, "http://engine.test/webhook/later", 50
    )
    urgent = await runtime.tracker.create_requirement(
        await _running(runtime, "translate"),
        SCHEMA,
        "http://engine.test/webhook/urgent",
        40,
        priority=Priority.HIGH,
    )
    low = await runtime.tracker.create_requirement(
        await _running(runtime), SCHEMA, "http://engine.test/webhook/low", 5, priority="low"
    )
    await runtime.tracker.create_requirement(
        await _running(runtime, user_id="other"), SCHEMA, "http://engine.test/webhook/other", 5
    )

    pending = await runtime.tracker.list_pending(caller, limit=3)
    assert [item.id for item in pending.inputs] == [urgent.id, soon.id, later.id]
    assert pending.pagination.total == 4
    assert pending.pagination.has_more
    assert pending.summary.total_pending == 4
    assert pending.summary.high_priority_count == 1
    assert pending.summary.expiring_count == 2

    first = pending.inputs[0]
    assert first.time_remaining == 40 * 60 * 1000
    assert first.time_remaining_minutes == 40
    assert not first.is_expired
    assert first.execution.status == "waiting_for_input"

    filtered = await runtime.tracker.list_pending(caller, workflow_id="translate")
    assert [item.id for item in filtered.inputs] == [urgent.id]

    clock.advance(minutes=6)
    after = await runtime.tracker.list_pending(caller)
    assert low.id not in [item.id for item in after.inputs]


@pytest.mark.asyncio
async def test_list_pending_rejects_unknown_priority(runtime, caller):
    with pytest.raises(ValidationFailed):
        await runtime.tracker.list_pending(caller, priority="urgent")


@pytest.mark.asyncio
async def test_list_pending_is_scoped_to_workspace(runtime, seed_workflow):
    await seed_workflow("summarize")
    await runtime.tracker.create_requirement(
        await _running(runtime), SCHEMA, "http://engine.test/webhook/x", 30
    )
    outsider = Caller(user_id="user-1", workspace_id="ws-2")
    pending = await runtime.tracker.list_pending(outsider)
    assert pending.inputs == []
    assert pending.summary.total_pending == 0
