"""Expiry cleanup sweep for inputs nobody answered in time."""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .constants import CLEANUP_LOCK_NAME, ExecutionStatus
from .db import ExecutionDB
from .errors import Conflict
from .inputs import InputRequirementTracker
from .usage import UsageAccountant
from .utils.clock import Clock, elapsed_ms, utcnow
from .views import CamelModel

logger = logging.getLogger(__name__)


class CleanupStats(CamelModel):
    expired_inputs: int = 0
    timed_out_executions: int = 0
    purged_inputs: int = 0
    errors: int = 0
    triggered_by: str = "scheduler"
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class CleanupStatus(CamelModel):
    status: str
    is_running: bool
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    last_stats: Optional[Dict[str, Any]] = None


class ExpiryCleanupSweeper:
    """Expire lapsed inputs, time out their executions and purge old inputs.

    Every trigger (the background loop, the admin action and the CLI) goes
    through one persisted lock, so at most one sweep runs at a time across
    processes. A crashed holder's claim lapses after ``lock_ttl_seconds``.
    """

    def __init__(
        self,
        db: ExecutionDB,
        tracker: InputRequirementTracker,
        usage: UsageAccountant,
        interval_seconds: int = 300,
        lock_ttl_seconds: int = 600,
        retention_days: int = 90,
        clock: Clock = utcnow,
    ) -> None:
        self.db = db
        self.tracker = tracker
        self.usage = usage
        self.interval = timedelta(seconds=interval_seconds)
        self.lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self.retention = timedelta(days=retention_days)
        self.clock = clock
        self.owner_prefix = f"{socket.gethostname()}:{os.getpid()}"

    async def run_once(self, triggered_by: str = "scheduler") -> CleanupStats:
        """Run one sweep.

        Raises:
            Conflict: Another sweep currently holds the lock. Nothing is
                modified in that case.
        """
        now = self.clock()
        owner = f"{self.owner_prefix}:{uuid.uuid4().hex[:8]}"
        if not await self.db.acquire_lock(CLEANUP_LOCK_NAME, owner, now, now + self.lock_ttl):
            raise Conflict("Cleanup job is already running")

        stats = CleanupStats(triggered_by=triggered_by, started_at=now)
        logger.info(f"Cleanup sweep started (triggered by {triggered_by})")
        try:
            await self._expire_inputs(now, stats)
            await self._timeout_orphaned_executions(now, stats)
            await self._purge_old_inputs(now, stats)
        finally:
            stats.finished_at = self.clock()
            await self.db.release_lock(CLEANUP_LOCK_NAME, owner, stats.finished_at, stats.to_json())

        logger.info(
            f"Cleanup sweep finished: {stats.expired_inputs} inputs expired, "
            f"{stats.timed_out_executions} executions timed out, "
            f"{stats.purged_inputs} inputs purged, {stats.errors} errors"
        )
        return stats

    async def _expire_inputs(self, now: datetime, stats: CleanupStats) -> None:
        for user_input in await self.db.find_expired_inputs(now):
            try:
                input_won, execution_won = await self.tracker.expire(user_input, now)
                if input_won:
                    stats.expired_inputs += 1
                if execution_won:
                    stats.timed_out_executions += 1
                    execution = await self.db.get_execution(user_input.execution_id)
                    await self.usage.record(execution)
            except Exception:
                stats.errors += 1
                logger.exception(f"Failed to expire input {user_input.id}")

    async def _timeout_orphaned_executions(self, now: datetime, stats: CleanupStats) -> None:
        for execution in await self.db.find_stale_waiting_executions(now):
            try:
                if await self.db.get_pending_input(execution.id) is not None:
                    continue
                won = await self.db.transition_execution(
                    execution.id,
                    ExecutionStatus.WAITING_FOR_INPUT,
                    status=ExecutionStatus.TIMEOUT,
                    is_waiting_for_input=False,
                    completed_at=now,
                    updated_at=now,
                    execution_time_ms=elapsed_ms(execution.started_at or execution.created_at, now),
                    error_message=(
                        f"Workflow timed out waiting for user input at step {execution.current_step}"
                    ),
                )
                if won:
                    stats.timed_out_executions += 1
                    logger.info(f"Execution {execution.id} timed out with no pending input")
                    await self.usage.record(await self.db.get_execution(execution.id))
            except Exception:
                stats.errors += 1
                logger.exception(f"Failed to time out execution {execution.id}")

    async def _purge_old_inputs(self, now: datetime, stats: CleanupStats) -> None:
        try:
            stats.purged_inputs = await self.db.purge_inputs(now - self.retention)
        except Exception:
            stats.errors += 1
            logger.exception("Failed to purge old inputs")

    async def status(self) -> CleanupStatus:
        lock = await self.db.get_lock(CLEANUP_LOCK_NAME)
        now = self.clock()
        if lock is None:
            return CleanupStatus(status="idle", is_running=False)
        running = lock.owner is not None and lock.expires_at is not None and lock.expires_at > now
        next_run = lock.last_run_at + self.interval if lock.last_run_at else None
        return CleanupStatus(
            status="running" if running else "idle",
            is_running=running,
            last_run=lock.last_run_at,
            next_run=next_run,
            last_stats=lock.last_stats,
        )

    async def run_forever(
        self, interval: Optional[float] = None, stop: Optional[asyncio.Event] = None
    ) -> None:
        """Sweep every ``interval`` seconds until ``stop`` is set."""
        interval = interval if interval is not None else self.interval.total_seconds()
        while stop is None or not stop.is_set():
            try:
                await self.run_once("scheduler")
            except Conflict:
                logger.info("Cleanup sweep already running elsewhere; skipping this tick")
            except Exception:
                logger.exception("Cleanup sweep failed")
            if stop is None:
                await asyncio.sleep(interval)
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
