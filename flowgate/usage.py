"""Usage accounting for finished executions."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .constants import ApiKeyType, ExecutionStatus
from .db import ExecutionDB, WorkflowExecution
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


def extract_tokens_used(result_data: Optional[Dict[str, Any]]) -> int:
    """Sum ``usage.total_tokens`` reported by every node run in ``result_data``."""
    total = 0
    run_data = (result_data or {}).get("runData") or {}
    if not isinstance(run_data, dict):
        return 0
    for node_runs in run_data.values():
        for run in node_runs or []:
            try:
                usage = run["data"]["main"][0][0]["json"].get("usage") or {}
            except (KeyError, IndexError, TypeError, AttributeError):
                continue
            tokens = usage.get("total_tokens") if isinstance(usage, dict) else None
            if isinstance(tokens, (int, float)) and not isinstance(tokens, bool):
                total += int(tokens)
    return total


class UsageAccountant:
    """Fold terminal executions into workflow and customer key counters.

    Call :meth:`record` only after winning the conditional write that made
    the execution terminal; the winner is the sole writer of its usage.
    """

    def __init__(self, db: ExecutionDB, clock: Clock = utcnow) -> None:
        self.db = db
        self.clock = clock

    async def record(self, execution: WorkflowExecution) -> None:
        status = ExecutionStatus(execution.status)
        if not status.is_terminal:
            logger.debug(f"Skipping usage for non-terminal execution {execution.id}")
            return

        now = self.clock()
        success = status is ExecutionStatus.COMPLETED
        try:
            await self.db.record_workflow_usage(
                execution.workflow_id,
                execution.execution_time_ms or 0,
                success,
                now,
            )
        except Exception:
            logger.exception(f"Failed to update usage stats for workflow {execution.workflow_id}")

        if execution.api_key_type != ApiKeyType.CUSTOMER.value or execution.api_key_id is None:
            return
        tokens = int((execution.api_key_used or {}).get("tokensUsed") or 0)
        try:
            await self.db.record_key_usage(execution.api_key_id, tokens, now)
        except Exception:
            logger.exception(f"Failed to update usage for customer API key {execution.api_key_id}")
