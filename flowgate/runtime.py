"""Wire configuration, storage, engine client and services together."""

from __future__ import annotations

import logging
from typing import Optional

from .config import FlowgateConfig, load_config
from .coordinator import ExecutionCoordinator
from .credentials import CredentialResolver
from .db import ExecutionDB, get_database
from .engine import EngineClient, get_engine_client
from .inputs import InputRequirementTracker
from .sweeper import ExpiryCleanupSweeper
from .usage import UsageAccountant
from .utils.clock import Clock, utcnow
from .webhooks import WebhookResumeHandler

logger = logging.getLogger(__name__)


class Runtime:
    """Every service of one flowgate process, sharing a database and engine."""

    def __init__(
        self,
        config: FlowgateConfig,
        db: ExecutionDB,
        engine: EngineClient,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config
        self.db = db
        self.engine = engine
        self.clock = clock

        self.usage = UsageAccountant(db, clock=clock)
        self.credentials = CredentialResolver(db, config.credentials)
        self.tracker = InputRequirementTracker(
            db,
            expiring_window_minutes=config.inputs.expiring_window_minutes,
            clock=clock,
        )
        self.coordinator = ExecutionCoordinator(
            db,
            engine,
            self.credentials,
            self.tracker,
            self.usage,
            input_timeout_minutes=config.inputs.timeout_minutes,
            clock=clock,
        )
        self.webhooks = WebhookResumeHandler(db, engine, self.tracker, self.usage, clock=clock)
        self.sweeper = ExpiryCleanupSweeper(
            db,
            self.tracker,
            self.usage,
            interval_seconds=config.cleanup.interval_seconds,
            lock_ttl_seconds=config.cleanup.lock_ttl_seconds,
            retention_days=config.cleanup.retention_days,
            clock=clock,
        )

    async def start(self) -> None:
        await self.db.init_db()
        logger.info(f"Runtime started (engine: {type(self.engine).__name__})")

    async def close(self) -> None:
        await self.engine.aclose()
        await self.db.dispose()


def create_runtime(
    config: Optional[FlowgateConfig] = None,
    db: Optional[ExecutionDB] = None,
    engine: Optional[EngineClient] = None,
    clock: Clock = utcnow,
) -> Runtime:
    config = config or load_config()
    db = db or get_database(config=config)
    engine = engine or get_engine_client(config=config)
    return Runtime(config, db, engine, clock=clock)
