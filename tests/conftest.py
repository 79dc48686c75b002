"""Shared fixtures: a temporary SQLite database, the in-memory engine and a fake clock."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from flowgate.config import AuthConfig, CredentialsConfig, EngineConfig, FlowgateConfig
from flowgate.context import Caller
from flowgate.credentials import encrypt_api_key
from flowgate.db import CustomerApiKey, ExecutionDB, Workflow
from flowgate.engine import InMemoryEngineClient
from flowgate.runtime import Runtime

ENCRYPTION_SECRET = "3f" * 32
JWT_SECRET = "flowgate-test-jwt-secret-0123456789abcdef"
PLATFORM_KEY = "sk-or-v1-platform-0000000000"


class FakeClock:
    """Deterministic clock; call it for ``now`` and advance it explicitly."""

    def __init__(self, now: datetime = datetime(2025, 3, 1, 9, 0, 0)) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path) -> FlowgateConfig:
    return FlowgateConfig(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'flowgate.db'}",
        engine=EngineConfig(backend="inmemory", base_url="http://engine.test"),
        credentials=CredentialsConfig(
            platform_api_key=PLATFORM_KEY, encryption_secret=ENCRYPTION_SECRET
        ),
        auth=AuthConfig(jwt_secret=JWT_SECRET),
    )


@pytest.fixture
def caller() -> Caller:
    return Caller(user_id="user-1", workspace_id="ws-1", email="ada@example.com")


@pytest_asyncio.fixture
async def runtime(config, clock):
    rt = Runtime(
        config,
        ExecutionDB(config.database_url),
        InMemoryEngineClient(base_url=config.engine.base_url),
        clock=clock,
    )
    await rt.start()
    yield rt
    await rt.close()


@pytest.fixture
def seed_workflow(runtime):
    async def _seed(workflow_id: str = "summarize", **fields) -> Workflow:
        values = {
            "id": workflow_id,
            "engine_workflow_id": f"engine-{workflow_id}",
            "name": workflow_id.replace("-", " ").title(),
            "estimated_cost": 0.05,
        }
        values.update(fields)
        return await runtime.db.add_workflow(Workflow(**values))

    return _seed


@pytest.fixture
def seed_customer_key(runtime, caller):
    async def _seed(api_key: str = "sk-or-v1-customer-abcdefghijk", **fields) -> CustomerApiKey:
        values = {
            "user_id": caller.user_id,
            "workspace_id": caller.workspace_id,
            "name": "My key",
            "encrypted_api_key": encrypt_api_key(api_key, ENCRYPTION_SECRET),
        }
        values.update(fields)
        return await runtime.db.add_api_key(CustomerApiKey(**values))

    return _seed


def webhook_id_of(url: str) -> str:
    return url.rsplit("/webhook/", 1)[1]


@pytest.fixture
def webhook_id():
    return webhook_id_of
