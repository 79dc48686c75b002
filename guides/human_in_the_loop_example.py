"""Run a suspending workflow end to end against the in-memory engine."""

import asyncio

from flowgate import Caller, FlowgateConfig, create_runtime
from flowgate.config import CredentialsConfig, EngineConfig
from flowgate.db import Workflow


async def main():
    config = FlowgateConfig(
        database_url="sqlite+aiosqlite:///guide.db",
        engine=EngineConfig(backend="inmemory"),
        credentials=CredentialsConfig(platform_api_key="sk-or-v1-example"),
    )
    runtime = create_runtime(config)
    await runtime.start()

    await runtime.db.add_workflow(
        Workflow(
            id="contract-review",
            engine_workflow_id="13",
            name="Contract review",
            nodes=[{"name": "Ask reviewer", "type": "n8n-nodes-base.wait"}],
        )
    )
    runtime.engine.script("13", suspends=True, resume_result_data={"decision": "approved"})

    caller = Caller(user_id="demo-user", workspace_id="demo-workspace")
    handle = await runtime.coordinator.submit(caller, "contract-review", {"doc": "nda.pdf"})
    print(f"Execution {handle.execution.id} is {handle.execution.status}")

    webhook_url = handle.pending_input.webhook_url
    print(f"Waiting for input at {webhook_url}")

    webhook_id = webhook_url.rsplit("/webhook/", 1)[1]
    outcome = await runtime.webhooks.resume(webhook_id, {"userInput": "Looks fine"})
    print(f"Resumed: {outcome.status}")

    await runtime.close()


if __name__ == "__main__":
    asyncio.run(main())
