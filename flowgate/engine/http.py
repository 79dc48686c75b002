"""HTTP client for an n8n-style execution engine."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from ..errors import EngineError
from ..utils.clock import utcnow
from .base import (
    DynamicExecution,
    EngineClient,
    EngineCredentials,
    EngineResult,
    InputRequirement,
    suspend_schema,
)

logger = logging.getLogger(__name__)

INVALID_RESPONSE = "Engine returned an invalid response"


def _to_result(body: Any) -> EngineResult:
    if not isinstance(body, dict):
        raise EngineError(
            f"{INVALID_RESPONSE}: expected an object, got {type(body).__name__}"
        )
    execution_id = body.get("id")
    try:
        return EngineResult(
            finished=bool(body.get("finished")),
            data=body.get("data") or {},
            execution_id=str(execution_id) if execution_id is not None else None,
            mode=body.get("mode"),
            wait_till=body.get("waitTill"),
        )
    except ValidationError as exc:
        raise EngineError(f"{INVALID_RESPONSE}: {exc}") from exc


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise EngineError(
            f"{INVALID_RESPONSE}: {response.text[:200]!r} is not JSON"
        ) from exc


class HttpEngineClient(EngineClient):
    """Talks to the engine's REST API and its public webhook endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        api_key_header: str = "X-N8N-API-KEY",
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._api_key_header = api_key_header
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self, method: str, endpoint: str, body: Optional[Dict[str, Any]] = None
    ) -> Any:
        url = f"{self.base_url}/api/v1{endpoint}"
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers[self._api_key_header] = self._api_key
        try:
            response = await self._client.request(method, url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise EngineError(f"Engine request failed: {exc}") from exc
        if response.is_error:
            raise EngineError(
                f"Engine API error ({response.status_code}): {response.text or response.reason_phrase}"
            )
        return _json_body(response)

    async def get_workflow(self, workflow_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/workflows/{workflow_id}")

    async def get_execution(self, execution_id: str) -> EngineResult:
        body = await self._request("GET", f"/executions/{execution_id}")
        return _to_result(body)

    async def execute_workflow(self, workflow_id: str, data: Dict[str, Any]) -> EngineResult:
        body = await self._request(
            "POST", f"/workflows/{workflow_id}/execute", {"data": data or {}}
        )
        return _to_result(body)

    async def execute_workflow_with_credentials(
        self,
        workflow_id: str,
        data: Dict[str, Any],
        credentials: Optional[EngineCredentials],
    ) -> EngineResult:
        body: Dict[str, Any] = {"data": dict(data or {})}
        if credentials:
            overrides: Dict[str, Any] = {}
            for provider, creds in credentials.items():
                api_key = creds.get("apiKey")
                if not api_key:
                    continue
                overrides[provider] = {"apiKey": api_key}
                body["data"][f"{provider}_api_key"] = api_key
                if provider == "openrouter":
                    body["data"]["apiKey"] = api_key
            body["credentialOverrides"] = overrides

        logger.info(
            f"Executing engine workflow {workflow_id} "
            f"(credential types: {sorted(credentials or {})}, data keys: {sorted(body['data'])})"
        )
        response = await self._request("POST", f"/workflows/{workflow_id}/execute", body)
        return _to_result(response)

    async def execute_workflow_with_dynamic_input(
        self,
        workflow_id: str,
        data: Dict[str, Any],
        credentials: Optional[EngineCredentials] = None,
        timeout_minutes: int = 60,
        step: int = 1,
    ) -> DynamicExecution:
        try:
            execution = await self.execute_workflow_with_credentials(
                workflow_id, data, credentials
            )
        except EngineError as exc:
            message = str(exc).lower()
            if message.startswith(INVALID_RESPONSE.lower()) or (
                "waiting" not in message and "input" not in message
            ):
                raise
            logger.info(f"Engine workflow {workflow_id} suspended on start: {exc}")
            execution = EngineResult(
                finished=False, mode="waiting", data={"resultData": {"runData": {}}}
            )

        if not execution.is_waiting:
            return DynamicExecution(execution=execution)

        requirement = InputRequirement(
            step=step,
            webhook_url=self.new_webhook_url(workflow_id, step),
            input_schema=await self._wait_node_schema(workflow_id),
            timeout_at=utcnow() + timedelta(minutes=timeout_minutes),
        )
        return DynamicExecution(execution=execution, inputs_required=[requirement])

    async def _wait_node_schema(self, workflow_id: str) -> Dict[str, Any]:
        try:
            workflow = await self.get_workflow(workflow_id)
        except EngineError as exc:
            logger.error(f"Could not load wait node schema for {workflow_id}: {exc}")
            return suspend_schema([])
        if not isinstance(workflow, dict):
            logger.error(f"Engine returned no workflow definition for {workflow_id}")
            return suspend_schema([])
        return suspend_schema(workflow.get("nodes") or [])

    async def resume_workflow_with_input(
        self,
        engine_execution_id: Optional[str],
        webhook_url: str,
        payload: Dict[str, Any],
    ) -> EngineResult:
        try:
            response = await self._client.post(webhook_url, json=payload)
        except httpx.HTTPError as exc:
            raise EngineError(f"Failed to reach webhook: {exc}") from exc
        if response.is_error:
            raise EngineError(
                f"Failed to resume workflow: {response.status_code} {response.reason_phrase}"
            )
        if engine_execution_id:
            return await self.get_execution(engine_execution_id)
        return _to_result(_json_body(response))
