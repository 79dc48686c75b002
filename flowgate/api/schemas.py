"""Request bodies accepted by the HTTP API (camelCase on the wire)."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import Field

from ..constants import ApiKeyType
from ..views import CamelModel


class ExecuteRequest(CamelModel):
    workflow_id: str = Field(min_length=1)
    input_data: Dict[str, Any] = Field(default_factory=dict)
    api_key_type: ApiKeyType = ApiKeyType.PLATFORM
    api_key_id: Optional[str] = None
    email_results: bool = False


class ExecutionInputRequest(CamelModel):
    input_data: Any = None
    validate_only: bool = False


class CleanupRequest(CamelModel):
    action: str
