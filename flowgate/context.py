"""Caller identity handed to services by the API and CLI."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

ADMIN_PERMISSIONS = ("*:*", "admin:*")


class Caller(BaseModel):
    """Authenticated user acting inside one workspace.

    Every read and write on executions and inputs is scoped to the caller's
    ``(user_id, workspace_id)`` pair.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    workspace_id: str
    email: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return any(permission in self.permissions for permission in ADMIN_PERMISSIONS)

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "Caller":
        return cls(
            user_id=str(claims["sub"]),
            workspace_id=str(claims["workspace_id"]),
            email=claims.get("email"),
            permissions=list(claims.get("permissions") or []),
        )
