"""Request dependencies: runtime lookup and bearer-token authentication."""

from __future__ import annotations

import logging
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..context import Caller
from ..errors import AuthenticationRequired, ConfigurationError, PermissionDenied
from ..runtime import Runtime

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def get_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    runtime: Runtime = Depends(get_runtime),
) -> Caller:
    """Decode the bearer JWT into a :class:`Caller`.

    The token must carry ``sub`` and ``workspace_id`` claims.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationRequired("Authentication required")

    auth = runtime.config.auth
    if not auth.jwt_secret:
        raise ConfigurationError("JWT secret not configured")
    try:
        claims = jwt.decode(credentials.credentials, auth.jwt_secret, algorithms=[auth.algorithm])
        return Caller.from_claims(claims)
    except jwt.PyJWTError as exc:
        logger.warning(f"Rejected bearer token: {exc}")
        raise AuthenticationRequired("Invalid or expired token") from exc
    except KeyError as exc:
        raise AuthenticationRequired(f"Token is missing claim {exc}") from exc


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise PermissionDenied("Admin access required")
    return caller
