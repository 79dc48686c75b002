"""Resolve which provider key pays for an execution.

Customer keys are stored encrypted with AES-256-GCM as ``iv:tag:ciphertext``
hex triples and decrypted only for the duration of one engine call. Platform
runs use the operator's key from configuration and are billed at the
workflow's estimated cost.
"""

from __future__ import annotations

import logging
import os
from typing import Optional
from uuid import UUID

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel

from .config import CredentialsConfig
from .constants import ApiKeyType
from .db import ExecutionDB
from .errors import ConfigurationError, NotFound, ValidationFailed

logger = logging.getLogger(__name__)

IV_BYTES = 16
TAG_BYTES = 16


class ResolvedCredential(BaseModel):
    """Provider key selected for one execution."""

    api_key: str
    cost_basis: float
    provider: str
    key_type: ApiKeyType
    key_id: Optional[UUID] = None

    def engine_credentials(self) -> dict[str, dict[str, str]]:
        return {self.provider: {"apiKey": self.api_key}}

    def __repr__(self) -> str:
        return (
            f"ResolvedCredential(provider={self.provider!r}, key_type={self.key_type.value!r}, "
            f"api_key={mask_api_key(self.api_key)!r})"
        )

    __str__ = __repr__


def _secret_key(secret: Optional[str]) -> bytes:
    if not secret or len(secret) != 64:
        raise ConfigurationError("API key encryption secret must be a 64-character hex string")
    try:
        return bytes.fromhex(secret)
    except ValueError as exc:
        raise ConfigurationError(
            "API key encryption secret must be a 64-character hex string"
        ) from exc


def encrypt_api_key(api_key: str, secret: Optional[str]) -> str:
    """Encrypt ``api_key`` into the ``iv:tag:ciphertext`` storage format."""
    key = _secret_key(secret)
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(key).encrypt(iv, api_key.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_api_key(encrypted: str, secret: Optional[str]) -> str:
    """Reverse :func:`encrypt_api_key`.

    Raises:
        ConfigurationError: The secret is unusable, the stored value is
            malformed, or authentication of the ciphertext fails.
    """
    key = _secret_key(secret)
    parts = (encrypted or "").split(":")
    if len(parts) != 3 or not all(parts):
        raise ConfigurationError("Invalid encrypted API key format")
    try:
        iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        plain = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except (ValueError, InvalidTag) as exc:
        raise ConfigurationError("Failed to decrypt API key") from exc
    return plain.decode("utf-8")


def mask_api_key(api_key: Optional[str]) -> str:
    if not api_key or len(api_key) < 10:
        return "sk-***-***"
    return f"{api_key[:8]}...{api_key[-3:]}"


class CredentialResolver:
    """Select and decrypt the key an execution will run with."""

    def __init__(self, db: ExecutionDB, config: CredentialsConfig) -> None:
        self.db = db
        self.config = config

    async def resolve(
        self,
        key_type: ApiKeyType | str,
        key_id: Optional[str | UUID],
        workspace_id: str,
        user_id: str,
        estimated_cost: float = 0.0,
    ) -> ResolvedCredential:
        try:
            key_type = ApiKeyType(key_type)
        except ValueError as exc:
            raise ValidationFailed(
                f"Unsupported API key type: {key_type}",
                errors=[{"field": "apiKeyType", "message": "Must be 'customer' or 'platform'"}],
            ) from exc
        if key_type is ApiKeyType.CUSTOMER:
            return await self._resolve_customer(key_id, workspace_id, user_id)
        return self._resolve_platform(estimated_cost)

    async def _resolve_customer(
        self, key_id: Optional[str | UUID], workspace_id: str, user_id: str
    ) -> ResolvedCredential:
        if not key_id:
            raise ValidationFailed(
                "API key ID is required for customer API key type",
                errors=[{"field": "apiKeyId", "message": "Field 'apiKeyId' is required"}],
            )
        record = await self.db.get_active_api_key(key_id, user_id, workspace_id)
        if record is None:
            raise NotFound("API key not found or inactive")

        try:
            api_key = decrypt_api_key(record.encrypted_api_key, self.config.encryption_secret)
        except ConfigurationError:
            logger.error(f"Could not decrypt customer API key {record.id}")
            raise
        logger.debug(f"Using customer API key {record.id} ({mask_api_key(api_key)})")
        return ResolvedCredential(
            api_key=api_key,
            cost_basis=0.0,
            provider=record.provider,
            key_type=ApiKeyType.CUSTOMER,
            key_id=record.id,
        )

    def _resolve_platform(self, estimated_cost: float) -> ResolvedCredential:
        if not self.config.platform_api_key:
            raise ConfigurationError("Platform API key not configured")
        return ResolvedCredential(
            api_key=self.config.platform_api_key,
            cost_basis=estimated_cost,
            provider=self.config.default_provider,
            key_type=ApiKeyType.PLATFORM,
        )
