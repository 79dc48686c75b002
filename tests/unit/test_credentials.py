"""Tests for API key encryption and credential resolution."""

import uuid

import pytest

from flowgate.config import CredentialsConfig
from flowgate.constants import ApiKeyType
from flowgate.credentials import (
    CredentialResolver,
    decrypt_api_key,
    encrypt_api_key,
    mask_api_key,
)
from flowgate.errors import ConfigurationError, NotFound, ValidationFailed

SECRET = "3f" * 32


def test_encrypt_decrypt_round_trip():
    encrypted = encrypt_api_key("sk-or-v1-secret-value", SECRET)
    iv, tag, ciphertext = encrypted.split(":")
    assert len(bytes.fromhex(iv)) == 16
    assert len(bytes.fromhex(tag)) == 16
    assert "secret" not in encrypted
    assert decrypt_api_key(encrypted, SECRET) == "sk-or-v1-secret-value"


def test_tampered_ciphertext_is_rejected():
    iv, tag, ciphertext = encrypt_api_key("sk-or-v1-secret-value", SECRET).split(":")
    flipped = ("0" if ciphertext[0] != "0" else "1") + ciphertext[1:]
    with pytest.raises(ConfigurationError):
        decrypt_api_key(f"{iv}:{tag}:{flipped}", SECRET)


@pytest.mark.parametrize("secret", [None, "", "abc", "zz" * 32])
def test_invalid_secret_is_a_configuration_error(secret):
    with pytest.raises(ConfigurationError):
        encrypt_api_key("sk-or-v1-secret-value", secret)


def test_malformed_stored_value():
    with pytest.raises(ConfigurationError):
        decrypt_api_key("not-a-triple", SECRET)


def test_mask_api_key():
    assert mask_api_key("sk-or-v1-abcdefghijklmnop") == "sk-or-v1...nop"
    assert mask_api_key("short") == "sk-***-***"
    assert mask_api_key(None) == "sk-***-***"


@pytest.mark.asyncio
async def test_resolve_customer_key(runtime, caller, seed_customer_key):
    key = await seed_customer_key("sk-or-v1-customer-abcdefghijk")

    resolved = await runtime.credentials.resolve(
        "customer", str(key.id), caller.workspace_id, caller.user_id, estimated_cost=0.3
    )
    assert resolved.api_key == "sk-or-v1-customer-abcdefghijk"
    assert resolved.cost_basis == 0
    assert resolved.key_type is ApiKeyType.CUSTOMER
    assert resolved.key_id == key.id
    assert resolved.engine_credentials() == {
        "openrouter": {"apiKey": "sk-or-v1-customer-abcdefghijk"}
    }
    assert "customer-abcdefghijk" not in repr(resolved)


@pytest.mark.asyncio
async def test_resolve_customer_key_is_scoped(runtime, caller, seed_customer_key):
    key = await seed_customer_key(user_id="someone-else")
    with pytest.raises(NotFound):
        await runtime.credentials.resolve(
            "customer", key.id, caller.workspace_id, caller.user_id
        )

    inactive = await seed_customer_key(is_active=False)
    with pytest.raises(NotFound):
        await runtime.credentials.resolve(
            "customer", inactive.id, caller.workspace_id, caller.user_id
        )

    with pytest.raises(NotFound):
        await runtime.credentials.resolve(
            "customer", str(uuid.uuid4()), caller.workspace_id, caller.user_id
        )


@pytest.mark.asyncio
async def test_resolve_customer_requires_key_id(runtime, caller):
    with pytest.raises(ValidationFailed) as exc_info:
        await runtime.credentials.resolve("customer", None, caller.workspace_id, caller.user_id)
    assert exc_info.value.errors[0]["field"] == "apiKeyId"


@pytest.mark.asyncio
async def test_undecryptable_customer_key(runtime, caller, seed_customer_key):
    key = await seed_customer_key(encrypted_api_key=encrypt_api_key("sk-or-v1-x", "ab" * 32))
    with pytest.raises(ConfigurationError):
        await runtime.credentials.resolve(
            "customer", key.id, caller.workspace_id, caller.user_id
        )


@pytest.mark.asyncio
async def test_resolve_platform_key(runtime, caller):
    resolved = await runtime.credentials.resolve(
        ApiKeyType.PLATFORM, None, caller.workspace_id, caller.user_id, estimated_cost=0.25
    )
    assert resolved.api_key == runtime.config.credentials.platform_api_key
    assert resolved.cost_basis == 0.25
    assert resolved.provider == "openrouter"
    assert resolved.key_id is None


@pytest.mark.asyncio
async def test_platform_key_must_be_configured(runtime, caller):
    resolver = CredentialResolver(runtime.db, CredentialsConfig(encryption_secret=SECRET))
    with pytest.raises(ConfigurationError):
        await resolver.resolve("platform", None, caller.workspace_id, caller.user_id)


@pytest.mark.asyncio
async def test_unknown_key_type(runtime, caller):
    with pytest.raises(ValidationFailed):
        await runtime.credentials.resolve("shared", None, caller.workspace_id, caller.user_id)
