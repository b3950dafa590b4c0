"""Tests for API key authentication."""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from credit_gateway.auth.api_key import (
    KEY_LENGTH,
    KeyAuthenticator,
    generate_api_key,
    hash_api_key,
    is_well_formed,
    key_prefix,
)
from credit_gateway.billing.database import Database
from credit_gateway.billing.models import utcnow
from credit_gateway.errors import (
    ExpiredKey,
    InactiveKey,
    MalformedCredential,
    UnknownKey,
)

MALFORMED = [
    None,
    "",
    "sk_live_" + "a" * 63,  # too short
    "sk_live_" + "a" * 65,  # too long
    "pk_live_" + "a" * 64,  # wrong prefix
    "sk_test_" + "a" * 64,  # wrong environment tag
    "sk_live_" + "A" * 64,  # uppercase hex
    "sk_live_" + "g" * 64,  # not hex
    "Bearer sk_live_" + "a" * 57,
]


def test_generated_key_format():
    """Test generated keys match the credential format."""
    key = generate_api_key()
    assert len(key) == KEY_LENGTH == 72
    assert is_well_formed(key)
    assert key_prefix(key) == key[:12]
    assert generate_api_key() != key


def test_hash_is_deterministic_and_hides_secret():
    """Test the digest is stable and does not contain the secret."""
    key = generate_api_key()
    assert hash_api_key(key) == hash_api_key(key)
    assert len(hash_api_key(key)) == 64
    assert key[8:] not in hash_api_key(key)


@pytest.mark.asyncio
@pytest.mark.parametrize("credential", MALFORMED)
async def test_malformed_credential_makes_no_storage_call(credential, tracker):
    """Test malformed credentials are rejected before any lookup."""
    db = MagicMock(spec=Database)
    authenticator = KeyAuthenticator(db, tracker)

    with pytest.raises(MalformedCredential):
        await authenticator.authenticate(credential)

    db.session.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_key(db, tracker, seed):
    """Test a well-formed key with no matching row."""
    await seed.account()
    authenticator = KeyAuthenticator(db, tracker)

    with pytest.raises(UnknownKey):
        await authenticator.authenticate(generate_api_key())


@pytest.mark.asyncio
async def test_inactive_key(db, tracker, seed):
    """Test a deactivated key is rejected."""
    _, secret, _ = await seed.account(is_active=False)
    authenticator = KeyAuthenticator(db, tracker)

    with pytest.raises(InactiveKey):
        await authenticator.authenticate(secret)


@pytest.mark.asyncio
async def test_expired_key(db, tracker, seed):
    """Test a key past its expiry is rejected."""
    _, secret, _ = await seed.account(expires_at=utcnow() - timedelta(days=1))
    authenticator = KeyAuthenticator(db, tracker)

    with pytest.raises(ExpiredKey):
        await authenticator.authenticate(secret)


@pytest.mark.asyncio
async def test_future_expiry_is_accepted(db, tracker, seed):
    """Test a key with an expiry in the future still authenticates."""
    account, secret, _ = await seed.account(expires_at=utcnow() + timedelta(days=1))
    authenticator = KeyAuthenticator(db, tracker)

    identity = await authenticator.authenticate(secret)
    assert identity.account_id == account.id


@pytest.mark.asyncio
async def test_all_failures_share_one_client_message(db, tracker, seed):
    """Test clients cannot tell failure reasons apart."""
    _, inactive_secret, _ = await seed.account(email="a@example.com", is_active=False)
    authenticator = KeyAuthenticator(db, tracker)

    errors = []
    for credential in ("garbage", generate_api_key(), inactive_secret):
        with pytest.raises(Exception) as exc_info:
            await authenticator.authenticate(credential)
        errors.append(exc_info.value)

    assert {e.reason for e in errors} == {"malformed", "unknown", "inactive"}
    assert {e.message for e in errors} == {"Invalid API key"}
    assert {e.status_code for e in errors} == {401}


@pytest.mark.asyncio
async def test_valid_key_resolves_account_and_stamps_last_used(db, tracker, seed):
    """Test success returns ids and updates last_used_at in the background."""
    account, secret, api_key = await seed.account(email="owner@example.com")
    authenticator = KeyAuthenticator(db, tracker)

    identity = await authenticator.authenticate(secret)

    assert identity.account_id == account.id
    assert identity.api_key_id == api_key.id
    assert identity.email == "owner@example.com"

    await tracker.drain()
    stored = await seed.api_key(api_key.id)
    assert stored.last_used_at is not None


@pytest.mark.asyncio
async def test_last_used_failure_does_not_fail_authentication(db, tracker, seed, monkeypatch):
    """Test a failing last_used_at update is only logged."""
    _, secret, _ = await seed.account()
    authenticator = KeyAuthenticator(db, tracker)

    async def broken_touch(api_key_id):
        raise RuntimeError("storage unavailable")

    monkeypatch.setattr(authenticator, "_touch", broken_touch)

    identity = await authenticator.authenticate(secret)
    await tracker.drain()
    assert identity.api_key_id is not None
