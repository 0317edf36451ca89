from datetime import timedelta

import pytest

from app.auth.service.identity_service import Identity
from app.chat.errors import AuthenticationError
from pkg.auth_token_client.client import TokenClient

from conftest import CITIZEN, JWT_REFRESH_SECRET, JWT_SECRET, make_token


async def test_valid_token_resolves_to_identity(identity_service):
    identity = await identity_service.resolve_token(make_token(CITIZEN))

    assert identity == Identity(user_id="citizen-1", role="citizen", display_name="Asha")


@pytest.mark.parametrize("token,message", [
    (None, "Authentication token required"),
    ("", "Authentication token required"),
    ("definitely.not.jwt", "Authentication failed"),
])
async def test_unusable_tokens_are_rejected(identity_service, token, message):
    with pytest.raises(AuthenticationError) as exc:
        await identity_service.resolve_token(token)
    assert exc.value.message == message


async def test_token_signed_with_another_secret_is_rejected(identity_service):
    with pytest.raises(AuthenticationError):
        await identity_service.resolve_token(make_token(CITIZEN, secret="someone-elses-secret"))


async def test_expired_token_is_rejected(identity_service):
    client = TokenClient(JWT_SECRET, JWT_REFRESH_SECRET)
    expired = client._encode({"user_id": "citizen-1", "role": "citizen"}, JWT_SECRET, timedelta(minutes=-5))

    with pytest.raises(AuthenticationError):
        await identity_service.resolve_token(expired)


async def test_token_without_role_is_rejected(identity_service):
    client = TokenClient(JWT_SECRET, JWT_REFRESH_SECRET)
    token = client._encode({"user_id": "citizen-1"}, JWT_SECRET, timedelta(hours=1))

    with pytest.raises(AuthenticationError):
        await identity_service.resolve_token(token)
