"""
Tests for the OAuth token endpoint client against the fake PDS.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from aiohttp import ClientConnectionError
from jwcrypto import jwk, jwt

from dropanchor.atproto.chain import ChainMiddlewareClient
from dropanchor.atproto.oauth import TokenEndpointClient
from dropanchor.errors import AuthError, AuthFailure
from dropanchor.resolve.handle import ResolvedSubject

from conftest import (
    START_TIME,
    TEST_DID,
    TEST_HANDLE,
    TEST_PASSWORD,
    FakeClock,
    make_credentials,
)


def signed_token(claims) -> str:
    token = jwt.JWT(header={"alg": "ES256"}, claims=claims)
    token.make_signed_token(jwk.JWK.generate(kty="EC", crv="P-256"))
    return token.serialize()


@pytest.fixture
def token_client(settings, http_session):
    return TokenEndpointClient(
        ChainMiddlewareClient(http_session), settings, clock=FakeClock()
    )


class TestPasswordGrant:
    """Test suite for handle and app password login."""

    @pytest.mark.asyncio
    async def test_success(self, token_client, fake_pds):
        credentials = await token_client.password_grant(TEST_HANDLE, TEST_PASSWORD)

        assert credentials.access_token == "access-1"
        assert credentials.refresh_token == "refresh-1"
        assert credentials.did == TEST_DID
        assert credentials.handle == TEST_HANDLE
        assert credentials.pds_base_url == fake_pds.url
        assert credentials.issued_at == START_TIME
        assert credentials.expires_at == START_TIME + timedelta(hours=4)

    @pytest.mark.asyncio
    async def test_invalid_credentials(self, token_client, fake_pds):
        with pytest.raises(AuthError) as exc_info:
            await token_client.password_grant(TEST_HANDLE, "wrong")

        assert exc_info.value.reason == AuthFailure.invalid_credentials
        assert exc_info.value.status == 401
        assert exc_info.value.message == "Invalid identifier or password"
        assert not exc_info.value.transient

    @pytest.mark.asyncio
    async def test_expiry_falls_back_to_session_duration(
        self, settings, http_session, fake_pds
    ):
        fake_pds.expires_in = None
        client = TokenEndpointClient(
            ChainMiddlewareClient(http_session),
            settings.model_copy(update={"session_duration": 2 * 60 * 60}),
            clock=FakeClock(),
        )

        credentials = await client.password_grant(TEST_HANDLE, TEST_PASSWORD)

        assert credentials.expires_at == START_TIME + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_missing_identity_is_resolved(self, settings, http_session, fake_pds):
        fake_pds.include_identity = False
        resolver = AsyncMock(
            return_value=ResolvedSubject(
                did=TEST_DID, handle=TEST_HANDLE, pds="https://pds.example.com"
            )
        )
        client = TokenEndpointClient(
            ChainMiddlewareClient(http_session),
            settings,
            resolve_subject=resolver,
            clock=FakeClock(),
        )

        credentials = await client.password_grant(TEST_HANDLE, TEST_PASSWORD)

        resolver.assert_awaited_once_with(TEST_HANDLE)
        assert credentials.did == TEST_DID
        assert credentials.pds_base_url == "https://pds.example.com"

    @pytest.mark.asyncio
    async def test_unresolvable_identity(self, settings, http_session, fake_pds):
        fake_pds.include_identity = False
        client = TokenEndpointClient(
            ChainMiddlewareClient(http_session),
            settings,
            resolve_subject=AsyncMock(return_value=None),
        )

        with pytest.raises(AuthError) as exc_info:
            await client.password_grant(TEST_HANDLE, TEST_PASSWORD)
        assert exc_info.value.reason == AuthFailure.server_error


class TestRefreshGrant:
    """Test suite for token rotation."""

    @pytest.mark.asyncio
    async def test_rotation(self, token_client, fake_pds):
        first = await token_client.password_grant(TEST_HANDLE, TEST_PASSWORD)
        second = await token_client.refresh_grant(first)

        assert second.access_token == "access-2"
        assert second.refresh_token == "refresh-2"
        assert second.did == first.did
        assert fake_pds.refresh_calls == 1

        with pytest.raises(AuthError) as exc_info:
            await token_client.refresh_grant(first)
        assert exc_info.value.reason == AuthFailure.refresh_rejected
        assert not exc_info.value.transient

    @pytest.mark.asyncio
    async def test_identity_carried_over(self, token_client, fake_pds):
        first = await token_client.password_grant(TEST_HANDLE, TEST_PASSWORD)
        fake_pds.include_identity = False

        second = await token_client.refresh_grant(first)

        assert second.did == TEST_DID
        assert second.handle == TEST_HANDLE
        assert second.pds_base_url == first.pds_base_url

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    async def test_server_errors_are_transient(self, token_client, fake_pds, status):
        first = await token_client.password_grant(TEST_HANDLE, TEST_PASSWORD)
        fake_pds.refresh_failures = [status]

        with pytest.raises(AuthError) as exc_info:
            await token_client.refresh_grant(first)

        assert exc_info.value.reason == AuthFailure.server_error
        assert exc_info.value.status == status
        assert exc_info.value.transient


class TestTokenResponses:
    """Unexpected token responses are rejected."""

    def make_client(self, settings, body, status=200):
        chain_response = Mock(status=status, body=body, ok=200 <= status < 300)
        chain_response.error_message.return_value = None
        context = AsyncMock()
        context.__aenter__.return_value = (Mock(), chain_response)
        http = Mock()
        http.post.return_value = context
        return TokenEndpointClient(http, settings, clock=FakeClock())

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            b"<html>bad gateway</html>",
            {"token_type": "Bearer"},
            {"access_token": ""},
            {"access_token": 42, "refresh_token": "r"},
            {"access_token": "a", "sub": TEST_DID},
        ],
    )
    async def test_malformed_response(self, settings, body):
        client = self.make_client(settings, body)

        with pytest.raises(AuthError) as exc_info:
            await client.password_grant(TEST_HANDLE, TEST_PASSWORD)
        assert exc_info.value.reason == AuthFailure.server_error

    @pytest.mark.asyncio
    async def test_expiry_from_token_claim(self, settings):
        exp = int((START_TIME + timedelta(minutes=30)).timestamp())
        client = self.make_client(
            settings,
            {
                "access_token": signed_token({"sub": TEST_DID, "exp": exp}),
                "refresh_token": "refresh-x",
                "sub": TEST_DID,
                "handle": TEST_HANDLE,
                "pds_url": "https://pds.example.com",
            },
        )

        credentials = await client.password_grant(TEST_HANDLE, TEST_PASSWORD)

        assert credentials.expires_at == START_TIME + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_refresh_keeps_previous_refresh_token(self, settings):
        client = self.make_client(settings, {"access_token": "access-9", "expires_in": 60})

        credentials = await client.refresh_grant(make_credentials())

        assert credentials.access_token == "access-9"
        assert credentials.refresh_token == "refresh-0"
        assert credentials.expires_at == START_TIME + timedelta(seconds=60)


class TestNetworkErrors:
    """Unreachable token endpoints surface as AuthError.network."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [ClientConnectionError("refused"), asyncio.TimeoutError()]
    )
    async def test_network_failure(self, settings, error):
        http = Mock()
        http.post.side_effect = error
        client = TokenEndpointClient(http, settings)

        with pytest.raises(AuthError) as exc_info:
            await client.password_grant(TEST_HANDLE, TEST_PASSWORD)

        assert exc_info.value.reason == AuthFailure.network
        assert exc_info.value.transient
        assert exc_info.value.__cause__ is error
