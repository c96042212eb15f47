"""
Tests for Dynamic Client Registration (RFC 7591)
"""

from unittest.mock import patch

import httpx
import pytest
from conftest import AUTH_SERVER, REDIRECT_URI, REGISTRATION_ENDPOINT, FakeOAuthServer

from mcp_oauth_proxy.auth.client_registration import ClientRegistrar, DynamicClientRegistration
from mcp_oauth_proxy.auth.oauth_models import AuthServerMetadata, ClientCredentials
from mcp_oauth_proxy.auth.oauth_provider import ProxyOAuthProvider
from mcp_oauth_proxy.auth.token_store import TokenStore
from mcp_oauth_proxy.errors import RegistrationError


def metadata(registration_endpoint: str | None = REGISTRATION_ENDPOINT) -> AuthServerMetadata:
    return AuthServerMetadata(
        issuer=AUTH_SERVER,
        authorization_endpoint=f"{AUTH_SERVER}/authorize",
        token_endpoint=f"{AUTH_SERVER}/token",
        registration_endpoint=registration_endpoint,
    )


class TestClientMetadata:
    def test_public_client_metadata(self, provider):
        request = provider.client_metadata("read write")

        assert request.client_name == "MCP OAuth Proxy Client"
        assert request.redirect_uris == [REDIRECT_URI]
        assert request.grant_types == ["authorization_code", "refresh_token"]
        assert request.response_types == ["code"]
        assert request.token_endpoint_auth_method == "none"
        assert request.scope == "read write"

    def test_confidential_client_metadata(self):
        provider = ProxyOAuthProvider(TokenStore(), REDIRECT_URI, client_secret="s3cret")
        request = provider.client_metadata()

        assert request.token_endpoint_auth_method == "client_secret_post"
        assert request.scope is None


class TestDynamicClientRegistration:
    @pytest.mark.asyncio
    async def test_register_success(self, provider):
        server = FakeOAuthServer(
            post_routes={REGISTRATION_ENDPOINT: (201, {"client_id": "dyn-123", "client_secret": ""})}
        )

        with patch("httpx.AsyncClient", return_value=server.client()):
            credentials = await DynamicClientRegistration().register_client(
                REGISTRATION_ENDPOINT, provider.client_metadata()
            )

        assert credentials.client_id == "dyn-123"
        assert credentials.client_secret is None
        assert credentials.token_endpoint_auth_method == "none"
        body = server.posts_to(REGISTRATION_ENDPOINT)[0]["json"]
        assert body["redirect_uris"] == [REDIRECT_URI]

    @pytest.mark.asyncio
    async def test_register_rejected(self, provider):
        server = FakeOAuthServer(
            post_routes={REGISTRATION_ENDPOINT: (400, {"error": "invalid_redirect_uri"})}
        )

        with patch("httpx.AsyncClient", return_value=server.client()):
            with pytest.raises(RegistrationError):
                await DynamicClientRegistration().register_client(
                    REGISTRATION_ENDPOINT, provider.client_metadata()
                )

    @pytest.mark.asyncio
    async def test_register_transport_error(self, provider):
        client = FakeOAuthServer().client()
        client.post.side_effect = httpx.ConnectError("connection refused")

        with patch("httpx.AsyncClient", return_value=client):
            with pytest.raises(RegistrationError):
                await DynamicClientRegistration().register_client(
                    REGISTRATION_ENDPOINT, provider.client_metadata()
                )

    @pytest.mark.asyncio
    async def test_register_response_without_client_id(self, provider):
        server = FakeOAuthServer(post_routes={REGISTRATION_ENDPOINT: (201, {"client_name": "x"})})

        with patch("httpx.AsyncClient", return_value=server.client()):
            with pytest.raises(RegistrationError):
                await DynamicClientRegistration().register_client(
                    REGISTRATION_ENDPOINT, provider.client_metadata()
                )


class TestClientRegistrar:
    @pytest.mark.asyncio
    async def test_static_credentials_used_unchanged(self):
        static = ClientCredentials(client_id="static-client", client_secret="s3cret")
        store = TokenStore(client_credentials=static)
        registrar = ClientRegistrar(ProxyOAuthProvider(store, REDIRECT_URI))
        server = FakeOAuthServer()

        with patch("httpx.AsyncClient", return_value=server.client()):
            credentials = await registrar.ensure_client(AUTH_SERVER, metadata())

        assert credentials is static
        assert server.post_calls == []

    @pytest.mark.asyncio
    async def test_registers_and_stores_credentials(self, provider, token_store):
        registrar = ClientRegistrar(provider)
        server = FakeOAuthServer(post_routes={REGISTRATION_ENDPOINT: (201, {"client_id": "dyn-123"})})

        with patch("httpx.AsyncClient", return_value=server.client()):
            first = await registrar.ensure_client(AUTH_SERVER, metadata(), "read")
            second = await registrar.ensure_client(AUTH_SERVER, metadata(), "read")

        assert first.client_id == "dyn-123"
        assert second is first
        assert token_store.client_credentials() is first
        assert len(server.post_calls) == 1
        assert server.posts_to(REGISTRATION_ENDPOINT)[0]["json"]["scope"] == "read"

    @pytest.mark.asyncio
    async def test_no_registration_endpoint(self, provider):
        registrar = ClientRegistrar(provider)

        with pytest.raises(RegistrationError, match="dynamic client registration"):
            await registrar.ensure_client(AUTH_SERVER, metadata(registration_endpoint=None))
