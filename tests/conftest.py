"""
Pytest fixtures for the MCP OAuth proxy.

Provides a URL-routed fake OAuth server for patching httpx.AsyncClient, a
fake callback listener, and ready-made token store / provider / engine
fixtures.
"""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, Mock

import pytest

from mcp_oauth_proxy.auth.oauth_client import AuthorizationFlowEngine
from mcp_oauth_proxy.auth.oauth_models import AuthorizationCode, ClientCredentials
from mcp_oauth_proxy.auth.oauth_provider import ProxyOAuthProvider
from mcp_oauth_proxy.auth.token_store import TokenStore
from mcp_oauth_proxy.configs import ProxyConfig

RESOURCE_URL = "https://mcp.example/mcp"
AUTH_SERVER = "https://idp.example/tenant"
REDIRECT_URI = "http://localhost:3000/oauth/callback"
TOKEN_ENDPOINT = f"{AUTH_SERVER}/token"
REGISTRATION_ENDPOINT = f"{AUTH_SERVER}/register"
PRM_URL = "https://mcp.example/.well-known/oauth-protected-resource/mcp"
AS_METADATA_URL = f"{AUTH_SERVER}/.well-known/oauth-authorization-server"


def make_response(status_code: int = 200, json_data: Any = None, headers: dict | None = None):
    """Mock httpx.Response; json() raises ValueError when there is no body."""
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    if json_data is None:
        response.json.side_effect = ValueError("No JSON body")
        response.text = ""
    else:
        response.json.return_value = json_data
        response.text = str(json_data)
    return response


class FakeOAuthServer:
    """
    Routes mocked GET/POST calls by URL and records them.

    Unknown URLs answer 404.
    """

    def __init__(self, get_routes: dict | None = None, post_routes: dict | None = None):
        self.get_routes = get_routes or {}
        self.post_routes = post_routes or {}
        self.get_calls: list[str] = []
        self.post_calls: list[tuple[str, dict]] = []

    async def _get(self, url, **kwargs):
        self.get_calls.append(url)
        return make_response(*self.get_routes.get(url, (404, None)))

    async def _post(self, url, **kwargs):
        self.post_calls.append((url, kwargs))
        return make_response(*self.post_routes.get(url, (404, None)))

    def posts_to(self, url: str) -> list[dict]:
        return [kwargs for called, kwargs in self.post_calls if called == url]

    def client(self):
        mock_client = Mock()
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=False)
        mock_client.get = AsyncMock(side_effect=self._get)
        mock_client.post = AsyncMock(side_effect=self._post)
        return mock_client


def resource_metadata(**overrides) -> dict:
    data = {
        "resource": RESOURCE_URL,
        "authorization_servers": [AUTH_SERVER],
        "scopes_supported": ["read", "write"],
    }
    data.update(overrides)
    return data


def auth_server_metadata(base: str = AUTH_SERVER, **overrides) -> dict:
    data = {
        "issuer": base,
        "authorization_endpoint": f"{base}/authorize",
        "token_endpoint": f"{base}/token",
        "registration_endpoint": f"{base}/register",
        "response_types_supported": ["code"],
        "code_challenge_methods_supported": ["S256"],
    }
    data.update(overrides)
    return data


def token_payload(**overrides) -> dict:
    data = {
        "access_token": "access-1",
        "token_type": "Bearer",
        "expires_in": 3600,
        "refresh_token": "refresh-1",
    }
    data.update(overrides)
    return data


class FakeCallbackListener:
    """
    Stand-in for LocalCallbackListener.

    ``outcome`` is "match" (echo the expected state), "never" (block until
    cancelled), a literal state string, or an exception instance to raise
    from wait_for_callback().
    """

    instances: list["FakeCallbackListener"] = []

    def __init__(
        self,
        redirect_uri,
        port=None,
        timeout=300.0,
        expected_state=None,
        outcome="match",
        code="abc123",
    ):
        self.redirect_uri = redirect_uri
        self.port = port
        self.timeout = timeout
        self.expected_state = expected_state
        self.outcome = outcome
        self.code = code
        self.started = False
        self.closed = False

    async def start(self):
        self.started = True

    async def wait_for_callback(self) -> AuthorizationCode:
        if self.outcome == "never":
            await asyncio.Event().wait()
        self.closed = True
        if isinstance(self.outcome, Exception):
            raise self.outcome
        state = self.expected_state if self.outcome == "match" else self.outcome
        return AuthorizationCode(code=self.code, state=state)

    async def close(self):
        self.closed = True


def listener_factory(outcome="match", code="abc123"):
    created: list[FakeCallbackListener] = []

    def factory(redirect_uri, **kwargs):
        listener = FakeCallbackListener(redirect_uri, outcome=outcome, code=code, **kwargs)
        created.append(listener)
        return listener

    factory.created = created
    return factory


@pytest.fixture
def static_credentials():
    return ClientCredentials(client_id="static-client")


@pytest.fixture
def token_store():
    return TokenStore()


@pytest.fixture
def provider(token_store):
    provider = ProxyOAuthProvider(token_store, redirect_uri=REDIRECT_URI, open_browser=False)
    provider.redirect_to_authorization = AsyncMock()
    return provider


@pytest.fixture
def make_engine(provider):
    def _make(outcome="match", **kwargs):
        factory = listener_factory(outcome=outcome)
        engine = AuthorizationFlowEngine(
            resource_url=RESOURCE_URL,
            provider=provider,
            listener_factory=factory,
            **kwargs,
        )
        return engine, factory

    return _make


@pytest.fixture
def proxy_config():
    return ProxyConfig(mcp_server_url=RESOURCE_URL, mcp_server_name="Example", _env_file=None)
