"""
Tests for the Local OAuth Callback Listener

These run a real listener on a loopback port and talk to it with httpx.
"""

import asyncio
import socket

import httpx
import pytest

from mcp_oauth_proxy.auth.callback_server import LocalCallbackListener, render_callback_page
from mcp_oauth_proxy.errors import (
    AuthorizationDeniedError,
    AuthorizationTimeoutError,
    CallbackPortInUseError,
    OAuthFlowError,
)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def port_is_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("127.0.0.1", port))
        except OSError:
            return False
        return True


@pytest.fixture
def redirect_uri():
    return f"http://localhost:{free_port()}/oauth/callback"


async def hit_callback(listener: LocalCallbackListener, query: str = "") -> httpx.Response:
    url = f"http://127.0.0.1:{listener.port}{listener.callback_path}"
    if query:
        url = f"{url}?{query}"
    async with httpx.AsyncClient(timeout=5.0) as client:
        return await client.get(url)


class TestLocalCallbackListener:
    def test_address_derived_from_redirect_uri(self):
        listener = LocalCallbackListener("http://localhost:8765/custom/path")

        assert listener.host == "127.0.0.1"
        assert listener.port == 8765
        assert listener.callback_path == "/custom/path"

    def test_port_fallback_when_uri_has_none(self):
        assert LocalCallbackListener("http://localhost/cb", port=4000).port == 4000

    @pytest.mark.asyncio
    async def test_captures_code_and_state(self, redirect_uri):
        listener = LocalCallbackListener(redirect_uri, timeout=5.0, expected_state="state-1")
        await listener.start()
        waiter = asyncio.create_task(listener.wait_for_callback())

        response = await hit_callback(listener, "code=abc123&state=state-1")
        code = await waiter

        assert response.status_code == 200
        assert "Authentication Successful" in response.text
        assert code.code == "abc123"
        assert code.state == "state-1"
        assert not listener.is_running
        assert port_is_free(listener.port)

    @pytest.mark.asyncio
    async def test_malformed_request_stops_listener(self, redirect_uri):
        listener = LocalCallbackListener(redirect_uri, timeout=5.0)
        await listener.start()
        waiter = asyncio.create_task(listener.wait_for_callback())

        response = await hit_callback(listener)

        with pytest.raises(OAuthFlowError, match="No authorization code"):
            await waiter
        assert response.status_code == 400
        assert "No authorization code received" in response.text
        assert not listener.is_running
        assert port_is_free(listener.port)

    @pytest.mark.asyncio
    async def test_provider_error(self, redirect_uri):
        listener = LocalCallbackListener(redirect_uri, timeout=5.0)
        await listener.start()
        waiter = asyncio.create_task(listener.wait_for_callback())

        response = await hit_callback(
            listener, "error=access_denied&error_description=User+denied+access"
        )

        with pytest.raises(AuthorizationDeniedError) as exc_info:
            await waiter
        assert exc_info.value.error == "access_denied"
        assert exc_info.value.error_description == "User denied access"
        assert "access_denied" in response.text

    @pytest.mark.asyncio
    async def test_state_mismatch_page(self, redirect_uri):
        listener = LocalCallbackListener(redirect_uri, timeout=5.0, expected_state="expected")
        await listener.start()
        waiter = asyncio.create_task(listener.wait_for_callback())

        response = await hit_callback(listener, "code=abc123&state=forged")
        code = await waiter

        assert response.status_code == 400
        assert "Invalid state parameter" in response.text
        assert code.state == "forged"

    @pytest.mark.asyncio
    async def test_timeout_releases_port(self, redirect_uri):
        listener = LocalCallbackListener(redirect_uri, timeout=0.2)
        await listener.start()

        with pytest.raises(AuthorizationTimeoutError):
            await listener.wait_for_callback()

        assert not listener.is_running
        assert port_is_free(listener.port)

    @pytest.mark.asyncio
    async def test_port_in_use(self, redirect_uri):
        listener = LocalCallbackListener(redirect_uri)
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", listener.port))
            blocker.listen(1)

            with pytest.raises(CallbackPortInUseError) as exc_info:
                await listener.start()

        assert exc_info.value.port == listener.port
        assert "OAUTH_REDIRECT_URI" in exc_info.value.hint


class TestCallbackPage:
    def test_error_message_is_escaped(self):
        page = render_callback_page(False, "<script>alert(1)</script>")

        assert "<script>" not in page
        assert "&lt;script&gt;" in page
