"""
Local OAuth Callback Listener

A short-lived HTTP endpoint bound to the host/port of the configured redirect
URI. It captures the first request to the callback path, shows the user a
static confirmation page and shuts itself down.
"""

import asyncio
import errno
import html
import logging
import socket
from urllib.parse import urlparse

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from mcp_oauth_proxy.auth.oauth_models import AuthorizationCode, CallbackResult
from mcp_oauth_proxy.errors import (
    AuthorizationDeniedError,
    AuthorizationTimeoutError,
    CallbackPortInUseError,
    OAuthFlowError,
)

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_TIMEOUT = 300.0

PAGE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <title>{title}</title>
  <style>
    body {{ font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif;
            display: flex; align-items: center; justify-content: center;
            min-height: 100vh; margin: 0; color: #0a0a0a; }}
    .container {{ border: 1px solid #e5e5e5; border-radius: 0.75rem;
                  padding: 2.5rem 2rem; max-width: 28rem; text-align: center; }}
    .detail {{ background: #fef2f2; border: 1px solid #fecaca; color: #991b1b;
               border-radius: 0.5rem; padding: 0.75rem; margin-top: 1rem; }}
    .hint {{ color: #737373; font-size: 0.875rem; margin-top: 1.5rem; }}
  </style>
</head>
<body>
  <div class="container">
    <h1>{title}</h1>
    {detail}
    <p class="hint">You can close this window and return to your application.</p>
  </div>
</body>
</html>
"""


def render_callback_page(is_success: bool, message: str | None = None) -> str:
    if is_success:
        return PAGE_TEMPLATE.format(title="Authentication Successful", detail="")
    detail = f'<div class="detail">{html.escape(message or "Unknown error")}</div>'
    return PAGE_TEMPLATE.format(title="OAuth Error", detail=detail)


def bind_callback_socket(host: str, port: int) -> socket.socket:
    """
    Bind the listening socket up front so a busy port is reported clearly.

    Raises:
        CallbackPortInUseError: If the port is already taken
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(16)
    except OSError as e:
        sock.close()
        if e.errno == errno.EADDRINUSE:
            raise CallbackPortInUseError(host, port) from e
        raise
    return sock


class LocalCallbackListener:
    """
    Single-shot redirect capture for one authorization round-trip.

    Usage:
        listener = LocalCallbackListener(redirect_uri)
        await listener.start()
        ...  # send the user to the authorization URL
        code = await listener.wait_for_callback()
    """

    def __init__(
        self,
        redirect_uri: str,
        port: int | None = None,
        timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        expected_state: str | None = None,
    ):
        parsed = urlparse(redirect_uri)
        hostname = parsed.hostname or "localhost"
        self.host = "127.0.0.1" if hostname == "localhost" else hostname
        self.port = parsed.port or port or 3000
        self.callback_path = parsed.path or "/"
        self.timeout = timeout
        self.expected_state = expected_state

        self._result: asyncio.Future[CallbackResult] | None = None
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task | None = None
        self._socket: socket.socket | None = None

    @property
    def is_running(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    def _build_app(self) -> FastAPI:
        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

        @app.get(self.callback_path, response_class=HTMLResponse)
        async def oauth_callback(request: Request) -> HTMLResponse:
            return self._handle_callback(request)

        return app

    def _handle_callback(self, request: Request) -> HTMLResponse:
        if self._result is None or self._result.done():
            return HTMLResponse(
                render_callback_page(False, "This authorization callback was already handled"),
                status_code=410,
            )

        params = request.query_params
        result = CallbackResult(
            code=params.get("code"),
            state=params.get("state"),
            error=params.get("error"),
            error_description=params.get("error_description"),
        )
        self._result.set_result(result)
        self._stop_serving()

        if result.error:
            message = result.error
            if result.error_description:
                message = f"{message}: {result.error_description}"
            return HTMLResponse(render_callback_page(False, message), status_code=400)
        if not result.code:
            return HTMLResponse(
                render_callback_page(False, "No authorization code received"), status_code=400
            )
        if self.expected_state is not None and result.state != self.expected_state:
            return HTMLResponse(
                render_callback_page(False, "Invalid state parameter"), status_code=400
            )
        return HTMLResponse(render_callback_page(True))

    def _stop_serving(self) -> None:
        if self._server is not None:
            self._server.should_exit = True

    async def start(self) -> None:
        """
        Bind the callback port and start serving.

        Raises:
            CallbackPortInUseError: If the port is already in use
        """
        if self.is_running:
            raise RuntimeError("Callback listener is already running")

        self._socket = bind_callback_socket(self.host, self.port)
        self._result = asyncio.get_running_loop().create_future()
        self._server = uvicorn.Server(
            uvicorn.Config(
                app=self._build_app(),
                host=self.host,
                port=self.port,
                lifespan="off",
                log_config=None,
                log_level="warning",
                access_log=False,
                timeout_graceful_shutdown=5,
            )
        )
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[self._socket]))
        logger.info(
            f"OAuth callback server listening on http://{self.host}:{self.port}{self.callback_path}"
        )

    async def wait_for_callback(self) -> AuthorizationCode:
        """
        Wait for the redirect, then shut the listener down.

        Returns:
            AuthorizationCode: The captured code and returned state

        Raises:
            AuthorizationTimeoutError: If no callback arrives in time
            AuthorizationDeniedError: If the provider returned an ``error``
            OAuthFlowError: If the callback carried neither code nor error
        """
        if self._result is None:
            raise RuntimeError("Callback listener was not started")

        try:
            async with asyncio.timeout(self.timeout):
                result = await asyncio.shield(self._result)
        except TimeoutError:
            logger.error(f"No OAuth callback received within {self.timeout:g} seconds")
            raise AuthorizationTimeoutError(self.timeout) from None
        finally:
            await self.close()

        if result.error:
            logger.error(f"OAuth provider returned error: {result.error}")
            raise AuthorizationDeniedError(result.error, result.error_description)
        if not result.code:
            raise OAuthFlowError("No authorization code received")

        logger.info("Authorization code received from OAuth callback")
        return AuthorizationCode(code=result.code, state=result.state)

    async def close(self) -> None:
        """Stop serving and release the port. Safe to call more than once."""
        self._stop_serving()
        if self._serve_task is not None:
            await asyncio.wait([self._serve_task])
            if not self._serve_task.cancelled() and self._serve_task.exception():
                logger.warning(
                    f"OAuth callback server stopped with error: {self._serve_task.exception()}"
                )
            self._serve_task = None
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        if self._result is not None and not self._result.done():
            self._result.cancel()
        logger.debug("OAuth callback server closed")
