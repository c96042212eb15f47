"""
Authenticated Upstream MCP Client

Owns the authorization flow engine, the connection gate and the single
streamable HTTP session to the upstream MCP server.

The upstream transport and ClientSession are anyio contexts that must be
entered and exited by the same task, so the session is held open by one
long-lived task in this client's task group rather than by the caller.

Usage:
    async with McpOAuthClient(config) as client:
        await client.connect()
        result = await client.call_tool("search", {"query": "mcp"})
"""

import logging
from contextlib import AsyncExitStack
from typing import Any

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp import ClientSession
from mcp import types as mcp_types
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError
from pydantic import AnyUrl

from mcp_oauth_proxy import __version__
from mcp_oauth_proxy.auth.bearer_auth import BearerAuth
from mcp_oauth_proxy.auth.oauth_client import AuthorizationFlowEngine
from mcp_oauth_proxy.auth.oauth_models import ClientCredentials
from mcp_oauth_proxy.auth.oauth_provider import ProxyOAuthProvider
from mcp_oauth_proxy.auth.token_store import TokenStore
from mcp_oauth_proxy.configs import ProxyConfig
from mcp_oauth_proxy.connection_gate import ConnectionGate
from mcp_oauth_proxy.errors import NotConnectedError, ProxyError, UpstreamFault

logger = logging.getLogger(__name__)

CLIENT_NAME = "mcp-oauth-proxy-client"
SSE_READ_TIMEOUT = 300.0
DISCONNECT_TIMEOUT = 5.0


def build_engine(config: ProxyConfig) -> tuple[AuthorizationFlowEngine, TokenStore]:
    """Wire the token store, provider and engine from configuration."""
    static_credentials = None
    if config.oauth_client_id:
        static_credentials = ClientCredentials(
            client_id=config.oauth_client_id, client_secret=config.oauth_client_secret
        )

    token_store = TokenStore(client_credentials=static_credentials)
    provider = ProxyOAuthProvider(
        token_store,
        redirect_uri=config.oauth_redirect_uri,
        client_secret=config.oauth_client_secret,
        open_browser=config.oauth_open_browser,
    )
    engine = AuthorizationFlowEngine(
        resource_url=config.mcp_server_url,
        provider=provider,
        scopes=config.scopes,
        callback_timeout=config.oauth_callback_timeout,
        callback_port=config.callback_port,
        timeout=config.http_timeout,
        use_resource_indicator=config.oauth_resource_indicator,
    )
    return engine, token_store


class McpOAuthClient:
    """OAuth-authenticated client for one upstream MCP server."""

    def __init__(
        self,
        config: ProxyConfig,
        gate: ConnectionGate | None = None,
        engine: AuthorizationFlowEngine | None = None,
        token_store: TokenStore | None = None,
    ):
        self.config = config
        self.gate = gate or ConnectionGate()
        if engine is None or token_store is None:
            engine, token_store = build_engine(config)
        self.engine = engine
        self.token_store = token_store

        self._exit_stack: AsyncExitStack | None = None
        self._task_group: TaskGroup | None = None
        self._session: ClientSession | None = None
        self._stop: anyio.Event | None = None
        self._stopped: anyio.Event | None = None

    async def __aenter__(self) -> "McpOAuthClient":
        self._exit_stack = AsyncExitStack()
        await self._exit_stack.__aenter__()
        self._task_group = await self._exit_stack.enter_async_context(anyio.create_task_group())
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            await self.disconnect()
        finally:
            stack, self._exit_stack, self._task_group = self._exit_stack, None, None
            if stack is not None:
                await stack.__aexit__(exc_type, exc_val, exc_tb)

    @property
    def connected(self) -> bool:
        return self.gate.is_open and self._session is not None

    async def connect(self) -> None:
        """
        Authorize and open the upstream session, then open the gate.

        Raises:
            OAuthFlowError: If authorization fails
            UpstreamFault: If the upstream session cannot be established
        """
        if self._task_group is None:
            raise RuntimeError("McpOAuthClient must be entered with 'async with' before connect()")
        if self.connected:
            return

        logger.info(f"Connecting to MCP server at {self.config.mcp_server_url}")
        await self.engine.authenticate()

        try:
            self._session = await self._task_group.start(self._hold_upstream)
        except McpError:
            self.gate.close()
            raise
        except Exception as e:
            self.gate.close()
            raise UpstreamFault(
                f"Failed to connect to MCP server at {self.config.mcp_server_url}: {e}"
            ) from e

        self.gate.open()
        logger.info(f"Connected to MCP server at {self.config.mcp_server_url}")

    async def _hold_upstream(self, *, task_status: TaskStatus = anyio.TASK_STATUS_IGNORED) -> None:
        self._stop = anyio.Event()
        self._stopped = anyio.Event()
        started = False
        try:
            async with AsyncExitStack() as stack:
                read, write, _ = await stack.enter_async_context(
                    streamablehttp_client(
                        self.config.mcp_server_url,
                        auth=BearerAuth(self.engine, self.token_store),
                        timeout=self.config.http_timeout,
                        sse_read_timeout=SSE_READ_TIMEOUT,
                    )
                )
                session = await stack.enter_async_context(
                    ClientSession(
                        read,
                        write,
                        client_info=mcp_types.Implementation(name=CLIENT_NAME, version=__version__),
                    )
                )
                init_result = await session.initialize()
                logger.info(
                    f"MCP session initialized: server={init_result.serverInfo.name}, "
                    f"protocol={init_result.protocolVersion}"
                )
                started = True
                task_status.started(session)
                await self._stop.wait()
        except Exception as e:
            if not started:
                raise
            logger.error(f"Upstream MCP session ended with error: {e}")
        finally:
            self._session = None
            self.gate.close()
            self._stopped.set()

    async def disconnect(self) -> None:
        """Close the upstream session and forget per-attempt discovery state."""
        self.gate.close()
        if self._stop is not None:
            self._stop.set()
            with anyio.move_on_after(DISCONNECT_TIMEOUT, shield=True):
                await self._stopped.wait()
            self._stop = None
            self._stopped = None
            logger.info("Disconnected from MCP server")
        self._session = None
        await self.engine.reset()

    # Forwarding

    async def _relay(self, operation: str, call):
        if not self.connected:
            raise NotConnectedError()
        try:
            return await call(self._session)
        except (McpError, ProxyError):
            raise
        except Exception as e:
            logger.error(f"Upstream {operation} failed: {e}")
            raise UpstreamFault(f"Upstream {operation} failed: {e}") from e

    async def list_tools(self) -> mcp_types.ListToolsResult:
        return await self._relay("tools/list", lambda s: s.list_tools())

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None = None
    ) -> mcp_types.CallToolResult:
        return await self._relay("tools/call", lambda s: s.call_tool(name, arguments))

    async def list_resources(self) -> mcp_types.ListResourcesResult:
        return await self._relay("resources/list", lambda s: s.list_resources())

    async def read_resource(self, uri: AnyUrl | str) -> mcp_types.ReadResourceResult:
        return await self._relay("resources/read", lambda s: s.read_resource(AnyUrl(str(uri))))

    async def list_prompts(self) -> mcp_types.ListPromptsResult:
        return await self._relay("prompts/list", lambda s: s.list_prompts())

    async def get_prompt(
        self, name: str, arguments: dict[str, str] | None = None
    ) -> mcp_types.GetPromptResult:
        return await self._relay("prompts/get", lambda s: s.get_prompt(name, arguments))
