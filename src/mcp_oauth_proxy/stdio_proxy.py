"""
Stdio MCP Proxy

Serves the MCP protocol to a local client over stdio and relays each
request to the authenticated upstream client. The initialize handshake is
answered locally with a static capability declaration, so the local client
can finish its handshake while the OAuth flow is still running.

List operations answer with an empty result when the upstream is not
available; call/read/get operations fail with a protocol error instead.

Shutdown does not wait for stdin to reach EOF: lines are read by a daemon
thread, so an authorization failure or a signal ends the process even while
the local client keeps its end of the pipe open.
"""

import asyncio
import codecs
import functools
import logging
import os
import sys
import threading
from collections.abc import Awaitable, Callable
from typing import Any

import anyio
from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.models import InitializationOptions
from mcp.server.stdio import stdio_server
from mcp.shared.exceptions import McpError

from mcp_oauth_proxy import __version__
from mcp_oauth_proxy.configs import ProxyConfig
from mcp_oauth_proxy.connection_gate import ConnectionGate
from mcp_oauth_proxy.errors import NotConnectedError, ProxyError
from mcp_oauth_proxy.mcp_oauth_client import McpOAuthClient

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[types.ServerResult]]

READ_CHUNK_SIZE = 65536


def protocol_errors(handler: Handler) -> Handler:
    """Report proxy errors to the inbound client as JSON-RPC internal errors."""

    @functools.wraps(handler)
    async def wrapper(request: Any) -> types.ServerResult:
        try:
            return await handler(request)
        except ProxyError as e:
            logger.error(f"{type(request).__name__} failed: {e}")
            raise McpError(types.ErrorData(code=types.INTERNAL_ERROR, message=str(e))) from e

    return wrapper


class StdinLines:
    """
    Async iterator over the newline-delimited lines of a file descriptor.

    A daemon thread performs the blocking reads and hands lines to the event
    loop, so cancelling the consumer returns immediately and the thread never
    keeps the interpreter alive. Reads use the raw descriptor rather than
    ``sys.stdin`` to stay clear of the buffered reader's lock at exit.
    """

    def __init__(self, fd: int | None = None):
        self.fd = sys.stdin.fileno() if fd is None else fd
        self._lines: asyncio.Queue[str | None] = asyncio.Queue()
        self._thread: threading.Thread | None = None

    def __aiter__(self) -> "StdinLines":
        return self

    async def __anext__(self) -> str:
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._pump,
                args=(asyncio.get_running_loop(),),
                name="stdin-reader",
                daemon=True,
            )
            self._thread.start()
        line = await self._lines.get()
        if line is None:
            raise StopAsyncIteration
        return line

    def _deliver(self, loop: asyncio.AbstractEventLoop, line: str | None) -> bool:
        try:
            loop.call_soon_threadsafe(self._lines.put_nowait, line)
        except RuntimeError:
            # event loop already closed
            return False
        return True

    def _pump(self, loop: asyncio.AbstractEventLoop) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            try:
                chunk = os.read(self.fd, READ_CHUNK_SIZE)
            except OSError as e:
                logger.debug(f"Stdin read failed, treating as end of input: {e}")
                chunk = b""
            pending += decoder.decode(chunk, final=not chunk)
            while "\n" in pending:
                line, pending = pending.split("\n", 1)
                if not self._deliver(loop, f"{line}\n"):
                    return
            if not chunk:
                if pending:
                    self._deliver(loop, pending)
                self._deliver(loop, None)
                return


class McpStdioProxy:
    """
    Request forwarder between the stdio server and the upstream client.

    Args:
        config: Loaded proxy configuration
        client: Upstream client; built from ``config`` when omitted
        stdin_fd: Descriptor to read requests from (default: stdin)
        stdout: Stream for responses (default: stdout)
    """

    def __init__(
        self,
        config: ProxyConfig,
        client: McpOAuthClient | None = None,
        stdin_fd: int | None = None,
        stdout: anyio.AsyncFile[str] | None = None,
    ):
        self.config = config
        self.client = client or McpOAuthClient(config)
        self.server = Server(config.proxy_name, version=__version__)
        self.stdin_fd = stdin_fd
        self.stdout = stdout
        self.startup_error: BaseException | None = None
        self._cancel_scope: anyio.CancelScope | None = None
        self._stop_requested = False
        self._register_handlers()

    @property
    def gate(self) -> ConnectionGate:
        return self.client.gate

    def initialization_options(self) -> InitializationOptions:
        return InitializationOptions(
            server_name=self.config.proxy_name,
            server_version=__version__,
            capabilities=types.ServerCapabilities(
                tools=types.ToolsCapability(listChanged=True),
                resources=types.ResourcesCapability(listChanged=True),
                prompts=types.PromptsCapability(listChanged=True),
                logging=types.LoggingCapability(),
            ),
        )

    def _register_handlers(self) -> None:
        handlers = self.server.request_handlers
        handlers[types.ListToolsRequest] = protocol_errors(self._handle_list_tools)
        handlers[types.CallToolRequest] = protocol_errors(self._handle_call_tool)
        handlers[types.ListResourcesRequest] = protocol_errors(self._handle_list_resources)
        handlers[types.ReadResourceRequest] = protocol_errors(self._handle_read_resource)
        handlers[types.ListPromptsRequest] = protocol_errors(self._handle_list_prompts)
        handlers[types.GetPromptRequest] = protocol_errors(self._handle_get_prompt)

    # Forwarding operations

    async def list_tools(self) -> types.ListToolsResult:
        if not self.gate.is_open:
            logger.warning("tools/list received before the upstream connection is ready")
            return types.ListToolsResult(tools=[])
        try:
            return await self.client.list_tools()
        except Exception as e:
            logger.error(f"Failed to list tools from upstream: {e}")
            return types.ListToolsResult(tools=[])

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None = None
    ) -> types.CallToolResult:
        if not self.gate.is_open:
            raise NotConnectedError()
        logger.debug(f"Forwarding tool call: {name}")
        return await self.client.call_tool(name, arguments)

    async def list_resources(self) -> types.ListResourcesResult:
        if not self.gate.is_open:
            logger.warning("resources/list received before the upstream connection is ready")
            return types.ListResourcesResult(resources=[])
        try:
            return await self.client.list_resources()
        except Exception as e:
            logger.error(f"Failed to list resources from upstream: {e}")
            return types.ListResourcesResult(resources=[])

    async def read_resource(self, uri) -> types.ReadResourceResult:
        if not self.gate.is_open:
            raise NotConnectedError()
        logger.debug(f"Forwarding resource read: {uri}")
        return await self.client.read_resource(uri)

    async def list_prompts(self) -> types.ListPromptsResult:
        if not self.gate.is_open:
            logger.warning("prompts/list received before the upstream connection is ready")
            return types.ListPromptsResult(prompts=[])
        try:
            return await self.client.list_prompts()
        except Exception as e:
            logger.error(f"Failed to list prompts from upstream: {e}")
            return types.ListPromptsResult(prompts=[])

    async def get_prompt(
        self, name: str, arguments: dict[str, str] | None = None
    ) -> types.GetPromptResult:
        if not self.gate.is_open:
            raise NotConnectedError()
        logger.debug(f"Forwarding prompt request: {name}")
        return await self.client.get_prompt(name, arguments)

    # Protocol handlers

    async def _handle_list_tools(self, req: types.ListToolsRequest) -> types.ServerResult:
        return types.ServerResult(await self.list_tools())

    async def _handle_call_tool(self, req: types.CallToolRequest) -> types.ServerResult:
        return types.ServerResult(await self.call_tool(req.params.name, req.params.arguments))

    async def _handle_list_resources(self, req: types.ListResourcesRequest) -> types.ServerResult:
        return types.ServerResult(await self.list_resources())

    async def _handle_read_resource(self, req: types.ReadResourceRequest) -> types.ServerResult:
        return types.ServerResult(await self.read_resource(req.params.uri))

    async def _handle_list_prompts(self, req: types.ListPromptsRequest) -> types.ServerResult:
        return types.ServerResult(await self.list_prompts())

    async def _handle_get_prompt(self, req: types.GetPromptRequest) -> types.ServerResult:
        return types.ServerResult(await self.get_prompt(req.params.name, req.params.arguments))

    # Lifecycle

    async def _connect_upstream(self, cancel_scope: anyio.CancelScope) -> None:
        try:
            await self.client.connect()
        except Exception as e:
            logger.error(f"Failed to connect to MCP server: {e}")
            self.startup_error = e
            cancel_scope.cancel()

    async def start(self) -> None:
        """
        Serve stdio and connect upstream concurrently until stopped.

        Returns when stdin closes or stop() is called. A failed upstream
        connection ends the proxy and is re-raised after teardown.

        Raises:
            Exception: The upstream connection failure, if startup failed
        """
        logger.info(f"Starting {self.config.proxy_name} for {self.config.mcp_server_url}")
        async with self.client:
            with anyio.CancelScope() as scope:
                self._cancel_scope = scope
                if self._stop_requested:
                    scope.cancel()
                async with stdio_server(
                    stdin=StdinLines(self.stdin_fd), stdout=self.stdout
                ) as (read_stream, write_stream):
                    async with anyio.create_task_group() as tg:
                        tg.start_soon(self._connect_upstream, scope)
                        await self.server.run(
                            read_stream, write_stream, self.initialization_options()
                        )
                        logger.info("Stdio input closed")
                        scope.cancel()
            self._cancel_scope = None

        if self.startup_error is not None:
            raise self.startup_error

    def stop(self) -> None:
        """Request shutdown; start() returns once the upstream is disconnected."""
        logger.info("Stopping MCP proxy")
        self._stop_requested = True
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()
