import argparse
import asyncio
import logging
import signal
import sys

from mcp_oauth_proxy.configs import ENVIRONMENT_HELP, load_config
from mcp_oauth_proxy.errors import ConfigurationError
from mcp_oauth_proxy.logging_config import configure_logging
from mcp_oauth_proxy.stdio_proxy import McpStdioProxy

logger = logging.getLogger("mcp_oauth_proxy")

HOW_IT_WORKS = """\
How it works:
  1. The MCP client starts this proxy as a stdio server.
  2. The proxy discovers the OAuth authorization server of MCP_SERVER_URL,
     registers a client when OAUTH_CLIENT_ID is empty and opens the browser.
  3. After you authorize, tokens are kept in memory and refreshed as needed.
  4. MCP requests from stdio are forwarded to the protected server.
"""


def build_parser() -> argparse.ArgumentParser:
    env_lines = "\n".join(f"  {name:<26}{text}" for name, text in ENVIRONMENT_HELP.items())
    parser = argparse.ArgumentParser(
        prog="mcp-oauth-proxy",
        description="Stdio MCP proxy for OAuth-protected streamable HTTP MCP servers",
        epilog=f"Environment variables:\n{env_lines}\n\n{HOW_IT_WORKS}",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log errors")
    return parser


async def run_proxy(proxy: McpStdioProxy) -> int:
    loop = asyncio.get_running_loop()
    signals = [signal.SIGINT, signal.SIGTERM]
    if hasattr(signal, "SIGQUIT"):
        signals.append(signal.SIGQUIT)
    installed = []
    for sig in signals:
        try:
            loop.add_signal_handler(sig, proxy.stop)
            installed.append(sig)
        except NotImplementedError:
            logger.debug(f"Signal handlers not supported for {sig.name}")

    try:
        await proxy.start()
    except Exception:
        logger.exception("MCP OAuth proxy failed")
        return 1
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
    logger.info("MCP OAuth proxy stopped")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(debug=args.debug, quiet=args.quiet)

    try:
        config = load_config()
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    configure_logging(
        config.log_level,
        debug=args.debug or config.debug,
        quiet=args.quiet or config.quiet,
    )
    logger.info(f"Proxying {config.mcp_server_url} as {config.proxy_name}")
    return asyncio.run(run_proxy(McpStdioProxy(config)))


if __name__ == "__main__":
    sys.exit(main())
