"""Stdio MCP proxy for OAuth-protected streamable HTTP MCP servers."""

__version__ = "1.0.1"
