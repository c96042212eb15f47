"""
Proxy Configuration

All settings are read once at startup from environment variables (and an
optional ``.env`` file) and validated with Pydantic Settings.
"""

import json
import logging
from urllib.parse import urlparse

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_oauth_proxy.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT_URI = "http://localhost:3000/oauth/callback"

ENVIRONMENT_HELP = {
    "MCP_SERVER_URL": "Streamable HTTP MCP server URL (required)",
    "MCP_SERVER_NAME": "Display name for the server (optional)",
    "OAUTH_CLIENT_ID": "OAuth client ID (optional - registered dynamically when empty)",
    "OAUTH_CLIENT_SECRET": "OAuth client secret (optional for public apps)",
    "OAUTH_REDIRECT_URI": f"OAuth callback URL (default: {DEFAULT_REDIRECT_URI})",
    "OAUTH_SCOPES": "Comma-separated OAuth scopes (default: scopes advertised by the server)",
    "OAUTH_SERVER_PORT": "Local callback server port when the redirect URI has none (default: 3000)",
    "OAUTH_CALLBACK_TIMEOUT": "Seconds to wait for the browser redirect (default: 300)",
    "OAUTH_RESOURCE_INDICATOR": "Send the RFC 8707 resource parameter (default: false)",
    "OAUTH_OPEN_BROWSER": "Open the authorization URL in the default browser (default: true)",
    "HTTP_TIMEOUT": "Timeout in seconds for OAuth HTTP requests (default: 30)",
    "LOG_LEVEL": "Logging level: debug|info|warn|error (default: info)",
    "DEBUG": "Enable debug logging (same as --debug)",
    "QUIET": "Only log errors (same as --quiet)",
}

EXAMPLE_CLIENT_CONFIGURATION = {
    "mcpServers": {
        "protected-mcp-server": {
            "command": "mcp-oauth-proxy",
            "args": [],
            "env": {
                "MCP_SERVER_URL": "https://your-mcp-server.com/mcp",
                "OAUTH_CLIENT_ID": "your_oauth_client_id_or_empty_for_dynamic_registration",
                "OAUTH_CLIENT_SECRET": "your_oauth_client_secret_or_empty_for_public_apps",
                "OAUTH_REDIRECT_URI": DEFAULT_REDIRECT_URI,
                "OAUTH_SCOPES": "mcp.read,mcp.write",
            },
        }
    }
}


def _validate_http_url(value: str, env_name: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"{env_name} must be an absolute http(s) URL (got: {value!r})")
    return value


class ProxyConfig(BaseSettings):
    """Process-wide proxy configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Upstream MCP server
    mcp_server_url: str = Field(..., description="Upstream MCP endpoint (the protected resource)")
    mcp_server_name: str = Field(default="MCP Server", description="Display name")

    # OAuth client
    oauth_client_id: str | None = Field(default=None, description="Static OAuth client ID")
    oauth_client_secret: str | None = Field(default=None, description="Static OAuth client secret")
    oauth_redirect_uri: str = Field(default=DEFAULT_REDIRECT_URI, description="OAuth redirect URI")
    oauth_scopes: str = Field(default="", description="Comma-separated scopes")
    oauth_server_port: int = Field(default=3000, ge=1, le=65535)
    oauth_callback_timeout: float = Field(default=300.0, gt=0)
    oauth_resource_indicator: bool = Field(default=False)
    oauth_open_browser: bool = Field(default=True)
    http_timeout: float = Field(default=30.0, gt=0)

    # Logging
    log_level: str = Field(default="info")
    debug: bool = Field(default=False)
    quiet: bool = Field(default=False)

    @field_validator("mcp_server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        return _validate_http_url(v, "MCP_SERVER_URL")

    @field_validator("oauth_redirect_uri")
    @classmethod
    def validate_redirect_uri(cls, v: str) -> str:
        return _validate_http_url(v, "OAUTH_REDIRECT_URI")

    @field_validator("oauth_client_id", "oauth_client_secret", mode="before")
    @classmethod
    def empty_as_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def scopes(self) -> list[str]:
        """Configured scopes, split on commas with blanks dropped."""
        return [s.strip() for s in self.oauth_scopes.split(",") if s.strip()]

    @property
    def proxy_name(self) -> str:
        return f"{self.mcp_server_name}-proxy"

    @property
    def callback_port(self) -> int:
        """Port from the redirect URI, else the configured callback port."""
        return urlparse(self.oauth_redirect_uri).port or self.oauth_server_port


def log_configuration_help(missing: list[str]) -> None:
    help_block = {
        "missingVariables": missing,
        "environmentVariables": ENVIRONMENT_HELP,
        "exampleClientConfiguration": EXAMPLE_CLIENT_CONFIGURATION,
    }
    logger.error(f"Missing required environment variables:\n{json.dumps(help_block, indent=2)}")


def load_config(**overrides) -> ProxyConfig:
    """
    Load and validate configuration.

    Args:
        **overrides: Field values that take precedence over the environment

    Returns:
        ProxyConfig: Validated configuration

    Raises:
        ConfigurationError: If required variables are missing or values are invalid
    """
    try:
        return ProxyConfig(**overrides)
    except ValidationError as e:
        missing = [
            str(err["loc"][0]).upper()
            for err in e.errors()
            if err["type"] == "missing" and err["loc"]
        ]
        if missing:
            log_configuration_help(missing)
            raise ConfigurationError(missing) from e
        problems = "; ".join(err["msg"] for err in e.errors())
        raise ConfigurationError([], f"Invalid configuration: {problems}") from e
