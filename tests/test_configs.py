"""
Tests for environment configuration loading
"""

import pytest

from mcp_oauth_proxy.configs import ProxyConfig, load_config
from mcp_oauth_proxy.errors import ConfigurationError

ENV_VARS = [
    "MCP_SERVER_URL",
    "MCP_SERVER_NAME",
    "OAUTH_CLIENT_ID",
    "OAUTH_CLIENT_SECRET",
    "OAUTH_REDIRECT_URI",
    "OAUTH_SCOPES",
    "OAUTH_SERVER_PORT",
    "LOG_LEVEL",
    "DEBUG",
    "QUIET",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_missing_server_url_is_enumerated(self, caplog):
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(_env_file=None)

        assert exc_info.value.missing == ["MCP_SERVER_URL"]
        assert "MCP_SERVER_URL" in str(exc_info.value)
        assert "exampleClientConfiguration" in caplog.text

    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("MCP_SERVER_URL", "https://mcp.example/mcp")
        config = load_config(_env_file=None)

        assert config.mcp_server_name == "MCP Server"
        assert config.proxy_name == "MCP Server-proxy"
        assert config.oauth_client_id is None
        assert config.oauth_redirect_uri == "http://localhost:3000/oauth/callback"
        assert config.scopes == []
        assert config.oauth_callback_timeout == 300
        assert config.oauth_resource_indicator is False
        assert config.callback_port == 3000

    def test_environment_values(self, monkeypatch):
        monkeypatch.setenv("MCP_SERVER_URL", "https://mcp.example/mcp")
        monkeypatch.setenv("MCP_SERVER_NAME", "Docs")
        monkeypatch.setenv("OAUTH_CLIENT_ID", "client-1")
        monkeypatch.setenv("OAUTH_CLIENT_SECRET", "")
        monkeypatch.setenv("OAUTH_SCOPES", "mcp.read, mcp.write,,")
        monkeypatch.setenv("OAUTH_REDIRECT_URI", "http://127.0.0.1:8765/cb")
        monkeypatch.setenv("DEBUG", "true")
        config = load_config(_env_file=None)

        assert config.proxy_name == "Docs-proxy"
        assert config.oauth_client_id == "client-1"
        assert config.oauth_client_secret is None
        assert config.scopes == ["mcp.read", "mcp.write"]
        assert config.callback_port == 8765
        assert config.debug is True

    def test_server_port_used_when_redirect_has_none(self):
        config = ProxyConfig(
            mcp_server_url="https://mcp.example/mcp",
            oauth_redirect_uri="http://localhost/oauth/callback",
            oauth_server_port=4000,
            _env_file=None,
        )
        assert config.callback_port == 4000

    def test_invalid_url(self, monkeypatch):
        monkeypatch.setenv("MCP_SERVER_URL", "not-a-url")

        with pytest.raises(ConfigurationError) as exc_info:
            load_config(_env_file=None)

        assert exc_info.value.missing == []
        assert "MCP_SERVER_URL" in str(exc_info.value)
