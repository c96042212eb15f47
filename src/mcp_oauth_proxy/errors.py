"""
Proxy Error Kinds

Authorization-phase errors abort the in-progress OAuth attempt and are fatal
to startup. Forwarder-side errors are raised per inbound call.

Upstream protocol faults are not represented here: they arrive as
``mcp.shared.exceptions.McpError`` and are passed through unchanged.
"""


class ProxyError(Exception):
    """Base class for every error raised by the proxy itself."""


class ConfigurationError(ProxyError):
    """Raised when required configuration is missing or invalid."""

    def __init__(self, missing: list[str], message: str | None = None):
        self.missing = missing
        self.message = message or (
            f"Missing required environment variables: {', '.join(missing)}"
        )
        super().__init__(self.message)


class OAuthFlowError(ProxyError):
    """Base class for errors that abort an authorization attempt."""


class DiscoveryError(OAuthFlowError):
    """No usable authorization server metadata was found."""


class RegistrationError(OAuthFlowError):
    """Dynamic client registration is unsupported or was rejected."""


class InvalidStateError(OAuthFlowError):
    """The state returned by the redirect does not match the stored CSRF state."""


class AuthorizationDeniedError(OAuthFlowError):
    """The authorization server redirected back with an explicit ``error``."""

    def __init__(self, error: str, error_description: str | None = None):
        self.error = error
        self.error_description = error_description
        message = f"Authorization denied: {error}"
        if error_description:
            message = f"{message} ({error_description})"
        super().__init__(message)


class AuthorizationTimeoutError(OAuthFlowError):
    """No redirect reached the local callback listener in time."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"OAuth authorization timed out after {timeout:g} seconds")


class CallbackPortInUseError(OAuthFlowError):
    """The local callback listener could not bind its port."""

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        self.hint = (
            f"Port {port} is already in use. Set OAUTH_REDIRECT_URI to a redirect URI "
            f"with a different port (for example http://localhost:{port + 1}/oauth/callback) "
            f"and register that URI with the authorization server."
        )
        super().__init__(f"Cannot listen for the OAuth callback on {host}:{port}. {self.hint}")


class TokenExchangeError(OAuthFlowError):
    """The token endpoint rejected the authorization code exchange."""


class TokenRefreshError(OAuthFlowError):
    """The token endpoint rejected the refresh-token grant."""


class NotConnectedError(ProxyError):
    """A forwarding call arrived before the upstream connection was ready."""

    def __init__(self, message: str | None = None):
        super().__init__(
            message
            or "Proxy not connected to MCP server. Connection may have failed during startup."
        )


class UpstreamFault(ProxyError):
    """A non-protocol failure while relaying a call to the upstream server."""
