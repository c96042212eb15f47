"""
OAuth 2.0 Authorization Code + PKCE Components for the Proxy

Components:
- oauth_client: Authorization flow engine (discovery, registration, redirect, exchange, refresh)
- oauth_provider: Client provider interface backed by the token store
- token_store: In-memory credentials, tokens and PKCE material
- server_metadata: Resource and authorization server metadata discovery (RFC 9728, RFC 8414)
- client_registration: Dynamic client registration (RFC 7591)
- callback_server: Local redirect capture
- bearer_auth: Bearer token auth with refresh for the upstream transport
- oauth_error_handler: WWW-Authenticate challenge parsing
"""

__all__ = [
    "AuthorizationFlowEngine",
    "BearerAuth",
    "LocalCallbackListener",
    "PKCEManager",
    "ProxyOAuthProvider",
    "TokenStore",
]


# Lazy imports to avoid circular dependencies
def __getattr__(name: str):
    if name == "AuthorizationFlowEngine":
        from mcp_oauth_proxy.auth.oauth_client import AuthorizationFlowEngine

        return AuthorizationFlowEngine
    elif name == "BearerAuth":
        from mcp_oauth_proxy.auth.bearer_auth import BearerAuth

        return BearerAuth
    elif name == "LocalCallbackListener":
        from mcp_oauth_proxy.auth.callback_server import LocalCallbackListener

        return LocalCallbackListener
    elif name == "PKCEManager":
        from mcp_oauth_proxy.auth.oauth_pkce import PKCEManager

        return PKCEManager
    elif name == "ProxyOAuthProvider":
        from mcp_oauth_proxy.auth.oauth_provider import ProxyOAuthProvider

        return ProxyOAuthProvider
    elif name == "TokenStore":
        from mcp_oauth_proxy.auth.token_store import TokenStore

        return TokenStore

    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
