"""
OAuth Client Provider

The small capability interface the authorization flow engine talks to:
client identity, tokens, PKCE material and the user redirect. The proxy's
implementation keeps everything in the in-memory TokenStore and sends the
user to the authorization URL through the system browser.
"""

import logging
import webbrowser
from typing import Protocol

import anyio

from mcp_oauth_proxy.auth.oauth_models import (
    ClientCredentials,
    ClientRegistrationRequest,
    PKCEPair,
    TokenSet,
)
from mcp_oauth_proxy.auth.token_store import TokenStore

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_NAME = "MCP OAuth Proxy Client"


class OAuthClientProvider(Protocol):
    @property
    def redirect_url(self) -> str: ...

    def client_metadata(self, scope: str | None = None) -> ClientRegistrationRequest: ...

    def state(self) -> str | None: ...

    def client_information(self) -> ClientCredentials | None: ...

    def save_client_information(self, credentials: ClientCredentials) -> None: ...

    def tokens(self) -> TokenSet | None: ...

    def save_tokens(self, tokens: TokenSet) -> None: ...

    async def redirect_to_authorization(self, authorization_url: str) -> None: ...

    def save_code_verifier(self, pair: PKCEPair) -> None: ...

    def code_verifier(self) -> str: ...

    def clear_code_verifier(self) -> None: ...


class ProxyOAuthProvider:
    """
    OAuthClientProvider backed by a TokenStore.

    Args:
        token_store: Process-wide credential holder
        redirect_uri: Configured OAuth redirect URI
        client_secret: Secret to advertise ``client_secret_post`` with when registering
        open_browser: Whether to launch the system browser for the redirect
        client_name: Client name sent with dynamic registration
    """

    def __init__(
        self,
        token_store: TokenStore,
        redirect_uri: str,
        client_secret: str | None = None,
        open_browser: bool = True,
        client_name: str = DEFAULT_CLIENT_NAME,
    ):
        self.token_store = token_store
        self._redirect_uri = redirect_uri
        self.client_secret = client_secret
        self.open_browser = open_browser
        self.client_name = client_name

    @property
    def redirect_url(self) -> str:
        return self._redirect_uri

    def client_metadata(self, scope: str | None = None) -> ClientRegistrationRequest:
        return ClientRegistrationRequest(
            client_name=self.client_name,
            redirect_uris=[self._redirect_uri],
            token_endpoint_auth_method="client_secret_post" if self.client_secret else "none",
            scope=scope or None,
        )

    def state(self) -> str | None:
        return self.token_store.state()

    def client_information(self) -> ClientCredentials | None:
        return self.token_store.client_credentials()

    def save_client_information(self, credentials: ClientCredentials) -> None:
        self.token_store.save_client_credentials(credentials)

    def tokens(self) -> TokenSet | None:
        return self.token_store.tokens()

    def save_tokens(self, tokens: TokenSet) -> None:
        self.token_store.save_tokens(tokens)

    def save_code_verifier(self, pair: PKCEPair) -> None:
        self.token_store.save_pkce_pair(pair)

    def code_verifier(self) -> str:
        return self.token_store.code_verifier()

    def clear_code_verifier(self) -> None:
        self.token_store.clear_pkce_pair()

    async def redirect_to_authorization(self, authorization_url: str) -> None:
        """Open the authorization URL, or log it when no browser is available."""
        logger.info(f"Authorization URL: {authorization_url}")
        if not self.open_browser:
            logger.warning(f"Open this URL in your browser to authorize:\n{authorization_url}")
            return

        try:
            opened = await anyio.to_thread.run_sync(webbrowser.open, authorization_url)
        except webbrowser.Error as e:
            logger.debug(f"webbrowser.open failed: {e}")
            opened = False

        if opened:
            logger.info("Opened authorization URL in the default browser")
        else:
            logger.warning(
                f"Could not open a browser. Open this URL manually to authorize:\n{authorization_url}"
            )
