"""
In-Memory Token Store

Holds the OAuth state for the single upstream connection for the lifetime of
the process: client credentials, the current token set, and the PKCE pair /
CSRF state of the attempt in flight. Nothing is persisted.
"""

import asyncio
import logging

from mcp_oauth_proxy.auth.oauth_models import ClientCredentials, PKCEPair, TokenSet

logger = logging.getLogger(__name__)


class TokenStore:
    """
    Get/set accessors for the proxy's OAuth credentials.

    Only the authorization flow writes; the outbound transport reads the
    access token on every request. ``refresh_lock`` serializes refreshes so
    at most one is in flight.
    """

    def __init__(self, client_credentials: ClientCredentials | None = None):
        self._client_credentials = client_credentials
        self._tokens: TokenSet | None = None
        self._pkce: PKCEPair | None = None
        self.refresh_lock = asyncio.Lock()

    # Client credentials

    def client_credentials(self) -> ClientCredentials | None:
        return self._client_credentials

    def save_client_credentials(self, credentials: ClientCredentials) -> None:
        self._client_credentials = credentials
        logger.debug(f"Saved OAuth client credentials for client_id={credentials.client_id}")

    # Tokens

    def tokens(self) -> TokenSet | None:
        return self._tokens

    def save_tokens(self, tokens: TokenSet) -> None:
        self._tokens = tokens
        logger.info("OAuth tokens saved successfully")

    def clear_tokens(self) -> None:
        self._tokens = None

    @property
    def access_token(self) -> str | None:
        return self._tokens.access_token if self._tokens else None

    @property
    def refresh_token(self) -> str | None:
        return self._tokens.refresh_token if self._tokens else None

    # PKCE pair and CSRF state

    def save_pkce_pair(self, pair: PKCEPair) -> None:
        self._pkce = pair

    def pkce_pair(self) -> PKCEPair | None:
        return self._pkce

    def state(self) -> str | None:
        return self._pkce.state if self._pkce else None

    def code_verifier(self) -> str:
        if self._pkce is None:
            raise ValueError("Code verifier not found")
        return self._pkce.code_verifier

    def clear_pkce_pair(self) -> None:
        """Discard the verifier and state once consumed or abandoned."""
        self._pkce = None
