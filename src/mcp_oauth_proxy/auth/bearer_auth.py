"""
Bearer Token Auth for the Upstream Transport

An ``httpx.Auth`` that stamps every upstream request with the current access
token and refreshes it when it is known to be expired or when the upstream
answers 401. Refreshes are single-flight: concurrent requests wait on the
token store's lock and reuse the outcome of the refresh already in progress.
"""

import logging
from collections.abc import AsyncGenerator, Generator

import httpx

from mcp_oauth_proxy.auth.oauth_client import AuthorizationFlowEngine
from mcp_oauth_proxy.auth.oauth_error_handler import challenge_from_response
from mcp_oauth_proxy.auth.token_store import TokenStore
from mcp_oauth_proxy.errors import TokenRefreshError

logger = logging.getLogger(__name__)


class BearerAuth(httpx.Auth):
    def __init__(self, engine: AuthorizationFlowEngine, token_store: TokenStore):
        self.engine = engine
        self.token_store = token_store

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("BearerAuth only supports async clients")

    def _apply(self, request: httpx.Request) -> str | None:
        tokens = self.token_store.tokens()
        if tokens is None:
            return None
        request.headers["Authorization"] = f"Bearer {tokens.access_token}"
        return tokens.access_token

    async def refresh_once(self, stale_token: str | None) -> bool:
        """
        Refresh unless another request already replaced ``stale_token``.

        Returns:
            bool: True if a usable (new) access token is now held
        """
        async with self.token_store.refresh_lock:
            current = self.token_store.access_token
            if current is not None and current != stale_token:
                logger.debug("Access token already refreshed by a concurrent request")
                return True
            try:
                await self.engine.refresh()
            except TokenRefreshError as e:
                logger.warning(f"Token refresh failed: {e}")
                return False
            return True

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        tokens = self.token_store.tokens()
        if tokens is not None and tokens.refresh_token and tokens.is_expired():
            logger.debug("Access token expired, refreshing before request")
            await self.refresh_once(tokens.access_token)

        sent_token = self._apply(request)
        response = yield request

        if response.status_code != 401:
            return

        challenge = challenge_from_response(response)
        if challenge is not None:
            logger.warning(
                f"Upstream rejected the access token: error={challenge.error}, "
                f"description={challenge.error_description}"
            )
            self.engine.note_challenge(challenge)
            if challenge.is_insufficient_scope():
                logger.error(f"Upstream requires additional scopes: {' '.join(challenge.scopes)}")
                return
            if challenge.is_token_expired():
                logger.info("Access token expired or revoked upstream")
        else:
            logger.warning(f"Upstream returned 401 for {request.method} {request.url}")

        if self.token_store.refresh_token is None:
            return
        if await self.refresh_once(sent_token):
            self._apply(request)
            yield request
