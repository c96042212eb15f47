"""
OAuth Authorization Flow Engine

Drives the Authorization Code + PKCE exchange against a discovered
authorization server:

    IDLE -> DISCOVERING -> REGISTERING -> AWAITING_REDIRECT -> EXCHANGING -> AUTHORIZED
    IDLE -> REFRESHING -> AUTHORIZED   (when a refresh token is already held)

A failed refresh falls through to the full flow. Every other failure aborts
the attempt; a retry starts from IDLE with fresh PKCE material.

References:
- RFC 6749: The OAuth 2.0 Authorization Framework
- RFC 7636: Proof Key for Code Exchange
- RFC 8707: Resource Indicators for OAuth 2.0
"""

import logging
from collections.abc import Callable
from enum import Enum
from urllib.parse import urlencode, urlparse

import anyio
import httpx
from pydantic import ValidationError

from mcp_oauth_proxy.auth.callback_server import DEFAULT_CALLBACK_TIMEOUT, LocalCallbackListener
from mcp_oauth_proxy.auth.client_registration import ClientRegistrar
from mcp_oauth_proxy.auth.oauth_error_handler import WWWAuthenticateChallenge
from mcp_oauth_proxy.auth.oauth_models import (
    AuthorizationCode,
    AuthorizationRequest,
    AuthServerMetadata,
    ClientCredentials,
    ProtectedResourceMetadata,
    TokenResponse,
    TokenSet,
)
from mcp_oauth_proxy.auth.oauth_pkce import PKCEManager, states_match
from mcp_oauth_proxy.auth.oauth_provider import OAuthClientProvider
from mcp_oauth_proxy.auth.server_metadata import ServerMetadataCache, get_origin
from mcp_oauth_proxy.errors import (
    InvalidStateError,
    OAuthFlowError,
    TokenExchangeError,
    TokenRefreshError,
)

logger = logging.getLogger(__name__)

ListenerFactory = Callable[..., LocalCallbackListener]


class AuthState(str, Enum):
    IDLE = "IDLE"
    DISCOVERING = "DISCOVERING"
    REGISTERING = "REGISTERING"
    AWAITING_REDIRECT = "AWAITING_REDIRECT"
    EXCHANGING = "EXCHANGING"
    AUTHORIZED = "AUTHORIZED"
    REFRESHING = "REFRESHING"


class AuthResult(str, Enum):
    AUTHORIZED = "AUTHORIZED"
    REDIRECT = "REDIRECT"


def correct_authorization_url(authorization_url: str, auth_server: str) -> str:
    """
    Point the authorization URL back at the authorization server's origin.

    Some servers publish an authorization endpoint on a different origin
    than the server itself. In that case the URL is rebuilt as
    ``{auth_server}/authorize?{query}``; a ``/v2.0`` base is first mapped to
    ``/oauth2/v2.0``.
    """
    if get_origin(authorization_url) == get_origin(auth_server):
        return authorization_url

    base = auth_server.rstrip("/")
    if base.endswith("/v2.0") and not base.endswith("/oauth2/v2.0"):
        base = f"{base[: -len('/v2.0')]}/oauth2/v2.0"

    corrected = f"{base}/authorize?{urlparse(authorization_url).query}"
    logger.warning(
        f"Authorization endpoint origin {get_origin(authorization_url)} does not match "
        f"authorization server {get_origin(auth_server)}; using {base}/authorize"
    )
    return corrected


class AuthorizationFlowEngine:
    """
    OAuth client for the proxy's single upstream resource.

    Only one attempt is in flight at a time; the caller drives it with
    authorize(), then wait_for_authorization_code() and
    exchange_authorization_code() when authorize() returns REDIRECT.
    authenticate() runs the whole sequence.
    """

    def __init__(
        self,
        resource_url: str,
        provider: OAuthClientProvider,
        scopes: list[str] | None = None,
        callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        callback_port: int | None = None,
        timeout: float = 30.0,
        use_resource_indicator: bool = False,
        listener_factory: ListenerFactory = LocalCallbackListener,
    ):
        self.resource_url = resource_url
        self.provider = provider
        self.scopes = scopes or []
        self.callback_timeout = callback_timeout
        self.callback_port = callback_port
        self.timeout = timeout
        self.use_resource_indicator = use_resource_indicator
        self.listener_factory = listener_factory

        self.pkce_manager = PKCEManager()
        self.metadata_cache = ServerMetadataCache(timeout=timeout)
        self.registrar = ClientRegistrar(provider, timeout=timeout)

        self.state = AuthState.IDLE
        self.resource_metadata_url: str | None = None
        self._resource_metadata: ProtectedResourceMetadata | None = None
        self._auth_server: str | None = None
        self._auth_metadata: AuthServerMetadata | None = None
        self._listener: LocalCallbackListener | None = None

    @property
    def auth_server(self) -> str | None:
        return self._auth_server

    def note_challenge(self, challenge: WWWAuthenticateChallenge) -> None:
        """Remember a resource_metadata hint for the next discovery."""
        if challenge.resource_metadata:
            logger.debug(f"Recorded resource_metadata hint {challenge.resource_metadata}")
            self.resource_metadata_url = challenge.resource_metadata

    # Discovery

    async def _discover(self) -> AuthServerMetadata:
        if self._auth_metadata is not None:
            return self._auth_metadata

        self._resource_metadata = await self.metadata_cache.fetch_protected_resource_metadata(
            self.resource_url, self.resource_metadata_url
        )
        self._auth_server = ServerMetadataCache.select_authorization_server(
            self.resource_url, self._resource_metadata
        )
        self._auth_metadata = await self.metadata_cache.fetch_auth_server_metadata(
            self._auth_server
        )
        return self._auth_metadata

    def _resolve_scope(self) -> str | None:
        """Configured scopes, else the scopes the resource advertises."""
        if self.scopes:
            return " ".join(self.scopes)
        if self._resource_metadata and self._resource_metadata.scopes_supported:
            return " ".join(self._resource_metadata.scopes_supported)
        return None

    def _resource_indicator(self) -> str | None:
        if not self.use_resource_indicator:
            return None
        if self._resource_metadata and self._resource_metadata.resource:
            return self._resource_metadata.resource
        return self.resource_url

    # Phase 1: authorize

    async def authorize(self) -> AuthResult:
        """
        Start an authorization attempt.

        Returns:
            AuthResult.AUTHORIZED if a held refresh token was redeemed,
            AuthResult.REDIRECT once the user has been sent to the
            authorization URL and the callback listener is running

        Raises:
            OAuthFlowError: Discovery, registration or listener failures
        """
        tokens = self.provider.tokens()
        if tokens is not None and tokens.refresh_token:
            try:
                await self.refresh()
                return AuthResult.AUTHORIZED
            except TokenRefreshError as e:
                logger.info(f"Token refresh failed, starting full authorization: {e}")

        try:
            self.state = AuthState.DISCOVERING
            metadata = await self._discover()
            scope = self._resolve_scope()

            self.state = AuthState.REGISTERING
            credentials = await self.registrar.ensure_client(self._auth_server, metadata, scope)

            self.state = AuthState.AWAITING_REDIRECT
            pair = self.pkce_manager.generate_pkce_pair()
            self.provider.save_code_verifier(pair)

            listener = self.listener_factory(
                self.provider.redirect_url,
                port=self.callback_port,
                timeout=self.callback_timeout,
                expected_state=pair.state,
            )
            await listener.start()
            self._listener = listener

            authorization_url = self.build_authorization_url(
                AuthorizationRequest(
                    authorization_endpoint=metadata.authorization_endpoint,
                    client_id=credentials.client_id,
                    redirect_uri=self.provider.redirect_url,
                    scope=scope,
                    state=pair.state,
                    code_challenge=pair.code_challenge,
                    resource=self._resource_indicator(),
                )
            )
            await self.provider.redirect_to_authorization(authorization_url)
        except Exception:
            await self._abort()
            raise

        return AuthResult.REDIRECT

    def build_authorization_url(self, request: AuthorizationRequest) -> str:
        """
        Build the front-channel authorization URL.

        ``scope`` is omitted when empty and ``resource`` only appears when
        the resource indicator is enabled.
        """
        params = {
            "response_type": request.response_type,
            "client_id": request.client_id,
            "redirect_uri": request.redirect_uri,
            "state": request.state,
            "code_challenge": request.code_challenge,
            "code_challenge_method": request.code_challenge_method,
        }
        if request.scope:
            params["scope"] = request.scope
        if request.resource:
            params["resource"] = request.resource

        url = f"{request.authorization_endpoint}?{urlencode(params)}"
        if self._auth_server:
            url = correct_authorization_url(url, self._auth_server)
        return url

    # Phase 2: redirect capture

    async def wait_for_authorization_code(self) -> AuthorizationCode:
        """
        Wait for the local callback listener to capture the redirect.

        Raises:
            AuthorizationTimeoutError: No redirect within the callback timeout
            AuthorizationDeniedError: The provider redirected back with ``error``
        """
        if self._listener is None:
            raise OAuthFlowError("No authorization attempt is awaiting a redirect")

        try:
            return await self._listener.wait_for_callback()
        except Exception:
            await self._abort()
            raise
        finally:
            if self._listener is not None:
                with anyio.CancelScope(shield=True):
                    await self._listener.close()
                self._listener = None

    # Phase 3: code exchange

    async def exchange_authorization_code(self, authorization_code: AuthorizationCode) -> TokenSet:
        """
        Redeem the authorization code for a token set.

        The returned state is checked against the stored CSRF state before
        the token endpoint is contacted. The PKCE pair is consumed whether
        or not the exchange succeeds.

        Raises:
            InvalidStateError: Returned state does not match
            TokenExchangeError: The token endpoint rejected the code
        """
        if not states_match(self.provider.state(), authorization_code.state):
            await self._abort()
            logger.error("OAuth state mismatch; refusing to exchange authorization code")
            raise InvalidStateError("Invalid state parameter returned by authorization server")

        self.state = AuthState.EXCHANGING
        try:
            metadata = await self._discover()
            credentials = self._require_credentials(TokenExchangeError)
            data = {
                "grant_type": "authorization_code",
                "code": authorization_code.code,
                "redirect_uri": self.provider.redirect_url,
                "client_id": credentials.client_id,
                "code_verifier": self.provider.code_verifier(),
            }
            response = await self._request_token(
                metadata.token_endpoint, data, credentials, TokenExchangeError
            )
        except Exception:
            await self._abort()
            raise

        self.provider.clear_code_verifier()
        tokens = TokenSet.from_response(response)
        self.provider.save_tokens(tokens)
        self.state = AuthState.AUTHORIZED
        logger.info("Authorization code exchanged for access token")
        return tokens

    # Refresh

    async def refresh(self) -> TokenSet:
        """
        Redeem the held refresh token.

        Raises:
            TokenRefreshError: No refresh token is held or the grant was rejected
        """
        current = self.provider.tokens()
        if current is None or not current.refresh_token:
            raise TokenRefreshError("No refresh token available")

        self.state = AuthState.REFRESHING
        try:
            metadata = await self._discover()
            credentials = self._require_credentials(TokenRefreshError)
            data = {
                "grant_type": "refresh_token",
                "refresh_token": current.refresh_token,
                "client_id": credentials.client_id,
            }
            response = await self._request_token(
                metadata.token_endpoint, data, credentials, TokenRefreshError
            )
        except Exception:
            self.state = AuthState.IDLE
            raise

        tokens = TokenSet.from_response(response, previous_refresh_token=current.refresh_token)
        self.provider.save_tokens(tokens)
        self.state = AuthState.AUTHORIZED
        logger.info("Access token refreshed")
        return tokens

    # Whole sequence

    async def authenticate(self) -> TokenSet:
        """Run authorize, redirect capture and code exchange to completion."""
        if await self.authorize() == AuthResult.REDIRECT:
            logger.info("Waiting for OAuth authorization in the browser")
            authorization_code = await self.wait_for_authorization_code()
            await self.exchange_authorization_code(authorization_code)
        return self.provider.tokens()

    async def reset(self) -> None:
        """Forget per-attempt state: discovered metadata, PKCE pair and listener."""
        await self._abort()
        self.metadata_cache.clear()
        self._resource_metadata = None
        self._auth_server = None
        self._auth_metadata = None

    # Helpers

    async def _abort(self) -> None:
        self.provider.clear_code_verifier()
        if self._listener is not None:
            await self._listener.close()
            self._listener = None
        self.state = AuthState.IDLE

    def _require_credentials(self, error_cls: type[OAuthFlowError]) -> ClientCredentials:
        credentials = self.provider.client_information()
        if credentials is None:
            raise error_cls("No OAuth client credentials available")
        return credentials

    async def _request_token(
        self,
        token_endpoint: str,
        data: dict[str, str],
        credentials: ClientCredentials,
        error_cls: type[OAuthFlowError],
    ) -> TokenResponse:
        """POST a form-encoded grant to the token endpoint."""
        if credentials.is_confidential:
            data["client_secret"] = credentials.client_secret
        resource = self._resource_indicator()
        if resource:
            data["resource"] = resource

        logger.debug(f"Token request: endpoint={token_endpoint}, grant_type={data['grant_type']}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    token_endpoint,
                    data=data,
                    headers={
                        "Content-Type": "application/x-www-form-urlencoded",
                        "Accept": "application/json",
                    },
                )
        except httpx.HTTPError as e:
            raise error_cls(f"Token request to {token_endpoint} failed: {e}") from e

        if response.status_code != 200:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            if not isinstance(error_data, dict):
                error_data = {}
            error = error_data.get("error", "unknown_error")
            description = error_data.get("error_description")
            logger.error(
                f"Token request failed: status={response.status_code}, error={error}, "
                f"description={description}"
            )
            message = f"Token request failed ({response.status_code}): {error}"
            if description:
                message = f"{message} - {description}"
            raise error_cls(message)

        try:
            return TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise error_cls(f"Invalid token response: {e}") from e
