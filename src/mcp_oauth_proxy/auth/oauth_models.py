"""
OAuth 2.0 Request, Response and Credential Models

Wire models for metadata discovery, dynamic client registration and the
token endpoint, plus the in-memory credential records held by the token store.
"""

from datetime import UTC, datetime, timedelta
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

TokenEndpointAuthMethod = Literal["none", "client_secret_post", "client_secret_basic"]


class ProtectedResourceMetadata(BaseModel):
    """
    OAuth 2.0 Protected Resource Metadata (RFC 9728)

    Discovered from {resource}/.well-known/oauth-protected-resource
    """

    model_config = ConfigDict(extra="allow")

    resource: str | None = Field(None, description="Resource identifier")
    authorization_servers: list[str] = Field(
        default_factory=list, description="Authorization server issuer URLs"
    )
    scopes_supported: list[str] | None = Field(None, description="Scopes the resource accepts")
    bearer_methods_supported: list[str] | None = None
    resource_name: str | None = None


class AuthServerMetadata(BaseModel):
    """
    OAuth 2.0 Authorization Server Metadata (RFC 8414) or OpenID Connect
    discovery document. Only the fields the proxy uses are modelled; the two
    endpoints are mandatory.
    """

    model_config = ConfigDict(extra="allow")

    issuer: str | None = None
    authorization_endpoint: str = Field(..., description="Authorization endpoint URL")
    token_endpoint: str = Field(..., description="Token endpoint URL")
    registration_endpoint: str | None = Field(None, description="RFC 7591 registration endpoint")
    revocation_endpoint: str | None = None
    response_types_supported: list[str] | None = None
    grant_types_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None
    scopes_supported: list[str] | None = None
    token_endpoint_auth_methods_supported: list[str] | None = None

    def supports_s256(self) -> bool:
        """A server that does not advertise methods is assumed to accept S256."""
        if self.code_challenge_methods_supported is None:
            return True
        return "S256" in self.code_challenge_methods_supported


class ClientRegistrationRequest(BaseModel):
    """
    OAuth 2.0 Dynamic Client Registration Request (RFC 7591)
    """

    client_name: str = "MCP OAuth Proxy Client"
    client_uri: str | None = None
    redirect_uris: list[str]
    grant_types: list[Literal["authorization_code", "refresh_token"]] = [
        "authorization_code",
        "refresh_token",
    ]
    response_types: list[str] = ["code"]
    token_endpoint_auth_method: TokenEndpointAuthMethod = "none"
    scope: str | None = None


class ClientCredentials(BaseModel):
    """
    Identity of this proxy as an OAuth client.

    Comes either from static configuration or from a registration response
    (RFC 7591 Section 3.2.1). The auth method follows from secret presence
    unless the server states it explicitly.
    """

    model_config = ConfigDict(extra="ignore")

    client_id: str = Field(..., description="OAuth client ID")
    client_secret: str | None = Field(None, description="Client secret (confidential clients only)")
    token_endpoint_auth_method: TokenEndpointAuthMethod | None = None
    client_id_issued_at: int | None = None
    client_secret_expires_at: int | None = None

    @model_validator(mode="after")
    def derive_auth_method(self) -> "ClientCredentials":
        if not self.client_secret:
            self.client_secret = None
        if self.token_endpoint_auth_method is None:
            self.token_endpoint_auth_method = (
                "client_secret_post" if self.client_secret else "none"
            )
        return self

    @property
    def is_confidential(self) -> bool:
        return self.client_secret is not None


class PKCEPair(BaseModel):
    """Proof-of-possession material for exactly one authorization attempt."""

    code_verifier: str = Field(..., min_length=43, max_length=128)
    code_challenge: str = Field(..., min_length=43)
    code_challenge_method: Literal["S256"] = "S256"
    state: str = Field(..., min_length=32, description="CSRF state echoed through the redirect")


class AuthorizationRequest(BaseModel):
    """
    Parameters for the front-channel authorization URL.
    """

    authorization_endpoint: str = Field(..., description="Authorization endpoint URL")
    client_id: str = Field(..., description="OAuth client ID")
    redirect_uri: str = Field(..., description="OAuth callback URL")
    scope: str | None = Field(None, description="Space-separated scopes, omitted when empty")
    state: str = Field(..., description="CSRF protection state parameter")
    code_challenge: str = Field(..., description="PKCE code challenge (S256)")
    code_challenge_method: Literal["S256"] = "S256"
    response_type: Literal["code"] = "code"
    resource: str | None = Field(None, description="RFC 8707 resource indicator")


class TokenResponse(BaseModel):
    """
    Token endpoint response (RFC 6749 Section 5.1).
    """

    model_config = ConfigDict(extra="allow")

    access_token: str = Field(..., description="OAuth access token")
    token_type: str = Field(default="Bearer", description="Token type (usually 'Bearer')")
    expires_in: int | None = Field(None, description="Token lifetime in seconds")
    refresh_token: str | None = Field(None, description="Refresh token (optional)")
    scope: str | None = Field(None, description="Granted scopes (space-separated)")


class TokenSet(BaseModel):
    """Access credential held for the lifetime of the process."""

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    scope: str | None = None
    expires_in: int | None = None
    expires_at: datetime | None = None

    @classmethod
    def from_response(
        cls, response: TokenResponse, previous_refresh_token: str | None = None
    ) -> "TokenSet":
        """
        Build a token set from a token response.

        A refresh response that omits ``refresh_token`` keeps the previous one
        (RFC 6749 Section 6).
        """
        expires_at = None
        if response.expires_in is not None:
            expires_at = datetime.now(UTC) + timedelta(seconds=response.expires_in)
        return cls(
            access_token=response.access_token,
            token_type=response.token_type or "Bearer",
            refresh_token=response.refresh_token or previous_refresh_token,
            scope=response.scope,
            expires_in=response.expires_in,
            expires_at=expires_at,
        )

    def is_expired(self, leeway_seconds: int = 30) -> bool:
        """True when the expiry hint says the token is (about to be) expired."""
        if self.expires_at is None:
            return False
        return datetime.now(UTC) + timedelta(seconds=leeway_seconds) >= self.expires_at


class AuthorizationCode(BaseModel):
    """One-time code captured from the redirect."""

    code: str
    state: str | None = None


class CallbackResult(BaseModel):
    """Query parameters read from the redirect request."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
