"""
Dynamic Client Registration

Obtains OAuth client credentials for the proxy. Statically configured
credentials are used as-is; otherwise the proxy registers itself with the
discovered authorization server and keeps the result for the process lifetime.

References:
- RFC 7591: OAuth 2.0 Dynamic Client Registration Protocol
"""

import logging

import httpx
from pydantic import ValidationError

from mcp_oauth_proxy.auth.oauth_models import (
    AuthServerMetadata,
    ClientCredentials,
    ClientRegistrationRequest,
)
from mcp_oauth_proxy.auth.oauth_provider import OAuthClientProvider
from mcp_oauth_proxy.errors import RegistrationError

logger = logging.getLogger(__name__)


class DynamicClientRegistration:
    """
    Client for the RFC 7591 registration endpoint.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    async def register_client(
        self,
        registration_endpoint: str,
        request: ClientRegistrationRequest,
    ) -> ClientCredentials:
        """
        Register an OAuth client with the authorization server.

        Args:
            registration_endpoint: Registration endpoint URL from server metadata
            request: Client metadata to register

        Returns:
            ClientCredentials: Registered client credentials

        Raises:
            RegistrationError: If the request fails or is rejected
        """
        logger.debug(f"Registering client at {registration_endpoint}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    registration_endpoint,
                    json=request.model_dump(exclude_none=True),
                    headers={"Content-Type": "application/json", "Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise RegistrationError(f"Client registration request failed: {e}") from e

        if response.status_code not in (200, 201):
            logger.error(
                f"Client registration rejected: status={response.status_code}, body={response.text}"
            )
            raise RegistrationError(
                f"Client registration rejected by {registration_endpoint} "
                f"(status {response.status_code})"
            )

        try:
            credentials = ClientCredentials.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise RegistrationError(f"Invalid client registration response: {e}") from e

        logger.info(f"Registered OAuth client: client_id={credentials.client_id}")
        return credentials


class ClientRegistrar:
    """
    Resolves the client identity for an authorization attempt.
    """

    def __init__(self, provider: OAuthClientProvider, timeout: float = 30.0):
        self.provider = provider
        self.registration_client = DynamicClientRegistration(timeout=timeout)

    async def ensure_client(
        self, auth_server: str, metadata: AuthServerMetadata, scope: str | None = None
    ) -> ClientCredentials:
        """
        Return cached or static credentials, registering when there are none.

        Args:
            auth_server: Authorization server base URL (for logging)
            metadata: Discovered authorization server metadata
            scope: Scopes that will be requested, included in the registration

        Returns:
            ClientCredentials: Credentials to use for this attempt

        Raises:
            RegistrationError: If registration is unsupported or rejected
        """
        credentials = self.provider.client_information()
        if credentials is not None:
            logger.debug(f"Using existing OAuth client {credentials.client_id}")
            return credentials

        if not metadata.registration_endpoint:
            raise RegistrationError(
                f"Incompatible authorization server {auth_server}: no client ID is configured "
                f"and the server does not support dynamic client registration"
            )

        logger.info(f"No client ID configured. Registering with {auth_server}")
        credentials = await self.registration_client.register_client(
            metadata.registration_endpoint, self.provider.client_metadata(scope)
        )
        self.provider.save_client_information(credentials)
        return credentials
