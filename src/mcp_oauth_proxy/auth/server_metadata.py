"""
Authorization Server Metadata Discovery

Resolves protected-resource metadata for the upstream MCP server and the
authorization server metadata for the server it names, falling back between
the OAuth and OpenID Connect well-known documents.

References:
- RFC 8414: OAuth 2.0 Authorization Server Metadata
- RFC 9728: OAuth 2.0 Protected Resource Metadata
- OpenID Connect Discovery 1.0
"""

import logging
from typing import Any
from urllib.parse import urlparse

import httpx
from mcp.types import LATEST_PROTOCOL_VERSION
from pydantic import ValidationError

from mcp_oauth_proxy.auth.oauth_models import AuthServerMetadata, ProtectedResourceMetadata
from mcp_oauth_proxy.errors import DiscoveryError

logger = logging.getLogger(__name__)

PROTECTED_RESOURCE_WELL_KNOWN = "/.well-known/oauth-protected-resource"
OAUTH_SERVER_WELL_KNOWN = "/.well-known/oauth-authorization-server"
OPENID_CONFIGURATION_WELL_KNOWN = "/.well-known/openid-configuration"
MCP_PROTOCOL_VERSION_HEADER = "MCP-Protocol-Version"


def get_origin(url: str) -> str:
    """Return scheme://host[:port] of a URL."""
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def protected_resource_metadata_urls(resource_url: str) -> list[str]:
    """
    Candidate RFC 9728 metadata URLs for a resource, most specific first.

    "https://api.example.com/mcp" ->
        ["https://api.example.com/.well-known/oauth-protected-resource/mcp",
         "https://api.example.com/.well-known/oauth-protected-resource"]
    """
    parsed = urlparse(resource_url)
    origin = f"{parsed.scheme}://{parsed.netloc}"
    path = parsed.path.rstrip("/")
    urls = []
    if path:
        urls.append(f"{origin}{PROTECTED_RESOURCE_WELL_KNOWN}{path}")
    urls.append(f"{origin}{PROTECTED_RESOURCE_WELL_KNOWN}")
    return urls


def auth_server_metadata_urls(auth_server: str) -> list[str]:
    """OAuth metadata document first, OpenID Connect configuration second."""
    base = auth_server.rstrip("/")
    return [f"{base}{OAUTH_SERVER_WELL_KNOWN}", f"{base}{OPENID_CONFIGURATION_WELL_KNOWN}"]


class ServerMetadataCache:
    """
    Metadata discovery with a cache scoped to one connection attempt.

    Call clear() when the attempt ends (disconnect) so the next attempt
    fetches fresh documents.
    """

    def __init__(self, timeout: float = 30.0, protocol_version: str = LATEST_PROTOCOL_VERSION):
        self.timeout = timeout
        self.protocol_version = protocol_version
        self._auth_server_cache: dict[str, AuthServerMetadata] = {}

    def clear(self) -> None:
        self._auth_server_cache.clear()

    async def _get_json(self, client: httpx.AsyncClient, url: str) -> dict[str, Any] | None:
        """GET a JSON document; None on transport error, non-2xx or non-JSON body."""
        try:
            response = await client.get(
                url, headers={MCP_PROTOCOL_VERSION_HEADER: self.protocol_version}
            )
        except httpx.HTTPError as e:
            logger.warning(f"Metadata request to {url} failed: {e}")
            return None

        if not 200 <= response.status_code < 300:
            logger.debug(f"Metadata request to {url} returned status {response.status_code}")
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning(f"Metadata document at {url} is not valid JSON")
            return None

        if not isinstance(data, dict):
            logger.warning(f"Metadata document at {url} is not a JSON object")
            return None
        return data

    async def fetch_protected_resource_metadata(
        self, resource_url: str, resource_metadata_url: str | None = None
    ) -> ProtectedResourceMetadata | None:
        """
        Fetch protected resource metadata for the upstream server.

        Args:
            resource_url: Upstream MCP server URL
            resource_metadata_url: Explicit metadata URL (e.g. from a
                WWW-Authenticate challenge), tried first

        Returns:
            ProtectedResourceMetadata, or None when nothing conclusive was found
        """
        candidates = protected_resource_metadata_urls(resource_url)
        if resource_metadata_url:
            candidates.insert(0, resource_metadata_url)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for url in candidates:
                logger.debug(f"Fetching protected resource metadata from {url}")
                data = await self._get_json(client, url)
                if data is None:
                    continue
                try:
                    metadata = ProtectedResourceMetadata.model_validate(data)
                except ValidationError as e:
                    logger.warning(f"Ignoring malformed protected resource metadata at {url}: {e}")
                    continue
                logger.info(
                    f"Discovered protected resource metadata at {url}: "
                    f"authorization_servers={metadata.authorization_servers}, "
                    f"scopes_supported={metadata.scopes_supported}"
                )
                return metadata

        logger.info(f"No protected resource metadata found for {resource_url}")
        return None

    @staticmethod
    def select_authorization_server(
        resource_url: str, resource_metadata: ProtectedResourceMetadata | None
    ) -> str:
        """
        First listed authorization server, else the resource's own origin.
        """
        if resource_metadata and resource_metadata.authorization_servers:
            auth_server = resource_metadata.authorization_servers[0]
            logger.info(f"Using authorization server {auth_server}")
            return auth_server

        origin = get_origin(resource_url)
        logger.info(f"Falling back to resource host {origin} as authorization server")
        return origin

    async def fetch_auth_server_metadata(self, auth_server: str) -> AuthServerMetadata:
        """
        Fetch authorization server metadata.

        Tries the OAuth metadata document, then the OpenID Connect
        configuration, returning the first 2xx JSON response that carries
        both an authorization and a token endpoint.

        Args:
            auth_server: Authorization server base URL

        Returns:
            AuthServerMetadata: Parsed metadata

        Raises:
            DiscoveryError: If neither document is usable
        """
        if auth_server in self._auth_server_cache:
            logger.debug(f"Using cached authorization server metadata for {auth_server}")
            return self._auth_server_cache[auth_server]

        logger.info(f"Discovering OAuth metadata from {auth_server}")
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for url in auth_server_metadata_urls(auth_server):
                data = await self._get_json(client, url)
                if data is None:
                    logger.warning(f"No usable OAuth metadata at {url}")
                    continue
                try:
                    metadata = AuthServerMetadata.model_validate(data)
                except ValidationError as e:
                    logger.warning(f"Ignoring incomplete OAuth metadata at {url}: {e}")
                    continue

                logger.info(f"OAuth metadata found at {url}")
                if not metadata.supports_s256():
                    logger.warning(
                        f"Authorization server {auth_server} does not advertise S256 PKCE "
                        f"(supported: {metadata.code_challenge_methods_supported}); "
                        f"continuing with S256"
                    )
                self._auth_server_cache[auth_server] = metadata
                return metadata

        raise DiscoveryError(f"No OAuth metadata found for {auth_server} at either endpoint")
