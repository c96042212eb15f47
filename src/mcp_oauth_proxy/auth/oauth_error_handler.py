"""
WWW-Authenticate Challenge Parsing

Reads the Bearer challenge an upstream MCP server returns with a 401 so the
proxy can tell an expired token from a scope problem and pick up the
``resource_metadata`` hint for discovery.

References:
- RFC 6750 Section 3: The WWW-Authenticate Response Header Field
- RFC 9728 Section 5.1: WWW-Authenticate resource_metadata parameter
"""

import logging
import re
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

_PARAM_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|([^\s,]+))')


@dataclass
class WWWAuthenticateChallenge:
    """
    Parsed Bearer challenge, e.g.

        WWW-Authenticate: Bearer realm="mcp", error="invalid_token",
                          scope="read write",
                          resource_metadata="https://api.example.com/.well-known/oauth-protected-resource"
    """

    realm: str | None = None
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None
    scope: str | None = None
    resource_metadata: str | None = None

    @property
    def scopes(self) -> list[str]:
        return self.scope.split() if self.scope else []

    def is_token_expired(self) -> bool:
        return self.error == "invalid_token"

    def is_insufficient_scope(self) -> bool:
        return self.error == "insufficient_scope"


def parse_www_authenticate_header(header_value: str | None) -> WWWAuthenticateChallenge | None:
    """
    Parse a WWW-Authenticate header value.

    Args:
        header_value: Raw header value

    Returns:
        WWWAuthenticateChallenge, or None if absent or not a Bearer challenge
    """
    if not header_value:
        return None

    stripped = header_value.strip()
    if not stripped.lower().startswith("bearer"):
        logger.debug(f"WWW-Authenticate header is not a Bearer challenge: {header_value}")
        return None

    params: dict[str, str] = {}
    for name, quoted, bare in _PARAM_PATTERN.findall(stripped[6:]):
        params[name] = quoted if quoted else bare

    challenge = WWWAuthenticateChallenge(
        realm=params.get("realm"),
        error=params.get("error"),
        error_description=params.get("error_description"),
        error_uri=params.get("error_uri"),
        scope=params.get("scope"),
        resource_metadata=params.get("resource_metadata"),
    )
    logger.debug(f"Parsed WWW-Authenticate challenge: {challenge}")
    return challenge


def challenge_from_response(response: httpx.Response) -> WWWAuthenticateChallenge | None:
    """Bearer challenge of a 401 response, if any."""
    if response.status_code != 401:
        return None
    return parse_www_authenticate_header(response.headers.get("WWW-Authenticate"))
