"""
PKCE (Proof Key for Code Exchange) and CSRF State Generation

Every authorization attempt gets a fresh verifier and a fresh state; neither
is ever reused across attempts.

References:
- RFC 7636: Proof Key for Code Exchange
- RFC 6749 Section 10.12: Cross-Site Request Forgery
"""

import base64
import hashlib
import secrets

from mcp_oauth_proxy.auth.oauth_models import PKCEPair

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier.

    Per RFC 7636 the verifier must be 43-128 characters from the unreserved
    set. 64 random bytes base64url-encode to 86 characters.

    Returns:
        str: Base64url-encoded random verifier
    """
    return base64.urlsafe_b64encode(secrets.token_bytes(64)).decode("utf-8").rstrip("=")


def generate_code_challenge(verifier: str) -> str:
    """
    Derive the S256 code challenge: BASE64URL(SHA256(verifier)).

    Args:
        verifier: Code verifier from generate_code_verifier()

    Returns:
        str: Base64url-encoded SHA256 digest of the verifier
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def generate_state() -> str:
    """Generate an opaque CSRF state value (32 random bytes, hex encoded)."""
    return secrets.token_hex(32)


def states_match(expected: str | None, returned: str | None) -> bool:
    """Constant-time comparison of the stored and returned CSRF state."""
    if not expected or returned is None:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), returned.encode("utf-8"))


class PKCEManager:
    """High-level interface for PKCE operations in the authorization flow."""

    @staticmethod
    def generate_pkce_pair() -> PKCEPair:
        """
        Generate a new verifier, its S256 challenge and a CSRF state.

        Returns:
            PKCEPair: Fresh proof-of-possession material for one attempt
        """
        verifier = generate_code_verifier()
        return PKCEPair(
            code_verifier=verifier,
            code_challenge=generate_code_challenge(verifier),
            state=generate_state(),
        )
