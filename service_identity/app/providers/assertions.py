"""
Short-lived signed client assertions for confidential clients.

Apple and Azure AD B2C accept a signed JWT in place of a static client
secret. An assertion is minted for a single token exchange and never
cached.
"""

import time
import uuid
from typing import Callable, List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jose import jwt

APPLE_AUDIENCE = "https://appleid.apple.com"
JWT_BEARER_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


def key_errors(prefix: str, pem: str, expected: str) -> List[str]:
    """Check that ``pem`` is a private key of the ``expected`` type (``EC`` or ``RSA``).

    Messages never include key content.
    """
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError):
        return [f"{prefix}: signing key is not a readable PEM private key"]
    if expected == "EC" and not isinstance(key, ec.EllipticCurvePrivateKey):
        return [f"{prefix}: signing key must be an EC (P-256) private key"]
    if expected == "RSA" and not isinstance(key, rsa.RSAPrivateKey):
        return [f"{prefix}: signing key must be an RSA private key"]
    return []


def mint_apple_client_secret(team_id: str,
                             client_id: str,
                             key_id: str,
                             private_key_pem: str,
                             lifetime_seconds: int = 300,
                             clock: Callable[[], float] = time.time) -> str:
    """ES256 client secret for Apple's token endpoint."""
    now = int(clock())
    claims = {
        "iss": team_id,
        "iat": now,
        "exp": now + lifetime_seconds,
        "aud": APPLE_AUDIENCE,
        "sub": client_id,
    }
    return jwt.encode(claims, private_key_pem, algorithm="ES256", headers={"kid": key_id})


def mint_client_assertion(client_id: str,
                          audience: str,
                          private_key_pem: str,
                          key_id: Optional[str] = None,
                          lifetime_seconds: int = 300,
                          clock: Callable[[], float] = time.time) -> str:
    """RS256 ``private_key_jwt`` assertion (RFC 7523)."""
    now = int(clock())
    claims = {
        "iss": client_id,
        "sub": client_id,
        "aud": audience,
        "jti": uuid.uuid4().hex,
        "iat": now,
        "nbf": now,
        "exp": now + lifetime_seconds,
    }
    headers = {"kid": key_id} if key_id else None
    return jwt.encode(claims, private_key_pem, algorithm="RS256", headers=headers)
