"""
Signed identity token validation.
"""

import base64
import binascii
import json
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from jose import jwk, jws
from jose.exceptions import JOSEError
from pydantic import BaseModel

from shared.errors import TokenValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

KeyMaterial = Union[Mapping[str, Any], Sequence[Mapping[str, Any]]]

MAX_CLOCK_SKEW_SECONDS = 3600
REQUIRED_CLAIMS = ("sub", "exp")

_RSA_ALGORITHMS = ("RS256", "RS384", "RS512")
_EC_ALGORITHMS = {"P-256": ("ES256",), "P-384": ("ES384",), "P-521": ("ES512",)}
_HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")


class ValidationFailure(str, Enum):
    """Rejection kinds, reported in check order."""
    MALFORMED_TOKEN = "MALFORMED_TOKEN"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_ISSUER = "INVALID_ISSUER"
    INVALID_AUDIENCE = "INVALID_AUDIENCE"
    EXPIRED = "EXPIRED"
    NOT_YET_VALID = "NOT_YET_VALID"
    MISSING_REQUIRED_CLAIM = "MISSING_REQUIRED_CLAIM"


class ValidationOutcome(BaseModel):
    """Result of validating one token."""
    valid: bool
    claims: Dict[str, Any] = {}
    failure: Optional[ValidationFailure] = None
    error: Optional[str] = None

    def raise_for_failure(self) -> Dict[str, Any]:
        """Return the claims, or raise ``TokenValidationError``."""
        if not self.valid:
            kind = self.failure or ValidationFailure.MALFORMED_TOKEN
            raise TokenValidationError(kind.value, self.error or "Identity token rejected")
        return self.claims


class _Malformed(Exception):
    pass


def _b64decode_json(segment: str) -> Any:
    if not segment:
        raise _Malformed("empty segment")
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
        return json.loads(raw)
    except (binascii.Error, ValueError) as e:
        raise _Malformed(type(e).__name__) from None


def decode_segments(token: Any) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Decode header and payload without verifying anything.

    Decoded here rather than with ``jws.get_unverified_header`` so every
    structural fault surfaces as ``MALFORMED_TOKEN``, distinct from
    ``INVALID_SIGNATURE``.
    """
    if not isinstance(token, str) or not token.strip():
        raise _Malformed("token is empty")
    parts = token.strip().split(".")
    if len(parts) != 3:
        raise _Malformed("token must have three segments")
    header = _b64decode_json(parts[0])
    payload = _b64decode_json(parts[1])
    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise _Malformed("segments must be JSON objects")
    return header, payload


def peek_header(token: Any) -> Optional[Dict[str, Any]]:
    """Unverified header of ``token``, or None when it is malformed."""
    try:
        return decode_segments(token)[0]
    except _Malformed:
        return None


def _key_list(signing_keys: Optional[KeyMaterial]) -> List[Mapping[str, Any]]:
    if signing_keys is None:
        return []
    if isinstance(signing_keys, Mapping):
        if "keys" in signing_keys:
            return [key for key in signing_keys["keys"] if isinstance(key, Mapping)]
        return [signing_keys]
    return [key for key in signing_keys if isinstance(key, Mapping)]


def allowed_algorithms(key: Mapping[str, Any]) -> Tuple[str, ...]:
    """Algorithms a JWK may verify. ``none`` is never among them."""
    kty = key.get("kty")
    if kty == "RSA":
        algorithms: Tuple[str, ...] = _RSA_ALGORITHMS
    elif kty == "EC":
        algorithms = _EC_ALGORITHMS.get(key.get("crv"), ())
    elif kty == "oct":
        algorithms = _HMAC_ALGORITHMS
    else:
        return ()
    declared = key.get("alg")
    if declared:
        return (declared,) if declared in algorithms else ()
    return algorithms


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class TokenValidator:
    """
    Validates signed identity tokens.

    Holds no per-token state: validating the same token twice gives the
    same outcome. Checks run in a fixed order and the first violation
    decides the failure kind.
    """

    def __init__(self,
                 clock: Callable[[], float] = time.time,
                 metrics: Optional[MetricsCollector] = None):
        self._clock = clock
        self.metrics = metrics
        self.logger = get_logger("identity.token_validator")

    def validate(self,
                 token: str,
                 expected_issuer: str,
                 expected_audience: str,
                 signing_keys: Optional[KeyMaterial],
                 clock_skew: float = 300) -> ValidationOutcome:
        """
        Validate ``token`` against issuer, audience, keys and lifetime.

        Args:
            token: Compact JWS
            expected_issuer: Exact ``iss`` value required
            expected_audience: Client id that must appear in ``aud``
            signing_keys: A JWK, a JWK set or a list of JWKs
            clock_skew: Tolerance in seconds applied to time claims

        Returns:
            ValidationOutcome with claims on success
        """
        try:
            header, claims = decode_segments(token)
        except _Malformed as e:
            return self._reject(ValidationFailure.MALFORMED_TOKEN, f"Malformed token: {e}")

        failure = self._verify_signature(token, header, signing_keys)
        if failure:
            return self._reject(ValidationFailure.INVALID_SIGNATURE, failure)

        if claims.get("iss") != expected_issuer:
            return self._reject(ValidationFailure.INVALID_ISSUER, "Token issuer does not match")

        audience = claims.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        if not expected_audience or expected_audience not in audiences:
            return self._reject(ValidationFailure.INVALID_AUDIENCE, "Token audience does not match")

        now = self._clock()
        for name in ("exp", "nbf", "iat"):
            if name in claims and not _is_number(claims[name]):
                return self._reject(ValidationFailure.MALFORMED_TOKEN, f"Claim '{name}' is not numeric")
        if "exp" in claims and now > claims["exp"] + clock_skew:
            return self._reject(ValidationFailure.EXPIRED, "Token has expired")
        for name in ("nbf", "iat"):
            if name in claims and now < claims[name] - clock_skew:
                return self._reject(ValidationFailure.NOT_YET_VALID, "Token is not yet valid")

        for name in REQUIRED_CLAIMS:
            value = claims.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                return self._reject(ValidationFailure.MISSING_REQUIRED_CLAIM, f"Missing required claim '{name}'")

        return ValidationOutcome(valid=True, claims=claims)

    def _verify_signature(self, token: str, header: Dict[str, Any],
                          signing_keys: Optional[KeyMaterial]) -> Optional[str]:
        alg = header.get("alg")
        if not isinstance(alg, str) or not alg or alg.lower() == "none":
            return "Token is not signed"
        if not token.strip().split(".")[2]:
            return "Token is not signed"

        kid = header.get("kid")
        candidates = [
            key for key in _key_list(signing_keys)
            if kid is None or key.get("kid") in (None, kid)
        ]
        if not candidates:
            return "No signing key matches the token"

        for key in candidates:
            if alg not in allowed_algorithms(key):
                continue
            try:
                jws.verify(token.strip(), jwk.construct(dict(key), alg), algorithms=[alg])
                return None
            except JOSEError:
                continue
        return "Signature verification failed"

    def _reject(self, failure: ValidationFailure, message: str) -> ValidationOutcome:
        self.logger.warning("Token validation failed", failure=failure.value, reason=message)
        if self.metrics is not None:
            self.metrics.record_validation_failure(failure.value)
        return ValidationOutcome(valid=False, failure=failure, error=message)
