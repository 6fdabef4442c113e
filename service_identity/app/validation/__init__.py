"""
Token validation package.

Validates signed identity tokens issued by the configured providers and
maps their claims onto the canonical ``UserInfo``:

- token_validator: Structure, signature, issuer, audience, lifetime and
  required-claim checks, each with its own failure kind.
- claims: Claim flattening, field mapping and display-value sanitizing.

Only standard JOSE behaviors are assumed; provider specifics (issuer
strings, key endpoints, claim names) are supplied by each provider.
"""

from service_identity.app.validation.token_validator import (  # noqa: F401
    TokenValidator,
    ValidationFailure,
    ValidationOutcome,
)
from service_identity.app.validation.claims import ClaimMapping, ClaimsNormalizer  # noqa: F401
