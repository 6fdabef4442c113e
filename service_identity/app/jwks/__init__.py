"""
JWKS client package.

Retrieves and caches the JSON Web Key Sets providers publish for their
ID tokens (Google, Apple, Azure AD B2C).

Key points:
- Fetches go through the shared HTTP transport (timeouts, retries,
  circuit breaker).
- Key sets are cached for a TTL; an unknown ``kid`` triggers one forced
  refresh, rate limited by ``min_refresh_interval``.
- A stale set is served when a refresh fails.
"""

from service_identity.app.jwks.client import JWKSClient  # noqa: F401
