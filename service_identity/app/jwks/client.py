"""
JWKS client for provider signing keys.
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

from shared.errors import ProviderUnavailableError
from shared.logging import get_logger
from service_identity.app.transport import HttpTransport


class JWKSClient:
    """Fetches and caches a provider's published key set."""

    def __init__(self,
                 provider: str,
                 jwks_url: str,
                 transport: HttpTransport,
                 cache_ttl: int = 3600,
                 min_refresh_interval: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        self.provider = provider
        self.jwks_url = jwks_url
        self.cache_ttl = cache_ttl
        self.min_refresh_interval = min_refresh_interval
        self._transport = transport
        self._clock = clock
        self.logger = get_logger(f"identity.jwks.{provider}")

        self._jwks_cache: Optional[Dict[str, Any]] = None
        self._cache_timestamp: float = 0.0
        self._key_cache: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        return (self._jwks_cache is not None
                and self._clock() - self._cache_timestamp < self.cache_ttl)

    async def _fetch(self) -> Dict[str, Any]:
        response = await self._transport.get(self.provider, self.jwks_url)
        keys = response.payload.get("keys")
        if not response.ok or not isinstance(keys, list):
            raise ProviderUnavailableError(
                self.provider, "key set endpoint returned an invalid response",
                {"status_code": response.status_code},
            )
        return {"keys": [key for key in keys if isinstance(key, dict)]}

    async def get_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """Get the key set from cache or fetch it.

        On fetch failure a stale cached set is returned when one exists.
        """
        if not force_refresh and self._is_fresh():
            return self._jwks_cache

        async with self._lock:
            if not force_refresh and self._is_fresh():
                return self._jwks_cache
            try:
                jwks_data = await self._fetch()
            except ProviderUnavailableError:
                if self._jwks_cache is not None:
                    self.logger.warning("Using stale JWKS cache due to fetch failure")
                    return self._jwks_cache
                raise

            self._jwks_cache = jwks_data
            self._cache_timestamp = self._clock()
            self._key_cache = {key["kid"]: key for key in jwks_data["keys"] if key.get("kid")}
            self.logger.info("JWKS refreshed successfully", keys_count=len(jwks_data["keys"]))
            return jwks_data

    async def get_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """Get a key by id, refreshing once when the id is unknown (rotation)."""
        await self.get_jwks()
        key = self._key_cache.get(kid)
        if key is not None:
            return key

        if self._clock() - self._cache_timestamp >= self.min_refresh_interval:
            self.logger.info("Unknown key id, refreshing key set", kid=kid)
            await self.get_jwks(force_refresh=True)
            key = self._key_cache.get(kid)

        if key is None:
            self.logger.warning("Key not found", kid=kid)
        return key

    async def get_signing_keys(self, kid: Optional[str]) -> List[Dict[str, Any]]:
        """Candidate verification keys for a token header's ``kid``."""
        if kid is None:
            jwks = await self.get_jwks()
            return list(jwks["keys"])
        key = await self.get_key(kid)
        return [key] if key is not None else []

    async def check_health(self) -> bool:
        """Fetch the key set directly, without the stale fallback."""
        try:
            await self._fetch()
        except ProviderUnavailableError as e:
            self.logger.warning("JWKS health check failed", error=e.message)
            return False
        return True

    def clear_cache(self):
        """Clear all caches."""
        self._jwks_cache = None
        self._cache_timestamp = 0.0
        self._key_cache.clear()
        self.logger.info("JWKS cache cleared")
