"""
Provider factory: lookup, default selection, validation, capabilities and
health.

The live provider set is an immutable ``ProviderPool`` snapshot held in a
single attribute. Readers take the reference without locking; writers
(registration, refresh, runtime disabling) build a new snapshot under a
lock and swap it in with one assignment, so a concurrent reader sees
either the old set or the new one, never a mix.
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional

from shared.errors import ConfigurationError, IdentityException, InvalidArgumentError, InvalidProviderError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.secrets_manager import SecretResolver
from service_identity.app.models import (
    ProviderCapability,
    ProviderDescriptor,
    ProviderHealth,
    ProviderValidationResult,
)
from service_identity.app.providers import PROVIDER_TYPES, IdentityProvider
from service_identity.app.settings import IdentitySettings
from service_identity.app.transport import HttpTransport
from service_identity.app.validation.token_validator import TokenValidator

SETTINGS_SECTIONS = {
    "google": "google",
    "azureb2c": "azure_b2c",
    "facebook": "facebook",
    "apple": "apple",
}


def _key(name: Optional[str]) -> str:
    return (name or "").strip().lower()


@dataclass(frozen=True)
class ProviderPool:
    """Immutable snapshot of the provider set."""
    providers: Mapping[str, IdentityProvider] = field(default_factory=lambda: MappingProxyType({}))
    disabled: FrozenSet[str] = frozenset()

    def enabled_names(self) -> List[str]:
        return [name for name in self.providers if name not in self.disabled]


class ProviderFactory:
    """Builds and serves the configured providers."""

    def __init__(self,
                 settings: IdentitySettings,
                 transport: HttpTransport,
                 secret_resolver: Optional[SecretResolver] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], float] = time.time,
                 health_cache_seconds: float = 300.0,
                 health_failure_threshold: int = 3,
                 health_check_timeout: float = 10.0):
        self.settings = settings
        self.transport = transport
        self.secret_resolver = secret_resolver
        self.metrics = metrics
        self.health_cache_seconds = health_cache_seconds
        self.health_failure_threshold = health_failure_threshold
        self.health_check_timeout = health_check_timeout
        self._clock = clock
        self.logger = get_logger("identity.factory")

        self._lock = threading.Lock()
        self._custom: Dict[str, IdentityProvider] = {}
        self._health: Dict[str, ProviderHealth] = {}
        self._pool = self._build_pool(settings)

    # Pool management -----------------------------------------------------

    def _build_pool(self, settings: IdentitySettings) -> ProviderPool:
        validator = TokenValidator(clock=self._clock, metrics=self.metrics)
        providers: Dict[str, IdentityProvider] = {}
        for name, provider_type in PROVIDER_TYPES.items():
            section = getattr(settings, SETTINGS_SECTIONS[name])
            if not section.enabled:
                continue
            providers[name] = provider_type(
                section,
                self.transport,
                secret_resolver=self.secret_resolver,
                validator=validator,
                redirect_base_url=settings.redirect_base_url,
                clock=self._clock,
            )
        for name, provider in self._custom.items():
            providers[name] = provider
        self.logger.info("Provider pool built", providers=list(providers))
        return ProviderPool(providers=MappingProxyType(providers))

    def _swap(self, pool: ProviderPool) -> None:
        self._pool = pool

    def refresh_cache(self, settings: Optional[IdentitySettings] = None) -> None:
        """Rebuild every provider from (new) settings and swap the pool atomically."""
        with self._lock:
            if settings is not None:
                self.settings = settings
            pool = self._build_pool(self.settings)
            self._health = {}
            self._swap(pool)
        self.logger.info("Provider cache refreshed", providers=list(pool.providers))

    def register_provider(self, name: str, provider: IdentityProvider) -> None:
        """Register an additional provider implementation under ``name``."""
        key = _key(name)
        if not key:
            raise InvalidArgumentError("Provider name is required")
        if provider is None:
            raise InvalidArgumentError("Provider instance is required", {"provider": key})
        with self._lock:
            current = self._pool
            if key in current.providers:
                self.logger.warning("Replacing registered provider", provider=key)
            self._custom[key] = provider
            providers = dict(current.providers)
            providers[key] = provider
            self._swap(ProviderPool(providers=MappingProxyType(providers),
                                    disabled=current.disabled - {key}))
        self.logger.info("Provider registered", provider=key)

    def _set_disabled(self, key: str, disabled: bool) -> None:
        with self._lock:
            current = self._pool
            if key not in current.providers or (key in current.disabled) == disabled:
                return
            flags = current.disabled | {key} if disabled else current.disabled - {key}
            self._swap(ProviderPool(providers=current.providers, disabled=frozenset(flags)))

    # Lookup ------------------------------------------------------------------

    def get_provider(self, name: Optional[str]) -> Optional[IdentityProvider]:
        """Case-insensitive lookup; None for unknown or disabled providers."""
        pool = self._pool
        key = _key(name)
        if not key or key in pool.disabled:
            return None
        return pool.providers.get(key)

    def require_provider(self, name: Optional[str]) -> IdentityProvider:
        provider = self.get_provider(name)
        if provider is None:
            raise InvalidProviderError(_key(name) or "<empty>")
        return provider

    def get_enabled_providers(self) -> List[IdentityProvider]:
        pool = self._pool
        return [pool.providers[name] for name in pool.enabled_names()]

    def get_default_provider(self) -> Optional[IdentityProvider]:
        """The configured default, else the first enabled provider in stable order."""
        configured = self.get_provider(self.settings.default_provider)
        if configured is not None:
            return configured
        enabled = self.get_enabled_providers()
        return enabled[0] if enabled else None

    def list_descriptors(self) -> List[ProviderDescriptor]:
        pool = self._pool
        return [
            provider.descriptor(enabled=name not in pool.disabled)
            for name, provider in pool.providers.items()
        ]

    # Capabilities --------------------------------------------------------

    def get_capabilities(self, name: str) -> FrozenSet[ProviderCapability]:
        provider = self.get_provider(name)
        return provider.capabilities if provider is not None else frozenset()

    def supports(self, name: str, capability: ProviderCapability) -> bool:
        return capability in self.get_capabilities(name)

    def get_providers_by_capability(self, capability: ProviderCapability) -> List[IdentityProvider]:
        return [provider for provider in self.get_enabled_providers() if capability in provider.capabilities]

    # Validation ----------------------------------------------------------

    def validate_providers(self) -> ProviderValidationResult:
        """Check every enabled provider and collect all errors."""
        provider_errors: Dict[str, List[str]] = {}
        errors: List[str] = []
        enabled = self.get_enabled_providers()
        if not enabled:
            errors.append("no identity providers are enabled")
        for provider in enabled:
            problems = provider.configuration_errors()
            if problems:
                provider_errors[provider.name] = problems
                errors.extend(problems)
        default = self.settings.default_provider
        if default and self.get_provider(default) is None:
            errors.append(f"default_provider '{default}' is not an enabled provider")
        if errors:
            self.logger.warning("Provider configuration invalid", error_count=len(errors))
        return ProviderValidationResult(is_valid=not errors, errors=errors, provider_errors=provider_errors)

    def ensure_valid(self) -> None:
        result = self.validate_providers()
        if not result.is_valid:
            raise ConfigurationError(result.errors)

    # Health ----------------------------------------------------------------

    async def check_health(self, name: str) -> ProviderHealth:
        """Health of one provider, cached for ``health_cache_seconds``.

        A provider failing ``health_failure_threshold`` checks in a row is
        disabled until it passes again or the cache is refreshed.
        """
        key = _key(name)
        pool = self._pool
        provider = pool.providers.get(key)
        if provider is None:
            raise InvalidProviderError(key or "<empty>")

        now = self._clock()
        cached = self._health.get(key)
        if cached is not None and now - cached.checked_at < self.health_cache_seconds:
            return cached.model_copy(update={"cached": True})

        error: Optional[str] = None
        try:
            healthy = await asyncio.wait_for(provider.check_health(), timeout=self.health_check_timeout)
        except asyncio.TimeoutError:
            healthy, error = False, "health check timed out"
        except IdentityException as e:
            healthy, error = False, e.code

        failures = 0 if healthy else (cached.consecutive_failures if cached else 0) + 1
        disable = failures >= self.health_failure_threshold
        self._set_disabled(key, disable)
        if disable:
            self.logger.warning("Provider disabled after failed health checks", provider=key, failures=failures)

        result = ProviderHealth(
            provider=key,
            healthy=healthy,
            checked_at=now,
            consecutive_failures=failures,
            disabled=disable,
            error=error,
        )
        with self._lock:
            self._health[key] = result
        if self.metrics is not None:
            self.metrics.record_health_check(key, "healthy" if healthy else "unhealthy")
        return result

    async def check_all_health(self) -> Dict[str, ProviderHealth]:
        names = list(self._pool.providers)
        results = await asyncio.gather(*(self.check_health(name) for name in names))
        return dict(zip(names, results))
