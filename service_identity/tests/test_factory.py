"""
Unit tests for the provider factory.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from shared.errors import ConfigurationError, InvalidArgumentError, InvalidProviderError, ProviderUnavailableError
from service_identity.app.factory import ProviderFactory
from service_identity.app.models import ProviderCapability
from service_identity.app.providers import AzureB2CProvider, GoogleProvider
from service_identity.app.settings import IdentitySettings

from conftest import REDIRECT_BASE


class TestProviderFactory:
    """Test cases for ProviderFactory."""

    @pytest.fixture
    def factory(self, identity_settings, transport, clock, metrics):
        return ProviderFactory(identity_settings, transport, metrics=metrics, clock=clock)

    # Lookup ------------------------------------------------------------------

    @pytest.mark.parametrize("name", ["google", "Google", "GOOGLE", "  google "])
    def test_lookup_is_case_insensitive(self, factory, name):
        provider = factory.get_provider(name)

        assert isinstance(provider, GoogleProvider)

    @pytest.mark.parametrize("name", [None, "", "   ", "github"])
    def test_unknown_provider(self, factory, name):
        assert factory.get_provider(name) is None
        with pytest.raises(InvalidProviderError):
            factory.require_provider(name)

    def test_disabled_provider_is_not_returned(self, identity_settings, transport):
        identity_settings.facebook.enabled = False
        factory = ProviderFactory(identity_settings, transport)

        assert factory.get_provider("facebook") is None
        assert [p.name for p in factory.get_enabled_providers()] == ["google", "azureb2c", "apple"]

    def test_enabled_order_is_stable(self, factory):
        assert [p.name for p in factory.get_enabled_providers()] == ["google", "azureb2c", "facebook", "apple"]

    def test_providers_share_one_validator(self, factory):
        validators = {id(p.validator) for p in factory.get_enabled_providers()}

        assert len(validators) == 1

    def test_default_provider_is_first_enabled(self, factory):
        assert factory.get_default_provider().name == "google"

    def test_configured_default_provider(self, identity_settings, transport):
        identity_settings.default_provider = "AzureB2C"
        factory = ProviderFactory(identity_settings, transport)

        assert factory.get_default_provider().name == "azureb2c"

    def test_disabled_default_falls_back(self, identity_settings, transport):
        identity_settings.default_provider = "google"
        identity_settings.google.enabled = False
        factory = ProviderFactory(identity_settings, transport)

        assert factory.get_default_provider().name == "azureb2c"

    def test_no_default_when_nothing_enabled(self, transport):
        factory = ProviderFactory(IdentitySettings(), transport)

        assert factory.get_default_provider() is None
        assert factory.get_enabled_providers() == []

    def test_list_descriptors(self, factory):
        descriptors = {d.name: d for d in factory.list_descriptors()}

        assert set(descriptors) == {"google", "azureb2c", "facebook", "apple"}
        assert descriptors["google"].display_name == "Google"
        assert descriptors["azureb2c"].enabled is True
        assert ProviderCapability.LOGOUT in descriptors["azureb2c"].capabilities

    # Registration --------------------------------------------------------

    def test_register_provider(self, factory, google_settings, transport):
        partner = GoogleProvider(google_settings, transport, redirect_base_url=REDIRECT_BASE)

        factory.register_provider("Partner", partner)

        assert factory.get_provider("partner") is partner
        assert factory.get_enabled_providers()[-1] is partner

    @pytest.mark.parametrize("name", ["", "  ", None])
    def test_register_requires_name(self, factory, google_settings, transport, name):
        partner = GoogleProvider(google_settings, transport)

        with pytest.raises(InvalidArgumentError):
            factory.register_provider(name, partner)

    def test_register_requires_provider(self, factory):
        with pytest.raises(InvalidArgumentError):
            factory.register_provider("partner", None)

    def test_registered_provider_survives_refresh(self, factory, google_settings, transport):
        partner = GoogleProvider(google_settings, transport, redirect_base_url=REDIRECT_BASE)
        factory.register_provider("partner", partner)

        factory.refresh_cache()

        assert factory.get_provider("partner") is partner

    # Capabilities --------------------------------------------------------

    def test_capabilities(self, factory):
        assert factory.supports("azureb2c", ProviderCapability.PROFILE_EDIT) is True
        assert factory.supports("facebook", ProviderCapability.PASSWORD_RESET) is False
        assert factory.get_capabilities("unknown") == frozenset()

    def test_providers_by_capability(self, factory):
        names = [p.name for p in factory.get_providers_by_capability(ProviderCapability.PASSWORD_RESET)]

        assert names == ["google", "azureb2c"]

    def test_account_linking_is_not_advertised(self, factory):
        assert factory.get_providers_by_capability(ProviderCapability.ACCOUNT_LINKING) == []

    # Validation ----------------------------------------------------------

    def test_valid_configuration(self, factory):
        result = factory.validate_providers()

        assert result.is_valid is True
        assert result.errors == []
        factory.ensure_valid()

    def test_errors_are_aggregated(self, identity_settings, transport):
        """Every problem in every provider is reported at once."""
        identity_settings.google.client_id = ""
        identity_settings.facebook.display_mode = "fullscreen"
        identity_settings.apple.team_id = ""
        identity_settings.default_provider = "github"
        factory = ProviderFactory(identity_settings, transport)

        result = factory.validate_providers()

        # Assertions
        assert result.is_valid is False
        assert set(result.provider_errors) == {"google", "facebook", "apple"}
        assert "default_provider 'github' is not an enabled provider" in result.errors
        assert len(result.errors) == 4

    def test_ensure_valid_raises(self, transport):
        factory = ProviderFactory(IdentitySettings(), transport)

        with pytest.raises(ConfigurationError) as exc_info:
            factory.ensure_valid()

        assert exc_info.value.errors == ["no identity providers are enabled"]

    def test_errors_do_not_leak_secrets(self, identity_settings, transport, ec_key):
        identity_settings.google.prompt = "always"
        identity_settings.apple.key_id = ""
        factory = ProviderFactory(identity_settings, transport)

        errors = " ".join(factory.validate_providers().errors)

        assert identity_settings.google.client_secret.get_secret_value() not in errors
        assert ec_key.private_pem not in errors

    # Refresh -------------------------------------------------------------

    def test_refresh_swaps_providers(self, factory, identity_settings):
        before = factory.get_provider("google")
        updated = identity_settings.model_copy(deep=True)
        updated.google.enabled = False

        factory.refresh_cache(updated)

        assert factory.get_provider("google") is None
        assert before.name == "google"
        assert isinstance(factory.get_provider("azureb2c"), AzureB2CProvider)

    def test_readers_keep_their_snapshot(self, factory):
        """A refresh never mutates a list already handed out."""
        providers = factory.get_enabled_providers()

        factory.refresh_cache()

        assert [p.name for p in providers] == ["google", "azureb2c", "facebook", "apple"]
        assert providers[0] is not factory.get_provider("google")

    # Health --------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_health_is_cached(self, factory, clock):
        provider = factory.get_provider("google")
        with patch.object(provider, "check_health", AsyncMock(return_value=True)) as check:
            first = await factory.check_health("google")
            second = await factory.check_health("Google")
            clock.advance(301)
            third = await factory.check_health("google")

        assert first.healthy is True
        assert first.cached is False
        assert second.cached is True
        assert third.cached is False
        assert check.await_count == 2

    @pytest.mark.asyncio
    async def test_unknown_provider_health(self, factory):
        with pytest.raises(InvalidProviderError):
            await factory.check_health("github")

    @pytest.mark.asyncio
    async def test_repeated_failures_disable_provider(self, factory, clock, metrics):
        provider = factory.get_provider("facebook")
        with patch.object(provider, "check_health", AsyncMock(return_value=False)):
            for _ in range(2):
                result = await factory.check_health("facebook")
                clock.advance(301)
            assert result.consecutive_failures == 2
            assert factory.get_provider("facebook") is provider

            result = await factory.check_health("facebook")
            clock.advance(301)

        # Assertions
        assert result.disabled is True
        assert factory.get_provider("facebook") is None
        assert "facebook" not in [p.name for p in factory.get_enabled_providers()]
        assert {d.name: d.enabled for d in factory.list_descriptors()}["facebook"] is False
        assert metrics.registry.get_sample_value(
            "identity_provider_health_checks_total", {"provider": "facebook", "status": "unhealthy"}
        ) == 3.0

        with patch.object(provider, "check_health", AsyncMock(return_value=True)):
            result = await factory.check_health("facebook")

        assert result.healthy is True
        assert result.consecutive_failures == 0
        assert factory.get_provider("facebook") is provider

    @pytest.mark.asyncio
    async def test_health_error_is_unhealthy(self, factory):
        provider = factory.get_provider("apple")
        with patch.object(provider, "check_health",
                          AsyncMock(side_effect=ProviderUnavailableError("apple", "HTTP 503"))):
            result = await factory.check_health("apple")

        assert result.healthy is False
        assert result.error == "PROVIDER_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_health_timeout(self, identity_settings, transport, clock):
        factory = ProviderFactory(identity_settings, transport, clock=clock, health_check_timeout=0.01)
        provider = factory.get_provider("google")

        async def hang():
            await asyncio.sleep(1)
            return True

        with patch.object(provider, "check_health", AsyncMock(side_effect=hang)):
            result = await factory.check_health("google")

        assert result.healthy is False
        assert result.error == "health check timed out"

    @pytest.mark.asyncio
    async def test_check_all_health(self, factory):
        for provider in factory.get_enabled_providers():
            provider.check_health = AsyncMock(return_value=True)

        results = await factory.check_all_health()

        assert set(results) == {"google", "azureb2c", "facebook", "apple"}
        assert all(result.healthy for result in results.values())

    @pytest.mark.asyncio
    async def test_refresh_clears_health(self, factory):
        provider = factory.get_provider("google")
        with patch.object(provider, "check_health", AsyncMock(return_value=True)):
            await factory.check_health("google")

        factory.refresh_cache()
        refreshed = factory.get_provider("google")
        with patch.object(refreshed, "check_health", AsyncMock(return_value=True)):
            result = await factory.check_health("google")

        assert result.cached is False
