"""
Identity provider package.

One ``IdentityProvider`` implementation per supported provider, selected
by name through ``PROVIDER_TYPES``:

- google: OpenID Connect with PKCE, ID token plus user-info.
- facebook: Graph API identity, long-lived tokens, business and
  Instagram extensions.
- apple: ES256 client secret per exchange, private relay handling.
- azure_b2c: Policy-selected user flows, client assertions, custom
  attributes.
"""

from service_identity.app.providers.base import IdentityProvider  # noqa: F401
from service_identity.app.providers.google import GoogleProvider
from service_identity.app.providers.facebook import FacebookProvider
from service_identity.app.providers.apple import AppleProvider
from service_identity.app.providers.azure_b2c import AzureB2CProvider, PolicyKind  # noqa: F401

# Built-in providers in default-selection order.
PROVIDER_TYPES = {
    "google": GoogleProvider,
    "azureb2c": AzureB2CProvider,
    "facebook": FacebookProvider,
    "apple": AppleProvider,
}
