"""Static catalogue of supported OAuth providers.

Each provider is a frozen :class:`OAuthProviderConfig`; adding a provider is
a matter of adding one entry to :data:`PROVIDERS` plus the two ``Settings``
attributes its client credentials live in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from typing import Tuple

from conduit.config import Settings
from conduit.models.enums import OAuthProvider
from conduit.oauth.exceptions import OAuthConfigurationError


@dataclass(frozen=True)
class OAuthProviderConfig:
    provider: OAuthProvider
    auth_url: str
    token_url: str
    scopes: Tuple[str, ...]
    client_id_setting: str
    client_secret_setting: str
    # Extra ``audience`` query parameter on the authorize URL (Atlassian 3LO)
    audience: Optional[str] = None
    # Endpoint listing the sites/tenants a token grants access to
    accessible_resources_url: Optional[str] = None

    def client_id(self, settings: Settings) -> str:
        value = getattr(settings, self.client_id_setting, None)
        if not value:
            raise OAuthConfigurationError(self.provider.value, "client id is not configured")
        return value

    def client_secret(self, settings: Settings) -> str:
        value = getattr(settings, self.client_secret_setting, None)
        if not value:
            raise OAuthConfigurationError(self.provider.value, "client secret is not configured")
        return value


PROVIDERS = {
    OAuthProvider.ATLASSIAN: OAuthProviderConfig(
        provider=OAuthProvider.ATLASSIAN,
        auth_url="https://auth.atlassian.com/authorize",
        token_url="https://auth.atlassian.com/oauth/token",
        scopes=(
            "read:jira-user",
            "read:jira-work",
            "write:jira-work",
            "read:confluence-space.summary",
            "read:confluence-content.all",
            "offline_access",
        ),
        client_id_setting="atlassian_client_id",
        client_secret_setting="atlassian_client_secret",
        audience="api.atlassian.com",
        accessible_resources_url="https://api.atlassian.com/oauth/token/accessible-resources",
    ),
    OAuthProvider.MICROSOFT_PARTNER_CENTER: OAuthProviderConfig(
        provider=OAuthProvider.MICROSOFT_PARTNER_CENTER,
        auth_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
        scopes=(
            "https://api.partnercenter.microsoft.com/user_impersonation",
            "offline_access",
        ),
        client_id_setting="ms_partner_client_id",
        client_secret_setting="ms_partner_client_secret",
    ),
}


def get_provider_config(provider) -> OAuthProviderConfig:
    """Return the config for *provider* (enum member or raw string)."""

    try:
        key = OAuthProvider(provider)
    except ValueError:
        raise OAuthConfigurationError(str(provider), "unknown provider") from None
    return PROVIDERS[key]


__all__ = [
    "OAuthProviderConfig",
    "PROVIDERS",
    "get_provider_config",
]
