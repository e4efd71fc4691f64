"""Provider definition table.

Static metadata for every supported provider: capability flags, required
configuration fields, the environment prefix its configuration is read
from, provider-specific defaults, and the factory that constructs it.
The table is built once at import time and never mutated.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from auth_broker.core.auth.api_integration import ApiIntegrationProvider
from auth_broker.core.auth.local import LocalAuthProvider
from auth_broker.core.auth.oidc import AuthentikAuthProvider, OIDCAuthProvider
from auth_broker.core.auth.provider import AuthProvider, ProviderContext
from auth_broker.core.auth.webhook import WebhookIntegrationProvider


class PROVIDER_CAPABILITIES:
    CALLBACK = "supports_callback"
    CREDENTIALS = "supports_credentials"
    SYNC = "supports_sync"
    REDIRECT = "requires_redirect"


class PROVIDER_CATEGORIES:
    OIDC = "oidc"
    API = "api"
    WEBHOOK = "webhook"
    LOCAL = "local"


# Config field -> environment variable suffix, read as {prefix}{suffix}
ENV_FIELD_MAP = {
    "client_id": "CLIENT_ID",
    "client_secret": "CLIENT_SECRET",
    "issuer": "ISSUER",
    "redirect_uri": "REDIRECT_URI",
    "base_url": "BASE_URL",
    "api_key": "API_KEY",
    "secret": "SECRET",
    "scope": "SCOPE",
}


@dataclass(frozen=True)
class ProviderCapabilities:
    supports_callback: bool = False
    supports_credentials: bool = False
    supports_sync: bool = False
    requires_redirect: bool = False

    def to_dict(self) -> dict:
        return {
            "supports_callback": self.supports_callback,
            "supports_credentials": self.supports_credentials,
            "supports_sync": self.supports_sync,
            "requires_redirect": self.requires_redirect,
        }


@dataclass(frozen=True)
class ProviderDefinition:
    """Immutable description of one provider

    Attributes:
        id: Provider identifier (AUTH_PROVIDER value)
        name: Human-readable name
        description: One-line description
        category: oidc, api, webhook or local
        capabilities: Supported operation groups
        config_fields: Fields that must be present for the provider to work
        env_prefix: Prefix of the environment variables holding its config
        factory: Builds the provider from the shared context
        env_overrides: Config fields read from a non-prefixed variable name
        defaults: Provider-specific config derived from the environment
    """
    id: str
    name: str
    description: str
    category: str
    capabilities: ProviderCapabilities
    config_fields: tuple[str, ...]
    env_prefix: Optional[str]
    factory: Callable[[ProviderContext], AuthProvider]
    env_overrides: Mapping[str, str] = field(default_factory=dict)
    defaults: Optional[Callable[[Mapping[str, str]], dict[str, Any]]] = None

    def env_var_for(self, field_name: str) -> Optional[str]:
        if field_name in self.env_overrides:
            return self.env_overrides[field_name]
        if self.env_prefix is None or field_name not in ENV_FIELD_MAP:
            return None
        return f"{self.env_prefix}{ENV_FIELD_MAP[field_name]}"

    def resolve_config(self, environ: Mapping[str, str]) -> dict[str, Any]:
        """Build this provider's config from environment values"""
        config: dict[str, Any] = {}
        if self.env_prefix is None:
            return config

        for field_name in ENV_FIELD_MAP:
            env_name = self.env_var_for(field_name)
            if env_name and environ.get(env_name):
                config[field_name] = environ[env_name]

        if self.defaults is not None:
            for key, value in self.defaults(environ).items():
                config.setdefault(key, value)
        return config

    def required_env_vars(self, config: Mapping[str, Any]) -> dict[str, str]:
        """Required config field -> environment variable backing it"""
        fields = self.config_fields
        if self.category == PROVIDER_CATEGORIES.WEBHOOK and not config.get("enable_signature_validation", True):
            fields = ()
        return {f: self.env_var_for(f) for f in fields if self.env_var_for(f)}


def _api_defaults(environ: Mapping[str, str]) -> dict[str, Any]:
    return {
        "user_endpoint": environ.get("API_USER_ENDPOINT") or "/api/users",
        "sync_endpoint": environ.get("API_SYNC_ENDPOINT") or "/api/users/sync",
        "verify_endpoint": environ.get("API_VERIFY_ENDPOINT") or None,
        "logout_endpoint": environ.get("API_LOGOUT_ENDPOINT") or None,
        "timeout": float(environ.get("API_TIMEOUT") or 5),
        "enable_user_sync": environ.get("ENABLE_AUTO_SYNC") == "true",
        "sync_interval": int(environ.get("SYNC_INTERVAL") or 300),
    }


def _webhook_defaults(environ: Mapping[str, str]) -> dict[str, Any]:
    return {
        "enable_signature_validation": environ.get("WEBHOOK_VALIDATE_SIGNATURE") != "false",
        "verify_token": environ.get("WEBHOOK_VERIFY_TOKEN") or None,
        "delivery_ttl": int(environ.get("WEBHOOK_DELIVERY_TTL") or 86400),
    }


def _oidc_defaults(environ: Mapping[str, str]) -> dict[str, Any]:
    return {"scope": "openid profile email"}


_DEFINITIONS = [
    ProviderDefinition(
        id="authentik",
        name="Authentik OIDC",
        description="Direct integration with Authentik identity provider",
        category=PROVIDER_CATEGORIES.OIDC,
        capabilities=ProviderCapabilities(supports_callback=True, requires_redirect=True),
        config_fields=("client_id", "client_secret", "issuer"),
        env_prefix="AUTHENTIK_",
        factory=AuthentikAuthProvider,
        defaults=_oidc_defaults,
    ),
    ProviderDefinition(
        id="oidc_generic",
        name="Generic OIDC",
        description="Support for any OIDC-compliant provider (Keycloak, Auth0, etc.)",
        category=PROVIDER_CATEGORIES.OIDC,
        capabilities=ProviderCapabilities(supports_callback=True, requires_redirect=True),
        config_fields=("client_id", "client_secret", "issuer"),
        env_prefix="OIDC_",
        factory=OIDCAuthProvider,
        defaults=_oidc_defaults,
    ),
    ProviderDefinition(
        id="api_integration",
        name="API Integration",
        description="Sync users via REST API calls",
        category=PROVIDER_CATEGORIES.API,
        capabilities=ProviderCapabilities(supports_credentials=True, supports_sync=True),
        config_fields=("base_url", "api_key"),
        env_prefix="API_",
        factory=ApiIntegrationProvider,
        env_overrides=MappingProxyType({"api_key": "API_KEY"}),
        defaults=_api_defaults,
    ),
    ProviderDefinition(
        id="webhook_integration",
        name="Webhook Integration",
        description="Receive real-time user updates via webhooks",
        category=PROVIDER_CATEGORIES.WEBHOOK,
        capabilities=ProviderCapabilities(supports_sync=True),
        config_fields=("secret",),
        env_prefix="WEBHOOK_",
        factory=WebhookIntegrationProvider,
        defaults=_webhook_defaults,
    ),
    ProviderDefinition(
        id="local_auth",
        name="Local Authentication",
        description="Traditional username/password authentication",
        category=PROVIDER_CATEGORIES.LOCAL,
        capabilities=ProviderCapabilities(supports_credentials=True),
        config_fields=(),
        env_prefix=None,
        factory=LocalAuthProvider,
    ),
]

PROVIDER_DEFINITIONS: Mapping[str, ProviderDefinition] = MappingProxyType({d.id: d for d in _DEFINITIONS})
