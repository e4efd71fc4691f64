"""Authentication provider abstraction layer.

Unifies several identity sources behind one session and capability model:
- authentik / oidc_generic: OpenID Connect authorization-code flow
- api_integration: credential login and polling sync against a REST API
- webhook_integration: user records pushed through signed webhooks
- local_auth: email/password accounts (self-hosted default)
"""

from .errors import (
    AuthBrokerError,
    CapabilityMismatchError,
    ConfigurationError,
    SignatureVerificationError,
)
from .provider import AuthProvider, ProviderContext

__all__ = [
    "AuthBrokerError",
    "AuthProvider",
    "CapabilityMismatchError",
    "ConfigurationError",
    "ProviderContext",
    "SignatureVerificationError",
]
