"""Exception taxonomy for the auth broker.

Route handlers map these onto HTTP status codes; anything not listed here
reaches the global exception handler as a generic 500.
"""

from typing import Optional


class AuthBrokerError(Exception):
    """Base class for broker errors."""
    pass


class ConfigurationError(AuthBrokerError):
    """Missing or invalid provider configuration (operator-facing)."""
    pass


class UnknownProviderError(ConfigurationError):
    """Provider id is not in the definition table."""

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(f"Unknown provider: {provider_id}")


class ProviderLoadError(ConfigurationError):
    """Provider factory failed to construct the provider."""

    def __init__(self, provider_id: str, reason: str):
        self.provider_id = provider_id
        self.reason = reason
        super().__init__(f"Failed to load provider {provider_id}: {reason}")


class CapabilityMismatchError(AuthBrokerError):
    """Operation called on a provider that does not support it."""
    pass


class MethodNotAvailableError(CapabilityMismatchError):
    """Provider has no callable with the requested name."""

    def __init__(self, provider_id: str, method: str):
        self.provider_id = provider_id
        self.method = method
        super().__init__(f"Method {method} not available on provider {provider_id}")


class AuthenticationError(AuthBrokerError):
    """Bad credentials or invalid token.

    The message is safe to show to end users; detail goes to the log.
    """
    pass


class SignatureVerificationError(AuthBrokerError):
    """Webhook signature missing or does not match."""

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message)


class UpstreamError(AuthBrokerError):
    """External identity provider unreachable or returned non-2xx."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
