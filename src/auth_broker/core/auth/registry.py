"""Provider registry.

Constructs providers on first use through the definition table's factories,
memoizes both the provider instances and their resolved configuration, and
dispatches operations by provider id and method name. Unknown provider ids
are a hard error at every entry point except get_provider_definition,
which answers None.
"""

import logging
import os
from typing import Any, Mapping, Optional

from auth_broker.core.auth.definitions import PROVIDER_DEFINITIONS, ProviderDefinition
from auth_broker.core.auth.errors import (
    MethodNotAvailableError,
    ProviderLoadError,
    UnknownProviderError,
)
from auth_broker.core.auth.provider import AuthProvider, ProviderContext
from auth_broker.core.auth.validation import (
    validate_environment,
    validate_provider_config,
    validate_session_secret,
)
from auth_broker.domain.models.auth import ValidationResult

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Loads, configures and dispatches to providers

    Args:
        context: Collaborators handed to every provider factory
        definitions: Provider id -> definition (defaults to the static table)
        environ: Environment mapping configuration is resolved from
    """

    def __init__(
        self,
        context: ProviderContext,
        definitions: Mapping[str, ProviderDefinition] = PROVIDER_DEFINITIONS,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.context = context
        self.definitions: dict[str, ProviderDefinition] = dict(definitions)
        self.environ = os.environ if environ is None else environ
        self._loaded: dict[str, AuthProvider] = {}
        self._configs: dict[str, dict[str, Any]] = {}

    @property
    def production(self) -> bool:
        return self.context.settings.is_production

    def get_provider_definition(self, provider_id: str) -> Optional[ProviderDefinition]:
        return self.definitions.get(provider_id)

    def get_all_provider_definitions(self) -> dict[str, ProviderDefinition]:
        return dict(self.definitions)

    def register(self, definition: ProviderDefinition) -> None:
        """Add or replace a definition; drops anything cached for its id"""
        self.definitions[definition.id] = definition
        self._loaded.pop(definition.id, None)
        self._configs.pop(definition.id, None)
        logger.info(f"Provider registered: {definition.id}")

    def _require_definition(self, provider_id: str) -> ProviderDefinition:
        definition = self.definitions.get(provider_id)
        if definition is None:
            raise UnknownProviderError(provider_id)
        return definition

    async def load_provider(self, provider_id: str) -> AuthProvider:
        """Construct the provider on first call; later calls hit the cache

        Raises:
            UnknownProviderError: provider_id is not in the table
            ProviderLoadError: The factory raised
        """
        provider = self._loaded.get(provider_id)
        if provider is not None:
            return provider

        definition = self._require_definition(provider_id)
        try:
            provider = definition.factory(self.context)
        except Exception as e:
            logger.error(f"Failed to load provider {provider_id}: {e}")
            raise ProviderLoadError(provider_id, str(e)) from e

        self._loaded[provider_id] = provider
        logger.info(f"Provider loaded: {provider_id} ({provider.__class__.__name__})")
        return provider

    def get_provider_config(self, provider_id: str) -> dict[str, Any]:
        """Resolve a provider's config from the environment (memoized)"""
        config = self._configs.get(provider_id)
        if config is not None:
            return config

        definition = self._require_definition(provider_id)
        config = definition.resolve_config(self.environ)
        self._configs[provider_id] = config
        return config

    def validate_provider(self, provider_id: str, config: Optional[Mapping[str, Any]] = None) -> ValidationResult:
        """Config-shape validation, then environment validation

        Short-circuits on the first failure.
        """
        definition = self._require_definition(provider_id)
        provider_config = config if config is not None else self.get_provider_config(provider_id)

        result = validate_provider_config(provider_id, provider_config, production=self.production)
        if not result.valid:
            return result

        result = validate_environment(
            definition.required_env_vars(provider_config),
            provider_config,
            self.environ,
        )
        if not result.valid:
            return result

        result = validate_session_secret(self.context.settings.session_secret, self.production)
        if not result.valid:
            return result

        return ValidationResult(
            True,
            f"{definition.name} configuration valid",
            capabilities=definition.capabilities.to_dict(),
        )

    async def execute_provider_method(self, provider_id: str, method: str, *args, **kwargs) -> Any:
        """Invoke a provider operation by name

        The provider's result or exception is passed through unchanged.

        Raises:
            MethodNotAvailableError: Provider has no callable named method
        """
        provider = await self.load_provider(provider_id)
        func = getattr(provider, method, None)
        if func is None or not callable(func) or method.startswith("_"):
            raise MethodNotAvailableError(provider_id, method)

        try:
            return await func(*args, **kwargs)
        except Exception as e:
            logger.error(f"Provider method execution failed ({provider_id}.{method}): {e}")
            raise

    def get_providers_by_capability(self, capability: str) -> list[str]:
        return [
            provider_id
            for provider_id, definition in self.definitions.items()
            if getattr(definition.capabilities, capability, False)
        ]

    def get_providers_by_category(self, category: str) -> list[str]:
        return [
            provider_id
            for provider_id, definition in self.definitions.items()
            if definition.category == category
        ]

    def clear_caches(self) -> None:
        self._loaded.clear()
        self._configs.clear()

    async def preload_providers(self, provider_ids: list[str]) -> None:
        """Load providers ahead of first use; failures are logged and skipped"""
        for provider_id in provider_ids:
            try:
                await self.load_provider(provider_id)
            except Exception as e:
                logger.warning(f"Preload of provider {provider_id} failed: {e}")

    def get_stats(self) -> dict:
        return {
            "total_providers": len(self.definitions),
            "loaded_providers": len(self._loaded),
            "cached_configs": len(self._configs),
            "categories": sorted({d.category for d in self.definitions.values()}),
            "capabilities": {
                "callback": len(self.get_providers_by_capability("supports_callback")),
                "credentials": len(self.get_providers_by_capability("supports_credentials")),
                "sync": len(self.get_providers_by_capability("supports_sync")),
            },
        }
