"""Provider interface consumed by the reconciliation core.

The core never talks to an infrastructure API itself. Everything it needs
from the provider layer goes through three calls:

- ``schema(resource_type)`` - how each attribute may change (planning)
- ``read_resource(entity)`` - current real attributes (optional refresh)
- ``apply_operation(action, spec, resolved_attributes, prior)`` - perform a
  create, update or delete and report the resulting entity

Providers are synchronous. The apply executor runs them on worker threads.
The core retries nothing; any retry policy belongs to the provider.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from importlib.metadata import entry_points
from typing import Protocol, runtime_checkable

from .models import AttributeValue, ChangeAction, ResourceSchema, ResourceSpec, StateEntity

logger = logging.getLogger(__name__)

# Entry point group third-party providers register under
PROVIDER_ENTRY_POINT_GROUP = "iacengine.providers"


class ProviderError(Exception):
    """Raised by a provider when an operation on one resource fails.

    Isolated to the failing resource and its dependents; never aborts the
    whole apply session.
    """

    def __init__(self, message: str, address: str | None = None) -> None:
        super().__init__(message)
        self.address = address


class ProviderConfigurationError(Exception):
    """Raised when a resource names a provider or type nobody serves."""

    pass


@runtime_checkable
class Provider(Protocol):
    """Protocol every provider implements."""

    def schema(self, resource_type: str) -> ResourceSchema:
        """Return the schema of a resource kind.

        Raises:
            ProviderError: If the resource type is not supported.
        """
        ...

    def read_resource(self, entity: StateEntity) -> StateEntity | None:
        """Read the real-world attributes of a recorded resource.

        Returns:
            The refreshed entity, or None if the resource no longer exists.
        """
        ...

    def apply_operation(
        self,
        action: ChangeAction,
        spec: ResourceSpec | None,
        resolved_attributes: dict[str, AttributeValue],
        prior: StateEntity | None,
    ) -> StateEntity | None:
        """Perform one create, update or delete.

        Args:
            action: CREATE, UPDATE or DELETE (replacements arrive as a DELETE
                and a CREATE).
            spec: Desired resource; None for deletions of undeclared resources.
            resolved_attributes: Desired attributes with every reference
                replaced by its concrete value.
            prior: Recorded entity, None for creations.

        Returns:
            The resulting entity, or None after a delete.

        Raises:
            ProviderError: If the operation failed.
        """
        ...


class ProviderRegistry:
    """Maps provider ids to provider instances and caches their schemas."""

    def __init__(self, providers: Mapping[str, Provider] | None = None) -> None:
        self._providers: dict[str, Provider] = dict(providers or {})
        self._schemas: dict[tuple[str, str], ResourceSchema] = {}

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    @property
    def provider_ids(self) -> list[str]:
        return sorted(self._providers)

    def register(self, provider_id: str, provider: Provider) -> None:
        """Register (or replace) a provider."""
        if provider_id in self._providers:
            logger.warning("Replacing registered provider", extra={"provider_id": provider_id})
        self._providers[provider_id] = provider
        self._schemas = {k: v for k, v in self._schemas.items() if k[0] != provider_id}

    def get(self, provider_id: str) -> Provider:
        """Get a provider by id.

        Raises:
            ProviderConfigurationError: If no provider is registered under the id.
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderConfigurationError(
                f"Unknown provider '{provider_id}'. Registered providers: {self.provider_ids}"
            )
        return provider

    def schema_for(self, provider_id: str, resource_type: str) -> ResourceSchema:
        """Get (and cache) the schema of a resource kind.

        Raises:
            ProviderConfigurationError: If the provider or resource type is unknown.
        """
        cache_key = (provider_id, resource_type)
        cached = self._schemas.get(cache_key)
        if cached is not None:
            return cached
        try:
            schema = self.get(provider_id).schema(resource_type)
        except ProviderError as e:
            raise ProviderConfigurationError(
                f"Provider '{provider_id}' does not support resource type '{resource_type}': {e}"
            ) from e
        self._schemas[cache_key] = schema
        return schema

    def load_entry_points(self) -> int:
        """Register providers advertised under the ``iacengine.providers`` group.

        Each entry point must resolve to a zero-argument callable returning a
        provider instance.

        Returns:
            Number of providers registered.
        """
        count = 0
        for entry_point in entry_points(group=PROVIDER_ENTRY_POINT_GROUP):
            factory = entry_point.load()
            self.register(entry_point.name, factory())
            count += 1
            logger.info("Loaded provider from entry point", extra={"provider_id": entry_point.name})
        return count
