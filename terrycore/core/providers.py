"""
Provider adapter boundary.

Providers talk to the external systems that actually hold resources. The
engine only sees the CRUD operations below; retries, pagination and API
quirks belong to the provider. Per-type metadata the engine needs to plan
(immutable fields, computed fields, replacement order) is injected through
ResourceTypePolicy instead of being hard-coded.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .errors import UnknownResourceTypeError

logger = logging.getLogger(__name__)


class Provider(ABC):
    """CRUD operations for one resource type."""

    @abstractmethod
    def read(self, external_id: str) -> Optional[Dict[str, Any]]:
        """
        Read live attributes.

        Returns:
            Attribute mapping, or None if the resource no longer exists
        """

    @abstractmethod
    def create(self, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """
        Create the resource.

        Returns:
            (external_id, attributes as reported by the remote system)
        """

    @abstractmethod
    def update(self, external_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Update in place and return the resulting attributes."""

    @abstractmethod
    def delete(self, external_id: str) -> None:
        """Delete the resource. Raise on failure."""


@dataclass(frozen=True)
class ResourceTypePolicy:
    """
    Planning metadata for a resource type.

    Attributes:
        immutable_fields: Changing any of these forces replacement
        computed_fields: Assigned by the provider; never compared
        sensitive_fields: Redacted from rendered output
        create_before_destroy: Replace by creating the new resource first
        schema_version: Stamped on state records of this type
    """
    immutable_fields: FrozenSet[str] = field(default_factory=frozenset)
    computed_fields: FrozenSet[str] = field(default_factory=frozenset)
    sensitive_fields: FrozenSet[str] = field(default_factory=frozenset)
    create_before_destroy: bool = False
    schema_version: int = 0

    def __post_init__(self):
        # Accept any iterable of field names
        for name in ("immutable_fields", "computed_fields", "sensitive_fields"):
            object.__setattr__(self, name, frozenset(getattr(self, name)))


@dataclass(frozen=True)
class ResourceTypeRegistration:
    """A provider bound to a resource type."""
    resource_type: str
    provider: Provider
    policy: ResourceTypePolicy
    provider_name: str


class ProviderRegistry:
    """
    Maps resource types to providers.

    New resource types register an implementation; the engine never
    special-cases types.
    """

    def __init__(self):
        self._registrations: Dict[str, ResourceTypeRegistration] = {}

    def register(
        self,
        resource_type: str,
        provider: Provider,
        policy: Optional[ResourceTypePolicy] = None,
        provider_name: Optional[str] = None,
    ) -> ResourceTypeRegistration:
        """
        Register a provider for a resource type, replacing any previous one.

        Args:
            resource_type: e.g. "aws_instance"
            provider: Provider implementation
            policy: Planning metadata; defaults to all-mutable
            provider_name: Recorded in state; defaults to the type prefix
        """
        if provider_name is None:
            provider_name = resource_type.split("_", 1)[0]
        registration = ResourceTypeRegistration(
            resource_type=resource_type,
            provider=provider,
            policy=policy or ResourceTypePolicy(),
            provider_name=provider_name,
        )
        if resource_type in self._registrations:
            logger.warning(f"Replacing provider registration for {resource_type}")
        self._registrations[resource_type] = registration
        return registration

    def get(self, resource_type: str) -> ResourceTypeRegistration:
        """
        Raises:
            UnknownResourceTypeError: If no provider is registered
        """
        try:
            return self._registrations[resource_type]
        except KeyError:
            raise UnknownResourceTypeError(
                f"No provider registered for resource type '{resource_type}'"
            ) from None

    def provider(self, resource_type: str) -> Provider:
        return self.get(resource_type).provider

    def policy(self, resource_type: str) -> ResourceTypePolicy:
        return self.get(resource_type).policy

    def __contains__(self, resource_type: str) -> bool:
        return resource_type in self._registrations

    def types(self) -> List[str]:
        return sorted(self._registrations)
