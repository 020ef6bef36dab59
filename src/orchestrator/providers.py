"""Uniform provider-operation contract.

The engine treats every cloud resource type as a black box exposing
create/read/update/delete and, for asynchronously-ready types, a
readiness predicate. Provider calls are synchronous (they are run in a
worker thread by the engine) and must translate their SDK errors into the
three kinds below:

- ProviderRejected: the remote API refused the call; not retried.
- ProviderTransient: timeout / throttling / server error; retried.
- ResourceNotFound: the provider id does not exist (read only).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

from .resources import ErrorKind, ObservedState

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base class for provider call failures."""

    kind: ErrorKind = ErrorKind.PROVIDER_REJECTED


class ProviderRejected(ProviderError):
    """The remote API refused the call; surfaced per node, never retried."""

    kind = ErrorKind.PROVIDER_REJECTED


class ProviderTransient(ProviderError):
    """Timeout or rate limit; retried with backoff, then escalated."""

    kind = ErrorKind.PROVIDER_TRANSIENT


class ResourceNotFound(ProviderError):
    """The provider has no resource with the given id."""

    pass


class UnknownResourceTypeError(Exception):
    """Raised when no provider is registered for a resource type."""

    pass


@dataclass(frozen=True)
class ResourceSpec:
    """Fully-resolved request for one resource."""

    node_id: str
    resource_type: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)


class ResourceProvider(ABC):
    """Operations for one resource type.

    Calls are keyed on the node's stable logical identifier (spec.node_id /
    spec.name) so that a retried create can be detected with ``identify``.
    """

    # True if created resources are usable only after is_ready() returns True
    async_ready: ClassVar[bool] = False

    # Attributes whose change cannot be applied in place
    replace_on: ClassVar[frozenset[str]] = frozenset()

    # Documented outputs; None disables output validation at graph build
    outputs: ClassVar[frozenset[str] | None] = None

    # Attributes set by the provider itself, ignored by drift detection
    managed_attributes: ClassVar[frozenset[str]] = frozenset()

    @abstractmethod
    def create(self, spec: ResourceSpec) -> ObservedState:
        """Create the resource and return its provider id and outputs."""

    @abstractmethod
    def read(self, provider_id: str) -> ObservedState:
        """Read the live resource.

        Raises:
            ResourceNotFound: If the resource does not exist.
        """

    @abstractmethod
    def update(self, provider_id: str, spec: ResourceSpec) -> ObservedState:
        """Apply new attributes in place and return the new outputs."""

    @abstractmethod
    def delete(self, provider_id: str) -> None:
        """Delete the resource; deleting a missing resource succeeds."""

    def is_ready(self, provider_id: str) -> bool:
        """Readiness predicate for async-ready types; must not mutate.

        Raises:
            ProviderRejected: If the provider reports the resource can never
                become ready (e.g. certificate validation failed).
        """
        return True

    def identify(self, spec: ResourceSpec) -> str | None:
        """Provider id the resource has (or would have), if deterministic."""
        return None

    def requires_replacement(self, old: Mapping[str, Any], new: Mapping[str, Any]) -> bool:
        """True if moving from ``old`` to ``new`` attributes forces replacement."""
        return any(old.get(name) != new.get(name) for name in self.replace_on)


class ProviderRegistry:
    """Maps resource types to their providers."""

    def __init__(self, providers: Mapping[str, ResourceProvider] | None = None) -> None:
        self._providers: dict[str, ResourceProvider] = dict(providers or {})

    def register(self, resource_type: str, provider: ResourceProvider) -> None:
        """Register (or replace) the provider for a resource type."""
        if resource_type in self._providers:
            logger.warning(
                "Replacing provider registration",
                extra={"resource_type": resource_type},
            )
        self._providers[resource_type] = provider

    def get(self, resource_type: str) -> ResourceProvider:
        """Get the provider for a resource type.

        Raises:
            UnknownResourceTypeError: If nothing is registered for the type.
        """
        provider = self._providers.get(resource_type)
        if provider is None:
            valid = sorted(self._providers)
            raise UnknownResourceTypeError(
                f"No provider registered for resource type '{resource_type}'. "
                f"Registered types: {valid}"
            )
        return provider

    def known_outputs(self, resource_type: str) -> frozenset[str] | None:
        """Documented outputs for a type (None if undocumented or unknown)."""
        provider = self._providers.get(resource_type)
        return provider.outputs if provider is not None else None

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._providers

    def __iter__(self) -> Iterator[str]:
        return iter(self._providers)
