"""Generic Azure Resource Manager provider.

One ArmResourceProvider binds a logical resource type (``cdn_profile``) to
an ARM resource type (``Microsoft.Cdn/profiles``) and API version inside a
single resource group, and drives it through the generic
``ResourceManagementClient.resources.*_by_id`` operations.

ATTRIBUTE MAPPING:
- ``location``, ``tags``, ``sku`` and ``kind`` map to the ARM envelope
- ``armName`` overrides the ARM resource name (``zone/record`` for child types)
- every other attribute is sent as a ``properties`` entry

Provider ids are ARM resource ids, derived deterministically from the
resource name, so a retried create always finds what an earlier attempt
created.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, Sku

from .config import Config, ConfigurationError
from .models import DesiredStateDocument, ProviderBinding
from .providers import (
    ProviderError,
    ProviderRegistry,
    ProviderRejected,
    ProviderTransient,
    ResourceNotFound,
    ResourceProvider,
    ResourceSpec,
)
from .resources import ObservedState, split_node_id
from .security import AuditOutcome, audit_provider_call, get_managed_identity_credential

logger = logging.getLogger(__name__)

# ARM envelope fields; everything else is a property
ENVELOPE_ATTRIBUTES = ("location", "tags", "sku", "kind")
ARM_NAME_ATTRIBUTE = "armName"

# Request timeout, throttling and server-side failures are retried
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def translate_error(error: AzureError, operation: str, resource_id: str) -> ProviderError:
    """Map an Azure SDK error onto the provider error kinds."""
    if isinstance(error, ResourceNotFoundError):
        return ResourceNotFound(f"{resource_id} not found")
    if isinstance(error, HttpResponseError):
        status = error.status_code
        if status == 404:
            return ResourceNotFound(f"{resource_id} not found")
        if status in TRANSIENT_STATUS_CODES or (status is not None and status >= 500):
            return ProviderTransient(f"{operation} {resource_id} failed ({status}): {error.message}")
        return ProviderRejected(f"{operation} {resource_id} rejected ({status}): {error.message}")
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return ProviderTransient(f"{operation} {resource_id} failed: {error}")
    return ProviderRejected(f"{operation} {resource_id} failed: {error}")


def _lookup(data: Mapping[str, Any], path: str) -> Any:
    current: Any = data
    for segment in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(segment)
    return current


class ArmResourceProvider(ResourceProvider):
    """Provider for one ARM resource type in one resource group."""

    managed_attributes = frozenset(
        {ARM_NAME_ATTRIBUTE, "provisioningState", "etag", "id", "name", "type"}
    )

    def __init__(
        self,
        client: ResourceManagementClient,
        binding: ProviderBinding,
        subscription_id: str,
        resource_group_name: str,
    ) -> None:
        self._client = client
        self._binding = binding
        self._scope = f"/subscriptions/{subscription_id}/resourceGroups/{resource_group_name}"

        self.async_ready = binding.async_ready  # type: ignore[misc]
        # Moving or renaming an ARM resource always means a new resource
        self.replace_on = frozenset(  # type: ignore[misc]
            {*binding.replace_on, "location", ARM_NAME_ATTRIBUTE}
        )
        self.outputs = (  # type: ignore[misc]
            frozenset({"id", "name", *binding.outputs}) if binding.outputs is not None else None
        )

    @property
    def arm_type(self) -> str:
        return self._binding.arm_type

    def resource_id(self, arm_name: str) -> str:
        """ARM resource id for a resource name in this provider's scope.

        Child types take one name per level: ``zone/www`` for
        ``Microsoft.Network/dnsZones/CNAME``.

        Raises:
            ProviderRejected: If the name does not match the type's depth.
        """
        namespace, *type_segments = self._binding.arm_type.split("/")
        names = arm_name.split("/")
        if len(names) != len(type_segments):
            raise ProviderRejected(
                f"Resource name '{arm_name}' needs {len(type_segments)} segment(s) "
                f"for type {self._binding.arm_type}"
            )
        path = "/".join(f"{t}/{n}" for t, n in zip(type_segments, names, strict=True))
        return f"{self._scope}/providers/{namespace}/{path}"

    def arm_name(self, spec: ResourceSpec) -> str:
        explicit = spec.attributes.get(ARM_NAME_ATTRIBUTE)
        if explicit:
            return str(explicit)
        _, name, key = split_node_id(spec.node_id)
        return name if key is None else f"{name}-{key}"

    def identify(self, spec: ResourceSpec) -> str | None:
        return self.resource_id(self.arm_name(spec))

    def create(self, spec: ResourceSpec) -> ObservedState:
        resource_id = self.resource_id(self.arm_name(spec))
        return self._put("create", resource_id, spec)

    def update(self, provider_id: str, spec: ResourceSpec) -> ObservedState:
        return self._put("update", provider_id, spec)

    def read(self, provider_id: str) -> ObservedState:
        try:
            resource = self._client.resources.get_by_id(
                resource_id=provider_id,
                api_version=self._binding.api_version,
            )
        except AzureError as e:
            raise translate_error(e, "read", provider_id) from e
        return self._observe(provider_id, resource)

    def delete(self, provider_id: str) -> None:
        try:
            poller = self._client.resources.begin_delete_by_id(
                resource_id=provider_id,
                api_version=self._binding.api_version,
            )
            poller.result()
        except AzureError as e:
            error = translate_error(e, "delete", provider_id)
            if isinstance(error, ResourceNotFound):
                logger.info("Resource already absent", extra={"provider_id": provider_id})
                return
            audit_provider_call("delete", provider_id, self.arm_type, AuditOutcome.FAILURE)
            raise error from e
        audit_provider_call("delete", provider_id, self.arm_type, AuditOutcome.SUCCESS)

    def is_ready(self, provider_id: str) -> bool:
        """Check the readiness property of the live resource.

        Raises:
            ProviderRejected: If the property holds one of the failed values.
        """
        try:
            resource = self._client.resources.get_by_id(
                resource_id=provider_id,
                api_version=self._binding.api_version,
            )
        except AzureError as e:
            error = translate_error(e, "poll", provider_id)
            if isinstance(error, ResourceNotFound):
                # Not yet visible after an accepted create
                return False
            raise error from e

        state = _lookup(resource.as_dict(), self._binding.ready_property)
        if state in self._binding.failed_values:
            raise ProviderRejected(
                f"{provider_id} reports {self._binding.ready_property}={state}"
            )
        return state in self._binding.ready_values

    def _body(self, spec: ResourceSpec) -> GenericResource:
        attributes = spec.attributes
        sku = attributes.get("sku")
        properties = {
            name: value
            for name, value in attributes.items()
            if name not in ENVELOPE_ATTRIBUTES and name != ARM_NAME_ATTRIBUTE
        }
        return GenericResource(
            location=attributes.get("location", self._binding.location),
            tags=attributes.get("tags"),
            sku=Sku(**sku) if isinstance(sku, Mapping) else None,
            kind=attributes.get("kind"),
            properties=properties,
        )

    def _put(self, operation: str, resource_id: str, spec: ResourceSpec) -> ObservedState:
        try:
            poller = self._client.resources.begin_create_or_update_by_id(
                resource_id=resource_id,
                api_version=self._binding.api_version,
                parameters=self._body(spec),
            )
            if self.async_ready:
                # Readiness is polled by the engine; the accepted request is enough
                audit_provider_call(operation, resource_id, self.arm_type, AuditOutcome.ACCEPTED)
                return ObservedState(
                    provider_id=resource_id,
                    attributes=dict(spec.attributes),
                    outputs={"id": resource_id, "name": self.arm_name(spec)},
                )
            resource = poller.result()
        except AzureError as e:
            audit_provider_call(operation, resource_id, self.arm_type, AuditOutcome.FAILURE)
            raise translate_error(e, operation, resource_id) from e
        audit_provider_call(operation, resource_id, self.arm_type, AuditOutcome.SUCCESS)
        return self._observe(resource_id, resource)

    @staticmethod
    def _observe(resource_id: str, resource: GenericResource) -> ObservedState:
        data = resource.as_dict()
        properties = dict(data.get("properties") or {})
        attributes = {
            name: data[name] for name in ENVELOPE_ATTRIBUTES if data.get(name) is not None
        }
        attributes.update(properties)
        outputs = {"id": data.get("id") or resource_id, "name": data.get("name"), **properties}
        return ObservedState(provider_id=resource_id, attributes=attributes, outputs=outputs)


def build_registry(
    document: DesiredStateDocument,
    config: Config,
    credential: TokenCredential | None = None,
    client: ResourceManagementClient | None = None,
) -> ProviderRegistry:
    """Register an ArmResourceProvider for every binding in the document.

    Raises:
        ConfigurationError: If bindings exist but no ARM scope is configured.
        SecretlessViolationError: If a credential secret is in the environment.
    """
    registry = ProviderRegistry()
    if not document.providers:
        return registry

    if not config.subscription_id or not config.resource_group_name:
        raise ConfigurationError(
            "AZURE_SUBSCRIPTION_ID and AZURE_RESOURCE_GROUP are required for ARM providers"
        )

    if client is None:
        client = ResourceManagementClient(
            credential=credential or get_managed_identity_credential(os.environ.get("AZURE_CLIENT_ID")),
            subscription_id=config.subscription_id,
        )

    for resource_type, binding in document.providers.items():
        registry.register(
            resource_type,
            ArmResourceProvider(
                client,
                binding,
                subscription_id=config.subscription_id,
                resource_group_name=config.resource_group_name,
            ),
        )
        logger.debug(
            "Registered ARM provider",
            extra={"resource_type": resource_type, "arm_type": binding.arm_type},
        )
    return registry
