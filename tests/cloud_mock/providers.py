"""Fake providers implementing the provider contract over FakeCloud.

Each resource type of the edge stack gets an output factory so that
dependents can reference realistic outputs (endpoints, ARNs, validation
records).
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from orchestrator.providers import ProviderRegistry, ResourceProvider, ResourceSpec
from orchestrator.resources import ObservedState, split_node_id

from .cloud import FakeCloud, FakeResource

OutputFactory = Callable[[str, dict[str, Any]], dict[str, Any]]


def _bucket_outputs(name: str, attributes: dict[str, Any]) -> dict[str, Any]:
    bucket = attributes.get("bucket_name", name)
    return {"arn": f"arn:bucket:{bucket}", "website_endpoint": f"{bucket}.web.example"}


def _certificate_outputs(name: str, attributes: dict[str, Any]) -> dict[str, Any]:
    domain = attributes.get("domain", name)
    return {
        "arn": f"arn:certificate:{domain}",
        "validation_name": f"_acme.{domain}",
        "validation_value": f"validate-{domain}",
        "validation_records": [
            {"name": f"_acme.{d}", "value": f"validate-{d}"}
            for d in [domain, *attributes.get("alternative_names", [])]
        ],
    }


def _dns_record_outputs(name: str, attributes: dict[str, Any]) -> dict[str, Any]:
    return {"fqdn": attributes.get("name", name)}


def _certificate_validation_outputs(name: str, attributes: dict[str, Any]) -> dict[str, Any]:
    return {"certificate_arn": attributes.get("certificate")}


def _distribution_outputs(name: str, attributes: dict[str, Any]) -> dict[str, Any]:
    return {"domain_name": f"{name}.cdn.example", "arn": f"arn:distribution:{name}"}


OUTPUT_FACTORIES: dict[str, OutputFactory] = {
    "bucket": _bucket_outputs,
    "certificate": _certificate_outputs,
    "dns_record": _dns_record_outputs,
    "certificate_validation": _certificate_validation_outputs,
    "distribution": _distribution_outputs,
}

# Types whose readiness is confirmed asynchronously
ASYNC_READY_TYPES = frozenset({"certificate", "certificate_validation"})


class FakeProvider(ResourceProvider):
    """Provider for one resource type backed by a FakeCloud."""

    managed_attributes = frozenset({"last_modified"})

    def __init__(
        self,
        cloud: FakeCloud,
        resource_type: str,
        async_ready: bool = False,
        replace_on: Iterable[str] = (),
        outputs: Iterable[str] | None = None,
        deterministic_ids: bool = True,
    ) -> None:
        self._cloud = cloud
        self._resource_type = resource_type
        self._deterministic_ids = deterministic_ids
        self._factory = OUTPUT_FACTORIES.get(resource_type, lambda name, attributes: {})

        self.async_ready = async_ready  # type: ignore[misc]
        self.replace_on = frozenset(replace_on)  # type: ignore[misc]
        self.outputs = frozenset(outputs) if outputs is not None else None  # type: ignore[misc]

    def identify(self, spec: ResourceSpec) -> str | None:
        if not self._deterministic_ids:
            return None
        return self._provider_id(spec)

    def create(self, spec: ResourceSpec) -> ObservedState:
        provider_id = (
            self._provider_id(spec)
            if self._deterministic_ids
            else self._cloud.new_id(self._resource_type)
        )
        return self._put("create", provider_id, spec)

    def read(self, provider_id: str) -> ObservedState:
        return self._observe(self._cloud.read(self._resource_type, provider_id))

    def update(self, provider_id: str, spec: ResourceSpec) -> ObservedState:
        return self._put("update", provider_id, spec)

    def delete(self, provider_id: str) -> None:
        self._cloud.delete(self._resource_type, provider_id)

    def is_ready(self, provider_id: str) -> bool:
        return self._cloud.poll(self._resource_type, provider_id)

    def _provider_id(self, spec: ResourceSpec) -> str:
        _, name, key = split_node_id(spec.node_id)
        physical = spec.attributes.get("physical_name", name)
        suffix = f"-{key}" if key is not None else ""
        return f"{self._resource_type}/{physical}{suffix}"

    def _put(self, operation: str, provider_id: str, spec: ResourceSpec) -> ObservedState:
        outputs = {"id": provider_id, **self._factory(spec.name, spec.attributes)}
        resource = self._cloud.put(
            operation,
            provider_id,
            self._resource_type,
            spec.name,
            {**spec.attributes, "last_modified": operation},
            outputs,
        )
        return self._observe(resource)

    @staticmethod
    def _observe(resource: FakeResource) -> ObservedState:
        return ObservedState(
            provider_id=resource.provider_id,
            attributes=dict(resource.attributes),
            outputs=dict(resource.outputs),
        )


def build_fake_registry(
    cloud: FakeCloud,
    replace_on: dict[str, Iterable[str]] | None = None,
    deterministic_ids: bool = True,
) -> ProviderRegistry:
    """Registry with a FakeProvider for every edge-stack resource type."""
    replace_on = replace_on or {}
    registry = ProviderRegistry()
    for resource_type in OUTPUT_FACTORIES:
        registry.register(
            resource_type,
            FakeProvider(
                cloud,
                resource_type,
                async_ready=resource_type in ASYNC_READY_TYPES,
                replace_on=replace_on.get(resource_type, ()),
                deterministic_ids=deterministic_ids,
            ),
        )
    return registry
