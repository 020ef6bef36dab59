"""Pydantic models for the desired-state document.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to graph nodes
"""

from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import MAX_RESOURCES_PER_RUN, VALID_NAME_PATTERN
from .resources import (
    EXPRESSION_PATTERN,
    LifecyclePolicy,
    ResourceNode,
    node_id_for,
    uses_each,
)

API_VERSION = "edge-orchestrator/v1"

_NAME_RE = re.compile(VALID_NAME_PATTERN)


def _validate_name(value: str, field_name: str) -> str:
    if not _NAME_RE.match(value):
        raise ValueError(
            f"{field_name} must start with a lowercase letter and contain only "
            f"lowercase letters, digits, '_' or '-' (max 63 chars), got '{value}'"
        )
    return value


# =============================================================================
# Provider bindings
# =============================================================================


class ProviderBinding(BaseModel):
    """Binds a logical resource type to an ARM resource type."""

    model_config = {"extra": "ignore"}

    arm_type: Annotated[str, Field(min_length=3, alias="armType")]
    api_version: Annotated[str, Field(min_length=1, alias="apiVersion")]
    location: str | None = None

    # Asynchronous readiness (e.g. certificate issuance)
    async_ready: bool = Field(False, alias="asyncReady")
    ready_property: str = Field("properties.provisioningState", alias="readyProperty")
    ready_values: list[str] = Field(default_factory=lambda: ["Succeeded"], alias="readyValues")
    failed_values: list[str] = Field(
        default_factory=lambda: ["Failed", "Canceled"], alias="failedValues"
    )

    replace_on: list[str] = Field(default_factory=list, alias="replaceOn")
    outputs: list[str] | None = None

    @field_validator("arm_type")
    @classmethod
    def validate_arm_type(cls, v: str) -> str:
        # Microsoft.Cdn/profiles, Microsoft.Network/dnsZones/CNAME
        if "/" not in v or "." not in v.split("/", 1)[0]:
            raise ValueError("armType must look like 'Namespace.Provider/resourceType'")
        return v


# =============================================================================
# Resource declarations
# =============================================================================


class ReadinessConfig(BaseModel):
    """Per-resource readiness override."""

    model_config = {"extra": "ignore"}

    timeout_seconds: Annotated[float, Field(gt=0, le=4 * 3600, alias="timeoutSeconds")]


class ResourceDeclaration(BaseModel):
    """One resource in the desired state."""

    model_config = {"extra": "ignore"}

    type: str
    name: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    lifecycle: LifecyclePolicy = LifecyclePolicy.CREATE_BEFORE_DESTROY
    readiness: ReadinessConfig | None = None

    # Deferred fan-out over an upstream collection
    for_each: str | None = Field(None, alias="forEach")
    for_each_key: str | None = Field(None, alias="forEachKey")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        return _validate_name(v, "type")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_name(v, "name")

    @field_validator("for_each")
    @classmethod
    def validate_for_each(cls, v: str | None) -> str | None:
        if v is not None and EXPRESSION_PATTERN.fullmatch(v.strip()) is None:
            raise ValueError("forEach must be a single reference expression like ${type.name.output}")
        return v

    @model_validator(mode="after")
    def validate_fan_out(self) -> ResourceDeclaration:
        if self.for_each is None:
            if self.for_each_key is not None:
                raise ValueError("forEachKey requires forEach")
            if uses_each(self.attributes):
                raise ValueError("${each.*} may only be used in a forEach declaration")
        return self

    @property
    def node_id(self) -> str:
        return node_id_for(self.type, self.name)

    def to_node(self) -> ResourceNode:
        """Convert to a graph node."""
        return ResourceNode(
            resource_type=self.type,
            name=self.name,
            attributes=dict(self.attributes),
            lifecycle=self.lifecycle,
            readiness_timeout_seconds=(
                self.readiness.timeout_seconds if self.readiness is not None else None
            ),
            for_each=self.for_each,
            for_each_key=self.for_each_key,
        )


# =============================================================================
# Document
# =============================================================================


class DesiredStateDocument(BaseModel):
    """Top-level desired-state document."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(API_VERSION, alias="apiVersion")
    providers: dict[str, ProviderBinding] = Field(default_factory=dict)
    resources: list[ResourceDeclaration] = Field(default_factory=list)

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: str) -> str:
        if v != API_VERSION:
            raise ValueError(f"apiVersion must be '{API_VERSION}'")
        return v

    @field_validator("providers")
    @classmethod
    def validate_provider_names(cls, v: dict[str, ProviderBinding]) -> dict[str, ProviderBinding]:
        for resource_type in v:
            _validate_name(resource_type, "provider type")
        return v

    @field_validator("resources")
    @classmethod
    def validate_resources(cls, v: list[ResourceDeclaration]) -> list[ResourceDeclaration]:
        if len(v) > MAX_RESOURCES_PER_RUN:
            raise ValueError(f"at most {MAX_RESOURCES_PER_RUN} resources may be declared")
        seen: set[str] = set()
        for declaration in v:
            if declaration.node_id in seen:
                raise ValueError(f"duplicate resource '{declaration.node_id}'")
            seen.add(declaration.node_id)
        return v

    def to_nodes(self) -> list[ResourceNode]:
        """Convert declarations to graph nodes, in declaration order."""
        return [declaration.to_node() for declaration in self.resources]
