"""Resource model: desired nodes, references, and observed state.

A ResourceNode is one desired resource for the current run. Its attributes
may contain reference expressions to outputs of other nodes:

```yaml
attributes:
  origin: ${bucket.site.website_endpoint}      # raw value
  comment: "cdn for ${bucket.site.name}"       # interpolated string
```

Outputs are published exactly once, by the executor that drives the node,
and are read-only afterwards. ObservedState and StateRecord are the only
objects that outlive a run (via the state store).
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

EXPRESSION_PATTERN = re.compile(r"\$\{\s*([^}]+?)\s*\}")

# <type>.<name>[<key>] followed by an output path
REFERENCE_PATTERN = re.compile(
    r"^(?P<type>[a-z][a-z0-9_-]*)\.(?P<name>[a-z][a-z0-9_-]*(?:\[[^\]]+\])?)\.(?P<path>.+)$"
)

EACH_PREFIX = "each"


class ErrorKind(str, Enum):
    """Error kinds surfaced in plans and apply reports."""

    CYCLIC_DEPENDENCY = "CyclicDependency"
    UNRESOLVED_REFERENCE = "UnresolvedReference"
    PROVIDER_REJECTED = "ProviderRejected"
    PROVIDER_TRANSIENT = "ProviderTransient"
    READINESS_TIMEOUT = "ReadinessTimeout"
    READINESS_REJECTED = "ReadinessRejected"
    STATE_DRIFT = "StateDrift"


class NodeStatus(str, Enum):
    """Lifecycle status of a node within one run."""

    PENDING = "pending"
    CREATING = "creating"
    WAITING_READY = "waiting_ready"
    READY = "ready"
    UPDATING = "updating"
    DELETING = "deleting"
    DELETED = "deleted"
    FAILED = "failed"
    BLOCKED = "blocked"  # A predecessor did not become ready
    CANCELLED = "cancelled"  # Run cancelled before the node started


IN_PROGRESS_STATUSES = frozenset({NodeStatus.CREATING, NodeStatus.UPDATING, NodeStatus.DELETING})

ALLOWED_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset(
        {
            NodeStatus.CREATING,
            NodeStatus.UPDATING,
            NodeStatus.DELETING,
            NodeStatus.READY,
            NodeStatus.FAILED,
            NodeStatus.BLOCKED,
            NodeStatus.CANCELLED,
        }
    ),
    NodeStatus.CREATING: frozenset(
        {NodeStatus.WAITING_READY, NodeStatus.READY, NodeStatus.FAILED}
    ),
    NodeStatus.UPDATING: frozenset(
        {NodeStatus.WAITING_READY, NodeStatus.READY, NodeStatus.FAILED}
    ),
    NodeStatus.WAITING_READY: frozenset({NodeStatus.READY, NodeStatus.FAILED}),
    NodeStatus.READY: frozenset({NodeStatus.DELETING}),
    NodeStatus.DELETING: frozenset({NodeStatus.DELETED, NodeStatus.CREATING, NodeStatus.FAILED}),
    NodeStatus.DELETED: frozenset(),
    NodeStatus.FAILED: frozenset(),
    NodeStatus.BLOCKED: frozenset(),
    NodeStatus.CANCELLED: frozenset(),
}


class LifecyclePolicy(str, Enum):
    """Ordering used when a change forces replacement."""

    CREATE_BEFORE_DESTROY = "create_before_destroy"
    DESTROY_BEFORE_CREATE = "destroy_before_create"


class UnresolvedReferenceError(Exception):
    """Raised when an attribute references a node or output that does not exist."""

    kind = ErrorKind.UNRESOLVED_REFERENCE


class InvalidTransitionError(RuntimeError):
    """Raised on an illegal node status transition."""

    pass


NODE_ID_PATTERN = re.compile(
    r"^(?P<type>[a-z][a-z0-9_-]*)\.(?P<name>[a-z][a-z0-9_-]*)(?:\[(?P<key>[^\]]+)\])?$"
)


def node_id_for(resource_type: str, name: str, key: str | None = None) -> str:
    """Build a node identifier from type, logical name and optional fan-out key."""
    base = f"{resource_type}.{name}"
    return f"{base}[{key}]" if key is not None else base


def split_node_id(node_id: str) -> tuple[str, str, str | None]:
    """Split a node identifier into (type, name, key).

    Raises:
        ValueError: If the identifier is malformed.
    """
    match = NODE_ID_PATTERN.match(node_id)
    if match is None:
        raise ValueError(f"Malformed node id: {node_id}")
    return match.group("type"), match.group("name"), match.group("key")


def canonical_json(value: Any) -> str:
    """Serialize a value deterministically."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_digest(value: Any) -> str:
    """SHA-256 digest of a value's canonical JSON form."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


# =============================================================================
# Reference expressions
# =============================================================================


@dataclass(frozen=True)
class Reference:
    """A reference from an attribute to another node's output."""

    node_id: str
    output: str
    path: tuple[str, ...] = ()
    expression: str = ""

    @classmethod
    def parse(cls, body: str) -> Reference:
        """Parse the body of a ``${...}`` expression.

        Raises:
            UnresolvedReferenceError: If the expression is malformed.
        """
        match = REFERENCE_PATTERN.match(body.strip())
        if match is None:
            raise UnresolvedReferenceError(f"Malformed reference expression: ${{{body}}}")
        segments = tuple(match.group("path").split("."))
        return cls(
            node_id=f"{match.group('type')}.{match.group('name')}",
            output=segments[0],
            path=segments[1:],
            expression=body.strip(),
        )


def _is_each(body: str) -> bool:
    head = body.strip().split(".", 1)[0]
    return head == EACH_PREFIX


def iter_strings(value: Any) -> list[str]:
    """Collect every string nested inside lists and mappings."""
    found: list[str] = []
    if isinstance(value, str):
        found.append(value)
    elif isinstance(value, Mapping):
        for item in value.values():
            found.extend(iter_strings(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            found.extend(iter_strings(item))
    return found


def find_references(value: Any) -> list[Reference]:
    """Find all node references inside an attribute value, in order.

    ``each.*`` expressions are fan-out template variables, not references.
    """
    references: list[Reference] = []
    for text in iter_strings(value):
        for body in EXPRESSION_PATTERN.findall(text):
            if _is_each(body):
                continue
            references.append(Reference.parse(body))
    return references


def uses_each(value: Any) -> bool:
    """True if any string in the value uses an ``each.*`` expression."""
    return any(
        _is_each(body) for text in iter_strings(value) for body in EXPRESSION_PATTERN.findall(text)
    )


def walk_path(value: Any, path: tuple[str, ...], expression: str) -> Any:
    """Follow a dotted path through nested mappings and lists."""
    current = value
    for segment in path:
        if isinstance(current, Mapping) and segment in current:
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            raise UnresolvedReferenceError(
                f"Reference ${{{expression}}} has no value at '{segment}'"
            )
    return current


def _substitute(value: Any, replace: Callable[[str], Any]) -> Any:
    if isinstance(value, str):
        whole = EXPRESSION_PATTERN.fullmatch(value.strip())
        if whole is not None:
            return replace(whole.group(1))
        return EXPRESSION_PATTERN.sub(lambda m: str(replace(m.group(1))), value)
    if isinstance(value, Mapping):
        return {k: _substitute(v, replace) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_substitute(v, replace) for v in value]
    return value


def resolve_references(value: Any, lookup: Callable[[str], Mapping[str, Any]]) -> Any:
    """Replace every reference with the producing node's output.

    Args:
        value: Attribute value, possibly nested.
        lookup: Returns the published outputs of a node id.

    Raises:
        UnresolvedReferenceError: If an output or nested path is missing.
    """

    def replace(body: str) -> Any:
        ref = Reference.parse(body)
        outputs = lookup(ref.node_id)
        if ref.output not in outputs:
            raise UnresolvedReferenceError(
                f"Node '{ref.node_id}' has no output '{ref.output}' (${{{ref.expression}}})"
            )
        return walk_path(outputs[ref.output], ref.path, ref.expression)

    return _substitute(value, replace)


def render_each(value: Any, key: str, item: Any) -> Any:
    """Render ``each.key`` / ``each.value`` in a fan-out template.

    Other references are left in place for later resolution.
    """

    def replace(body: str) -> Any:
        if not _is_each(body):
            return "${" + body + "}"
        segments = body.strip().split(".")
        if segments[1:2] == ["key"] and len(segments) == 2:
            return key
        if segments[1:2] == ["value"]:
            return walk_path(item, tuple(segments[2:]), body.strip())
        raise UnresolvedReferenceError(f"Unknown fan-out variable: ${{{body}}}")

    return _substitute(value, replace)


# =============================================================================
# Nodes
# =============================================================================


@dataclass(eq=False)
class ResourceNode:
    """A desired resource for one run.

    Owned by the DependencyGraph that contains it; dependents refer to it
    by node id and read its outputs only once it is Ready.
    """

    resource_type: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    lifecycle: LifecyclePolicy = LifecyclePolicy.CREATE_BEFORE_DESTROY
    readiness_timeout_seconds: float | None = None

    # Deferred fan-out: placeholder nodes carry the collection expression
    for_each: str | None = None
    for_each_key: str | None = None

    # Fan-out children carry their key and placeholder id
    key: str | None = None
    parent: str | None = None

    status: NodeStatus = NodeStatus.PENDING
    error: Exception | None = None
    error_kind: ErrorKind | None = None
    blocked_by: list[str] = field(default_factory=list)

    _outputs: Mapping[str, Any] | None = field(default=None, init=False, repr=False)

    @property
    def node_id(self) -> str:
        """Stable logical identifier: type + name (+ fan-out key)."""
        return node_id_for(self.resource_type, self.name, self.key)

    @property
    def is_placeholder(self) -> bool:
        """True for fan-out placeholders awaiting expansion."""
        return self.for_each is not None

    @property
    def digest(self) -> str:
        """Digest of the declared (unresolved) configuration."""
        return compute_digest(
            {
                "attributes": self.attributes,
                "for_each": self.for_each,
                "for_each_key": self.for_each_key,
            }
        )

    @property
    def outputs(self) -> Mapping[str, Any]:
        """Published outputs (empty until published)."""
        if self._outputs is None:
            return MappingProxyType({})
        return self._outputs

    @property
    def has_outputs(self) -> bool:
        return self._outputs is not None

    def publish(self, outputs: Mapping[str, Any]) -> None:
        """Publish outputs once; they are read-only afterwards."""
        if self._outputs is not None:
            raise InvalidTransitionError(f"Outputs of '{self.node_id}' already published")
        self._outputs = MappingProxyType(dict(outputs))

    def transition(self, status: NodeStatus) -> None:
        """Move to a new status, enforcing the node state machine."""
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Illegal transition for '{self.node_id}': {self.status.value} -> {status.value}"
            )
        self.status = status

    def references(self) -> list[Reference]:
        """References in attributes and the fan-out collection expression."""
        refs = find_references(self.attributes)
        if self.for_each is not None:
            refs = find_references(self.for_each) + refs
        return refs


# =============================================================================
# Observed and persisted state
# =============================================================================


@dataclass(frozen=True)
class ObservedState:
    """Resource state as confirmed by the provider."""

    provider_id: str | None
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "provider_id": self.provider_id,
            "attributes": self.attributes,
            "outputs": self.outputs,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ObservedState:
        """Create from dictionary."""
        return cls(
            provider_id=data.get("provider_id"),
            attributes=dict(data.get("attributes") or {}),
            outputs=dict(data.get("outputs") or {}),
        )


@dataclass(frozen=True)
class StateRecord:
    """Persisted per-node entry in the state store.

    Attributes:
        node_id: Logical node identifier.
        resource_type: Resource type of the node.
        observed: Last confirmed provider state.
        digest: Digest of the declared attributes (references unresolved).
        applied_digest: Digest of the resolved attributes last sent to the provider.
        status: Last lifecycle status; in-progress values mark interrupted runs.
        depends_on: Node ids this node depended on when last applied.
        parent: Fan-out placeholder id for expanded children.
        updated_at: Time of the last write.
    """

    node_id: str
    resource_type: str
    observed: ObservedState
    digest: str = ""
    applied_digest: str = ""
    status: NodeStatus = NodeStatus.READY
    depends_on: tuple[str, ...] = ()
    parent: str | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def provider_id(self) -> str | None:
        return self.observed.provider_id

    @property
    def in_progress(self) -> bool:
        """True if a run stopped between a provider call and its state write."""
        return self.status in IN_PROGRESS_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "node_id": self.node_id,
            "resource_type": self.resource_type,
            "provider_id": self.observed.provider_id,
            "digest": self.digest,
            "applied_digest": self.applied_digest,
            "observed": self.observed.to_dict(),
            "status": self.status.value,
            "depends_on": list(self.depends_on),
            "parent": self.parent,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateRecord:
        """Create from dictionary."""
        observed = ObservedState.from_dict(data.get("observed") or {})
        if observed.provider_id is None and data.get("provider_id"):
            observed = ObservedState(
                provider_id=data["provider_id"],
                attributes=observed.attributes,
                outputs=observed.outputs,
            )
        return cls(
            node_id=data["node_id"],
            resource_type=data["resource_type"],
            observed=observed,
            digest=data.get("digest", ""),
            applied_digest=data.get("applied_digest", ""),
            status=NodeStatus(data.get("status", NodeStatus.READY.value)),
            depends_on=tuple(data.get("depends_on") or ()),
            parent=data.get("parent"),
            updated_at=(
                datetime.fromisoformat(data["updated_at"])
                if data.get("updated_at")
                else datetime.now(UTC)
            ),
        )
