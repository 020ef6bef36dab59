"""Plan computation: a pure diff of desired state against stored state.

compute_plan() performs no I/O and mutates nothing: given the same graph
and records it always returns the same ordered changes. Live provider
state is only consulted at apply time.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from .dependency import DependencyGraph
from .providers import ProviderRegistry
from .resources import NodeStatus, ResourceNode, StateRecord, find_references


class Action(str, Enum):
    """Planned action for one node."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"


MUTATING_ACTIONS = frozenset({Action.CREATE, Action.UPDATE, Action.REPLACE})

ACTION_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.REPLACE: "-/+",
    Action.DELETE: "-",
    Action.NOOP: " ",
}


@dataclass(frozen=True)
class PlannedChange:
    """One entry of a plan.

    Attributes:
        node_id: Node the action applies to.
        resource_type: Resource type of the node.
        action: What apply will do.
        reason: Human-readable justification.
        record: Stored state the decision was based on, if any.
    """

    node_id: str
    resource_type: str
    action: Action
    reason: str
    record: StateRecord | None = None


@dataclass(frozen=True)
class Plan:
    """Ordered, immutable set of changes; consumed once by apply.

    ``graph`` holds the desired nodes the changes refer to; ``state_serial``
    identifies the state snapshot the plan was computed from.
    """

    changes: tuple[PlannedChange, ...]
    graph: DependencyGraph = field(compare=False, repr=False)
    state_serial: int = 0
    plan_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    _index: Mapping[str, PlannedChange] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "_index", MappingProxyType({c.node_id: c for c in self.changes})
        )

    @property
    def has_changes(self) -> bool:
        return any(change.action != Action.NOOP for change in self.changes)

    @property
    def deletions(self) -> tuple[PlannedChange, ...]:
        """Delete changes, in execution order (dependents first)."""
        return tuple(c for c in self.changes if c.action == Action.DELETE)

    def change_for(self, node_id: str) -> PlannedChange | None:
        return self._index.get(node_id)

    def action_for(self, node_id: str) -> Action | None:
        change = self._index.get(node_id)
        return change.action if change is not None else None

    def counts(self) -> dict[str, int]:
        """Number of changes per action."""
        result = {action.value: 0 for action in Action}
        for change in self.changes:
            result[change.action.value] += 1
        return result

    def summary(self) -> str:
        """Human-readable plan: one line per node with action and reason."""
        counts = self.counts()
        lines = [
            f"Plan {self.plan_id}: {counts['create']} to create, {counts['update']} to update, "
            f"{counts['replace']} to replace, {counts['delete']} to delete, "
            f"{counts['noop']} unchanged"
        ]
        width = max((len(c.node_id) for c in self.changes), default=0)
        for change in self.changes:
            symbol = ACTION_SYMBOLS[change.action]
            lines.append(
                f"  {symbol:>3} {change.node_id:<{width}}  {change.action.value:<7}  {change.reason}"
            )
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "plan_id": self.plan_id,
            "state_serial": self.state_serial,
            "created_at": self.created_at.isoformat(),
            "changes": [
                {
                    "node_id": c.node_id,
                    "resource_type": c.resource_type,
                    "action": c.action.value,
                    "reason": c.reason,
                }
                for c in self.changes
            ],
        }


def _replacement_attributes(
    node: ResourceNode, record: StateRecord, registry: ProviderRegistry
) -> list[str]:
    """Replace-forcing attributes whose change is already known at plan time."""
    provider = registry.get(node.resource_type)
    applied = record.observed.attributes
    changed = []
    for name in sorted(provider.replace_on):
        desired = node.attributes.get(name)
        if find_references(desired):
            continue  # only known after predecessors are applied
        if applied.get(name) != desired:
            changed.append(name)
    return changed


def _plan_desired(
    node: ResourceNode,
    record: StateRecord | None,
    changed_predecessors: list[str],
    registry: ProviderRegistry,
) -> tuple[Action, str]:
    if record is None:
        return Action.CREATE, "not present in state"

    if record.in_progress:
        if record.status == NodeStatus.CREATING and record.provider_id is None:
            return Action.CREATE, "resume interrupted creating"
        return Action.UPDATE, f"resume interrupted {record.status.value}"

    if record.digest != node.digest:
        if not node.is_placeholder:
            replaced = _replacement_attributes(node, record, registry)
            if replaced:
                return Action.REPLACE, f"forces replacement: {', '.join(replaced)}"
        return Action.UPDATE, "declared attributes changed"

    if changed_predecessors:
        return Action.UPDATE, f"references changed {', '.join(changed_predecessors)}"

    return Action.NOOP, "up to date"


def _deletion_order(orphans: dict[str, StateRecord]) -> list[str]:
    """Order orphaned records so that dependents are deleted first."""
    remaining = dict(orphans)
    ordered: list[str] = []
    while remaining:
        depended_on = {dep for rec in remaining.values() for dep in rec.depends_on}
        batch = sorted(node_id for node_id in remaining if node_id not in depended_on)
        if not batch:
            # Stored dependencies should never be cyclic; fall back to name order
            batch = sorted(remaining)
        for node_id in batch:
            ordered.append(node_id)
            del remaining[node_id]
    return ordered


def compute_plan(
    graph: DependencyGraph,
    records: Mapping[str, StateRecord],
    registry: ProviderRegistry,
    state_serial: int = 0,
) -> Plan:
    """Diff desired nodes against stored records.

    Args:
        graph: Validated desired-state graph.
        records: Stored records keyed by node id.
        registry: Providers, consulted for replacement rules only.
        state_serial: Serial of the state snapshot in ``records``.

    Returns:
        Plan with desired nodes in topological order followed by deletions.

    Raises:
        UnknownResourceTypeError: If a node's type has no provider.
    """
    changes: list[PlannedChange] = []
    actions: dict[str, Action] = {}

    for node_id in graph.topological_order():
        node = graph.nodes[node_id]
        registry.get(node.resource_type)
        record = records.get(node_id)
        changed_predecessors = [
            pred for pred in graph.predecessors(node_id) if actions.get(pred) in MUTATING_ACTIONS
        ]
        action, reason = _plan_desired(node, record, changed_predecessors, registry)
        actions[node_id] = action
        changes.append(
            PlannedChange(
                node_id=node_id,
                resource_type=node.resource_type,
                action=action,
                reason=reason,
                record=record,
            )
        )

    orphans = {
        node_id: record
        for node_id, record in records.items()
        if node_id not in graph.nodes
        and not (record.parent is not None and record.parent in graph.nodes)
    }
    for node_id in _deletion_order(orphans):
        record = orphans[node_id]
        reason = "not in desired state"
        if record.parent is not None:
            reason = f"fan-out parent {record.parent} removed"
        changes.append(
            PlannedChange(
                node_id=node_id,
                resource_type=record.resource_type,
                action=Action.DELETE,
                reason=reason,
                record=record,
            )
        )

    return Plan(changes=tuple(changes), graph=graph, state_serial=state_serial)
