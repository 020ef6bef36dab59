"""Plan/Apply controller: one end-to-end run.

``plan()`` is a pure diff: it loads state, builds the graph and computes
changes without calling any provider. ``apply()`` executes a plan exactly
once and returns an ApplyResult; re-planning the same desired state
afterwards yields only no-op changes.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import Config
from .dependency import DependencyGraph
from .drift import DriftReport
from .engine import ExecutionOutcome, ReconciliationEngine
from .models import DesiredStateDocument
from .planner import Action, Plan, compute_plan
from .poller import CompletionPoller
from .providers import ProviderRegistry
from .provenance import get_provenance_logger
from .resources import ErrorKind, NodeStatus, ResourceNode
from .state import StateStore

logger = logging.getLogger(__name__)


class PlanConsumedError(Exception):
    """Raised when a plan that was already applied is applied again."""

    pass


class StalePlanError(Exception):
    """Raised when state changed between plan and apply."""

    pass


class ExitStatus(str, Enum):
    """Overall outcome of an apply run."""

    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILURE = "failure"


# Process exit codes used by the CLI
EXIT_CODES = {
    ExitStatus.SUCCESS: 0,
    ExitStatus.FAILURE: 1,
    ExitStatus.PARTIAL_FAILURE: 3,
}

_SUCCEEDED = frozenset({NodeStatus.READY, NodeStatus.DELETED})


@dataclass(frozen=True)
class NodeResult:
    """Final outcome of one node."""

    node_id: str
    action: Action
    status: NodeStatus
    error_kind: ErrorKind | None = None
    message: str = ""
    blocked_by: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status in _SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "node_id": self.node_id,
            "action": self.action.value,
            "status": self.status.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "blocked_by": list(self.blocked_by),
        }


@dataclass
class ApplyResult:
    """Per-node outcomes and summary of an apply run."""

    plan_id: str
    nodes: list[NodeResult] = field(default_factory=list)
    drift: list[DriftReport] = field(default_factory=list)
    cancelled: bool = False
    duration_seconds: float = 0.0

    def result_for(self, node_id: str) -> NodeResult | None:
        return next((n for n in self.nodes if n.node_id == node_id), None)

    def status_of(self, node_id: str) -> NodeStatus | None:
        result = self.result_for(node_id)
        return result.status if result is not None else None

    @property
    def failed(self) -> list[NodeResult]:
        return [n for n in self.nodes if n.status == NodeStatus.FAILED]

    @property
    def blocked(self) -> list[NodeResult]:
        return [n for n in self.nodes if n.status == NodeStatus.BLOCKED]

    @property
    def errors_by_kind(self) -> dict[ErrorKind, list[str]]:
        """Failed node ids grouped by error kind."""
        grouped: dict[ErrorKind, list[str]] = {}
        for result in self.failed:
            if result.error_kind is not None:
                grouped.setdefault(result.error_kind, []).append(result.node_id)
        return grouped

    @property
    def exit_status(self) -> ExitStatus:
        if all(n.succeeded for n in self.nodes) and not self.cancelled:
            return ExitStatus.SUCCESS
        changed = any(n.succeeded and n.action != Action.NOOP for n in self.nodes)
        return ExitStatus.PARTIAL_FAILURE if changed else ExitStatus.FAILURE

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.exit_status]

    def counts_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for result in self.nodes:
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
        return counts

    def report(self) -> str:
        """Human-readable report: one line per node plus drift and errors."""
        lines = [
            f"Apply {self.plan_id}: {self.exit_status.value} "
            f"({', '.join(f'{k}={v}' for k, v in sorted(self.counts_by_status().items()))})"
        ]
        width = max((len(n.node_id) for n in self.nodes), default=0)
        for result in self.nodes:
            line = f"  {result.node_id:<{width}}  {result.action.value:<7}  {result.status.value}"
            if result.error_kind is not None:
                line += f"  [{result.error_kind.value}] {result.message}"
            elif result.blocked_by:
                line += f"  (blocked by {', '.join(result.blocked_by)})"
            lines.append(line)
        for report in self.drift:
            lines.append(f"  drift: {report.describe()}")
        if self.cancelled:
            lines.append("  run was cancelled; remaining nodes were not started")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "plan_id": self.plan_id,
            "exit_status": self.exit_status.value,
            "cancelled": self.cancelled,
            "duration_seconds": self.duration_seconds,
            "nodes": [n.to_dict() for n in self.nodes],
            "errors_by_kind": {k.value: v for k, v in self.errors_by_kind.items()},
            "drift": [r.describe() for r in self.drift],
        }


def _node_result(node: ResourceNode, action: Action) -> NodeResult:
    message = ""
    if node.error is not None:
        message = str(node.error)
    elif node.status == NodeStatus.BLOCKED:
        message = f"blocked by {', '.join(node.blocked_by)}"
    return NodeResult(
        node_id=node.node_id,
        action=action,
        status=node.status,
        error_kind=node.error_kind,
        message=message,
        blocked_by=tuple(node.blocked_by),
    )


class Orchestrator:
    """Computes plans and applies them against the registered providers."""

    def __init__(
        self,
        config: Config,
        registry: ProviderRegistry,
        store: StateStore | None = None,
        poller: CompletionPoller | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._store = store or StateStore(config.state_path)
        self._engine = ReconciliationEngine(registry, self._store, config, poller)
        self._consumed: set[str] = set()

    @property
    def store(self) -> StateStore:
        return self._store

    def plan(self, desired: DesiredStateDocument | Iterable[ResourceNode]) -> Plan:
        """Compute the plan for a desired state without side effects.

        Raises:
            CyclicDependencyError: If references form a cycle.
            UnresolvedReferenceError: If a reference names an unknown node/output.
            UnknownResourceTypeError: If a type has no registered provider.
            StateStoreError: If the state file cannot be read.
        """
        nodes = desired.to_nodes() if isinstance(desired, DesiredStateDocument) else list(desired)
        graph = DependencyGraph.build(nodes, known_outputs=self._registry.known_outputs)
        records = self._store.load()
        plan = compute_plan(graph, records, self._registry, state_serial=self._store.serial)
        logger.info(
            "Plan computed",
            extra={"plan_id": plan.plan_id, "counts": plan.counts()},
        )
        return plan

    async def apply(self, plan: Plan) -> ApplyResult:
        """Execute a plan once.

        Raises:
            PlanConsumedError: If the plan was already applied.
            StalePlanError: If the state changed since the plan was computed.
        """
        if plan.plan_id in self._consumed:
            raise PlanConsumedError(f"Plan {plan.plan_id} has already been applied")
        self._store.load()
        if self._store.serial != plan.state_serial:
            raise StalePlanError(
                f"State changed since plan {plan.plan_id} was computed "
                f"(serial {plan.state_serial} -> {self._store.serial}); re-run plan"
            )
        self._consumed.add(plan.plan_id)

        provenance_logger = get_provenance_logger()
        provenance = provenance_logger.create_provenance(
            plan_id=plan.plan_id,
            state_path=str(self._store.path),
            state_serial=plan.state_serial,
        )
        start_time = time.monotonic()
        try:
            outcome = await self._engine.execute(plan)
        except Exception as e:
            provenance.error = str(e)
            provenance.error_type = type(e).__name__
            provenance.duration_seconds = time.monotonic() - start_time
            provenance_logger.log_provenance(provenance)
            raise

        result = self._build_result(plan, outcome, time.monotonic() - start_time)
        provenance.record_result(result)
        provenance_logger.log_provenance(provenance)
        return result

    def cancel(self) -> None:
        """Request cancellation of the running apply."""
        self._engine.cancel()

    @staticmethod
    def _build_result(plan: Plan, outcome: ExecutionOutcome, duration: float) -> ApplyResult:
        result = ApplyResult(
            plan_id=plan.plan_id,
            drift=list(outcome.drift),
            cancelled=outcome.cancelled,
            duration_seconds=duration,
        )
        for node_id, node in outcome.nodes.items():
            action = outcome.actions.get(node_id) or plan.action_for(node_id) or Action.NOOP
            result.nodes.append(_node_result(node, action))
        return result
