"""Reconciliation engine: executes a Plan against the provider contract.

EXECUTION MODEL:
- One asyncio task per node. A task parks on its predecessors' settled
  events and starts only once every predecessor is Ready.
- Provider calls are synchronous; each runs in the default thread pool
  while holding one of ``max_concurrency`` worker slots.
- Readiness waits release the slot between polls.
- Deletions of nodes that left the desired state run after the
  create/update phase, dependents first.

FAILURE POLICY (fail-wide-but-contained):
- A failed node blocks its transitive dependents; they are never attempted.
- Every branch that does not depend on the failure still runs to completion.

IDEMPOTENCY:
- Transient errors are retried with exponential backoff; before every
  create attempt the provider is asked whether the resource already exists
  (``identify`` + ``read``), so a retried create never duplicates.
- State is written immediately after each transition; in-progress markers
  left by a crash are reconciled against the provider on the next run.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .config import Config
from .dependency import DependencyGraph
from .drift import DriftReport, StateDriftError, compare_attributes, missing
from .planner import MUTATING_ACTIONS, Action, Plan, PlannedChange
from .poller import BackoffSchedule, CompletionPoller, PendingOperation
from .providers import (
    ProviderRegistry,
    ProviderRejected,
    ProviderTransient,
    ResourceNotFound,
    ResourceProvider,
    ResourceSpec,
)
from .resources import (
    ErrorKind,
    LifecyclePolicy,
    NodeStatus,
    ObservedState,
    ResourceNode,
    StateRecord,
    UnresolvedReferenceError,
    compute_digest,
    resolve_references,
    split_node_id,
)
from .state import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ExecutionOutcome:
    """Everything the engine observed while executing one plan.

    Attributes:
        nodes: Every node touched, in execution order (expanded fan-out
            children and deletions included).
        actions: Action actually taken per node (an update may become a
            replace, a missing resource may be re-created).
        drift: Drift found while refreshing stored resources.
        cancelled: True if cancellation was requested during the run.
    """

    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    actions: dict[str, Action] = field(default_factory=dict)
    drift: list[DriftReport] = field(default_factory=list)
    cancelled: bool = False


class ReconciliationEngine:
    """Walks a plan's graph, driving each node through its status machine."""

    def __init__(
        self,
        registry: ProviderRegistry,
        store: StateStore,
        config: Config,
        poller: CompletionPoller | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            registry: Providers by resource type.
            store: State store written after every transition.
            config: Validated configuration (concurrency, retries, polling).
            poller: Readiness poller; defaults to one built from config whose
                polls run through the engine's worker slots.
        """
        self._registry = registry
        self._store = store
        self._config = config
        self._poller = poller or CompletionPoller(
            BackoffSchedule.from_config(config.poll), call=self._run_predicate
        )
        self._cancel_event = asyncio.Event()
        self._slots: asyncio.Semaphore | None = None

        # Per-run state, reset by execute()
        self._graph = DependencyGraph()
        self._records: dict[str, StateRecord] = {}
        self._settled: dict[str, asyncio.Event] = {}
        self._outcome = ExecutionOutcome()

    def cancel(self) -> None:
        """Stop starting new nodes in the current or next run; in-flight calls finish."""
        logger.warning("Cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def execute(self, plan: Plan) -> ExecutionOutcome:
        """Execute a plan and return per-node outcomes.

        Provider and readiness errors never escape: they are recorded on
        the failing node and its dependents are blocked.
        """
        self._slots = asyncio.Semaphore(self._config.max_concurrency)
        self._graph = plan.graph
        self._records = {c.node_id: c.record for c in plan.changes if c.record is not None}
        self._records.update(
            {
                node_id: record
                for node_id, record in self._store.load().items()
                if record.parent is not None and record.parent in plan.graph.nodes
            }
        )
        self._outcome = ExecutionOutcome()
        self._settled = {}

        desired = [c for c in plan.changes if c.action != Action.DELETE]
        for change in desired:
            self._settled[change.node_id] = asyncio.Event()
            self._outcome.nodes[change.node_id] = self._graph.nodes[change.node_id]

        logger.info(
            "Executing plan",
            extra={
                "plan_id": plan.plan_id,
                "counts": plan.counts(),
                "max_concurrency": self._config.max_concurrency,
            },
        )

        try:
            await asyncio.gather(
                *(self._run_node(c.node_id, c.action, c.record) for c in desired)
            )
            await self._run_deletions(plan.deletions)
            self._outcome.cancelled = self.cancelled
        finally:
            # A cancel request applies to one run only
            self._cancel_event.clear()
        return self._outcome

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def _run_node(
        self, node_id: str, action: Action, record: StateRecord | None
    ) -> None:
        node = self._graph.nodes[node_id]
        self._outcome.actions[node_id] = action
        try:
            upstream = self._graph.upstream(node_id)
            await asyncio.gather(*(self._settled[p].wait() for p in upstream))

            # Nodes not yet started when the run is cancelled are never attempted
            if self.cancelled:
                node.transition(NodeStatus.CANCELLED)
                return

            blockers = [p for p in upstream if self._graph.nodes[p].status != NodeStatus.READY]
            if blockers:
                self._block(node, blockers)
                return

            if node.is_placeholder:
                await self._run_placeholder(node, action, record)
            else:
                await self._run_resource(node, action, record)

        except Exception as e:
            self._fail(node, e)
        finally:
            self._settled[node_id].set()

    def _block(self, node: ResourceNode, blockers: list[str]) -> None:
        roots: set[str] = set()
        for blocker_id in blockers:
            blocker = self._outcome.nodes.get(blocker_id) or self._graph.nodes[blocker_id]
            if blocker.status == NodeStatus.BLOCKED and blocker.blocked_by:
                roots.update(blocker.blocked_by)
            else:
                roots.add(blocker_id)
        node.blocked_by = sorted(roots)
        node.transition(NodeStatus.BLOCKED)
        logger.warning(
            "Node blocked by failed predecessor",
            extra={"node_id": node.node_id, "blocked_by": node.blocked_by},
        )

    def _fail(self, node: ResourceNode, error: Exception) -> None:
        kind: ErrorKind | None = getattr(error, "kind", None)
        if node.status in (NodeStatus.READY, NodeStatus.DELETED):
            # Terminal success already recorded; surface the error without regressing
            logger.error(
                "Error after node settled",
                extra={"node_id": node.node_id, "error": str(error)},
            )
            node.error, node.error_kind = error, kind
            return
        if kind is None:
            logger.exception("Unexpected error while reconciling node")
        else:
            logger.error(
                "Node failed",
                extra={"node_id": node.node_id, "error_kind": kind.value, "error": str(error)},
            )
        if node.status in (NodeStatus.BLOCKED, NodeStatus.CANCELLED, NodeStatus.FAILED):
            return
        node.transition(NodeStatus.FAILED)
        node.error = error
        node.error_kind = kind

    # =========================================================================
    # Desired resources
    # =========================================================================

    def _outputs_of(self, node_id: str) -> Mapping[str, Any]:
        producer = self._graph.nodes.get(node_id)
        if producer is None or producer.status != NodeStatus.READY:
            raise UnresolvedReferenceError(f"Output of '{node_id}' read before it was Ready")
        return producer.outputs

    async def _run_resource(
        self, node: ResourceNode, action: Action, record: StateRecord | None
    ) -> None:
        provider = self._registry.get(node.resource_type)
        spec = ResourceSpec(
            node_id=node.node_id,
            resource_type=node.resource_type,
            name=node.name,
            attributes=resolve_references(node.attributes, self._outputs_of),
        )

        live: ObservedState | None = None
        if record is not None:
            action, live = await self._refresh(node, provider, spec, action, record)
            self._outcome.actions[node.node_id] = action

        match action:
            case Action.NOOP:
                assert record is not None
                outputs = live.outputs if live is not None else record.observed.outputs
                node.publish(outputs)
                node.transition(NodeStatus.READY)
            case Action.CREATE:
                observed = await self._create(node, provider, spec)
                await self._persist(node, spec, observed)
                self._complete(node, observed)
            case Action.UPDATE:
                assert record is not None
                await self._update(node, provider, spec, record, live)
            case Action.REPLACE:
                assert record is not None
                await self._replace(node, provider, spec, record)
            case _:
                raise ValueError(f"Unsupported action for desired node: {action}")

    async def _refresh(
        self,
        node: ResourceNode,
        provider: ResourceProvider,
        spec: ResourceSpec,
        action: Action,
        record: StateRecord,
    ) -> tuple[Action, ObservedState | None]:
        """Read the live resource and reconcile it with the stored record.

        Returns:
            The (possibly adjusted) action and the live state, if any.

        Raises:
            StateDriftError: If live state disagrees with the record and no
                configured override permits continuing.
        """
        provider_id = record.provider_id
        if provider_id is None and record.in_progress:
            provider_id = provider.identify(spec)

        if provider_id is None:
            return (Action.CREATE if record.in_progress else action), None

        try:
            live = await self._with_retry(
                node.node_id, "read", lambda: self._call(provider.read, provider_id)
            )
        except ResourceNotFound:
            if record.in_progress:
                logger.info(
                    "Interrupted operation left no resource, creating",
                    extra={"node_id": node.node_id, "status": record.status.value},
                )
                return Action.CREATE, None
            report = missing(node.node_id)
            self._outcome.drift.append(report)
            if not self._config.recreate_missing:
                raise StateDriftError(report) from None
            return Action.CREATE, None

        if record.in_progress:
            # The interrupted call may or may not have landed; an update settles it
            return Action.UPDATE, live

        report = compare_attributes(
            node.node_id, record.observed.attributes, live.attributes, provider.managed_attributes
        )
        if report is not None:
            self._outcome.drift.append(report)
            if action != Action.NOOP and not self._config.overwrite_drift:
                raise StateDriftError(report)
        return action, live

    async def _create(
        self, node: ResourceNode, provider: ResourceProvider, spec: ResourceSpec
    ) -> ObservedState:
        """Create (or adopt) the resource and wait until it is ready."""
        node.transition(NodeStatus.CREATING)
        await self._save(
            self._store.mark,
            node.node_id,
            node.resource_type,
            NodeStatus.CREATING,
            depends_on=tuple(self._graph.upstream(node.node_id)),
            parent=node.parent,
        )

        async def attempt() -> ObservedState:
            existing_id = provider.identify(spec)
            if existing_id is not None:
                try:
                    existing = await self._call(provider.read, existing_id)
                except ResourceNotFound:
                    existing = None
                if existing is not None:
                    logger.info(
                        "Resource already exists, adopting",
                        extra={"node_id": node.node_id, "provider_id": existing_id},
                    )
                    if compare_attributes(
                        node.node_id,
                        spec.attributes,
                        existing.attributes,
                        provider.managed_attributes,
                    ) is None:
                        return existing
                    return await self._call(provider.update, existing_id, spec)
            return await self._call(provider.create, spec)

        observed = await self._with_retry(node.node_id, "create", attempt)
        await self._save(
            self._store.mark,
            node.node_id,
            node.resource_type,
            NodeStatus.CREATING,
            provider_id=observed.provider_id,
        )
        logger.info(
            "Resource created",
            extra={"node_id": node.node_id, "provider_id": observed.provider_id},
        )
        return await self._await_ready(node, provider, observed)

    async def _update(
        self,
        node: ResourceNode,
        provider: ResourceProvider,
        spec: ResourceSpec,
        record: StateRecord,
        live: ObservedState | None,
    ) -> None:
        applied_digest = compute_digest(spec.attributes)
        provider_id = (live.provider_id if live is not None else None) or record.provider_id
        assert provider_id is not None

        # A bare in-progress marker has no applied attributes to compare against
        if record.applied_digest and provider.requires_replacement(
            record.observed.attributes, spec.attributes
        ):
            self._outcome.actions[node.node_id] = Action.REPLACE
            await self._replace(node, provider, spec, record)
            return

        if applied_digest == record.applied_digest and not record.in_progress:
            # References changed upstream but resolved to the same values
            observed = live if live is not None else record.observed
            node.transition(NodeStatus.UPDATING)
            await self._persist(node, spec, observed)
            self._complete(node, observed)
            return

        node.transition(NodeStatus.UPDATING)
        await self._save(
            self._store.mark, node.node_id, node.resource_type, NodeStatus.UPDATING
        )
        observed = await self._with_retry(
            node.node_id, "update", lambda: self._call(provider.update, provider_id, spec)
        )
        logger.info(
            "Resource updated",
            extra={"node_id": node.node_id, "provider_id": observed.provider_id},
        )
        observed = await self._await_ready(node, provider, observed)
        await self._persist(node, spec, observed)
        self._complete(node, observed)

    async def _replace(
        self,
        node: ResourceNode,
        provider: ResourceProvider,
        spec: ResourceSpec,
        record: StateRecord,
    ) -> None:
        old_id = record.provider_id
        lifecycle = node.lifecycle
        if lifecycle == LifecyclePolicy.CREATE_BEFORE_DESTROY and provider.identify(spec) == old_id:
            logger.warning(
                "Replacement reuses the same provider id, destroying first",
                extra={"node_id": node.node_id, "provider_id": old_id},
            )
            lifecycle = LifecyclePolicy.DESTROY_BEFORE_CREATE

        if lifecycle == LifecyclePolicy.DESTROY_BEFORE_CREATE:
            if old_id is not None:
                node.transition(NodeStatus.DELETING)
                await self._save(
                    self._store.mark, node.node_id, node.resource_type, NodeStatus.DELETING
                )
                await self._with_retry(
                    node.node_id, "delete", lambda: self._call(provider.delete, old_id)
                )
            observed = await self._create(node, provider, spec)
            await self._persist(node, spec, observed)
            self._complete(node, observed)
            return

        observed = await self._create(node, provider, spec)
        await self._persist(node, spec, observed)
        if old_id is not None and old_id != observed.provider_id:
            try:
                await self._with_retry(
                    node.node_id, "delete", lambda: self._call(provider.delete, old_id)
                )
            except ProviderRejected as e:
                raise ProviderRejected(
                    f"Replacement of '{node.node_id}' succeeded but the previous resource "
                    f"{old_id} could not be deleted: {e}"
                ) from e
        self._complete(node, observed)

    async def _await_ready(
        self, node: ResourceNode, provider: ResourceProvider, observed: ObservedState
    ) -> ObservedState:
        """Wait for readiness, then re-read outputs that only exist once ready."""
        if not provider.async_ready:
            return observed
        provider_id = observed.provider_id
        assert provider_id is not None
        node.transition(NodeStatus.WAITING_READY)
        timeout = node.readiness_timeout_seconds or self._config.poll.readiness_timeout_seconds
        operation = PendingOperation.start(
            node.node_id,
            provider_id,
            functools.partial(provider.is_ready, provider_id),
            timeout,
            clock=self._poller.clock,
        )
        logger.info(
            "Waiting for readiness",
            extra={"node_id": node.node_id, "timeout_seconds": timeout},
        )
        await self._poller.wait(operation)
        return await self._with_retry(
            node.node_id, "read", lambda: self._call(provider.read, provider_id)
        )

    async def _persist(
        self, node: ResourceNode, spec: ResourceSpec, observed: ObservedState
    ) -> None:
        await self._save(
            self._store.record,
            StateRecord(
                node_id=node.node_id,
                resource_type=node.resource_type,
                observed=ObservedState(
                    provider_id=observed.provider_id,
                    attributes=dict(spec.attributes),
                    outputs=dict(observed.outputs),
                ),
                digest=node.digest,
                applied_digest=compute_digest(spec.attributes),
                status=NodeStatus.READY,
                depends_on=tuple(self._graph.upstream(node.node_id)),
                parent=node.parent,
            )
        )

    @staticmethod
    def _complete(node: ResourceNode, observed: ObservedState) -> None:
        node.publish(observed.outputs)
        node.transition(NodeStatus.READY)

    # =========================================================================
    # Fan-out placeholders
    # =========================================================================

    async def _run_placeholder(
        self, node: ResourceNode, action: Action, record: StateRecord | None
    ) -> None:
        assert node.for_each is not None
        collection = resolve_references(node.for_each, self._outputs_of)
        children = self._graph.expand(node.node_id, collection)

        previous = {
            node_id: rec
            for node_id, rec in self._records.items()
            if rec.parent == node.node_id
        }

        child_runs = []
        for child in children:
            self._settled[child.node_id] = asyncio.Event()
            self._outcome.nodes[child.node_id] = child
            child_record = previous.get(child.node_id)
            child_runs.append(
                self._run_node(
                    child.node_id, self._child_action(child, child_record, action), child_record
                )
            )
        await asyncio.gather(*child_runs)

        stale = [
            PlannedChange(
                node_id=node_id,
                resource_type=rec.resource_type,
                action=Action.DELETE,
                reason=f"no longer produced by {node.node_id}",
                record=rec,
            )
            for node_id, rec in previous.items()
            if node_id not in self._graph.nodes
        ]
        if stale:
            await self._run_deletions(tuple(stale))

        not_ready = [c.node_id for c in children if c.status != NodeStatus.READY]
        if not_ready:
            self._block(node, not_ready)
            return

        outputs = self._aggregate_outputs(children)
        applied_digest = compute_digest(outputs)
        if (
            record is None
            or record.digest != node.digest
            or record.applied_digest != applied_digest
            or stale
        ):
            await self._save(
                self._store.record,
                StateRecord(
                    node_id=node.node_id,
                    resource_type=node.resource_type,
                    observed=ObservedState(provider_id=None, outputs=outputs),
                    digest=node.digest,
                    applied_digest=applied_digest,
                    status=NodeStatus.READY,
                    depends_on=tuple(self._graph.predecessors(node.node_id)),
                )
            )
        node.publish(outputs)
        node.transition(NodeStatus.READY)

    @staticmethod
    def _child_action(
        child: ResourceNode, record: StateRecord | None, placeholder_action: Action
    ) -> Action:
        if record is None:
            return Action.CREATE
        if record.in_progress:
            if record.status == NodeStatus.CREATING and record.provider_id is None:
                return Action.CREATE
            return Action.UPDATE
        if record.digest != child.digest or placeholder_action in MUTATING_ACTIONS:
            return Action.UPDATE
        return Action.NOOP

    @staticmethod
    def _aggregate_outputs(children: list[ResourceNode]) -> dict[str, Any]:
        names: list[str] = []
        for child in children:
            for name in child.outputs:
                if name not in names:
                    names.append(name)
        outputs: dict[str, Any] = {name: [c.outputs.get(name) for c in children] for name in names}
        outputs["keys"] = [c.key for c in children]
        return outputs

    # =========================================================================
    # Deletions
    # =========================================================================

    async def _run_deletions(self, deletions: tuple[PlannedChange, ...]) -> None:
        if not deletions:
            return
        for change in deletions:
            resource_type, name, key = split_node_id(change.node_id)
            node = ResourceNode(resource_type=resource_type, name=name, key=key)
            if change.record is not None:
                node.parent = change.record.parent
            self._outcome.nodes[change.node_id] = node
            self._outcome.actions[change.node_id] = Action.DELETE
            self._settled[change.node_id] = asyncio.Event()

        async def run(change: PlannedChange) -> None:
            node = self._outcome.nodes[change.node_id]
            try:
                # Consumers must be gone before their producer is deleted
                consumers = [
                    c.node_id
                    for c in deletions
                    if c.record is not None and change.node_id in c.record.depends_on
                ]
                await asyncio.gather(*(self._settled[c].wait() for c in consumers))
                if self.cancelled:
                    node.transition(NodeStatus.CANCELLED)
                    return
                blockers = [
                    c for c in consumers if self._outcome.nodes[c].status != NodeStatus.DELETED
                ]
                if blockers:
                    self._block(node, blockers)
                    return
                await self._delete(node, change.record)
            except Exception as e:
                self._fail(node, e)
            finally:
                self._settled[change.node_id].set()

        await asyncio.gather(*(run(c) for c in deletions))

    async def _delete(self, node: ResourceNode, record: StateRecord | None) -> None:
        node.transition(NodeStatus.DELETING)
        provider_id = record.provider_id if record is not None else None
        if provider_id is not None:
            provider = self._registry.get(node.resource_type)
            await self._save(
                self._store.mark, node.node_id, node.resource_type, NodeStatus.DELETING
            )
            await self._with_retry(
                node.node_id, "delete", lambda: self._call(provider.delete, provider_id)
            )
        await self._save(self._store.remove, node.node_id)
        node.transition(NodeStatus.DELETED)
        logger.info(
            "Resource deleted",
            extra={"node_id": node.node_id, "provider_id": provider_id},
        )

    # =========================================================================
    # Provider calls
    # =========================================================================

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run one provider call in a worker thread, holding a slot.

        Raises:
            ProviderTransient: If the call exceeds the configured timeout.
        """
        assert self._slots is not None
        async with self._slots:
            loop = asyncio.get_running_loop()
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(None, functools.partial(fn, *args)),
                    timeout=self._config.call_timeout_seconds,
                )
            except TimeoutError as e:
                raise ProviderTransient(
                    f"{getattr(fn, '__name__', 'provider call')} timed out after "
                    f"{self._config.call_timeout_seconds}s"
                ) from e

    async def _run_predicate(self, predicate: Callable[[], bool]) -> bool:
        return await self._call(predicate)

    async def _save(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a state store write (fsync included) off the event loop thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def _with_retry(
        self, node_id: str, operation: str, attempt: Callable[[], Awaitable[T]]
    ) -> T:
        """Retry transient failures with exponential backoff and jitter.

        Raises:
            ProviderRejected: On rejection, or once attempts are exhausted.
        """
        retry = self._config.retry
        last_error: ProviderTransient | None = None

        for number in range(1, retry.max_attempts + 1):
            try:
                return await attempt()
            except ProviderTransient as e:
                last_error = e
                if number < retry.max_attempts:
                    backoff = retry.backoff_seconds * (2 ** (number - 1))
                    wait_time = backoff + random.uniform(0, backoff * 0.2)
                    logger.warning(
                        "Provider call failed, retrying",
                        extra={
                            "node_id": node_id,
                            "operation": operation,
                            "attempt": number,
                            "max_attempts": retry.max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    await asyncio.sleep(wait_time)

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise ProviderRejected(
            f"{operation} of '{node_id}' failed after {retry.max_attempts} attempts: {last_error}"
        ) from last_error
