"""End-to-end plan/apply tests for the edge stack."""

from __future__ import annotations

import pytest
import yaml

from cloud_mock import (
    APEX_RECORD,
    BUCKET,
    CERTIFICATE,
    DISTRIBUTION,
    EDGE_STACK_ORDER,
    EDGE_STACK_YAML,
    VALIDATED_CERTIFICATE,
    VALIDATION_RECORD,
    FakeCloud,
    edge_stack_nodes,
)
from orchestrator.config import Config
from orchestrator.controller import (
    ApplyResult,
    ExitStatus,
    NodeResult,
    Orchestrator,
    PlanConsumedError,
    StalePlanError,
)
from orchestrator.dependency import CyclicDependencyError
from orchestrator.models import DesiredStateDocument
from orchestrator.planner import Action
from orchestrator.providers import ProviderRegistry
from orchestrator.resources import ErrorKind, NodeStatus, ResourceNode, UnresolvedReferenceError
from orchestrator.state import StateStore


@pytest.fixture
def orchestrator(config: Config, registry: ProviderRegistry, store: StateStore) -> Orchestrator:
    return Orchestrator(config, registry, store)


class TestEdgeStackScenarios:
    """The three reference scenarios for the static-site edge stack."""

    @pytest.mark.asyncio
    async def test_fresh_apply(
        self, orchestrator: Orchestrator, store: StateStore, cloud: FakeCloud
    ) -> None:
        """Test a fresh apply plans producers first and ends all Ready."""
        document = DesiredStateDocument.model_validate(yaml.safe_load(EDGE_STACK_YAML))

        plan = orchestrator.plan(document)
        order = [c.node_id for c in plan.changes]

        assert order.index(BUCKET) < order.index(DISTRIBUTION)
        assert order.index(CERTIFICATE) < order.index(VALIDATION_RECORD)
        assert order.index(VALIDATION_RECORD) < order.index(VALIDATED_CERTIFICATE)
        assert order.index(VALIDATED_CERTIFICATE) < order.index(DISTRIBUTION)
        assert order.index(DISTRIBUTION) < order.index(APEX_RECORD)
        assert all(c.action == Action.CREATE for c in plan.changes)

        result = await orchestrator.apply(plan)

        assert result.exit_status == ExitStatus.SUCCESS
        assert result.exit_code == 0
        assert {n.status for n in result.nodes} == {NodeStatus.READY}
        assert len(store.load()) == 6
        assert cloud.resource_count == 6

    @pytest.mark.asyncio
    async def test_reapply_with_distribution_changed(self, orchestrator: Orchestrator) -> None:
        """Test changing only the distribution updates it and the record aliasing it."""
        await orchestrator.apply(orchestrator.plan(edge_stack_nodes()))

        plan = orchestrator.plan(edge_stack_nodes({"price_class": "PriceClass_All"}))

        actions = {c.node_id: c.action for c in plan.changes}
        assert actions == {
            BUCKET: Action.NOOP,
            CERTIFICATE: Action.NOOP,
            VALIDATION_RECORD: Action.NOOP,
            VALIDATED_CERTIFICATE: Action.NOOP,
            DISTRIBUTION: Action.UPDATE,
            APEX_RECORD: Action.UPDATE,
        }

        result = await orchestrator.apply(plan)

        assert result.exit_status == ExitStatus.SUCCESS
        assert result.result_for(DISTRIBUTION).action == Action.UPDATE
        assert result.result_for(APEX_RECORD).action == Action.UPDATE

    @pytest.mark.asyncio
    async def test_certificate_validation_rejected(
        self, orchestrator: Orchestrator, cloud: FakeCloud
    ) -> None:
        """Test a permanently rejected certificate blocks its chain only."""
        cloud.reject_readiness("certificate")

        result = await orchestrator.apply(orchestrator.plan(edge_stack_nodes()))

        certificate = result.result_for(CERTIFICATE)
        assert certificate.status == NodeStatus.FAILED
        assert certificate.error_kind == ErrorKind.READINESS_REJECTED
        for node_id in (VALIDATION_RECORD, VALIDATED_CERTIFICATE, DISTRIBUTION, APEX_RECORD):
            assert result.status_of(node_id) == NodeStatus.BLOCKED
            assert result.result_for(node_id).blocked_by == (CERTIFICATE,)
        assert result.status_of(BUCKET) == NodeStatus.READY

        assert result.exit_status == ExitStatus.PARTIAL_FAILURE
        assert result.exit_code == 3
        assert result.errors_by_kind == {ErrorKind.READINESS_REJECTED: [CERTIFICATE]}
        report = result.report()
        assert "[ReadinessRejected]" in report
        assert f"blocked by {CERTIFICATE}" in report


class TestIdempotence:
    """Tests for apply idempotence."""

    @pytest.mark.asyncio
    async def test_second_plan_is_all_noop(self, orchestrator: Orchestrator) -> None:
        """Test re-planning after a successful apply yields no changes."""
        await orchestrator.apply(orchestrator.plan(edge_stack_nodes()))

        plan = orchestrator.plan(edge_stack_nodes())

        assert not plan.has_changes
        assert [c.node_id for c in plan.changes] == EDGE_STACK_ORDER

    @pytest.mark.asyncio
    async def test_failed_run_resumes(self, orchestrator: Orchestrator, cloud: FakeCloud) -> None:
        """Test a re-run after a failure only touches what did not finish."""
        cloud.reject_readiness("certificate")
        await orchestrator.apply(orchestrator.plan(edge_stack_nodes()))
        cloud.allow_readiness("certificate")

        plan = orchestrator.plan(edge_stack_nodes())
        actions = {c.node_id: c.action for c in plan.changes}

        assert actions[BUCKET] == Action.NOOP
        assert actions[CERTIFICATE] == Action.UPDATE  # interrupted while waiting
        result = await orchestrator.apply(plan)
        assert result.exit_status == ExitStatus.SUCCESS
        assert len(cloud.calls_for("create", "certificate")) == 1

    @pytest.mark.asyncio
    async def test_apply_after_cancelled_apply(self, orchestrator: Orchestrator) -> None:
        """Test a cancelled apply does not cancel the next one."""
        orchestrator.cancel()
        first = await orchestrator.apply(orchestrator.plan(edge_stack_nodes()))

        second = await orchestrator.apply(orchestrator.plan(edge_stack_nodes()))

        assert first.cancelled
        assert first.exit_status == ExitStatus.FAILURE
        assert not second.cancelled
        assert second.exit_status == ExitStatus.SUCCESS
        assert {n.status for n in second.nodes} == {NodeStatus.READY}


class TestPlanLifecycle:
    """Tests for plan consumption and staleness."""

    @pytest.mark.asyncio
    async def test_plan_consumed_once(self, orchestrator: Orchestrator) -> None:
        """Test a plan cannot be applied twice."""
        plan = orchestrator.plan([ResourceNode("bucket", "site")])
        await orchestrator.apply(plan)

        with pytest.raises(PlanConsumedError):
            await orchestrator.apply(plan)

    @pytest.mark.asyncio
    async def test_stale_plan_rejected(
        self, config: Config, registry: ProviderRegistry, store: StateStore
    ) -> None:
        """Test a plan computed before another apply is refused."""
        first = Orchestrator(config, registry, store)
        second = Orchestrator(config, registry, StateStore(config.state_path))
        stale = second.plan([ResourceNode("bucket", "site")])

        await first.apply(first.plan([ResourceNode("bucket", "site")]))

        with pytest.raises(StalePlanError, match="re-run plan"):
            await second.apply(stale)

    def test_plan_makes_no_provider_calls(
        self, orchestrator: Orchestrator, cloud: FakeCloud, store: StateStore
    ) -> None:
        """Test planning is side-effect free."""
        orchestrator.plan(edge_stack_nodes())

        assert cloud.calls == []
        assert not store.path.exists()

    def test_cycle_aborts_before_execution(
        self, orchestrator: Orchestrator, cloud: FakeCloud
    ) -> None:
        """Test a cyclic desired state fails at plan time."""
        nodes = [
            ResourceNode("bucket", "site", {"log_target": "${distribution.site.arn}"}),
            ResourceNode("distribution", "site", {"origin": "${bucket.site.arn}"}),
        ]
        with pytest.raises(CyclicDependencyError):
            orchestrator.plan(nodes)
        assert cloud.calls == []

    def test_unresolved_reference_aborts(self, orchestrator: Orchestrator) -> None:
        """Test references to undeclared nodes fail at plan time."""
        with pytest.raises(UnresolvedReferenceError):
            orchestrator.plan([ResourceNode("distribution", "site", {"origin": "${bucket.site.arn}"})])


class TestApplyResult:
    """Tests for exit status derivation."""

    def _result(self, *nodes: NodeResult, cancelled: bool = False) -> ApplyResult:
        return ApplyResult(plan_id="p", nodes=list(nodes), cancelled=cancelled)

    def test_success(self) -> None:
        """Test all-succeeded runs are a success."""
        result = self._result(
            NodeResult("bucket.site", Action.CREATE, NodeStatus.READY),
            NodeResult("dns_record.old", Action.DELETE, NodeStatus.DELETED),
        )
        assert result.exit_status == ExitStatus.SUCCESS

    def test_failure_without_changes(self) -> None:
        """Test a run that changed nothing and failed is a failure."""
        result = self._result(
            NodeResult("bucket.site", Action.NOOP, NodeStatus.READY),
            NodeResult("distribution.site", Action.UPDATE, NodeStatus.FAILED, ErrorKind.PROVIDER_REJECTED),
        )
        assert result.exit_status == ExitStatus.FAILURE
        assert result.exit_code == 1

    def test_cancelled_is_not_success(self) -> None:
        """Test a cancelled run with completed changes is a partial failure."""
        result = self._result(
            NodeResult("bucket.site", Action.CREATE, NodeStatus.READY),
            NodeResult("distribution.site", Action.CREATE, NodeStatus.CANCELLED),
            cancelled=True,
        )
        assert result.exit_status == ExitStatus.PARTIAL_FAILURE

    def test_to_dict(self) -> None:
        """Test JSON output includes errors grouped by kind."""
        result = self._result(
            NodeResult(
                "certificate.site",
                Action.CREATE,
                NodeStatus.FAILED,
                ErrorKind.READINESS_TIMEOUT,
                "not ready",
            ),
        )
        data = result.to_dict()
        assert data["exit_status"] == "failure"
        assert data["errors_by_kind"] == {"ReadinessTimeout": ["certificate.site"]}
        assert data["nodes"][0]["error_kind"] == "ReadinessTimeout"
