"""Tests for plan computation."""

from __future__ import annotations

from cloud_mock import (
    APEX_RECORD,
    BUCKET,
    DISTRIBUTION,
    EDGE_STACK_ORDER,
    FakeCloud,
    build_fake_registry,
    edge_stack_nodes,
)
from orchestrator.dependency import DependencyGraph
from orchestrator.planner import Action, compute_plan
from orchestrator.providers import ProviderRegistry
from orchestrator.resources import NodeStatus, ObservedState, ResourceNode, StateRecord


def _records_for(nodes: list[ResourceNode], **overrides: StateRecord) -> dict[str, StateRecord]:
    """Stored records matching the given nodes exactly."""
    records = {
        node.node_id: StateRecord(
            node_id=node.node_id,
            resource_type=node.resource_type,
            observed=ObservedState(f"{node.node_id}-id", dict(node.attributes)),
            digest=node.digest,
            applied_digest="applied",
        )
        for node in nodes
    }
    records.update(overrides)
    return records


def _actions(plan) -> dict[str, Action]:
    return {change.node_id: change.action for change in plan.changes}


class TestComputePlan:
    """Tests for compute_plan."""

    def test_fresh_plan_creates_everything(self, registry: ProviderRegistry) -> None:
        """Test an empty state plans a create per node in dependency order."""
        graph = DependencyGraph.build(edge_stack_nodes())

        plan = compute_plan(graph, {}, registry)

        assert [c.node_id for c in plan.changes] == EDGE_STACK_ORDER
        assert {c.action for c in plan.changes} == {Action.CREATE}
        assert plan.has_changes

    def test_unchanged_state_is_noop(self, registry: ProviderRegistry) -> None:
        """Test matching records plan nothing."""
        nodes = edge_stack_nodes()
        plan = compute_plan(DependencyGraph.build(nodes), _records_for(nodes), registry)

        assert set(_actions(plan).values()) == {Action.NOOP}
        assert not plan.has_changes

    def test_change_propagates_to_dependents(self, registry: ProviderRegistry) -> None:
        """Test a changed node updates itself and its dependents only."""
        stored = _records_for(edge_stack_nodes())
        nodes = edge_stack_nodes({"price_class": "PriceClass_All"})

        plan = compute_plan(DependencyGraph.build(nodes), stored, registry)
        actions = _actions(plan)

        assert actions[DISTRIBUTION] == Action.UPDATE
        assert actions[APEX_RECORD] == Action.UPDATE
        assert plan.change_for(APEX_RECORD).reason == f"references changed {DISTRIBUTION}"
        assert [n for n, a in actions.items() if a == Action.NOOP] == EDGE_STACK_ORDER[:4]

    def test_replace_on_known_attribute(self) -> None:
        """Test a replace-forcing literal change plans a replacement."""
        registry = build_fake_registry(FakeCloud(), replace_on={"bucket": ["bucket_name"]})
        old = [ResourceNode("bucket", "site", {"bucket_name": "old"})]
        new = [ResourceNode("bucket", "site", {"bucket_name": "new"})]

        plan = compute_plan(DependencyGraph.build(new), _records_for(old), registry)

        change = plan.change_for(BUCKET)
        assert change.action == Action.REPLACE
        assert "bucket_name" in change.reason

    def test_interrupted_create_resumes(self, registry: ProviderRegistry) -> None:
        """Test an in-progress marker without a provider id plans a create."""
        nodes = [ResourceNode("bucket", "site", {"bucket_name": "x"})]
        marker = StateRecord(
            node_id=BUCKET,
            resource_type="bucket",
            observed=ObservedState(None),
            status=NodeStatus.CREATING,
        )

        plan = compute_plan(DependencyGraph.build(nodes), {BUCKET: marker}, registry)

        assert plan.action_for(BUCKET) == Action.CREATE
        assert "interrupted" in plan.change_for(BUCKET).reason

    def test_interrupted_update_resumes(self, registry: ProviderRegistry) -> None:
        """Test an in-progress update is re-applied."""
        nodes = [ResourceNode("bucket", "site", {"bucket_name": "x"})]
        records = _records_for(nodes)
        records[BUCKET] = StateRecord(
            node_id=BUCKET,
            resource_type="bucket",
            observed=records[BUCKET].observed,
            digest=records[BUCKET].digest,
            status=NodeStatus.UPDATING,
        )

        plan = compute_plan(DependencyGraph.build(nodes), records, registry)

        assert plan.action_for(BUCKET) == Action.UPDATE

    def test_orphans_deleted_dependents_first(self, registry: ProviderRegistry) -> None:
        """Test records missing from the desired state are deleted consumers first."""
        stored = _records_for(edge_stack_nodes())
        stored[APEX_RECORD] = StateRecord(
            node_id=APEX_RECORD,
            resource_type="dns_record",
            observed=ObservedState("apex-id"),
            depends_on=(DISTRIBUTION,),
        )
        stored[DISTRIBUTION] = StateRecord(
            node_id=DISTRIBUTION,
            resource_type="distribution",
            observed=ObservedState("dist-id"),
            depends_on=(BUCKET,),
        )
        remaining = [n for n in edge_stack_nodes() if n.node_id not in (DISTRIBUTION, APEX_RECORD)]

        plan = compute_plan(DependencyGraph.build(remaining), stored, registry)

        assert [c.node_id for c in plan.deletions] == [APEX_RECORD, DISTRIBUTION]
        assert plan.changes[-2:] == plan.deletions

    def test_fan_out_children_are_not_orphans(self, registry: ProviderRegistry) -> None:
        """Test stored children of a declared placeholder are left to apply."""
        placeholder = ResourceNode(
            "dns_record",
            "validation",
            {"name": "${each.value.name}"},
            for_each="${certificate.site.validation_records}",
            for_each_key="name",
        )
        nodes = [ResourceNode("certificate", "site", {"domain": "example.com"}), placeholder]
        child = StateRecord(
            node_id="dns_record.validation[_acme.example.com]",
            resource_type="dns_record",
            observed=ObservedState("rec-id"),
            parent="dns_record.validation",
        )

        plan = compute_plan(
            DependencyGraph.build(nodes), {child.node_id: child}, registry
        )

        assert plan.deletions == ()

    def test_plan_is_pure(self, state_path, store, registry: ProviderRegistry) -> None:
        """Test computing a plan twice yields the same changes and touches nothing."""
        graph = DependencyGraph.build(edge_stack_nodes())

        first = compute_plan(graph, store.load(), registry)
        second = compute_plan(graph, store.load(), registry)

        assert first.changes == second.changes
        assert first.plan_id != second.plan_id
        assert not state_path.exists()

    def test_summary(self, registry: ProviderRegistry) -> None:
        """Test the human-readable summary lists every node."""
        plan = compute_plan(DependencyGraph.build(edge_stack_nodes()), {}, registry)

        summary = plan.summary()

        assert "6 to create" in summary
        for node_id in EDGE_STACK_ORDER:
            assert node_id in summary
        assert plan.to_dict()["changes"][0]["action"] == "create"
