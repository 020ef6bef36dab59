"""In-memory cloud for integration testing.

Provides fake providers implementing the provider contract, and a mock
``ResourceManagementClient`` for the ARM provider, so that the engine and
controller can be exercised without cloud connectivity.

Key Features:
- In-memory, thread-safe resource state
- Transient-failure and rejection injection (before or after the effect)
- Scripted readiness (ready after N polls, rejected, never ready)
- Out-of-band deletion and modification for drift scenarios
- Call log with sequence numbers for ordering assertions

Usage:
    from cloud_mock import FakeCloud, build_fake_registry

    cloud = FakeCloud()
    registry = build_fake_registry(cloud)
    orchestrator = Orchestrator(config, registry)
"""

from .arm import MockGenericResource, MockResourceManagementClient, MockResourceOperations
from .cloud import CallRecord, FakeCloud, FakeResource
from .providers import ASYNC_READY_TYPES, FakeProvider, build_fake_registry
from .stack import (
    APEX_RECORD,
    BUCKET,
    CERTIFICATE,
    DISTRIBUTION,
    EDGE_STACK_ORDER,
    EDGE_STACK_YAML,
    VALIDATED_CERTIFICATE,
    VALIDATION_RECORD,
    edge_stack_nodes,
)

__all__ = [
    "APEX_RECORD",
    "ASYNC_READY_TYPES",
    "BUCKET",
    "CERTIFICATE",
    "CallRecord",
    "DISTRIBUTION",
    "EDGE_STACK_ORDER",
    "EDGE_STACK_YAML",
    "FakeCloud",
    "FakeProvider",
    "FakeResource",
    "MockGenericResource",
    "MockResourceManagementClient",
    "MockResourceOperations",
    "VALIDATED_CERTIFICATE",
    "VALIDATION_RECORD",
    "build_fake_registry",
    "edge_stack_nodes",
]
