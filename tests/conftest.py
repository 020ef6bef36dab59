"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cloud_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from cloud_mock import FakeCloud, build_fake_registry  # noqa: E402
from orchestrator.config import Config, PollConfig, RetryConfig  # noqa: E402
from orchestrator.state import StateStore  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host credentials and orchestrator settings out of tests."""
    for name in (
        "AZURE_CLIENT_SECRET",
        "AZURE_CLIENT_CERTIFICATE_PATH",
        "AZURE_CLIENT_CERTIFICATE_PASSWORD",
        "AZURE_USERNAME",
        "AZURE_PASSWORD",
        "AZURE_SUBSCRIPTION_ID",
        "AZURE_RESOURCE_GROUP",
        "ORCHESTRATOR_STATE_PATH",
        "ORCHESTRATOR_MAX_CONCURRENCY",
        "ORCHESTRATOR_RECREATE_MISSING",
        "ORCHESTRATOR_OVERWRITE_DRIFT",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state.json"


@pytest.fixture
def config(state_path: Path) -> Config:
    """Fast configuration: millisecond polls and retries."""
    return Config(
        state_path=state_path,
        max_concurrency=4,
        call_timeout_seconds=5.0,
        retry=RetryConfig(max_attempts=3, backoff_seconds=0.001),
        poll=PollConfig(
            initial_seconds=0.001,
            ceiling_seconds=0.01,
            readiness_timeout_seconds=5.0,
        ),
    )


@pytest.fixture
def store(state_path: Path) -> StateStore:
    return StateStore(state_path)


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def registry(cloud: FakeCloud):
    return build_fake_registry(cloud)
