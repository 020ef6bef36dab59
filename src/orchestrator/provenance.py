"""Apply-run provenance for audit.

Every apply is stamped with one structured record answering:
- "Which plan was applied, against which state snapshot?"
- "What changed, what failed, and why?"
- "What version of the orchestrator (and of the desired state) ran?"
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .controller import ApplyResult

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
ORCHESTRATOR_VERSION = os.environ.get("ORCHESTRATOR_VERSION", "dev")


@dataclass
class ApplyProvenance:
    """Complete provenance record for one apply run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    orchestrator_version: str = ORCHESTRATOR_VERSION

    # Source of truth
    git_commit_sha: str = ""
    desired_state_hash: str = ""

    # Plan and state
    plan_id: str = ""
    state_path: str = ""
    state_serial: int = 0

    # Outcome
    exit_status: str = ""
    cancelled: bool = False
    counts_by_action: dict[str, int] = field(default_factory=dict)
    counts_by_status: dict[str, int] = field(default_factory=dict)
    error_kinds: dict[str, list[str]] = field(default_factory=dict)
    drift_detected: bool = False

    duration_seconds: float = 0.0

    # Set when the run aborted with an unexpected exception
    error: str | None = None
    error_type: str | None = None

    def record_result(self, result: ApplyResult) -> None:
        """Copy the outcome of a finished apply into this record."""
        counts: dict[str, int] = {}
        for node in result.nodes:
            counts[node.action.value] = counts.get(node.action.value, 0) + 1
        self.counts_by_action = counts
        self.counts_by_status = result.counts_by_status()
        self.error_kinds = {kind.value: ids for kind, ids in result.errors_by_kind.items()}
        self.exit_status = result.exit_status.value
        self.cancelled = result.cancelled
        self.drift_detected = bool(result.drift)
        self.duration_seconds = result.duration_seconds

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class ProvenanceLogger:
    """Logs provenance records to the structured log stream."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._desired_state_hash = ""

    def set_desired_state_hash(self, digest: str) -> None:
        """Remember the hash of the desired-state file being applied."""
        self._desired_state_hash = digest

    def create_provenance(
        self,
        plan_id: str,
        state_path: str,
        state_serial: int,
    ) -> ApplyProvenance:
        """Create a new provenance record for an apply run.

        Args:
            plan_id: Id of the plan being applied.
            state_path: State file the run writes to.
            state_serial: Serial of the state snapshot the plan was computed from.
        """
        return ApplyProvenance(
            git_commit_sha=self._git_commit_sha,
            desired_state_hash=self._desired_state_hash,
            plan_id=plan_id,
            state_path=state_path,
            state_serial=state_serial,
        )

    def log_provenance(self, provenance: ApplyProvenance) -> None:
        """Log a completed provenance record.

        Failed runs log at ERROR, partial failures and drift at WARNING.
        """
        log_level = logging.INFO
        if provenance.error or provenance.exit_status == "failure":
            log_level = logging.ERROR
        elif provenance.exit_status == "partial_failure" or provenance.drift_detected:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Apply provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "run_id": provenance.run_id,
                "plan_id": provenance.plan_id,
                "exit_status": provenance.exit_status,
                "git_commit": provenance.git_commit_sha,
                "duration_seconds": provenance.duration_seconds,
            },
        )


_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
