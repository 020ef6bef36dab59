"""Drift detection between stored and live resource state.

Drift is reported, never auto-resolved: overwriting a manual change
silently could destroy it. Comparison is semantic rather than syntactic:

- Empty equivalence: [], {}, "" and null are the same
- Numeric strings: "100" == 100
- Boolean strings: "true" == True
- URLs: trailing slashes and scheme case are ignored
- Provider defaults: keys the provider adds that were never applied are ignored
- Provider-managed attributes (etags, timestamps) are ignored entirely
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .resources import ErrorKind

logger = logging.getLogger(__name__)


class DriftKind(str, Enum):
    """Kinds of drift between stored and live state."""

    MISSING = "missing"  # Deleted out-of-band
    MODIFIED = "modified"  # Attributes changed out-of-band


@dataclass(frozen=True)
class AttributeDrift:
    """One attribute whose live value differs from the last applied value."""

    path: str
    stored: Any
    live: Any


@dataclass
class DriftReport:
    """Drift found for one node at run start."""

    node_id: str
    kind: DriftKind
    changes: list[AttributeDrift] = field(default_factory=list)

    def describe(self) -> str:
        """Human-readable one-line description."""
        if self.kind == DriftKind.MISSING:
            return f"{self.node_id}: resource no longer exists at the provider"
        paths = ", ".join(change.path for change in self.changes)
        return f"{self.node_id}: attributes changed outside the orchestrator ({paths})"


class StateDriftError(Exception):
    """Raised when live state disagrees with stored state and no override applies."""

    kind = ErrorKind.STATE_DRIFT

    def __init__(self, report: DriftReport) -> None:
        self.report = report
        super().__init__(report.describe())


def normalize(value: Any) -> Any:
    """Normalize a scalar or container for semantic comparison."""
    if value is None:
        return None
    if isinstance(value, str):
        if value == "":
            return None
        lower = value.lower()
        if lower in ("true", "false"):
            return lower == "true"
        if lower.startswith(("http://", "https://")):
            scheme_end = value.index("://")
            return (value[:scheme_end].lower() + value[scheme_end:]).rstrip("/")
        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            return value
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, Mapping):
        return {k: normalize(v) for k, v in value.items()} or None
    if isinstance(value, (list, tuple)):
        return [normalize(v) for v in value] or None
    return value


def _diff(path: str, stored: Any, live: Any, changes: list[AttributeDrift]) -> None:
    if isinstance(stored, Mapping) and isinstance(live, Mapping):
        for key, stored_value in stored.items():
            _diff(f"{path}.{key}" if path else str(key), stored_value, live.get(key), changes)
        return
    if normalize(stored) != normalize(live):
        changes.append(AttributeDrift(path=path, stored=stored, live=live))


def compare_attributes(
    node_id: str,
    stored: Mapping[str, Any],
    live: Mapping[str, Any],
    ignore: frozenset[str] = frozenset(),
) -> DriftReport | None:
    """Compare last-applied attributes with the live resource.

    Only keys that were applied are compared; keys the provider adds on its
    own are treated as defaults.

    Args:
        node_id: Node being compared.
        stored: Attributes recorded after the last successful apply.
        live: Attributes read from the provider now.
        ignore: Top-level attribute names managed by the provider.

    Returns:
        A MODIFIED DriftReport, or None if equivalent.
    """
    changes: list[AttributeDrift] = []
    for key, stored_value in stored.items():
        if key in ignore:
            continue
        _diff(str(key), stored_value, live.get(key), changes)

    if not changes:
        return None

    logger.warning(
        "Drift detected",
        extra={"node_id": node_id, "paths": [change.path for change in changes]},
    )
    return DriftReport(node_id=node_id, kind=DriftKind.MODIFIED, changes=changes)


def missing(node_id: str) -> DriftReport:
    """DriftReport for a resource deleted out-of-band."""
    logger.warning("Resource deleted outside the orchestrator", extra={"node_id": node_id})
    return DriftReport(node_id=node_id, kind=DriftKind.MISSING)
