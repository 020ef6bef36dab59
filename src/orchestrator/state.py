"""Durable record of each node's last observed state.

The store is a single JSON document:

```json
{
  "version": 1,
  "serial": 12,
  "resources": {
    "bucket.site": {"provider_id": "...", "digest": "...", "observed": {...}, ...}
  }
}
```

Writes are per node and happen immediately after each transition. Every
write replaces the whole file atomically (temp file + fsync + rename), so
a record is never observed half-written. An in-progress status
(creating/updating/deleting) left behind by a crash is detected on the
next run and reconciled against the provider.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import MAX_STATE_FILE_SIZE_BYTES
from .resources import NodeStatus, ObservedState, StateRecord, compute_digest

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateStoreError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


class StateStore:
    """JSON-file state store with atomic per-node writes.

    Thread Safety:
        Writes are serialized with a lock; records are immutable dataclasses.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._records: dict[str, StateRecord] = {}
        self._serial = 0
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def serial(self) -> int:
        """Monotonic write counter; changes whenever the state changes."""
        self._ensure_loaded()
        return self._serial

    def load(self) -> dict[str, StateRecord]:
        """Read the state file and return a snapshot of all records.

        Raises:
            StateStoreError: If the file is unreadable, corrupt, or of an
                unknown format version.
        """
        with self._lock:
            self._records, self._serial = self._read()
            self._loaded = True
            return dict(self._records)

    def get(self, node_id: str) -> StateRecord | None:
        self._ensure_loaded()
        return self._records.get(node_id)

    def record(self, record: StateRecord) -> None:
        """Persist the record for one node."""
        self._ensure_loaded()
        with self._lock:
            self._commit({**self._records, record.node_id: record})
        logger.debug(
            "State recorded",
            extra={"node_id": record.node_id, "status": record.status.value},
        )

    def mark(
        self,
        node_id: str,
        resource_type: str,
        status: NodeStatus,
        provider_id: str | None = None,
        depends_on: tuple[str, ...] = (),
        parent: str | None = None,
    ) -> StateRecord:
        """Write an in-progress marker before a provider call.

        Keeps the existing record's observed state, digests and provider id
        when present, so an interrupted update still knows what it was
        updating.
        """
        self._ensure_loaded()
        with self._lock:
            existing = self._records.get(node_id)
            now = datetime.now(UTC)
            if existing is not None:
                observed = existing.observed
                if provider_id is not None and provider_id != observed.provider_id:
                    observed = replace(observed, provider_id=provider_id)
                marker = replace(existing, observed=observed, status=status, updated_at=now)
            else:
                marker = StateRecord(
                    node_id=node_id,
                    resource_type=resource_type,
                    observed=ObservedState(provider_id=provider_id),
                    status=status,
                    depends_on=depends_on,
                    parent=parent,
                    updated_at=now,
                )
            self._commit({**self._records, node_id: marker})
            return marker

    def remove(self, node_id: str) -> None:
        """Drop the record of a deleted node."""
        self._ensure_loaded()
        with self._lock:
            if node_id in self._records:
                self._commit({k: v for k, v in self._records.items() if k != node_id})
        logger.debug("State removed", extra={"node_id": node_id})

    def fingerprint(self) -> str:
        """Digest of all records, independent of write timestamps."""
        self._ensure_loaded()
        snapshot = {
            node_id: {k: v for k, v in record.to_dict().items() if k != "updated_at"}
            for node_id, record in self._records.items()
        }
        return compute_digest(snapshot)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _read(self) -> tuple[dict[str, StateRecord], int]:
        if not self._path.exists():
            return {}, 0

        try:
            file_size = self._path.stat().st_size
        except OSError as e:
            raise StateStoreError(f"Failed to stat state file {self._path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateStoreError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                f"{self._path}"
            )

        try:
            raw: Any = json.loads(self._path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Invalid JSON in state file {self._path}: {e}") from e

        if not isinstance(raw, dict):
            raise StateStoreError(f"State file must contain a JSON object: {self._path}")

        version = raw.get("version")
        if version != STATE_FORMAT_VERSION:
            raise StateStoreError(
                f"Unsupported state format version {version!r} in {self._path} "
                f"(expected {STATE_FORMAT_VERSION})"
            )

        try:
            records = {
                node_id: StateRecord.from_dict({**data, "node_id": node_id})
                for node_id, data in (raw.get("resources") or {}).items()
            }
        except (KeyError, TypeError, ValueError) as e:
            raise StateStoreError(f"Corrupt record in state file {self._path}: {e}") from e

        return records, int(raw.get("serial", 0))

    def _commit(self, records: dict[str, StateRecord]) -> None:
        """Atomically replace the state file, then adopt ``records`` (caller holds the lock).

        Memory is only updated once the new file is in place, so a failed
        write leaves both the file and the serial unchanged.
        """
        serial = self._serial + 1
        document = {
            "version": STATE_FORMAT_VERSION,
            "serial": serial,
            "resources": {node_id: record.to_dict() for node_id, record in sorted(records.items())},
        }
        directory = self._path.parent
        tmp_name: str | None = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e

        self._records = records
        self._serial = serial
