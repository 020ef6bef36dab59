"""Desired-state file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_DESIRED_STATE_FILE_SIZE_BYTES
from .models import DesiredStateDocument

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when desired-state loading or validation fails."""

    pass


def _read_bounded(path: Path) -> str:
    if not path.exists():
        raise SpecLoadError(f"Desired-state file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat desired-state file {path}: {e}") from e

    if file_size > MAX_DESIRED_STATE_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Desired-state file exceeds maximum size of "
            f"{MAX_DESIRED_STATE_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read desired-state file {path}: {e}") from e


def file_digest(path: Path) -> str:
    """SHA-256 of a desired-state file, for provenance."""
    return hashlib.sha256(_read_bounded(Path(path)).encode("utf-8")).hexdigest()


def load_desired_state(path: Path) -> DesiredStateDocument:
    """Load and validate a desired-state document from YAML.

    Args:
        path: Path to the YAML document.

    Returns:
        Validated document.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    path = Path(path)
    content = _read_bounded(path)

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Desired-state file must contain a YAML mapping: {path}")

    try:
        document = DesiredStateDocument.model_validate(raw_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info(
        "Loaded desired state from %s",
        path,
        extra={"resource_count": len(document.resources)},
    )
    return document
