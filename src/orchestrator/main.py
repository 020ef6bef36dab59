"""Runtime wiring for the orchestrator: logging, providers and signals.

SECRETLESS ARCHITECTURE:
ARM-backed resource types authenticate with a Managed Identity only; see
security.py. Loading the desired state and computing a plan never needs
credentials unless the document binds ARM providers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path

from .arm_provider import build_registry
from .config import Config
from .controller import ApplyResult, Orchestrator
from .models import DesiredStateDocument
from .planner import Plan
from .provenance import get_provenance_logger
from .spec_loader import file_digest, load_desired_state

# LogRecord attributes that are not structured extra fields
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, stream=None) -> None:
    """Configure structured logging with JSON output.

    Logs go to stderr by default so that plan and report output on stdout
    stays readable.
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def load(desired_path: Path, config: Config) -> tuple[DesiredStateDocument, Orchestrator]:
    """Load the desired state and build an orchestrator for it.

    Raises:
        SpecLoadError: If the document is invalid.
        ConfigurationError: If ARM providers are bound without a scope.
        SecretlessViolationError: If a credential secret is in the environment.
    """
    document = load_desired_state(desired_path)
    get_provenance_logger().set_desired_state_hash(file_digest(desired_path))
    registry = build_registry(document, config)
    return document, Orchestrator(config, registry)


async def run_apply(orchestrator: Orchestrator, plan: Plan) -> ApplyResult:
    """Apply a plan, turning SIGINT/SIGTERM into a graceful cancellation."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        orchestrator.cancel()

    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            logger.debug("Signal handler not installed", extra={"signal": sig.name})

    try:
        return await orchestrator.apply(plan)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
