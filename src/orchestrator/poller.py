"""Readiness polling for asynchronously-ready resources.

Some resources are accepted immediately but only usable after an external,
time-delayed condition: a DNS-validated certificate is "issued" minutes
after its validation records propagate. Such nodes sit in WaitingReady
while the poller re-checks a read-only predicate on an exponential backoff
schedule bounded by an absolute deadline.

The worker slot is only held for the duration of each poll; between polls
the poller sleeps on the event loop so other nodes can make progress.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .config import PollConfig
from .providers import ProviderRejected, ProviderTransient
from .resources import ErrorKind

logger = logging.getLogger(__name__)


class ReadinessError(Exception):
    """Base class for terminal readiness failures."""

    kind: ErrorKind = ErrorKind.READINESS_TIMEOUT


class ReadinessTimeout(ReadinessError):
    """The readiness predicate did not hold before the deadline."""

    kind = ErrorKind.READINESS_TIMEOUT


class ReadinessRejected(ReadinessError):
    """The provider reported the resource can never become ready."""

    kind = ErrorKind.READINESS_REJECTED


@dataclass(frozen=True)
class BackoffSchedule:
    """Exponential backoff with a ceiling and proportional jitter."""

    initial_seconds: float
    multiplier: float = 2.0
    ceiling_seconds: float = 60.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, config: PollConfig) -> BackoffSchedule:
        return cls(
            initial_seconds=config.initial_seconds,
            multiplier=config.multiplier,
            ceiling_seconds=config.ceiling_seconds,
        )

    def delay(self, attempt: int) -> float:
        """Delay before poll ``attempt + 1`` (attempt counts from 0)."""
        base = min(self.ceiling_seconds, self.initial_seconds * (self.multiplier**attempt))
        if self.jitter <= 0:
            return base
        return min(self.ceiling_seconds, base + random.uniform(0, base * self.jitter))


@dataclass
class PendingOperation:
    """A created resource waiting for its readiness condition.

    Attributes:
        node_id: Node being waited on.
        provider_id: Provider id passed to the readiness predicate.
        predicate: Read-only check; True once the resource is usable.
        deadline: Absolute monotonic time after which the wait fails.
        polls: Number of predicate evaluations so far.
    """

    node_id: str
    provider_id: str
    predicate: Callable[[], bool]
    deadline: float
    polls: int = 0

    @classmethod
    def start(
        cls,
        node_id: str,
        provider_id: str,
        predicate: Callable[[], bool],
        timeout_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> PendingOperation:
        """Create an operation whose deadline is ``timeout_seconds`` from now."""
        return cls(
            node_id=node_id,
            provider_id=provider_id,
            predicate=predicate,
            deadline=clock() + timeout_seconds,
        )


async def _run_in_thread(predicate: Callable[[], bool]) -> bool:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, predicate)


class CompletionPoller:
    """Waits for PendingOperations to become ready.

    Args:
        schedule: Backoff schedule between polls.
        call: Runs one predicate evaluation (the engine supplies a runner
            that holds a worker slot and enforces the call timeout).
        clock: Monotonic clock, injectable for tests.
        sleep: Sleep coroutine, injectable for tests.
    """

    def __init__(
        self,
        schedule: BackoffSchedule,
        call: Callable[[Callable[[], bool]], Awaitable[bool]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._schedule = schedule
        self._call = call or _run_in_thread
        self._clock = clock
        self._sleep = sleep

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    async def wait(self, operation: PendingOperation) -> None:
        """Poll until ready.

        Raises:
            ReadinessRejected: If the provider rejects readiness permanently.
            ReadinessTimeout: If the deadline passes first.
        """
        attempt = 0
        while True:
            try:
                ready = await self._call(operation.predicate)
            except ProviderRejected as e:
                logger.error(
                    "Readiness rejected by provider",
                    extra={"node_id": operation.node_id, "error": str(e)},
                )
                raise ReadinessRejected(
                    f"'{operation.node_id}' can never become ready: {e}"
                ) from e
            except ProviderTransient as e:
                logger.warning(
                    "Transient error while polling readiness",
                    extra={"node_id": operation.node_id, "error": str(e)},
                )
                ready = False
            operation.polls += 1

            if ready:
                logger.info(
                    "Resource ready",
                    extra={"node_id": operation.node_id, "polls": operation.polls},
                )
                return

            remaining = operation.deadline - self._clock()
            if remaining <= 0:
                raise ReadinessTimeout(
                    f"'{operation.node_id}' not ready after {operation.polls} polls "
                    f"(provider id {operation.provider_id})"
                )

            delay = min(self._schedule.delay(attempt), remaining)
            attempt += 1
            logger.debug(
                "Resource not ready, waiting",
                extra={
                    "node_id": operation.node_id,
                    "polls": operation.polls,
                    "wait_seconds": delay,
                },
            )
            await self._sleep(delay)
