"""Bounded polling until a condition holds.

Every "wait until X" in the bootstrap goes through ReadinessGate: host
reachability after a reboot, the API server's ``/readyz`` endpoint, and
the node ``Ready`` condition.
"""

import asyncio
from collections.abc import Awaitable, Callable

from cluster_bootstrap.exceptions import Timeout
from cluster_bootstrap.logging_config import get_logger

logger = get_logger(__name__)

Predicate = Callable[[], Awaitable[bool]]


class ReadinessGate:
    """Repeatedly evaluate a predicate until it is true or a deadline passes."""

    def __init__(self, interval: float, timeout: float, description: str = "condition"):
        """Initialize the gate.

        Args:
            interval: Seconds to sleep between evaluations
            timeout: Total seconds before giving up
            description: Human readable name used in logs and errors
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.interval = interval
        self.timeout = timeout
        self.description = description

    async def wait(
        self,
        predicate: Predicate,
        error_cls: type[Timeout] = Timeout,
        tolerate: tuple[type[BaseException], ...] = (),
    ) -> int:
        """Poll until the predicate returns True.

        A single evaluation is cut off when the deadline is reached, and the
        sleep between evaluations never extends past it. Cancellation of the
        calling task propagates immediately.

        Args:
            predicate: Async callable returning True once the condition holds
            error_cls: Timeout subclass raised on expiry
            tolerate: Exception types treated as "not yet" instead of failing

        Returns:
            Number of evaluations it took

        Raises:
            Timeout: (or the given subclass) if the deadline passes first
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        attempts = 0
        last_error: BaseException | None = None

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            attempts += 1
            try:
                ready = await asyncio.wait_for(predicate(), timeout=remaining)
            except asyncio.TimeoutError:
                break
            except tolerate as e:
                logger.debug(f"Waiting for {self.description}: {e}")
                last_error = e
                ready = False

            if ready:
                logger.debug(f"{self.description} satisfied after {attempts} attempt(s)")
                return attempts

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.interval, remaining))

        details = f"Gave up after {attempts} attempt(s)"
        if last_error is not None:
            details += f"; last error: {last_error}"
        logger.warning(f"Timed out after {self.timeout:g}s waiting for {self.description}")
        raise error_cls(
            f"Timed out after {self.timeout:g}s waiting for {self.description}", details
        )
