"""
Bounded polling for operations AWS completes in the background.
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class PollOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"


@dataclass
class PollResult:
    """Terminal outcome of a bounded poll."""
    outcome: PollOutcome
    attempts: int
    elapsed: float
    last_value: Any = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is PollOutcome.SUCCEEDED


def poll_until(
    probe: Callable[[], Any],
    condition: Callable[[Any], bool],
    interval: float,
    max_attempts: Optional[int] = None,
    timeout: Optional[float] = None,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult:
    """Call ``probe`` until ``condition`` holds for its value or a bound is hit.

    Args:
        probe: Reads the current state (e.g. a describe call)
        condition: Returns True once the state is the one being waited for
        interval: Seconds to sleep between probes
        max_attempts: Maximum number of probes
        timeout: Maximum seconds to keep polling
        description: Human readable name used in log messages
        sleep: Sleep function, replaceable in tests
        clock: Monotonic clock, replaceable in tests

    Returns:
        PollResult with SUCCEEDED or TIMED_OUT

    Raises:
        ValueError: If neither max_attempts nor timeout is given
    """
    if max_attempts is None and timeout is None:
        raise ValueError("poll_until needs max_attempts or timeout")
    if max_attempts is not None and max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    started = clock()
    attempts = 0
    value = None

    while True:
        attempts += 1
        value = probe()
        elapsed = clock() - started

        if condition(value):
            logger.debug(f"{description} finished after {attempts} probe(s), {elapsed:.1f}s")
            return PollResult(PollOutcome.SUCCEEDED, attempts, elapsed, value)

        if max_attempts is not None and attempts >= max_attempts:
            break
        if timeout is not None and (elapsed >= timeout or elapsed + interval > timeout):
            break

        sleep(interval)

    elapsed = clock() - started
    logger.warning(f"Timed out waiting for {description} after {attempts} probe(s), {elapsed:.1f}s")
    return PollResult(PollOutcome.TIMED_OUT, attempts, elapsed, value)
