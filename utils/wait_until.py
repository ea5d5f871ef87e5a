import time
from typing import Callable, Optional

from loguru import logger


class WaitUntilTimeoutError(TimeoutError):
    def __init__(self, description: str, attempts: int):
        super().__init__(f"{description} not satisfied after {attempts} attempts")
        self.description = description
        self.attempts = attempts


def wait_until(
    chk: Callable[[], bool],
    *,
    max_attempts: int,
    retry_interval: float,
    description: str = "condition",
    before_each: Optional[Callable[[int], None]] = None,
) -> int:
    """Poll ``chk`` until it returns True, at most ``max_attempts`` times.

    ``before_each`` runs ahead of every check with the 1-based attempt number;
    it is where callers nudge the thing they are waiting for. Returns the
    attempt that succeeded, raises WaitUntilTimeoutError otherwise.
    """
    for attempt in range(1, max_attempts + 1):
        if before_each is not None:
            before_each(attempt)
        if chk():
            return attempt
        logger.info(f"Waiting for {description}... attempt {attempt}/{max_attempts}")
        if attempt < max_attempts:
            time.sleep(retry_interval)
    raise WaitUntilTimeoutError(description, max_attempts)
