from loguru import logger

from utils import shell_cmds
from utils.wait_until import WaitUntilTimeoutError, wait_until

from .config import RetryPolicy


def network_reachable(host: str) -> bool:
    return shell_cmds.succeeds(["ping", "-c", "1", "-W", "2", host])


def wait_for_network(host: str, policy: RetryPolicy) -> bool:
    # ICMP may be blocked even when the network is up, so a timeout is only a warning.
    try:
        wait_until(
            lambda: network_reachable(host),
            max_attempts=policy.max_attempts,
            retry_interval=policy.delay,
            description="network",
        )
    except WaitUntilTimeoutError:
        logger.warning("Network check timeout, continuing anyway")
        return False
    logger.info("Network is available")
    return True
