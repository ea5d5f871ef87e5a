import base64
import os
import re
import time
from typing import Optional

from loguru import logger

from .config import BootstrapConfig

UNKNOWN_INSTANCE_ID = "vast-unknown-instance"
TOKEN_LENGTH = 32

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def resolve_instance_id(public_ip: Optional[str], hostname: Optional[str]) -> str:
    # The marketplace gives no instance id, so the public IP is the best label we have.
    for candidate in (public_ip, hostname):
        if candidate and candidate.strip():
            return candidate.strip()
    return UNKNOWN_INSTANCE_ID


def generate_token(length: int = TOKEN_LENGTH) -> str:
    """Random alphanumeric token, taken from base64-encoded random bytes."""
    token = ""
    try:
        while len(token) < length:
            chunk = base64.b64encode(os.urandom(length)).decode("ascii")
            token += _NON_ALNUM.sub("", chunk)
    except OSError as e:
        logger.warning(f"random source unavailable ({e}), falling back to a timestamp token")
        return f"default-token-{int(time.time())}"
    return token[:length]


def materialize_identity(config: BootstrapConfig) -> BootstrapConfig:
    instance_id = resolve_instance_id(config.public_ip, config.hostname)
    logger.info(f"Instance ID: {instance_id}")

    token = config.jupyter_token
    if token:
        logger.info("Using supplied JUPYTER_TOKEN")
    else:
        token = generate_token()
        logger.info("Generated JUPYTER_TOKEN")

    return config.model_copy(update={"instance_id": instance_id, "jupyter_token": token})
