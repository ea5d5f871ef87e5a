"""
Instance Bootstrap

Prepares a GPU-marketplace instance (VM or container) to run the
control-plane container:

- wait for outbound network
- classify the host (VM with a service manager, or bare container)
- install / start Docker until ``docker info`` answers
- derive the instance id and access token
- write and run ``start-control-plane.sh``
- open the control plane ports in ufw

CLI:
    python -m instance_bootstrap --env-file .env
"""

from .config import BootstrapConfig, BootstrapSettings, RetryPolicy
from .errors import BootstrapError, BootstrapFatalError
from .pipeline import provision, run_bootstrap

__all__ = [
    "BootstrapConfig",
    "BootstrapSettings",
    "RetryPolicy",
    "BootstrapError",
    "BootstrapFatalError",
    "provision",
    "run_bootstrap",
]
