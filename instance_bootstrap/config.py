"""Typed view of the environment handed to us by the marketplace.

Every ``$VAR`` the provisioning run depends on is parsed once here. Empty
strings are treated as unset, matching ``${VAR:-default}`` in bash.
"""
import os
import socket
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError, MissingIdentityError

# Internal ports the control plane listens on inside its container.
CONTROL_PORT = 8765
TURN_PORT = 3478

TCP_PORT_ENV = "VAST_TCP_PORT_70000"
UDP_PORT_ENV = "VAST_UDP_PORT_70001"
PUBLIC_IP_ENV = "PUBLIC_IPADDR"

# Variables forwarded verbatim into the control-plane container.
FORWARDED_ENV = (
    "USER_ID",
    "INSTANCE_ID",
    "RESOURCE_TYPE",
    "FIREBASE_CREDENTIALS",
    "START_TURN",
    "JUPYTER_TOKEN",
    "USER_CONTAINER_IMAGE",
)


class RetryPolicy(BaseModel):
    max_attempts: int = Field(ge=1)
    # seconds
    delay: float = Field(ge=0)


class BootstrapSettings(BaseModel):
    log_file: str = "/tmp/tensordock-setup.log"
    control_plane_dir: str = "/opt/tensordock-control-plane"
    start_script_name: str = "start-control-plane.sh"
    env_file_name: str = "control-plane.env"
    container_name: str = "tensordock-control-plane"

    docker_socket: str = "/var/run/docker.sock"
    dockerd_tcp_endpoint: str = "tcp://127.0.0.1:2375"
    dockerd_log: str = "/var/log/dockerd.log"
    docker_install_url: str = "https://get.docker.com"
    docker_install_script: str = "/tmp/get-docker.sh"

    network_probe_host: str = "8.8.8.8"
    firewall_vm_only: bool = True

    network: RetryPolicy = RetryPolicy(max_attempts=30, delay=2)
    daemon_ready: RetryPolicy = RetryPolicy(max_attempts=20, delay=3)
    installer: RetryPolicy = RetryPolicy(max_attempts=2, delay=10)
    image_pull: RetryPolicy = RetryPolicy(max_attempts=3, delay=10)

    @property
    def start_script_path(self) -> str:
        return os.path.join(self.control_plane_dir, self.start_script_name)

    @property
    def env_file_path(self) -> str:
        return os.path.join(self.control_plane_dir, self.env_file_name)


def _blank_to_none(value):
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class BootstrapConfig(BaseModel):
    user_id: Optional[str] = None
    instance_id: Optional[str] = None
    resource_type: Optional[str] = None
    firebase_credentials: Optional[str] = None
    start_turn: Optional[str] = None
    jupyter_token: Optional[str] = None
    user_container_image: Optional[str] = None
    control_plane_image: Optional[str] = None

    public_ip: Optional[str] = None
    hostname: Optional[str] = None
    tcp_port: int = Field(default=CONTROL_PORT, ge=1, le=65535)
    udp_port: int = Field(default=TURN_PORT, ge=1, le=65535)

    @field_validator(
        "user_id",
        "instance_id",
        "resource_type",
        "firebase_credentials",
        "start_turn",
        "jupyter_token",
        "user_container_image",
        "control_plane_image",
        "public_ip",
        "hostname",
        mode="before",
    )
    @classmethod
    def _strip_blank(cls, v):
        return _blank_to_none(v)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BootstrapConfig":
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            return _blank_to_none(env.get(name))

        tcp_raw, udp_raw = get(TCP_PORT_ENV), get(UDP_PORT_ENV)
        data = dict(
            user_id=get("USER_ID"),
            resource_type=get("RESOURCE_TYPE"),
            firebase_credentials=get("FIREBASE_CREDENTIALS"),
            start_turn=get("START_TURN"),
            jupyter_token=get("JUPYTER_TOKEN"),
            user_container_image=get("USER_CONTAINER_IMAGE"),
            control_plane_image=get("CONTROL_PLANE_IMAGE"),
            public_ip=get(PUBLIC_IP_ENV),
            # bash always sets $HOSTNAME; a Python process may not inherit it
            hostname=get("HOSTNAME") or (socket.gethostname() if environ is None else None),
        )
        if tcp_raw is not None:
            data["tcp_port"] = tcp_raw
        if udp_raw is not None:
            data["udp_port"] = udp_raw
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"invalid environment: {e}") from e

    def missing_required(self) -> List[str]:
        missing = []
        if not self.user_id:
            missing.append("USER_ID")
        if not self.instance_id:
            missing.append("INSTANCE_ID")
        if not self.control_plane_image:
            missing.append("CONTROL_PLANE_IMAGE")
        return missing

    def require_launch_fields(self) -> None:
        missing = self.missing_required()
        if missing:
            raise MissingIdentityError(missing)

    def container_env(self) -> Dict[str, str]:
        """Environment for the start script: forwarded values, image, ports."""
        values = {
            "USER_ID": self.user_id,
            "INSTANCE_ID": self.instance_id,
            "RESOURCE_TYPE": self.resource_type,
            "FIREBASE_CREDENTIALS": self.firebase_credentials,
            "START_TURN": self.start_turn,
            "JUPYTER_TOKEN": self.jupyter_token,
            "USER_CONTAINER_IMAGE": self.user_container_image,
            "CONTROL_PLANE_IMAGE": self.control_plane_image,
            TCP_PORT_ENV: str(self.tcp_port),
            UDP_PORT_ENV: str(self.udp_port),
        }
        return {k: v or "" for k, v in values.items()}
