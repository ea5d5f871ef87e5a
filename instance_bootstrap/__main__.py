#!/usr/bin/env python3
import argparse
import sys

from dotenv import load_dotenv
from loguru import logger

from utils.logger import configure_logger

from .config import BootstrapConfig, BootstrapSettings
from .errors import ConfigError
from .pipeline import run_bootstrap


def make_parser():
    parser = argparse.ArgumentParser(description="Prepare a rented instance and launch the control plane container")
    parser.add_argument("--env-file", type=str, default=None, help="dotenv file to load; existing variables win")
    parser.add_argument("--log-file", type=str, default=None, help="log file (default: /tmp/tensordock-setup.log)")
    parser.add_argument("--control-plane-dir", type=str, default=None, help="where the start script is written")
    parser.add_argument("--skip-network-wait", action="store_true", help="do not wait for outbound network")
    parser.add_argument("--skip-firewall", action="store_true", help="leave the firewall alone")
    parser.add_argument("--firewall-all-hosts", action="store_true", help="configure ufw on container hosts too")
    parser.add_argument("--emit-only", action="store_true", help="write the start script but do not run it")
    parser.add_argument("--debug", action="store_true", help="verbose logging")
    return parser


def build_settings(args) -> BootstrapSettings:
    overrides = {}
    if args.log_file:
        overrides["log_file"] = args.log_file
    if args.control_plane_dir:
        overrides["control_plane_dir"] = args.control_plane_dir
    if args.firewall_all_hosts:
        overrides["firewall_vm_only"] = False
    return BootstrapSettings(**overrides)


def main(argv=None) -> int:
    args = make_parser().parse_args(argv)
    if args.env_file:
        load_dotenv(args.env_file, override=False)
    else:
        load_dotenv(override=False)

    settings = build_settings(args)
    try:
        configure_logger(settings.log_file, level="DEBUG" if args.debug else "INFO")
    except OSError as e:
        logger.critical(f"FATAL ERROR: cannot open log file {settings.log_file}: {e}")
        return 1

    try:
        config = BootstrapConfig.from_env()
    except ConfigError as e:
        logger.critical(f"FATAL ERROR: {e}")
        return 1

    return run_bootstrap(
        config,
        settings,
        wait_network=not args.skip_network_wait,
        configure_fw=not args.skip_firewall,
        emit_only=args.emit_only,
    )


if __name__ == "__main__":
    sys.exit(main())
