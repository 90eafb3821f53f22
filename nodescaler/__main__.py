"""
Command-line entry point.

    python -m nodescaler run [--config scaler.json] [--log-level INFO] [--log-dir logs]
    python -m nodescaler check-config [--config scaler.json]

Secrets come from the environment: DIGITALOCEAN_TOKEN for the provider and
SCALER_SERVICE_KEY for signing health probes.

While `run` is up, SIGHUP requests a full-fleet redeploy and SIGTERM stops the
loop:

    kill -HUP <pid>
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from nodescaler import __version__
from nodescaler.cloud.digitalocean import DigitalOceanClient, DigitalOceanConfig
from nodescaler.control_plane.scaler_service import ScalerService
from nodescaler.shared.config import ScalerConfig
from nodescaler.shared.errors import ConfigurationError
from nodescaler.shared.logging_config import configure_logging

logger = logging.getLogger("nodescaler")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nodescaler", description="Elastic node fleet controller")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="run the control loop")
    run.add_argument("--config", help="JSON config file (default: SCALER_* environment)")
    run.add_argument("--log-level", default="INFO")
    run.add_argument("--log-dir", default=None, help="write combined.log and error.log here")

    check = sub.add_parser("check-config", help="validate and print the effective configuration")
    check.add_argument("--config", help="JSON config file (default: SCALER_* environment)")
    return parser


def load_config(path: Optional[str]) -> ScalerConfig:
    return ScalerConfig.from_file(path) if path else ScalerConfig.from_env()


def install_signal_handlers(loop: asyncio.AbstractEventLoop, service: ScalerService) -> List[int]:
    """SIGHUP → request_deploy(), SIGTERM → stop(). Returns the signals installed."""

    def on_hup() -> None:
        logger.info("SIGHUP received")
        service.request_deploy()

    def on_term() -> None:
        logger.info("Shutdown signal received")
        service.stop()

    installed: List[int] = []
    for name, handler in (("SIGHUP", on_hup), ("SIGTERM", on_term)):
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, handler)
        except NotImplementedError:
            logger.warning("%s handling is not supported on this platform", name)
            continue
        installed.append(sig)
    return installed


async def _run(config: ScalerConfig) -> None:
    service = ScalerService(config, DigitalOceanClient(DigitalOceanConfig.from_env()))
    loop = asyncio.get_running_loop()
    installed = install_signal_handlers(loop, service)
    try:
        await service.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await service.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "check-config":
        try:
            config = load_config(args.config)
        except ConfigurationError as e:
            print(f"Invalid configuration: {e}", file=sys.stderr)
            return 2
        print(json.dumps(config.summary(), indent=2))
        return 0

    configure_logging(args.log_level, args.log_dir)
    try:
        config = load_config(args.config)
        if not config.service_key:
            raise ConfigurationError("SCALER_SERVICE_KEY is required to sign health probes")
        asyncio.run(_run(config))
    except ConfigurationError as e:
        logger.error("Invalid configuration: %s", e)
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
