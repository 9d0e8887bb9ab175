# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Command-line entry point: ``python -m fleet_control --config fleet.yaml``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
import signal

from .cache import CacheRouter, RedisCacheNode
from .config import FleetConfig
from .data_router import DataRouter
from .manager import ControlPlane
from .provisioner import LocalProcessProvisioner, StaticProvisioner
from .server import StatusServer
from .types import Endpoint, EndpointRole

logger = logging.getLogger("fleet_control")


def _parse_host_port(value: str) -> tuple[str, int]:
    host, _, port = value.rpartition(":")
    if not host or not port.isdigit():
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got {value!r}")
    return host, int(port)


def _parse_endpoint(value: str) -> tuple[str, str, str | None]:
    parts = value.split(",")
    if len(parts) not in (2, 3) or not all(parts[:2]):
        raise argparse.ArgumentTypeError(f"expected NAME,DSN[,PROBE_URL], got {value!r}")
    return parts[0], parts[1], parts[2] if len(parts) == 3 else None


def _parse_cache_node(value: str) -> tuple[str, str]:
    name, sep, url = value.partition("=")
    if not sep or not name or not url:
        raise argparse.ArgumentTypeError(f"expected NAME=REDIS_URL, got {value!r}")
    return name, url


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleet_control",
        description="Fleet autoscaling and traffic admission control plane",
    )
    parser.add_argument("--config", help="YAML configuration file")
    workers = parser.add_mutually_exclusive_group(required=True)
    workers.add_argument(
        "--worker-command",
        help="Command launching one worker; {port}, {host} and {instance_id} are substituted",
    )
    workers.add_argument(
        "--static-endpoint",
        action="append",
        type=_parse_host_port,
        help="HOST:PORT of an externally managed worker (repeatable)",
    )
    parser.add_argument("--worker-host", default="127.0.0.1")
    parser.add_argument(
        "--cache-node",
        action="append",
        type=_parse_cache_node,
        default=[],
        help="NAME=REDIS_URL of a cache node (repeatable)",
    )
    parser.add_argument("--primary", type=_parse_endpoint, help="NAME,DSN[,PROBE_URL]")
    parser.add_argument(
        "--replica",
        action="append",
        type=_parse_endpoint,
        default=[],
        help="NAME,DSN[,PROBE_URL] of a read replica (repeatable)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Log scaling decisions only")
    parser.add_argument("--log-level", default="INFO")
    return parser


async def run(args: argparse.Namespace) -> None:
    config = FleetConfig.load_yaml(args.config) if args.config else FleetConfig()
    if args.dry_run:
        config.autoscaler.dry_run = True
    config.validate()

    if args.worker_command:
        provisioner = LocalProcessProvisioner(
            shlex.split(args.worker_command), host=args.worker_host
        )
    else:
        provisioner = StaticProvisioner(args.static_endpoint)

    cache_router = None
    if args.cache_node:
        cache_router = CacheRouter(
            config.cache,
            [RedisCacheNode(name, url) for name, url in args.cache_node],
        )

    data_router = None
    if args.primary:
        name, dsn, probe_url = args.primary
        data_router = DataRouter(
            Endpoint(name, dsn, EndpointRole.PRIMARY, probe_url),
            [Endpoint(n, d, EndpointRole.REPLICA, p) for n, d, p in args.replica],
            config.data_router,
        )

    control_plane = ControlPlane(
        config, provisioner, cache_router=cache_router, data_router=data_router
    )
    status_server = StatusServer(control_plane, config.status_host, config.status_port)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await control_plane.start()
    await status_server.start()
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down")
        await status_server.stop()
        await control_plane.stop()


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
