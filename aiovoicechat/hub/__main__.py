"""Run a broadcast hub from the command line."""

from __future__ import annotations

import argparse
import asyncio
import logging
from contextlib import suppress

from .server import DEFAULT_HOST, DEFAULT_PORT, BroadcastHub


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="python -m aiovoicechat.hub",
        description="Relay voice channel messages between aiovoicechat clients.",
    )
    parser.add_argument("--host", default=DEFAULT_HOST, help="address to listen on")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="TCP port to listen on")
    parser.add_argument("--name", default="voicechat-hub", help="instance name for mDNS")
    parser.add_argument(
        "--advertise", action="store_true", help="advertise the hub via mDNS on the local network"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="logging verbosity",
    )
    return parser.parse_args(argv)


async def run_hub(args: argparse.Namespace) -> None:
    """Start the hub and serve until cancelled."""
    hub = BroadcastHub(asyncio.get_running_loop(), hub_name=args.name)
    await hub.start_server(port=args.port, host=args.host, advertise_mdns=args.advertise)
    try:
        await asyncio.Event().wait()
    finally:
        await hub.close()


def main(argv: list[str] | None = None) -> None:
    """Entry point of the hub command."""
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    with suppress(KeyboardInterrupt):
        asyncio.run(run_hub(args))


if __name__ == "__main__":
    main()
