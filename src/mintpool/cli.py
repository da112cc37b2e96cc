"""
Command-line interface for the mint worker pool.

Provides commands for provisioning and managing workers and for minting.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import structlog

from mintpool import __version__
from mintpool.config import MinterConfig, load_config
from mintpool.core.errors import MintError
from mintpool.core.minter import Minter
from mintpool.core.order import MintPayload


def setup_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if json_format
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper()),
        stream=sys.stdout,
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="mintpool",
        description="NFT minting through a pool of hot wallets",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: MINTER_LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs in JSON format",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("provision", help="Create workers up to the configured pool size")
    subparsers.add_parser("workers", help="List workers and their state")

    disable_parser = subparsers.add_parser("disable", help="Take a worker out of rotation")
    disable_parser.add_argument("worker_id", help="Worker to disable")

    enable_parser = subparsers.add_parser("enable", help="Put a disabled worker back into rotation")
    enable_parser.add_argument("worker_id", help="Worker to enable")

    mint_parser = subparsers.add_parser("mint", help="Mint a single NFT")
    mint_parser.add_argument("--name", required=True, help="Token name")
    mint_parser.add_argument("--to", required=True, dest="recipient", help="Recipient address")
    mint_parser.add_argument("--description", default="", help="Token description")
    mint_parser.add_argument("--image", default="", help="Image URI")
    mint_parser.add_argument(
        "--attributes",
        default="[]",
        help='Attributes as a JSON list, e.g. \'[{"trait_type": "Color", "value": "Red"}]\'',
    )

    batch_parser = subparsers.add_parser("batch", help="Mint a batch of NFTs from a JSON file")
    batch_parser.add_argument("file", help="JSON file holding a list of orders")

    subparsers.add_parser("monitor", help="Refresh balances and alert on low ones")

    return parser


async def provision_workers(minter: Minter) -> None:
    created = await minter.provision()
    print(f"Created {len(created)} worker(s)")
    for worker in created:
        print(f"  {worker.worker_id}  {worker.address}")


async def list_workers(minter: Minter) -> None:
    workers = await minter.registry.list_workers()
    if not workers:
        print("No workers. Run `mintpool provision` first.")
        return

    print(f"{'WORKER':36}  {'ADDRESS':42}  {'STATUS':9}  {'NONCE':>6}  {'MINTED':>6}  BALANCE")
    for w in workers:
        print(
            f"{w.worker_id:36}  {w.address:42}  {w.status.value:9}  "
            f"{w.nonce:>6}  {w.total_minted:>6}  {w.balance}"
        )


async def mint_one(minter: Minter, args: argparse.Namespace) -> None:
    payload = MintPayload(
        name=args.name,
        recipient_address=args.recipient,
        description=args.description,
        image_ref=args.image,
        attributes=json.loads(args.attributes),
    )
    order = await minter.submit_order(payload)
    await minter.scheduler.drain()
    order = await minter.orders.get(order.order_id) if order else None
    print(json.dumps(order.to_dict() if order else None, indent=2))


async def mint_batch(minter: Minter, args: argparse.Namespace) -> None:
    entries = json.loads(Path(args.file).read_text())
    payloads = [MintPayload.from_dict(entry) for entry in entries]
    batch = await minter.submit_batch(payloads)
    await minter.scheduler.drain()
    batch = await minter.orders.refresh_batch(batch.batch_id)
    print(json.dumps(batch.to_dict(), indent=2))


async def monitor_balances(minter: Minter) -> None:
    report = await minter.check_balances()
    print(f"Checked {len(report.balances)} worker(s), {len(report.low_workers)} below threshold")
    if report.master_balance is not None:
        print(f"Master balance: {report.master_balance} wei{' (LOW)' if report.master_low else ''}")


async def run_command(config: MinterConfig, args: argparse.Namespace) -> None:
    """Run one command against a freshly initialized minter."""
    needs_chain = args.command in ("mint", "batch", "monitor")
    minter = Minter(config)
    await minter.initialize(connect_chain=needs_chain)

    try:
        if args.command == "provision":
            await provision_workers(minter)
        elif args.command == "workers":
            await list_workers(minter)
        elif args.command == "disable":
            worker = await minter.registry.disable(args.worker_id)
            print(f"Worker {worker.worker_id} disabled")
        elif args.command == "enable":
            worker = await minter.registry.enable(args.worker_id)
            print(f"Worker {worker.worker_id} is {worker.status.value}")
        elif args.command == "mint":
            await mint_one(minter, args)
        elif args.command == "batch":
            await mint_batch(minter, args)
        elif args.command == "monitor":
            await monitor_balances(minter)
    finally:
        await minter.shutdown()


def main() -> None:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    overrides = {}
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_json:
        overrides["log_json"] = True
    config = load_config(**overrides)

    setup_logging(config.log_level, config.log_json)

    try:
        asyncio.run(run_command(config, args))
    except (MintError, KeyError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
