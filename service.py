# service.py
import argparse
import asyncio
import json
import logging
import signal
import sys

from config.settings import settings
from core.errors import CollectorError
from core.logger import logger
from models.collection_state import DataType, DEFAULT_TYPES
from services.collector_service import CollectionService


def parse_types(value: str):
    try:
        return [DataType.parse(part) for part in value.split(",") if part.strip()]
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Collect address history from a block explorer, resumably.")
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    collect = sub.add_parser("collect", help="Collect transactions for an organization address")
    collect.add_argument("--name", required=True, help="Organization name, used as the entity id")
    collect.add_argument("--address", required=True, help="0x-prefixed address")
    collect.add_argument("--from-block", type=int, help="First block (default: 0, or the stored cursor with --resume)")
    collect.add_argument("--to-block", type=int, help="Last block (default: current chain head)")
    collect.add_argument("--types", type=parse_types, default=list(DEFAULT_TYPES),
                         help="Comma separated: normal,internal,tokenTransfer,event")
    collect.add_argument("--resume", action="store_true", help="Continue from the stored cursor")
    collect.add_argument("--provider", choices=settings.PROVIDERS, help="Data provider (default from PROVIDER)")
    collect.add_argument("--network", help="Network name from config/networks.yml (default from NETWORK)")
    collect.add_argument("--sequential", action="store_true", help="Collect one data type at a time")

    status = sub.add_parser("status", help="Print the stored collection state")
    status.add_argument("--name", required=True, help="Organization name")
    return parser


async def run_collect(args) -> int:
    service = await CollectionService.create(
        provider_name=args.provider,
        network=args.network,
        concurrent_types=False if args.sequential else None,
    )
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, service.request_stop)

    try:
        await service.initialise()
        summary = await service.collect(
            args.name,
            args.address,
            args.types,
            start_block=args.from_block,
            end_block=args.to_block,
            resume=args.resume,
        )
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await service.stop()

    return 0 if summary.ok else 1


async def run_status(args) -> int:
    service = await CollectionService.create(sink_backend="csv")
    try:
        state = await service.status(args.name)
    finally:
        await service.stop()

    if state is None:
        logger.warning(f"No collection state stored for {args.name}")
        return 1
    print(json.dumps(state.to_dict(), indent=2))
    return 0


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.debug:
        logger.setLevel(logging.DEBUG)
        logger.debug("Debug logging enabled")

    try:
        settings.validate()
        if args.command == "collect":
            return await run_collect(args)
        return await run_status(args)
    except CollectorError as e:
        logger.error(f"[{e.code}] {e}")
        return 1


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Service interrupted by user.")
        sys.exit(130)


if __name__ == "__main__":
    cli()
