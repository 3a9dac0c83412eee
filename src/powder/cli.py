"""Command line entry point: ``powder TIMESTAMP [--force-refresh]``."""

import argparse
import asyncio
import logging
import sys

from .config import Settings, setup_logging
from .implementations import DEFAULT_IMPLEMENTATION, IMPLEMENTATIONS
from .orchestrator import SnapshotService

logger = logging.getLogger(__name__)


class ArgumentParser(argparse.ArgumentParser):
    """argparse exits 2 on bad usage; every failure of this tool exits 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def positive_timestamp(value):
    try:
        timestamp = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid timestamp: {value!r}") from None
    if timestamp <= 0:
        raise argparse.ArgumentTypeError(f"timestamp must be positive: {value!r}")
    return timestamp


def build_parser():
    parser = ArgumentParser(
        prog='powder',
        description='Total ETH held by the holders of an NFT collection at a point in time.',
    )
    parser.add_argument('timestamp', type=positive_timestamp, help='Unix timestamp in seconds')
    parser.add_argument('--force-refresh', action='store_true',
                        help='Ignore any saved result and recompute')
    parser.add_argument('--implementation', default=DEFAULT_IMPLEMENTATION,
                        choices=[i.id for i in IMPLEMENTATIONS],
                        help=f'Implementation to run (default: {DEFAULT_IMPLEMENTATION})')
    parser.add_argument('--log-level', default=None,
                        help='Logging level (default: LOG_LEVEL from the environment, else INFO)')
    return parser


def main(argv=None, service=None):
    args = build_parser().parse_args(argv)
    settings = service.settings if service is not None else Settings.from_env()
    setup_logging(args.log_level or settings.log_level)

    if service is None:
        service = SnapshotService(settings)

    logger.info(f"Calculating powder for timestamp {args.timestamp} with {args.implementation}...")
    result = asyncio.run(service.compute(args.timestamp, args.implementation, use_cache=not args.force_refresh))

    if not result.ok:
        print(f"Error: {result.error}")
        return 1

    source = ' (saved result)' if result.from_cache else ''
    print(f"Block: {result.block}{source}")
    print(f"Holders: {result.holder_count}")
    print(f"Total ETH value: {result.total_value} ETH")
    print(f"Execution time: {result.execution_time_ms}ms")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
