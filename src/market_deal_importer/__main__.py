"""Command-line entry point.

Usage:
    python -m market_deal_importer ingest [--input LOCATOR] [--batch-size N] [--queue-size N] [--no-resolve]
    python -m market_deal_importer tag
    python -m market_deal_importer run [...]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from market_deal_importer.config import Settings, get_settings
from market_deal_importer.pipeline import ImportPipeline

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="market_deal_importer",
        description="Import StateMarketDeals into PostgreSQL and tag deals.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def add_ingest_options(p: argparse.ArgumentParser) -> None:
        p.add_argument("--input", dest="input_url", help="HTTP(S) URL or file path (default: INPUT_URL)")
        p.add_argument("--batch-size", type=int, help="Deals per upsert (default: BATCH_SIZE)")
        p.add_argument("--queue-size", type=int, help="Concurrent write/resolve tasks (default: QUEUE_SIZE)")
        p.add_argument(
            "--no-resolve",
            action="store_true",
            help="Skip client address resolution",
        )

    add_ingest_options(sub.add_parser("ingest", help="Load deals and resolve new clients"))
    sub.add_parser("tag", help="Run the classification passes")
    add_ingest_options(sub.add_parser("run", help="Ingest, then tag"))

    return parser.parse_args(argv)


def _load_settings(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    if args.command == "tag":
        return settings
    return settings.with_overrides(
        input_url=args.input_url,
        batch_size=args.batch_size,
        queue_size=args.queue_size,
        resolve_clients=False if args.no_resolve else None,
    )


async def _run(command: str, settings: Settings) -> None:
    async with ImportPipeline(settings) as pipeline:
        if command == "ingest":
            await pipeline.ingest()
        elif command == "tag":
            await pipeline.tag()
        elif command == "run":
            await pipeline.run()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    try:
        settings = _load_settings(args)
        settings.validate_requirements(command=args.command)
    except (ValidationError, ValueError) as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    logging.getLogger().setLevel(settings.get_logging_level())
    logger.info("Starting %s with settings %s", args.command, settings.redacted_summary())

    try:
        asyncio.run(_run(args.command, settings))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 1
    except Exception as e:
        logger.error("%s failed: %s", args.command, e)
        logger.debug("Traceback", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
