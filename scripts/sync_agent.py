"""Command line sync agent: run device rounds against a PetSync service."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from aiohttp import ClientSession

from petsync.client import PetSyncClient
from petsync.config import ClientConfig, ConfigError, load_options
from petsync.const import ENV_CONFIG_PATH
from petsync.local_cache import LocalCache

_LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Synchronise the local pet cache with a PetSync service")
    parser.add_argument("--config", help="YAML options file")
    parser.add_argument("--base-url", help="Service base URL")
    parser.add_argument("--caller-id", help="Identity sent as X-Caller-ID")
    parser.add_argument("--display-name", help="Name shown to other collaborators")
    parser.add_argument("--cache", help="SQLite path of the local cache")
    parser.add_argument("--interval", type=int, help="Seconds between rounds when looping")
    parser.add_argument("--loop", action="store_true", help="Keep syncing every --interval seconds")
    parser.add_argument("--log-level", help="Logging level")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ClientConfig:
    options = load_options(args.config or os.environ.get(ENV_CONFIG_PATH))
    overrides = {
        "base_url": args.base_url,
        "caller_id": args.caller_id,
        "display_name": args.display_name,
        "cache_path": args.cache,
        "interval": args.interval,
        "log_level": args.log_level,
    }
    options.update({key: value for key, value in overrides.items() if value is not None})
    return ClientConfig.from_options(options)


async def main_async(config: ClientConfig, *, loop: bool = False) -> int:
    cache = LocalCache(config.cache_path, device_id=config.caller_id)
    async with ClientSession() as session:
        client = PetSyncClient(
            session,
            cache,
            config.base_url,
            config.caller_id,
            display_name=config.display_name,
            timeout=config.timeout,
        )
        if loop:
            _LOGGER.info("Starting sync loop every %ds", config.interval)
            await client.run_forever(interval_seconds=config.interval)
            return 0
        report = await client.sync_all()
    for pet_id, err in report.failures.items():
        _LOGGER.error("Pet %s not synced: %s", pet_id, err)
    _LOGGER.info("Synced %d pet(s), %d failed", len(report.synced), len(report.failures))
    return 0 if report.ok else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = build_config(args)
    except ConfigError as err:
        print(f"Invalid configuration: {err}", file=sys.stderr)
        return 2
    logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO))
    try:
        return asyncio.run(main_async(config, loop=args.loop))
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        _LOGGER.info("Sync agent stopped")
        return 0


if __name__ == "__main__":
    sys.exit(main())
