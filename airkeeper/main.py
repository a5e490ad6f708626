# main.py
"""
Airkeeper – Main
================
Process entry point: loads the configuration and runs one update cycle
every CYCLE_INTERVAL seconds until SIGINT/SIGTERM, or a single cycle
with ``--once``.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from airkeeper.api_config import HttpApiResolver
from airkeeper.configuration import Configuration, load_configuration
from airkeeper.exceptions import ConfigurationError
from airkeeper.loggingconfig import set_global_level, setup_logging
from airkeeper.multi_chain_core import MultiChainCore
from airkeeper.results import RunSummary

logger = setup_logging("Main", level=logging.INFO)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Airkeeper beacon update keeper")
    parser.add_argument("--config", default="config.yaml", help="YAML configuration file")
    parser.add_argument("--env-file", default=".env", help="dotenv file with secrets")
    parser.add_argument("--environment", default="development", help="section of the YAML file to use")
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    return parser.parse_args(argv)


async def run_cycles(configuration: Configuration, once: bool = False) -> List[RunSummary]:
    summaries: List[RunSummary] = []
    resolver = HttpApiResolver(
        configuration.endpoints,
        configuration.templates,
        retry=configuration.api_retry_policy(),
        cache_ttl=configuration.API_CACHE_TTL,
    )
    core = MultiChainCore.from_configuration(configuration, resolver)
    logger.info("Airnode wallet %s, %d job(s)", core.airnode_address, len(configuration.jobs))

    stop_event = asyncio.Event()
    if not once:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, stop_event.set)
        loop.add_signal_handler(signal.SIGTERM, stop_event.set)

    try:
        while True:
            summary = await core.run(configuration.jobs, configuration.chains)
            summaries.append(summary)
            logger.info("Summary %s: %s", summary.coordinator_id, summary.as_dict())
            if once:
                break
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=configuration.CYCLE_INTERVAL)
                break
            except asyncio.TimeoutError:
                continue
    finally:
        await resolver.close()
    return summaries


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configuration = load_configuration(
        env_path=args.env_file,
        yaml_file=args.config,
        environment=args.environment,
    )
    set_global_level(configuration.LOG_LEVEL)
    summaries = await run_cycles(configuration, once=args.once)
    return 1 if summaries and summaries[-1].failed else 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e.message}")
        sys.exit(2)


if __name__ == "__main__":
    run()
