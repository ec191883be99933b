#!/usr/bin/env python3
"""CLI entry point for a composite audit refresh.

Usage:
    # Refresh the default window (last_30d) for a store
    PYTHONPATH=. python scripts/run_refresh.py --store demo

    # Specific preset, waiting for every section
    PYTHONPATH=. python scripts/run_refresh.py --store demo --preset last_7d --background

    # Explicit range
    PYTHONPATH=. python scripts/run_refresh.py --store demo --since 2024-12-01 --until 2024-12-07
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.adlayer_core.refresh.scheduler import RefreshMode
from src.adlayer_core.services import open_services


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="adlayer audit refresh")
    parser.add_argument("--store", required=True, help="Store identifier")
    parser.add_argument("--preset", type=str, help="Meta date preset (default last_30d)")
    parser.add_argument("--since", type=str, help="Range start (YYYY-MM-DD)")
    parser.add_argument("--until", type=str, help="Range end (YYYY-MM-DD)")
    parser.add_argument(
        "--background",
        action="store_true",
        help="Wait for every section, including deferred ones",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger("run_refresh")

    params = {}
    if args.since and args.until:
        params = {"since": args.since, "until": args.until}
    elif args.preset:
        params = {"date_preset": args.preset}

    mode = RefreshMode.BACKGROUND if args.background else RefreshMode.FOREGROUND

    async with open_services() as services:
        results = await services.refresh.refresh(args.store, params, mode)
        scheduler = services.refresh.scheduler(args.store)
        if mode == RefreshMode.FOREGROUND and scheduler is not None:
            await scheduler.wait_idle()

        status = scheduler.status() if scheduler else {}
        for section in status.get("sections", []):
            logger.info("%-10s %s %s", section["key"], section["status"], section["error"] or "")
        logger.info("Refresh finished: %s%% settled", status.get("percent", 0))
        print(json.dumps({"sections": sorted(results.keys()), "status": status}, indent=2, default=str))


if __name__ == "__main__":
    asyncio.run(main())
