"""
Harvest platform entry point: runs the pipelines configured in pipelines.yml.

Usage:
    python main_pipeline.py                       # every pipeline, concurrently
    python main_pipeline.py --only meta_climate_ads
    python main_pipeline.py --list                # discovered plugins + pipelines
    python main_pipeline.py --reset-checkpoints   # forget resume cursors first
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Any, Dict, List

from dotenv import load_dotenv

# Add project root to PYTHONPATH so imports work when running this script directly
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from harvester.infra.db import Database
from harvester.pipeline_orchestrator import run_all, load_pipelines_config
from harvester.plugin_loader import refresh_registry, list_available

logger = logging.getLogger("main_pipeline")


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s"
    )


def show_available(pipelines_cfg: List[Dict[str, Any]]) -> None:
    available = list_available()
    print(f"Plugins ({len(available)}):")
    for key, cls in sorted(available.items()):
        print(f"  {key:<40} {cls.__module__}")
    print(f"Pipelines ({len(pipelines_cfg)}):")
    for pipeline in pipelines_cfg:
        sinks = ", ".join(s.get("class", "?") for s in pipeline.get("sinks", []))
        print(f"  {pipeline['name']:<28} {pipeline.get('source', {}).get('class', '?')} → {sinks or '-'}")


async def reset_checkpoints(pipelines_cfg: List[Dict[str, Any]]) -> None:
    for pipeline in pipelines_cfg:
        if not pipeline.get("checkpoint_db"):
            continue
        async with Database(pipeline["checkpoint_db"]) as db:
            await db.clear_checkpoint(pipeline["name"])
        logger.info(f"Cleared checkpoint for {pipeline['name']}")


async def main(args: argparse.Namespace) -> int:
    """Discover plugins, load configuration and run the selected pipelines."""
    # tokens reach sources only through ${VAR} references in the config
    load_dotenv()
    setup_logging(args.verbose)

    refresh_registry()

    pipelines_cfg = load_pipelines_config(args.config, environ=os.environ)
    if args.only:
        unknown = set(args.only) - {p["name"] for p in pipelines_cfg}
        if unknown:
            logger.error(f"Unknown pipeline(s): {sorted(unknown)}")
            return 1
        pipelines_cfg = [p for p in pipelines_cfg if p["name"] in args.only]

    if args.list:
        show_available(pipelines_cfg)
        return 0

    if not pipelines_cfg:
        logger.error(f"No pipelines configured in {args.config}. Exiting.")
        return 1

    if args.reset_checkpoints:
        await reset_checkpoints(pipelines_cfg)

    logger.info(f"Loaded {len(pipelines_cfg)} pipeline(s)")
    for pipeline in pipelines_cfg:
        logger.info(f"  - {pipeline['name']}: {pipeline.get('source', {}).get('class', '?')}")

    # Graceful shutdown: harvests stop at the next page boundary
    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal – finishing current pages")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    results = await run_all(pipelines_cfg, cancel_event=stop_event)
    failed = [cfg["name"] for cfg, r in zip(pipelines_cfg, results) if isinstance(r, BaseException)]
    logger.info(f"Shutdown complete – {len(results) - len(failed)} pipeline(s) finished, {len(failed)} failed")
    return 2 if failed else 0


def cli() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="harvest-pipelines",
        description="Run paginated, rate-limited harvest pipelines",
    )
    parser.add_argument(
        "-c", "--config", default=os.getenv("PIPELINES_CONFIG", "pipelines.yml"),
        help="Pipeline configuration file (default: $PIPELINES_CONFIG or pipelines.yml)",
    )
    parser.add_argument(
        "--only", action="append", metavar="NAME",
        help="Run only this pipeline; may be repeated",
    )
    parser.add_argument("--list", action="store_true", help="List plugins and pipelines, then exit")
    parser.add_argument(
        "--reset-checkpoints", action="store_true",
        help="Clear saved resume cursors of the selected pipelines before running",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    return parser.parse_args()


def run_pipeline_system():
    """Entry point that can be called from other scripts."""
    sys.exit(asyncio.run(main(cli())))


if __name__ == "__main__":
    run_pipeline_system()
