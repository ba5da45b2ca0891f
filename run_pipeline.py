#!/usr/bin/env python3
"""
Run one named pipeline and print its session summary as JSON.

Usage: python run_pipeline.py <pipeline_name> [config_file]

Exit codes: 0 finished (any status), 1 configuration problem, 2 harvest
stopped by an error. With ``checkpoint_db`` set on the pipeline, running
again after exit code 2 continues from the reported resume cursor.
"""

import asyncio
import json
import logging
import os
import sys

from dotenv import load_dotenv

# Add project root to PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from harvester.errors import HarvestError
from harvester.pipeline_orchestrator import run_pipeline, load_pipelines_config
from harvester.plugin_loader import refresh_registry

logger = logging.getLogger("run_pipeline")


def _report(summary: dict) -> None:
    print(json.dumps(summary, indent=2, default=str))


async def run_named(pipeline_name: str, config_file: str) -> int:
    pipelines_cfg = load_pipelines_config(config_file, environ=os.environ)
    target = next((p for p in pipelines_cfg if p["name"] == pipeline_name), None)
    if target is None:
        logger.error(
            f"Pipeline '{pipeline_name}' not found in {config_file}; "
            f"available: {[p['name'] for p in pipelines_cfg]}"
        )
        return 1

    try:
        session = await run_pipeline(target)
    except HarvestError as e:
        partial = e.session.summary() if e.session is not None else {"name": pipeline_name}
        resume = e.cursor if e.resumable else None
        _report({**partial, "error": f"{type(e).__name__}: {e}", "resume_cursor": resume})
        return 2

    _report(session.summary())
    return 0


def main():
    if len(sys.argv) < 2:
        print(__doc__.strip().splitlines()[2])
        sys.exit(1)

    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stderr,
    )
    refresh_registry()

    pipeline_name = sys.argv[1]
    config_file = sys.argv[2] if len(sys.argv) > 2 else os.getenv("PIPELINES_CONFIG", "pipelines.yml")
    sys.exit(asyncio.run(run_named(pipeline_name, config_file)))


if __name__ == "__main__":
    main()
