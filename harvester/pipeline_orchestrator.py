"""
Pipeline orchestrator: source → harvest → sinks, configured from YAML.

Each pipeline is one independent harvest session with its own source
instance, delay clock and back-off state; pipelines run concurrently.
"""

import asyncio
import logging
import re
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import HarvestError
from .infra.db import Database
from .interfaces import PageSource, Sink
from .models import HarvestConfig, HarvestSession, HarvestStatus
from .orchestrator import run_harvest
from .plugin_loader import get as load_plugin_class

logger = logging.getLogger(__name__)

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def expand_env(value: Any, environ: Mapping[str, str]) -> Any:
    """Replace ``${VAR}`` references in config strings from ``environ``.

    The mapping is passed in by the entry point; nothing here reads the
    process environment on its own.
    """
    if isinstance(value, str):
        def _sub(m: "re.Match[str]") -> str:
            if m.group(1) not in environ:
                logger.warning(f"Environment variable {m.group(1)} referenced in config is not set")
            return environ.get(m.group(1), "")
        return _ENV_REF.sub(_sub, value)
    if isinstance(value, dict):
        return {k: expand_env(v, environ) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(v, environ) for v in value]
    return value


def build_harvest_config(cfg: Dict[str, Any], source: PageSource) -> HarvestConfig:
    """Pipeline ``harvest:`` block, defaulting fields the source declares."""
    options = dict(cfg.get("harvest") or {})
    options.setdefault("breakdown_fields", source.breakdown_fields)
    options.setdefault("identity_fields", source.identity_fields)
    return HarvestConfig(**options)


def _instantiate(entry: Dict[str, Any]) -> Any:
    cls = load_plugin_class(entry["class"])
    return cls(**(entry.get("kwargs") or {}))


async def _deliver(sinks: List[Sink], session: HarvestSession) -> None:
    for sink in sinks:
        try:
            await sink.handle(session)
        except Exception as e:
            logger.error(f"Sink {sink.name} failed for {session.name}: {e}", exc_info=True)


async def run_pipeline(
    cfg: Dict[str, Any],
    cancel_event: Optional[asyncio.Event] = None,
) -> HarvestSession:
    """Run a single pipeline from configuration and return its session.

    Partial results of a failed harvest are still delivered to the sinks and
    checkpointed before the error is re-raised.
    """
    pipeline_name = cfg.get("name", "unnamed")
    logger.info(f"Starting pipeline: {pipeline_name}")

    checkpoint_db = Database(cfg["checkpoint_db"]) if cfg.get("checkpoint_db") else None

    async with AsyncExitStack() as stack:
        source: PageSource = _instantiate(cfg["source"])
        await stack.enter_async_context(source)
        sinks: List[Sink] = [_instantiate(entry) for entry in cfg.get("sinks", [])]
        for sink in sinks:
            stack.push_async_callback(sink.close)
        if checkpoint_db is not None:
            await stack.enter_async_context(checkpoint_db)

        config = build_harvest_config(cfg, source)

        previous = await checkpoint_db.load_checkpoint(pipeline_name) if checkpoint_db else None
        if previous is not None:
            # rows of earlier runs live in the sinks; the limit counts this run only
            previous.records_accepted = 0
            if previous.cursor is None:
                # nothing pending; start a fresh pass but keep dedup keys
                previous.pages_fetched = 0

        try:
            session = await run_harvest(
                source.fetch_page,
                config,
                name=pipeline_name,
                cancel_event=cancel_event,
                session=previous,
            )
        except HarvestError as e:
            if e.session is not None:
                await _deliver(sinks, e.session)
                if checkpoint_db:
                    if not e.resumable:
                        logger.warning(
                            f"Pipeline {pipeline_name}: {type(e).__name__} is not resumable, "
                            f"next run starts a fresh pass"
                        )
                        e.session.cursor = None
                    await checkpoint_db.save_checkpoint(e.session)
            logger.error(f"Pipeline {pipeline_name} failed: {e}")
            raise

        await _deliver(sinks, session)
        if checkpoint_db:
            await checkpoint_db.save_checkpoint(session)

    if session.status is not HarvestStatus.COMPLETE:
        logger.warning(f"Pipeline {pipeline_name} ended with status {session.status.value}")
    logger.info(f"Pipeline completed: {pipeline_name} – {session.summary()}")
    return session


async def run_all(
    pipelines_cfg: List[Dict[str, Any]],
    cancel_event: Optional[asyncio.Event] = None,
) -> List[Any]:
    """Run all pipelines concurrently; returns sessions or exceptions in order."""
    tasks = [
        asyncio.create_task(
            run_pipeline(pipeline_cfg, cancel_event),
            name=f"pipeline-{pipeline_cfg.get('name', 'unnamed')}",
        )
        for pipeline_cfg in pipelines_cfg
    ]

    results = await asyncio.gather(*tasks, return_exceptions=True)
    for cfg, result in zip(pipelines_cfg, results):
        if isinstance(result, BaseException):
            logger.error(f"Pipeline {cfg.get('name', 'unnamed')} raised {type(result).__name__}: {result}")
    return results


def load_pipelines_config(
    config_path: str = "pipelines.yml",
    environ: Optional[Mapping[str, str]] = None,
) -> List[Dict[str, Any]]:
    """Load pipeline configuration from YAML file."""
    path = Path(config_path)

    if not path.exists():
        logger.warning(f"Pipeline config file not found: {config_path}")
        return []

    with path.open() as f:
        data = yaml.safe_load(f) or {}

    if "pipelines" not in data:
        logger.error(f"No 'pipelines' key found in {config_path}")
        return []

    pipelines = data["pipelines"]

    # Convert dict format to list format
    if isinstance(pipelines, dict):
        result = []
        for name, config in pipelines.items():
            config["name"] = name
            result.append(config)
        pipelines = result
    else:
        for idx, config in enumerate(pipelines):
            config.setdefault("name", f"pipeline_{idx}")

    if environ is not None:
        pipelines = expand_env(pipelines, environ)
    return pipelines
