"""
orchestrator.py – one call from fetch capability to finalized HarvestSession.

    session = await harvest(fetch_page, ["demographic_distribution"], ["id"],
                            limit=500, max_pages=20, min_delay=1.5)
    if session.status is HarvestStatus.COMPLETE: ...

Per page: normalize → parse magnitudes → dedup by identity key → append.
Dedup is by *record*: every breakdown row of a new record is kept, every row
of an already-seen record is dropped (first seen wins).

Any error aborting the harvest carries the partial session (``exc.session``)
and the cursor to resume from (``exc.cursor``).
"""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

from .errors import HarvestError, ParseError
from .magnitude import parse_magnitude
from .models import FlatRow, HarvestConfig, HarvestSession
from .normalizer import normalize_records
from .paginator import FetchFn, Paginator

logger = logging.getLogger(__name__)

__all__ = ["check_percentages", "harvest", "run_harvest"]


# --------------------------------------------------------------------------- #
# Post-hoc invariant checks
# --------------------------------------------------------------------------- #


def check_percentages(rows: Sequence[FlatRow], fields: Sequence[str]) -> List[Dict[str, Any]]:
    """Return one violation per row/field whose value is not a fraction in [0, 1].

    Ad Library reports shares as strings such as ``"0.0374"``.  Missing
    values (absent marker) are not violations.
    """
    violations: List[Dict[str, Any]] = []
    for idx, row in enumerate(rows):
        for field in fields:
            value = row.get(field)
            if value is None:
                continue
            try:
                share = Decimal(str(value))
            except InvalidOperation:
                violations.append({"row": idx, "field": field, "value": value, "reason": "not numeric"})
                continue
            if not Decimal(0) <= share <= Decimal(1):
                violations.append({"row": idx, "field": field, "value": value, "reason": "out of range"})
    return violations


# --------------------------------------------------------------------------- #
# Page processing
# --------------------------------------------------------------------------- #


def _apply_magnitudes(rows: List[FlatRow], cfg: HarvestConfig) -> Optional[List[FlatRow]]:
    """Parse declared magnitude columns in place; ``None`` means skip the record."""
    for row in rows:
        for field in cfg.magnitude_fields:
            value = row.get(field)
            if value is None or (isinstance(value, int) and not isinstance(value, bool)):
                continue
            try:
                row[field] = parse_magnitude(value)
            except ParseError:
                if cfg.magnitude_errors == "raise":
                    raise
                if cfg.magnitude_errors == "skip":
                    logger.debug("Skipping record – unparsable %s=%r", field, value)
                    return None
                row[field] = None
    return rows


def _absorb_page(session: HarvestSession, records: Sequence[Any], cfg: HarvestConfig) -> bool:
    """Normalize, dedup and append one page of records to ``session``.

    Returns ``False`` when the limit stopped intake before the end of the page.
    """
    session.records_seen += len(records)
    grouped = normalize_records(records, cfg.breakdown_fields, cfg.identity_fields)

    for key, rows in grouped:
        if cfg.limit is not None and session.records_accepted >= cfg.limit:
            return False
        if not cfg.allow_duplicates and key in session.seen_keys:
            session.duplicates_dropped += 1
            continue

        parsed = _apply_magnitudes(rows, cfg)
        if parsed is None:
            continue

        session.seen_keys.add(key)
        session.rows.extend(parsed)
        session.records_accepted += 1
    return True


# --------------------------------------------------------------------------- #
# Public API
# --------------------------------------------------------------------------- #


async def run_harvest(
    fetch_fn: FetchFn,
    config: HarvestConfig,
    *,
    name: str = "harvest",
    cancel_event: Optional[asyncio.Event] = None,
    session: Optional[HarvestSession] = None,
    start_cursor: Any = None,
    sleep=asyncio.sleep,
    clock=None,
) -> HarvestSession:
    """Run a harvest from a validated :class:`HarvestConfig`.

    Passing a previous ``session`` resumes it: rows and seen keys are kept,
    fetching restarts at ``start_cursor`` or else ``session.cursor``.
    """
    if session is None:
        session = HarvestSession(name=name, cursor=start_cursor, identity_fields=config.identity_fields)
    else:
        session.identity_fields = config.identity_fields
        logger.info("Resuming harvest %s from cursor %r", session.name, start_cursor or session.cursor)
        session.status = None
        session.finished_at = None
        if start_cursor is not None:
            session.cursor = start_cursor

    paginator_kwargs: Dict[str, Any] = {"sleep": sleep}
    if clock is not None:
        paginator_kwargs["clock"] = clock

    paginator = Paginator(
        fetch_fn,
        max_pages=config.max_pages,
        min_delay=config.min_delay,
        fetch_timeout=config.fetch_timeout,
        backoff=config.backoff,
        cancel_event=cancel_event,
        start_cursor=session.cursor,
        **paginator_kwargs,
    )

    def limit_reached() -> bool:
        return config.limit is not None and session.records_accepted >= config.limit

    pages_before = session.pages_fetched
    try:
        async for page in paginator.pages(should_stop=limit_reached):
            session.pages_fetched = pages_before + paginator.pages_fetched
            if _absorb_page(session, page.records, config):
                session.cursor = page.next_cursor
            else:
                paginator.hold_page()
    except HarvestError as exc:
        session.pages_fetched = pages_before + paginator.pages_fetched
        session.backoff_delays.extend(paginator.backoff_delays)
        # resume point is the cursor of the page that failed, not the one after it
        resume = exc.cursor if exc.cursor is not None else paginator.cursor
        session.cursor = resume
        logger.error("Harvest %s aborted: %s (resume cursor %r)", session.name, exc, resume)
        raise exc.attach(session, resume)

    session.pages_fetched = pages_before + paginator.pages_fetched
    session.backoff_delays.extend(paginator.backoff_delays)
    session.cursor = paginator.cursor

    if config.percentage_fields:
        session.violations = check_percentages(session.rows, config.percentage_fields)
        for v in session.violations:
            logger.warning("Percentage check failed for %s: %s", session.name, v)

    session.finalize(paginator.status)
    logger.info(
        "Harvest %s finished – %s, %d record(s) / %d row(s) over %d page(s), %d duplicate(s) dropped",
        session.name,
        session.status.value,
        session.record_count,
        len(session.rows),
        session.pages_fetched,
        session.duplicates_dropped,
    )
    return session


async def harvest(
    fetch_fn: FetchFn,
    breakdown_fields: Sequence[str] = (),
    identity_key_fields: Sequence[str] = ("id",),
    limit: Optional[int] = None,
    max_pages: int = 10,
    min_delay: float = 0.0,
    *,
    config: Optional[HarvestConfig] = None,
    **kwargs: Any,
) -> HarvestSession:
    """Harvest ``fetch_fn`` into a finalized :class:`HarvestSession`.

    Keyword arguments not consumed here (``name``, ``cancel_event``,
    ``session``, ``start_cursor``, ``sleep``, ``clock``) go to
    :func:`run_harvest`; any other :class:`HarvestConfig` field
    (``magnitude_fields``, ``backoff``, ...) may be passed too.
    """
    run_keys = {"name", "cancel_event", "session", "start_cursor", "sleep", "clock"}
    run_kwargs = {k: kwargs.pop(k) for k in list(kwargs) if k in run_keys}

    if config is None:
        config = HarvestConfig(
            breakdown_fields=tuple(breakdown_fields),
            identity_fields=tuple(identity_key_fields),
            limit=limit,
            max_pages=max_pages,
            min_delay=min_delay,
            **kwargs,
        )
    return await run_harvest(fetch_fn, config, **run_kwargs)
