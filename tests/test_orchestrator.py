"""
End-to-end harvest tests: limits, dedup, cancellation, partial results and resume.
"""

import asyncio

import pytest
from pydantic import ValidationError

from harvester import harvest
from harvester.errors import AmbiguousBreakdownError, ParseError, RateLimitedError, RateLimitExceededError
from harvester.models import BackoffPolicy, HarvestConfig, HarvestStatus, Page
from harvester.orchestrator import check_percentages, run_harvest
from tests.conftest import ScriptedFetch, make_pages


def _ids(session):
    return [row["id"] for row in session.rows]


# ──────────────────────────────────────────────
# Limits and termination
# ──────────────────────────────────────────────

async def test_limit_stops_after_page_that_reaches_it(clock):
    fetch = ScriptedFetch(make_pages(3, 25), clock=clock)

    session = await harvest(fetch, [], ["id"], limit=50, max_pages=10, sleep=clock.sleep, clock=clock)

    assert len(session.rows) == 50
    assert session.status is HarvestStatus.LIMIT_REACHED
    assert len(fetch.calls) == 2
    assert session.cursor == "c2"


async def test_upstream_exhaustion_before_limit_is_complete(clock):
    fetch = ScriptedFetch(make_pages(3, 25), clock=clock)

    session = await harvest(fetch, [], ["id"], limit=1000, max_pages=10, sleep=clock.sleep, clock=clock)

    assert len(session.rows) == 75
    assert session.status is HarvestStatus.COMPLETE
    assert session.cursor is None
    assert session.pages_fetched == 3


async def test_limit_mid_page_admits_exactly_limit_records(clock):
    fetch = ScriptedFetch(make_pages(3, 25), clock=clock)

    session = await harvest(fetch, limit=30, sleep=clock.sleep, clock=clock)

    assert session.record_count == 30
    assert _ids(session)[-1] == "rec-29"
    assert session.status is HarvestStatus.LIMIT_REACHED
    # page two still holds unread records, so the cursor stays on it
    assert session.cursor == "c1"


def _by_cursor(pages):
    cursors = [None] + [p.next_cursor for p in pages[:-1]]
    table = dict(zip(cursors, pages))
    calls = []

    async def fetch(cursor):
        calls.append(cursor)
        return table[cursor]

    fetch.calls = calls
    return fetch


async def test_resume_after_mid_page_limit_collects_every_record(clock):
    fetch = _by_cursor(make_pages(3, 25))

    first = await harvest(fetch, limit=30, sleep=clock.sleep, clock=clock)
    first.records_accepted = 0
    session = await harvest(fetch, limit=1000, session=first, sleep=clock.sleep, clock=clock)

    assert fetch.calls == [None, "c1", "c1", "c2"]
    assert len(set(_ids(session))) == 75
    assert len(session.rows) == 75
    assert session.duplicates_dropped == 5
    assert session.status is HarvestStatus.COMPLETE


async def test_limit_inside_last_page_is_not_complete(clock):
    fetch = _by_cursor(make_pages(2, 25))

    session = await harvest(fetch, limit=40, sleep=clock.sleep, clock=clock)

    assert session.record_count == 40
    assert session.status is HarvestStatus.LIMIT_REACHED
    assert session.cursor == "c1"


async def test_page_limit_is_partial(clock):
    fetch = ScriptedFetch(make_pages(5, 2), clock=clock)

    session = await harvest(fetch, max_pages=2, sleep=clock.sleep, clock=clock)

    assert len(session.rows) == 4
    assert session.status is HarvestStatus.PARTIAL_PAGE_LIMIT
    assert session.cursor == "c2"


async def test_min_delay_reaches_fetch_calls(clock):
    fetch = ScriptedFetch(make_pages(3, 1), clock=clock)

    await harvest(fetch, min_delay=1.5, sleep=clock.sleep, clock=clock)

    assert fetch.call_times == [0.0, 1.5, 3.0]


# ──────────────────────────────────────────────
# Dedup
# ──────────────────────────────────────────────

async def test_duplicate_identity_keys_are_dropped_first_seen_wins(clock):
    pages = [
        Page(records=[{"id": "a", "v": 1}, {"id": "b", "v": 1}], next_cursor="c1"),
        Page(records=[{"id": "b", "v": 2}, {"id": "c", "v": 2}], next_cursor=None),
    ]
    session = await harvest(ScriptedFetch(pages), sleep=clock.sleep, clock=clock)

    assert _ids(session) == ["a", "b", "c"]
    assert session.rows[1]["v"] == 1
    assert session.duplicates_dropped == 1
    assert len({(row["id"],) for row in session.rows}) == len(session.rows)


async def test_breakdown_rows_of_one_record_are_all_kept_once(clock):
    record = {
        "id": "ad-1",
        "demographic_distribution": [
            {"age": "18-24", "percentage": "0.5"},
            {"age": "25-34", "percentage": "0.5"},
        ],
    }
    pages = [Page(records=[record], next_cursor="c1"), Page(records=[record], next_cursor=None)]

    session = await harvest(ScriptedFetch(pages), ["demographic_distribution"], ["id"],
                            sleep=clock.sleep, clock=clock)

    assert [row["age"] for row in session.rows] == ["18-24", "25-34"]
    assert session.record_count == 1
    assert session.duplicates_dropped == 1


async def test_allow_duplicates_keeps_repeats(clock):
    pages = [Page(records=[{"id": "a"}, {"id": "a"}], next_cursor=None)]

    session = await harvest(ScriptedFetch(pages), allow_duplicates=True, sleep=clock.sleep, clock=clock)

    assert _ids(session) == ["a", "a"]


async def test_composite_identity_key(clock):
    pages = [Page(records=[
        {"page": "p1", "ad": "1"},
        {"page": "p2", "ad": "1"},
        {"page": "p1", "ad": "1"},
    ], next_cursor=None)]

    session = await harvest(ScriptedFetch(pages), [], ["page", "ad"], sleep=clock.sleep, clock=clock)

    assert len(session.rows) == 2
    assert session.seen_keys == {("p1", "1"), ("p2", "1")}


# ──────────────────────────────────────────────
# Cancellation
# ──────────────────────────────────────────────

async def test_cancel_after_first_page_keeps_its_records(clock):
    event = asyncio.Event()
    fetch = ScriptedFetch(make_pages(3, 25), clock=clock, on_call=lambda n: event.set() if n == 1 else None)

    session = await harvest(fetch, cancel_event=event, sleep=clock.sleep, clock=clock)

    assert session.status is HarvestStatus.CANCELLED
    assert _ids(session) == [f"rec-{i}" for i in range(25)]
    assert session.cursor == "c1"
    assert len(fetch.calls) == 1


# ──────────────────────────────────────────────
# Errors carry partial results
# ──────────────────────────────────────────────

async def test_ambiguous_breakdown_aborts_with_partial_session(clock):
    good = Page(records=[{"id": "a"}], next_cursor="c1")
    bad = Page(records=[{"id": "b", "x": [{"k": 1}], "y": [{"k": 2}]}], next_cursor=None)

    with pytest.raises(AmbiguousBreakdownError) as exc_info:
        await harvest(ScriptedFetch([good, bad]), ["x", "y"], ["id"], sleep=clock.sleep, clock=clock)

    session = exc_info.value.session
    assert _ids(session) == ["a"]
    assert not session.finalized
    assert exc_info.value.cursor == "c1"


async def test_rate_limit_exhaustion_then_resume(clock):
    first = ScriptedFetch(
        [Page(records=[{"id": "a"}], next_cursor="c1"), RateLimitedError("HTTP 429"), RateLimitedError("HTTP 429")],
        clock=clock,
    )
    with pytest.raises(RateLimitExceededError) as exc_info:
        await harvest(first, backoff=BackoffPolicy(max_retries=1), sleep=clock.sleep, clock=clock)

    partial = exc_info.value.session
    assert exc_info.value.cursor == "c1"
    assert _ids(partial) == ["a"]
    assert partial.backoff_delays == [1.0]

    second = ScriptedFetch([Page(records=[{"id": "a"}, {"id": "b"}], next_cursor=None)], clock=clock)
    session = await harvest(second, session=partial, sleep=clock.sleep, clock=clock)

    assert second.calls == ["c1"]
    assert _ids(session) == ["a", "b"]
    assert session.duplicates_dropped == 1
    assert session.pages_fetched == 2
    assert session.status is HarvestStatus.COMPLETE


# ──────────────────────────────────────────────
# Magnitude columns
# ──────────────────────────────────────────────

def _magnitude_page():
    return [Page(records=[
        {"id": "a", "views": "1K"},
        {"id": "b", "views": "12X"},
        {"id": "c", "views": "3M"},
    ], next_cursor=None)]


async def test_magnitude_fields_are_parsed(clock):
    fetch = ScriptedFetch(make_pages(1, 3), clock=clock)

    session = await harvest(fetch, magnitude_fields=["views"], sleep=clock.sleep, clock=clock)

    assert [row["views"] for row in session.rows] == [0, 1_000, 2_000]


async def test_unparsable_magnitude_raises_by_default(clock):
    with pytest.raises(ParseError) as exc_info:
        await harvest(ScriptedFetch(_magnitude_page()), magnitude_fields=["views"],
                      sleep=clock.sleep, clock=clock)
    assert _ids(exc_info.value.session) == ["a"]


async def test_unparsable_magnitude_skip_policy(clock):
    session = await harvest(ScriptedFetch(_magnitude_page()), magnitude_fields=["views"],
                            magnitude_errors="skip", sleep=clock.sleep, clock=clock)

    assert _ids(session) == ["a", "c"]
    assert ("b",) not in session.seen_keys


async def test_unparsable_magnitude_null_policy(clock):
    session = await harvest(ScriptedFetch(_magnitude_page()), magnitude_fields=["views"],
                            magnitude_errors="null", sleep=clock.sleep, clock=clock)

    assert [row["views"] for row in session.rows] == [1_000, None, 3_000_000]


# ──────────────────────────────────────────────
# Percentage checks
# ──────────────────────────────────────────────

def test_check_percentages_flags_out_of_range_and_non_numeric():
    rows = [{"p": "0.4"}, {"p": "1.2"}, {"p": "abc"}, {"p": None}, {"p": 0}]

    violations = check_percentages(rows, ["p"])

    assert [(v["row"], v["reason"]) for v in violations] == [(1, "out of range"), (2, "not numeric")]


async def test_percentage_violations_recorded_without_aborting(clock):
    record = {"id": "ad-1", "demographic_distribution": [
        {"age": "18-24", "percentage": "0.7"},
        {"age": "25-34", "percentage": "1.3"},
    ]}

    session = await harvest(ScriptedFetch([Page(records=[record], next_cursor=None)]),
                            ["demographic_distribution"], percentage_fields=["percentage"],
                            sleep=clock.sleep, clock=clock)

    assert session.status is HarvestStatus.COMPLETE
    assert len(session.violations) == 1
    assert session.violations[0]["value"] == "1.3"


# ──────────────────────────────────────────────
# Config and session
# ──────────────────────────────────────────────

@pytest.mark.parametrize("kwargs", [
    {"limit": 0},
    {"max_pages": 0},
    {"min_delay": -1},
    {"identity_fields": ()},
    {"magnitude_errors": "explode"},
])
def test_invalid_config_is_rejected(kwargs):
    with pytest.raises(ValidationError):
        HarvestConfig(**kwargs)


async def test_run_harvest_with_explicit_config_and_sync_fetch():
    def fetch(cursor):
        return [{"id": 1, "title": "x"}], None

    session = await run_harvest(fetch, HarvestConfig(identity_fields="id"), name="sync")

    assert session.name == "sync"
    assert session.rows == [{"id": 1, "title": "x"}]
    assert session.finalized


async def test_session_frame_has_union_columns(clock):
    pages = [
        Page(records=[{"id": "a", "x": 1}], next_cursor="c1"),
        Page(records=[{"id": "b", "y": 2}], next_cursor=None),
    ]
    session = await harvest(ScriptedFetch(pages), sleep=clock.sleep, clock=clock)

    frame = session.to_frame()

    assert list(frame.columns) == ["id", "x", "y"]
    assert len(frame) == 2
    assert session.summary()["status"] == "Complete"
