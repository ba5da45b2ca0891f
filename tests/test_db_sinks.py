"""
Tests for SQLite checkpoints and the database / CSV sinks.
"""

from pathlib import Path

import pandas as pd

from harvester.infra.db import Database, resolve_db_path
from harvester.models import HarvestSession, HarvestStatus
from sinks.csv_sink import CsvSink
from sinks.database_sink import DatabaseSink


def _session(**overrides):
    """Factory for a finalized session with one two-bucket record and one plain record."""
    base = dict(
        name="meta_ads",
        identity_fields=("id",),
        rows=[
            {"id": "1", "page_name": "Org", "age": "18-24", "percentage": "0.6"},
            {"id": "1", "page_name": "Org", "age": "25-34", "percentage": "0.4"},
            {"id": "2", "page_name": "Other", "age": None, "percentage": None},
        ],
        seen_keys={("1",), ("2",)},
        cursor="AFT9",
        pages_fetched=3,
        records_accepted=2,
    )
    base.update(overrides)
    return HarvestSession(**base).finalize(HarvestStatus.PARTIAL_PAGE_LIMIT)


# ──────────────────────────────────────────────
# Checkpoints
# ──────────────────────────────────────────────

async def test_checkpoint_round_trip(tmp_path):
    async with Database(str(tmp_path / "state" / "checkpoints.db")) as db:
        await db.save_checkpoint(_session())
        restored = await db.load_checkpoint("meta_ads")

    assert restored.cursor == "AFT9"
    assert restored.pages_fetched == 3
    assert restored.records_accepted == 2
    assert restored.seen_keys == {("1",), ("2",)}
    assert restored.rows == []
    assert not restored.finalized


async def test_checkpoint_overwrites_and_clears(tmp_path):
    async with Database(f"sqlite+aiosqlite:///{tmp_path / 'cp.db'}") as db:
        await db.save_checkpoint(_session())
        await db.save_checkpoint(_session(cursor={"offset": 200}, pages_fetched=5))
        restored = await db.load_checkpoint("meta_ads")
        assert restored.cursor == {"offset": 200}
        assert restored.pages_fetched == 5

        await db.clear_checkpoint("meta_ads")
        assert await db.load_checkpoint("meta_ads") is None


async def test_unknown_checkpoint_is_none(tmp_path):
    async with Database(str(tmp_path / "cp.db")) as db:
        assert await db.load_checkpoint("never-ran") is None


# ──────────────────────────────────────────────
# Sinks
# ──────────────────────────────────────────────

async def test_database_sink_keys_rows_by_identity_and_bucket(tmp_path):
    db_path = str(tmp_path / "harvest.db")
    sink = DatabaseSink(db_url=db_path, table="meta_ads")
    await sink.handle(_session())
    # re-delivering the same session must not duplicate rows
    await sink.handle(_session())
    await sink.close()

    async with Database(db_path) as db:
        rows = await db.fetch_all('SELECT "id", "bucket", "age" FROM "meta_ads" ORDER BY "id", "bucket"')

    assert [tuple(r) for r in rows] == [("1", 0, "18-24"), ("1", 1, "25-34"), ("2", 0, None)]


async def test_database_sink_keeps_repeated_keys_apart(tmp_path):
    db_path = str(tmp_path / "harvest.db")
    sink = DatabaseSink(db_url=db_path, table="snapshots")
    await sink.handle(_session(rows=[
        {"id": "1", "views": 10},
        {"id": "2", "views": 5},
        {"id": "1", "views": 12},
    ]))
    await sink.close()

    async with Database(db_path) as db:
        rows = await db.fetch_all('SELECT "id", "bucket", "views" FROM "snapshots" ORDER BY "id", "bucket"')

    assert [tuple(r) for r in rows] == [("1", 0, 10), ("1", 1, 12), ("2", 0, 5)]


async def test_database_sink_adds_new_columns(tmp_path):
    db_path = str(tmp_path / "harvest.db")
    sink = DatabaseSink(db_url=db_path)
    await sink.handle(_session(name="yt-videos", rows=[{"id": "1", "title": "a"}]))
    await sink.handle(_session(name="yt-videos", rows=[{"id": "2", "title": "b", "statistics.viewCount": 15}]))
    await sink.close()

    async with Database(db_path) as db:
        rows = await db.fetch_all('SELECT * FROM "yt_videos" ORDER BY "id"')

    assert rows[0]["statistics.viewCount"] is None
    assert rows[1]["statistics.viewCount"] == 15


async def test_csv_sink_writes_union_columns(tmp_path):
    sink = CsvSink(directory=str(tmp_path / "csv"), filename="out.csv")
    await sink.handle(_session())

    frame = pd.read_csv(tmp_path / "csv" / "out.csv", dtype=str)
    assert list(frame.columns) == ["id", "page_name", "age", "percentage"]
    assert len(frame) == 3


async def test_sinks_skip_empty_sessions(tmp_path):
    csv = CsvSink(directory=str(tmp_path / "csv"))
    await csv.handle(_session(rows=[]))
    assert not (tmp_path / "csv").exists()


def test_resolve_db_path_accepts_urls_and_paths():
    assert resolve_db_path("data/harvest.db") == Path("data/harvest.db")
    assert resolve_db_path("sqlite:///data/harvest.db") == Path("data/harvest.db")
    assert resolve_db_path("sqlite+aiosqlite:////var/lib/harvest.db") == Path("/var/lib/harvest.db")
