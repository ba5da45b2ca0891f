"""
Database infrastructure with SQLite and async support.

Besides generic upserts this keeps one checkpoint per named harvest (cursor,
status, counters, seen identity keys) so an interrupted or rate-limited
harvest can be resumed by a later process.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from ..models import HarvestSession


logger = logging.getLogger(__name__)

#: bumped whenever the checkpoint table changes shape
SCHEMA_VERSION = 1


def _quote(identifier: str) -> str:
    """Quote a column/table name; harvested columns may contain dots."""
    return '"' + identifier.replace('"', '""') + '"'


def resolve_db_path(db_url: str) -> Path:
    """Accept a plain path or a ``sqlite[+aiosqlite]:///path`` URL."""
    if db_url.startswith("sqlite"):
        _, _, rest = db_url.partition("://")
        # sqlite:///relative.db and sqlite:////abs/path.db
        return Path(rest[1:] if rest.startswith("/") else rest)
    return Path(db_url)


class Database:
    """Async SQLite database wrapper."""

    def __init__(self, db_path: str = "harvest.db"):
        self.db_path = resolve_db_path(str(db_path))
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Open the connection (creating parent directories) and ensure the schema."""
        if self._connection:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path, timeout=30)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA busy_timeout=30000;")
        await self._ensure_schema()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *_) -> None:
        await self.close()

    async def execute(self, sql: str, params: Tuple[Any, ...] = ()) -> aiosqlite.Cursor:
        """Execute a SQL statement."""
        if not self._connection:
            await self.connect()
        return await self._connection.execute(sql, params)

    async def fetch_one(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        """Fetch one row."""
        cursor = await self.execute(sql, params)
        return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        """Fetch all rows."""
        cursor = await self.execute(sql, params)
        return await cursor.fetchall()

    # ------------------------------------------------------------------ #
    # Harvested rows
    async def ensure_table(self, table: str, columns: Iterable[str], pk_columns: List[str]) -> None:
        """Create ``table`` if missing and add any columns it does not have yet.

        Harvested column sets grow as new breakdown keys appear, so columns
        are added lazily; all values are stored with SQLite's dynamic typing.
        """
        existing = await self.fetch_all(f"PRAGMA table_info({_quote(table)})")
        known = {row["name"] for row in existing}
        wanted = list(dict.fromkeys([*pk_columns, *columns]))

        if not known:
            cols_sql = ", ".join(_quote(c) for c in wanted)
            pk_sql = ", ".join(_quote(c) for c in pk_columns)
            await self.execute(f"CREATE TABLE {_quote(table)} ({cols_sql}, PRIMARY KEY ({pk_sql}))")
            logger.info("Created table %s with %d column(s)", table, len(wanted))
        else:
            for col in wanted:
                if col not in known:
                    await self.execute(f"ALTER TABLE {_quote(table)} ADD COLUMN {_quote(col)}")
                    logger.debug("Added column %s.%s", table, col)
        await self._connection.commit()

    async def upsert(
        self,
        table: str,
        data: Dict[str, Any],
        pk_columns: List[str],
        *,
        commit: bool = True,
    ) -> None:
        """Upsert data into a table."""
        columns = list(data.keys())
        placeholders = ", ".join("?" * len(columns))
        values = list(data.values())

        # Build the conflict resolution clause
        update_columns = [col for col in columns if col not in pk_columns]
        conflict = ", ".join(_quote(c) for c in pk_columns)
        if update_columns:
            update_clause = ", ".join(f"{_quote(col)} = excluded.{_quote(col)}" for col in update_columns)
            conflict_clause = f"ON CONFLICT({conflict}) DO UPDATE SET {update_clause}"
        else:
            conflict_clause = f"ON CONFLICT({conflict}) DO NOTHING"

        sql = f"""
            INSERT INTO {_quote(table)} ({', '.join(_quote(c) for c in columns)})
            VALUES ({placeholders})
            {conflict_clause}
        """

        await self.execute(sql, tuple(values))
        if commit:
            await self._connection.commit()

    async def commit(self) -> None:
        if self._connection:
            await self._connection.commit()

    # ------------------------------------------------------------------ #
    # Harvest checkpoints
    async def save_checkpoint(self, session: HarvestSession) -> None:
        """Persist where ``session`` stands so a later run can resume it."""
        await self.upsert(
            "harvest_checkpoints",
            {
                "name": session.name,
                "cursor": json.dumps(session.cursor),
                "status": session.status.value if session.status else None,
                "pages_fetched": session.pages_fetched,
                "records_accepted": session.records_accepted,
                "seen_keys": json.dumps([list(k) for k in session.seen_keys]),
                "updated_at": datetime.now(tz=timezone.utc).isoformat(),
            },
            ["name"],
        )
        logger.info("Checkpoint saved for %s (cursor %r)", session.name, session.cursor)

    async def load_checkpoint(self, name: str) -> Optional[HarvestSession]:
        """Return a resumable (row-less) session for ``name``, or ``None``."""
        row = await self.fetch_one("SELECT * FROM harvest_checkpoints WHERE name = ?", (name,))
        if row is None:
            return None
        return HarvestSession(
            name=row["name"],
            cursor=json.loads(row["cursor"]),
            pages_fetched=row["pages_fetched"],
            records_accepted=row["records_accepted"],
            seen_keys={tuple(k) for k in json.loads(row["seen_keys"])},
        )

    async def clear_checkpoint(self, name: str) -> None:
        await self.execute("DELETE FROM harvest_checkpoints WHERE name = ?", (name,))
        await self._connection.commit()

    async def _ensure_schema(self) -> None:
        cursor = await self._connection.execute("PRAGMA user_version")
        (version,) = await cursor.fetchone()
        if version >= SCHEMA_VERSION:
            return
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS harvest_checkpoints (
                name TEXT PRIMARY KEY,
                cursor TEXT,
                status TEXT,
                pages_fetched INTEGER NOT NULL DEFAULT 0,
                records_accepted INTEGER NOT NULL DEFAULT 0,
                seen_keys TEXT NOT NULL DEFAULT '[]',
                updated_at TIMESTAMP
            )
        """)
        await self._connection.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        await self._connection.commit()
        logger.debug("Database %s at schema version %d", self.db_path, SCHEMA_VERSION)
