"""
Database sink for persisting harvested rows to SQLite.
"""

import logging
from typing import Any, Dict, List, Optional

from harvester.interfaces import Sink
from harvester.models import HarvestSession
from harvester.infra.db import Database


logger = logging.getLogger(__name__)

#: ordinal of a row within its record (breakdown bucket number)
BUCKET_COLUMN = "bucket"


def _with_buckets(session: HarvestSession) -> List[Dict[str, Any]]:
    """Number the rows sharing an identity key 0..N-1 in session order.

    Counting per key keeps the ordinal unique even when ``allow_duplicates``
    lets the same key come back later in the session.
    """
    out: List[Dict[str, Any]] = []
    counts: Dict[tuple, int] = {}
    for row in session.rows:
        key = tuple(row.get(f) for f in session.identity_fields)
        bucket = counts.get(key, 0)
        counts[key] = bucket + 1
        out.append({**row, BUCKET_COLUMN: bucket})
    return out


class DatabaseSink(Sink):
    """Sink that upserts session rows into one table keyed by identity + bucket."""

    name = "DatabaseSink"

    def __init__(self, db_url: str = "harvest.db", table: Optional[str] = None, **kwargs):
        """Initialize DatabaseSink with configurable database URL and table."""
        self.db = Database(db_url)
        self.table = table

    async def handle(self, session: HarvestSession) -> None:
        """Persist all rows of ``session``."""
        if not session.rows:
            logger.info("No rows to persist for %s", session.name)
            return

        table = self.table or session.name.replace("-", "_")
        pk_columns = [*session.identity_fields, BUCKET_COLUMN]
        rows = _with_buckets(session)

        await self.db.ensure_table(table, session.columns, pk_columns)
        for row in rows:
            await self.db.upsert(table, row, pk_columns, commit=False)
        await self.db.commit()
        logger.info("Upserted %d row(s) into %s", len(rows), table)

    async def close(self) -> None:
        """Close the database connection."""
        await self.db.close()
