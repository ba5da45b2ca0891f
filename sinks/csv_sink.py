"""
CSV sink – writes a session's rows to a file via pandas.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

from harvester.interfaces import Sink
from harvester.models import HarvestSession


logger = logging.getLogger(__name__)


class CsvSink(Sink):
    """Write rows to ``<directory>/<pipeline>_<UTC timestamp>.csv``."""

    name = "CsvSink"

    def __init__(self, directory: str = "data", filename: str = None, **kwargs):
        self.directory = Path(directory)
        self.filename = filename

    async def handle(self, session: HarvestSession) -> None:
        if not session.rows:
            logger.info("No rows to write for %s", session.name)
            return

        self.directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        path = self.directory / (self.filename or f"{session.name}_{stamp}.csv")

        df = session.to_frame()
        df.to_csv(path, index=False)
        logger.info("Wrote %d row(s) × %d column(s) to %s", len(df), len(df.columns), path)
