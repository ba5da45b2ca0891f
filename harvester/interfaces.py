"""
Core interfaces for the harvest platform.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Tuple

from .models import Cursor, HarvestSession, Page


class PageSource(ABC):
    """Abstract base class for page sources.

    A page source is the fetch capability the paginator drives: given a
    cursor (``None`` for the first page) it returns one :class:`Page`.
    Credentials are handed to the constructor explicitly; sources never read
    them from the environment.
    """

    #: breakdown / identity defaults, overridable from pipeline config
    breakdown_fields: Tuple[str, ...] = ()
    identity_fields: Tuple[str, ...] = ("id",)

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this source."""
        pass

    @abstractmethod
    async def fetch_page(self, cursor: Optional[Cursor]) -> Page:
        """Fetch the page addressed by ``cursor``."""
        pass

    async def __call__(self, cursor: Optional[Cursor]) -> Page:
        return await self.fetch_page(cursor)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_):
        await self.close()

    async def close(self) -> None:
        """Release network resources; no-op by default."""
        pass


class Sink(ABC):
    """Abstract base class for harvest sinks.

    Sinks receive the finalized session (or the partial one attached to an
    error) and persist its rows.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this sink."""
        pass

    @abstractmethod
    async def handle(self, session: HarvestSession) -> None:
        """Persist a session."""
        pass

    async def close(self) -> None:
        pass
