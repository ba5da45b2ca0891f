"""
Shared fixtures: scripted fetch stubs and a fake clock whose sleep advances time.
"""

from typing import Any, Callable, List, Optional

import pytest

from harvester.models import Page


class FakeClock:
    """Monotonic clock + sleep pair; sleeping advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedFetch:
    """Async fetch capability replaying a script of pages / exceptions.

    ``script`` items are either a :class:`Page` or an exception instance to
    raise.  Every call records the cursor it was given and the clock time.
    """

    def __init__(self, script: List[Any], clock: Optional[FakeClock] = None,
                 on_call: Optional[Callable[[int], None]] = None) -> None:
        self.script = list(script)
        self.calls: List[Any] = []
        self.call_times: List[float] = []
        self._clock = clock
        self._on_call = on_call

    async def __call__(self, cursor):
        self.calls.append(cursor)
        if self._clock is not None:
            self.call_times.append(self._clock.now)
        if self._on_call is not None:
            self._on_call(len(self.calls))
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def make_pages(n_pages: int, per_page: int, start: int = 0, prefix: str = "rec") -> List[Page]:
    """``n_pages`` pages of distinct records, cursors ``"c1"``, ``"c2"``, ... and ``None`` last."""
    pages = []
    idx = start
    for p in range(n_pages):
        records = []
        for _ in range(per_page):
            records.append({"id": f"{prefix}-{idx}", "title": f"item {idx}", "views": f"{idx}K"})
            idx += 1
        next_cursor = f"c{p + 1}" if p < n_pages - 1 else None
        pages.append(Page(records=records, next_cursor=next_cursor))
    return pages


@pytest.fixture
def clock():
    return FakeClock()
