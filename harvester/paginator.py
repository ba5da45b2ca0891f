"""
paginator.py – drives a fetch capability page by page.

Requests are strictly sequential per paginator: one in-flight fetch, a
minimum spacing between call starts, and exponential back-off on throttling
and transient failures.  Termination is checked after every page:

* upstream returned no next cursor          → ``Complete``
* caller's stop predicate fired (limit)     → ``LimitReached``
* consumer held a page it could not finish  → ``LimitReached``, cursor kept
* ``max_pages`` fetch calls made            → ``PartialPageLimit``
* cancel event set (checked between pages)  → ``Cancelled``
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
import random
import time
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Set, Union

import aiohttp

from .errors import (
    DuplicateCursorError,
    FatalFetchError,
    RateLimitedError,
    RateLimitExceededError,
    TransientFetchError,
)
from .models import BackoffPolicy, Cursor, HarvestStatus, Page

logger = logging.getLogger(__name__)

__all__ = ["FetchFn", "Paginator"]

FetchFn = Callable[[Optional[Cursor]], Union[Awaitable[Any], Any]]

_TRANSIENT = (
    TransientFetchError,
    asyncio.TimeoutError,
    ConnectionError,
    aiohttp.ClientConnectionError,
)


def _cursor_token(cursor: Any) -> str:
    return json.dumps(cursor, sort_keys=True, default=str)


def _is_async_callable(fn: Any) -> bool:
    return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(getattr(fn, "__call__", None))


class Paginator:
    """Rate-limited, cancellable page iterator over ``fetch(cursor) -> Page``.

    ``fetch`` may be a coroutine function or a plain function (run in a worker
    thread, e.g. a blocking browser-driven collector).  It signals throttling
    by raising :class:`RateLimitedError`, network trouble with
    :class:`TransientFetchError`; anything else is fatal.
    """

    def __init__(
        self,
        fetch: FetchFn,
        *,
        max_pages: int = 10,
        min_delay: float = 0.0,
        fetch_timeout: Optional[float] = None,
        backoff: Optional[BackoffPolicy] = None,
        cancel_event: Optional[asyncio.Event] = None,
        start_cursor: Optional[Cursor] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        if min_delay < 0:
            raise ValueError("min_delay must be >= 0")
        self._fetch = fetch
        self._is_async = _is_async_callable(fetch)
        self._max_pages = max_pages
        self._min_delay = min_delay
        self._timeout = fetch_timeout
        self._backoff = backoff or BackoffPolicy()
        self._cancel = cancel_event
        self._sleep = sleep
        self._clock = clock

        self._last_call: Optional[float] = None
        self._seen_cursors: Set[str] = set()
        self._held = False
        # worker thread of a sync fetch that outlived its timeout
        self._straggler: Optional[asyncio.Future] = None

        self.cursor: Optional[Cursor] = start_cursor
        self.pages_fetched = 0
        self.backoff_delays: List[float] = []
        self.status: Optional[HarvestStatus] = None

    # ------------------------------------------------------------------- #
    @property
    def cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    def hold_page(self) -> None:
        """Keep :attr:`cursor` on the page just yielded and stop after it.

        Called by a consumer whose limit cut that page short, so a resumed
        run fetches the page again and picks up the records left on it.
        """
        self._held = True

    # ------------------------------------------------------------------- #
    async def pages(self, should_stop: Callable[[], bool] = lambda: False) -> AsyncIterator[Page]:
        """Yield pages until a termination condition fires; sets :attr:`status`.

        ``should_stop`` is evaluated after the consumer has processed each
        page and reports whether the caller's record limit is met.
        """
        self._seen_cursors.add(_cursor_token(self.cursor))

        while True:
            if self.cancelled:
                logger.info("Harvest cancelled after %d page(s)", self.pages_fetched)
                self.status = HarvestStatus.CANCELLED
                return

            page = await self._fetch_with_retry(self.cursor)
            self.pages_fetched += 1
            logger.debug(
                "Page %d – %d record(s), next cursor %s",
                self.pages_fetched,
                len(page.records),
                "none" if page.done else "present",
            )

            self._held = False
            yield page

            if self._held:
                self.status = HarvestStatus.LIMIT_REACHED
                logger.info(
                    "Record limit reached part-way through page %d, cursor kept on it",
                    self.pages_fetched,
                )
                return

            if page.done:
                self.cursor = None
                self.status = HarvestStatus.COMPLETE
                logger.info("Harvest complete after %d page(s)", self.pages_fetched)
                return

            if should_stop():
                self.cursor = page.next_cursor
                self.status = HarvestStatus.LIMIT_REACHED
                logger.info("Record limit reached after %d page(s)", self.pages_fetched)
                return

            token = _cursor_token(page.next_cursor)
            if token in self._seen_cursors:
                # re-fetching this page would loop again
                raise DuplicateCursorError(
                    f"upstream repeated cursor {page.next_cursor!r} after page {self.pages_fetched}",
                    cursor=self.cursor,
                )
            self._seen_cursors.add(token)
            self.cursor = page.next_cursor

            if self.pages_fetched >= self._max_pages:
                self.status = HarvestStatus.PARTIAL_PAGE_LIMIT
                logger.info("Page limit (%d) reached, stopping with cursor pending", self._max_pages)
                return

    # ------------------------------------------------------------------- #
    async def _respect_min_delay(self) -> None:
        if self._last_call is None or self._min_delay <= 0:
            return
        remaining = self._min_delay - (self._clock() - self._last_call)
        if remaining > 0:
            await self._sleep(remaining)

    async def _call(self, cursor: Optional[Cursor]) -> Any:
        if self._is_async:
            pending = self._fetch(cursor)
            if self._timeout is None:
                return await pending
            return await asyncio.wait_for(pending, self._timeout)

        worker = asyncio.ensure_future(asyncio.to_thread(self._fetch, cursor))
        if self._timeout is None:
            return await worker
        try:
            # a thread cannot be cancelled, so keep the worker alive past the timeout
            return await asyncio.wait_for(asyncio.shield(worker), self._timeout)
        except asyncio.TimeoutError:
            # mark the outcome retrieved even if no retry ever awaits it
            worker.add_done_callback(lambda f: f.cancelled() or f.exception())
            self._straggler = worker
            raise

    async def _await_straggler(self) -> None:
        """Block until a timed-out sync fetch has returned; its result is dropped."""
        worker, self._straggler = self._straggler, None
        if worker is None:
            return
        logger.debug("Waiting for timed-out fetch to return before calling again")
        await asyncio.wait({worker})
        if not worker.cancelled() and worker.exception() is not None:
            logger.debug("Timed-out fetch finished with %r", worker.exception())

    async def _fetch_with_retry(self, cursor: Optional[Cursor]) -> Page:
        """One logical page fetch: retries throttling and transient errors."""
        attempt = 0
        while True:
            await self._await_straggler()
            await self._respect_min_delay()
            self._last_call = self._clock()

            retry_after: Optional[float] = None
            try:
                return Page.coerce(await self._call(cursor))
            except RateLimitedError as exc:
                last_exc: Exception = exc
                throttled = True
                retry_after = exc.retry_after
            except FatalFetchError as exc:
                if exc.cursor is None:
                    exc.cursor = cursor
                raise
            except _TRANSIENT as exc:
                last_exc = exc
                throttled = False
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                raise FatalFetchError(f"fetch failed: {exc}", cursor=cursor) from exc

            attempt += 1
            if attempt > self._backoff.max_retries:
                logger.error(
                    "Giving up on cursor %r after %d attempt(s): %s", cursor, attempt, last_exc
                )
                if throttled:
                    raise RateLimitExceededError(
                        f"still throttled after {self._backoff.max_retries} retries", cursor=cursor
                    ) from last_exc
                raise TransientFetchError(
                    f"transient failures persisted after {self._backoff.max_retries} retries: {last_exc}",
                    cursor=cursor,
                ) from last_exc

            delay = self._backoff.delay_for(attempt)
            if retry_after is not None:
                delay = max(delay, retry_after)
            if self._backoff.jitter:
                delay += random.uniform(0, self._backoff.jitter)
            self.backoff_delays.append(delay)

            logger.warning(
                "%s (attempt %d/%d – will retry in %.1fs): %s",
                "Throttled" if throttled else "Transient fetch failure",
                attempt,
                self._backoff.max_retries,
                delay,
                str(last_exc).splitlines()[0] if str(last_exc) else type(last_exc).__name__,
            )
            await self._sleep(delay)
