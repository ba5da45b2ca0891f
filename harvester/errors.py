"""
Error taxonomy for the harvest engine.

Errors that abort a harvest carry the partial :class:`HarvestSession` and the
cursor to resume from, so nothing collected before the failure is lost.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .models import HarvestSession


class HarvestError(Exception):
    """Base class for everything raised by the harvester package.

    ``resumable`` is false when re-running from ``cursor`` would hit the
    same failure again.
    """

    resumable = True

    def __init__(
        self,
        message: str = "",
        *,
        session: Optional["HarvestSession"] = None,
        cursor: Any = None,
    ) -> None:
        super().__init__(message)
        self.session = session
        self.cursor = cursor

    def attach(self, session: "HarvestSession", cursor: Any = None) -> "HarvestError":
        """Attach partial results (and resume cursor, if not already set)."""
        self.session = session
        if self.cursor is None:
            self.cursor = cursor
        return self


# --------------------------------------------------------------------------- #
# Magnitude parser
class ParseError(HarvestError, ValueError):
    """Malformed or unrecognized abbreviated magnitude such as ``"12X"``."""

    def __init__(self, text: Any, reason: str = "malformed magnitude", **kwargs) -> None:
        super().__init__(f"{reason}: {text!r}", **kwargs)
        self.text = text
        self.reason = reason


# --------------------------------------------------------------------------- #
# Normalizer
class NormalizationError(HarvestError):
    """A record could not be shaped into flat rows."""


class AmbiguousBreakdownError(NormalizationError):
    """More than one breakdown dimension is present on the same record."""

    def __init__(self, fields, **kwargs) -> None:
        self.fields = tuple(fields)
        super().__init__(
            f"record has several non-empty breakdown fields: {', '.join(self.fields)}",
            **kwargs,
        )


class RecordShapeError(NormalizationError):
    """A record (or one of its fields) does not have the expected shape."""


# --------------------------------------------------------------------------- #
# Fetching / pagination
class FetchError(HarvestError):
    """Base for failures raised by a fetch capability."""


class RateLimitedError(FetchError):
    """Raised by a fetch capability when the upstream reports throttling.

    ``retry_after`` is the upstream hint in seconds, if one was given.
    """

    def __init__(self, message: str = "rate limited", *, retry_after: Optional[float] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class TransientFetchError(FetchError):
    """Network or timeout class failure; retried with backoff."""


class FatalFetchError(FetchError):
    """Non-retryable failure (malformed response, auth rejection, ...)."""


class RateLimitExceededError(FetchError):
    """Throttling persisted beyond the configured number of retries."""


class DuplicateCursorError(FatalFetchError):
    """The upstream handed back a cursor already consumed in this session."""

    resumable = False
