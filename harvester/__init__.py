"""harvester – paginated, rate-limited, resumable API harvesting.

Public interface:

* :func:`harvest` / :func:`run_harvest` – fetch capability → finalized :class:`HarvestSession`
* :class:`Paginator`                    – rate-limited page iterator
* :func:`normalize_record`              – RawRecord → FlatRows (breakdown unnesting)
* :func:`parse_magnitude`               – ``"680K"`` → ``680000``
"""

from .errors import (  # noqa: F401
    AmbiguousBreakdownError,
    DuplicateCursorError,
    FatalFetchError,
    FetchError,
    HarvestError,
    NormalizationError,
    ParseError,
    RateLimitedError,
    RateLimitExceededError,
    RecordShapeError,
    TransientFetchError,
)
from .magnitude import parse_magnitude, parse_magnitude_range  # noqa: F401
from .models import BackoffPolicy, HarvestConfig, HarvestSession, HarvestStatus, Page  # noqa: F401
from .normalizer import normalize_record, normalize_records  # noqa: F401
from .orchestrator import check_percentages, harvest, run_harvest  # noqa: F401
from .paginator import Paginator  # noqa: F401
