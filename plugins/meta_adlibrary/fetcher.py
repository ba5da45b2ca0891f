"""meta_adlibrary.fetcher – page source for the Meta Ad Library API.

Pages through ``GET /{version}/ads_archive`` using the Graph API cursor
(``paging.cursors.after``).  The upstream signals the last page by omitting
``paging.next``.

Throttling on the Graph API usually arrives as HTTP 400/403 with an error
code in the body rather than as a 429, so the body is classified first:

* codes 4, 17, 32, 613 and 80000–80014 → :class:`RateLimitedError`
* code 1 / 2, ``is_transient`` or HTTP 5xx      → :class:`TransientFetchError`
* code 190 (invalid token) and everything else     → :class:`FatalFetchError`
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from harvester.errors import FatalFetchError, FetchError, RateLimitedError, TransientFetchError
from harvester.infra.http import HttpClient
from harvester.interfaces import PageSource
from harvester.models import Cursor, Page

logger = logging.getLogger(__name__)

__all__ = ["AdLibraryFetcher", "classify_graph_error"]


# --------------------------------------------------------------------------- #
GRAPH_URL = "https://graph.facebook.com"
DEFAULT_VERSION = "v18.0"
PAGE_SIZE = 100  # upstream maximum per request

DEFAULT_FIELDS = (
    "id",
    "page_id",
    "page_name",
    "ad_creation_time",
    "ad_delivery_start_time",
    "ad_delivery_stop_time",
    "ad_snapshot_url",
    "currency",
    "impressions",
    "spend",
    "publisher_platforms",
    "demographic_distribution",
)

THROTTLE_CODES = frozenset({4, 17, 32, 613}) | frozenset(range(80000, 80015))
TRANSIENT_CODES = frozenset({1, 2})


# --------------------------------------------------------------------------- #
def classify_graph_error(status: int, payload: Any) -> Optional[FetchError]:
    """Map a Graph API error body onto the harvest error taxonomy."""
    if not isinstance(payload, dict) or "error" not in payload:
        return None
    err = payload["error"] or {}
    code = err.get("code")
    message = f"Graph API error {code}: {err.get('message', 'unknown')}"
    if code in THROTTLE_CODES:
        return RateLimitedError(message)
    if code in TRANSIENT_CODES or err.get("is_transient") or status >= 500:
        return TransientFetchError(message)
    return FatalFetchError(message)


# --------------------------------------------------------------------------- #
class AdLibraryFetcher(PageSource):
    """Ad Library ``ads_archive`` search, one Graph API page per call.

    The access token is passed in explicitly and only ever sent as a request
    parameter; logged URLs have it masked.
    """

    name = "AdLibraryFetcher"
    breakdown_fields = ("demographic_distribution",)
    identity_fields = ("id",)

    # ------------------------------------------------------------------- #
    def __init__(
        self,
        *,
        access_token: str,
        search_terms: str = "",
        ad_reached_countries: Sequence[str] = ("US",),
        ad_active_status: str = "ALL",
        ad_type: str = "POLITICAL_AND_ISSUE_ADS",
        search_page_ids: Optional[Sequence[int]] = None,
        fields: Sequence[str] = DEFAULT_FIELDS,
        page_size: int = PAGE_SIZE,
        api_version: str = DEFAULT_VERSION,
        http: Optional[HttpClient] = None,
    ) -> None:
        if not access_token:
            raise ValueError("access_token is required")
        self._token = access_token
        self._url = f"{GRAPH_URL}/{api_version}/ads_archive"
        self._params: Dict[str, Any] = {
            "ad_reached_countries": json.dumps(list(ad_reached_countries)),
            "ad_active_status": ad_active_status.upper(),
            "ad_type": ad_type.upper(),
            "fields": ",".join(fields),
            "limit": min(page_size, PAGE_SIZE),
        }
        if search_page_ids:
            self._params["search_page_ids"] = ",".join(str(p) for p in search_page_ids[:10])
        else:
            self._params["search_terms"] = search_terms

        self._http = http or HttpClient(default_headers={"User-Agent": "harvest-platform/0.1"})

    # ------------------------------------------------------------------- #
    async def close(self) -> None:
        await self._http.close()

    # ------------------------------------------------------------------- #
    def _request_params(self, cursor: Optional[Cursor]) -> Dict[str, Any]:
        params = {**self._params, "access_token": self._token}
        if cursor is not None:
            params["after"] = cursor
        return params

    async def fetch_page(self, cursor: Optional[Cursor]) -> Page:
        payload = await self._http.get_json(
            self._url,
            params=self._request_params(cursor),
            classify=classify_graph_error,
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise FatalFetchError(f"unexpected ads_archive response shape: {str(payload)[:200]}")

        records: List[Dict[str, Any]] = payload["data"]
        paging = payload.get("paging") or {}
        next_cursor = (paging.get("cursors") or {}).get("after") if paging.get("next") else None

        logger.debug("ads_archive – %d ad(s), more=%s", len(records), next_cursor is not None)
        return Page(records=records, next_cursor=next_cursor)
