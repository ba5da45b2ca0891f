"""
YouTube Data API v3 page source: keyword search over videos.

Cursor is the API's ``nextPageToken``.  With ``include_statistics`` each
page is followed by one ``videos.list`` call so records carry
``statistics.viewCount`` and friends (returned by the API as strings; declare
them as magnitude fields to get integers).
"""

import logging
from typing import Any, Dict, List, Optional

from harvester.errors import FatalFetchError, FetchError, RateLimitedError, TransientFetchError
from harvester.infra.http import HttpClient
from harvester.interfaces import PageSource
from harvester.models import Cursor, Page

logger = logging.getLogger(__name__)

API = "https://www.googleapis.com/youtube/v3"
MAX_RESULTS = 50

THROTTLE_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "dailyLimitExceeded"}
TRANSIENT_REASONS = {"backendError", "internalError"}


def classify_youtube_error(status: int, payload: Any) -> Optional[FetchError]:
    """Google APIs report throttling as 403 with a reason in ``error.errors``."""
    if not isinstance(payload, dict) or "error" not in payload:
        return None
    err = payload["error"] or {}
    reasons = {e.get("reason") for e in err.get("errors", []) if isinstance(e, dict)}
    message = f"YouTube API {err.get('code', status)}: {err.get('message', 'unknown')}"
    if reasons & THROTTLE_REASONS:
        return RateLimitedError(message)
    if reasons & TRANSIENT_REASONS or status >= 500:
        return TransientFetchError(message)
    return FatalFetchError(message)


class YouTubeSearchFetcher(PageSource):
    """Video search results, ``max_results`` per page."""

    name = "YouTubeSearchFetcher"
    identity_fields = ("id.videoId",)

    def __init__(
        self,
        *,
        api_key: str,
        query: str,
        max_results: int = MAX_RESULTS,
        order: str = "relevance",
        published_after: Optional[str] = None,
        channel_id: Optional[str] = None,
        include_statistics: bool = False,
        http: Optional[HttpClient] = None,
    ):
        if not api_key:
            raise ValueError("api_key is required")
        self._key = api_key
        self._params: Dict[str, Any] = {
            "part": "snippet",
            "type": "video",
            "q": query,
            "order": order,
            "maxResults": min(max_results, MAX_RESULTS),
        }
        if published_after:
            self._params["publishedAfter"] = published_after
        if channel_id:
            self._params["channelId"] = channel_id
        self._include_statistics = include_statistics
        self._http = http or HttpClient(default_headers={"Accept": "application/json"})

    async def close(self) -> None:
        await self._http.close()

    async def _statistics(self, video_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        payload = await self._http.get_json(
            f"{API}/videos",
            params={"part": "statistics", "id": ",".join(video_ids), "key": self._key},
            classify=classify_youtube_error,
        )
        return {item["id"]: item.get("statistics", {}) for item in (payload or {}).get("items", [])}

    async def fetch_page(self, cursor: Optional[Cursor]) -> Page:
        params = {**self._params, "key": self._key}
        if cursor is not None:
            params["pageToken"] = cursor

        payload = await self._http.get_json(f"{API}/search", params=params, classify=classify_youtube_error)
        if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
            raise FatalFetchError(f"unexpected search response shape: {str(payload)[:200]}")

        # search.list occasionally returns channel/playlist hits despite type=video
        items = [i for i in payload["items"] if isinstance(i.get("id"), dict) and i["id"].get("videoId")]

        if self._include_statistics and items:
            stats = await self._statistics([i["id"]["videoId"] for i in items])
            items = [{**i, "statistics": stats.get(i["id"]["videoId"], {})} for i in items]

        logger.debug("search – %d video(s), next=%s", len(items), payload.get("nextPageToken"))
        return Page(records=items, next_cursor=payload.get("nextPageToken"))
