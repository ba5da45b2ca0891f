"""
YouTube plugin – video search page source.
"""

from .fetcher import YouTubeSearchFetcher  # noqa: F401
