"""
Neighborhood News: RSS Feed Collector
Fetches and parses RSS/Atom feeds into FeedEntry records.
Uses ETag/Last-Modified for conditional fetching to avoid re-fetching unchanged data.
"""

from __future__ import annotations
import calendar
import re
import threading
from datetime import datetime, timezone
from typing import Optional

import feedparser
import requests
from bs4 import BeautifulSoup
from dateutil import parser as dateparser

from pipeline.src.errors import FeedFetchError
from pipeline.src.models import FeedEntry

USER_AGENT = "NeighborhoodNews/1.0 (+https://neighborhood-news.local/about)"
ACCEPT = "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8"

# In-memory conditional GET cache, shared by collector worker threads
_etag_cache: dict[str, str] = {}
_lastmod_cache: dict[str, str] = {}
_cache_lock = threading.Lock()


def clear_cache() -> None:
    with _cache_lock:
        _etag_cache.clear()
        _lastmod_cache.clear()


def _clean_html(html: str) -> str:
    """Strip HTML tags and clean whitespace."""
    soup = BeautifulSoup(html, "html.parser")
    text = soup.get_text(separator=" ")
    return re.sub(r"\s+", " ", text).strip()


def _parse_date(entry) -> Optional[datetime]:
    """Parse date from feedparser entry."""
    for field in ("published_parsed", "updated_parsed", "created_parsed"):
        t = getattr(entry, field, None)
        if t:
            try:
                return datetime.fromtimestamp(calendar.timegm(t), tz=timezone.utc)
            except (OverflowError, ValueError):
                pass
    # feedparser leaves unusual date formats unparsed
    for field in ("published", "updated", "pubDate"):
        raw = entry.get(field)
        if raw:
            try:
                parsed = dateparser.parse(raw)
            except (ValueError, OverflowError):
                continue
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    return None


def _entry_text(entry) -> str:
    if entry.get("content"):
        return _clean_html(entry.content[0].get("value", ""))
    if entry.get("summary"):
        return _clean_html(entry.summary)
    if entry.get("description"):
        return _clean_html(entry.description)
    return ""


def parse_feed(body: bytes | str) -> list[FeedEntry]:
    """
    Parse an RSS or Atom document.

    Raises:
        FeedFetchError: the body is neither RSS nor Atom
    """
    feed = feedparser.parse(body)
    if feed.bozo and not feed.entries:
        reason = getattr(feed, "bozo_exception", "unrecognized format")
        raise FeedFetchError(f"Feed parse error: {reason}")
    if not feed.entries and not feed.get("version"):
        raise FeedFetchError("Feed parse error: not an RSS or Atom document")

    entries = []
    for entry in feed.entries:
        title = _clean_html(entry.get("title", ""))
        entries.append(
            FeedEntry(
                title=title,
                content_text=_entry_text(entry),
                url=entry.get("link", "").strip(),
                guid=entry.get("id"),
                published_at=_parse_date(entry),
            )
        )
    return entries


def fetch_feed(url: str, timeout: float = 10) -> list[FeedEntry]:
    """
    Fetch and parse an RSS/Atom feed.
    Uses conditional GET (ETag/Last-Modified) to skip unchanged feeds.

    Raises:
        FeedFetchError: transport failure, non-200 status, or unparseable body
    """
    headers = {"User-Agent": USER_AGENT, "Accept": ACCEPT}
    with _cache_lock:
        etag = _etag_cache.get(url)
        lastmod = _lastmod_cache.get(url)
    if etag:
        headers["If-None-Match"] = etag
    if lastmod:
        headers["If-Modified-Since"] = lastmod

    try:
        resp = requests.get(url, headers=headers, timeout=timeout)
    except requests.RequestException as e:
        raise FeedFetchError(f"Failed to fetch {url}: {e}") from e

    if resp.status_code == 304:
        return []  # Not modified
    if resp.status_code != 200:
        raise FeedFetchError(f"HTTP {resp.status_code} from {url}")

    entries = parse_feed(resp.content)

    # Only cache validators once the body parsed, so a bad body is refetched
    with _cache_lock:
        if "ETag" in resp.headers:
            _etag_cache[url] = resp.headers["ETag"]
        if "Last-Modified" in resp.headers:
            _lastmod_cache[url] = resp.headers["Last-Modified"]
    return entries
