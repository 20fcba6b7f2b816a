"""
Milestone 1 Scenarios: Source Registry + Collection
Fingerprints, source validation, health counters, fresh collection, dedup on re-run,
one failing source among healthy ones.
"""

from __future__ import annotations
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

# Set up paths before importing pipeline modules
REPO_ROOT = Path(__file__).parent.parent.parent.parent
sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Each test gets its own fresh SQLite DB and operations log.
    Patches module-level Path constants (computed at import time).
    """
    from pipeline.src.kb import store as st
    from pipeline.src import ops_log
    from pipeline.src.collect import rss_collector

    monkeypatch.setattr(st, "DB_PATH", tmp_path / "newsroom.sqlite")
    monkeypatch.setattr(ops_log, "OPS_LOG_PATH", tmp_path / "pipeline-log.md")
    monkeypatch.setenv("COLLECTION_RETRY_DELAY", "0")
    monkeypatch.setenv("COLLECTION_MAX_RETRIES", "2")
    rss_collector.clear_cache()
    yield tmp_path
    rss_collector.clear_cache()


def _rss(items: list[tuple[str, str, str]]) -> bytes:
    """items: (title, link, description)"""
    body = "".join(
        f"<item><title>{t}</title><link>{l}</link><description>{d}</description>"
        f"<pubDate>Mon, 06 Jan 2025 10:00:00 GMT</pubDate></item>"
        for t, l, d in items
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?><rss version="2.0"><channel>'
        f"<title>Test feed</title><link>https://example.com</link><description>x</description>{body}"
        "</channel></rss>"
    ).encode()


def _response(status: int = 200, content: bytes = b"", headers: dict | None = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.content = content
    resp.headers = headers or {}
    return resp


PRAHA4_FEED = _rss([
    ("Praha 4 opens new library branch", "https://praha4.example/news/library",
     "The new branch in Pankrac opens on Monday with extended hours."),
    ("Road works on Budejovicka street", "https://praha4.example/news/roadworks",
     "Expect closures near the metro station for the next three weeks."),
    ("Farmers market returns to Kotlarka", "https://praha4.example/news/market",
     "The Saturday market is back from April with thirty local vendors."),
])

DPP_FEED = _rss([
    ("Metro line C night closure", "https://dpp.example/news/metro-c",
     "Line C will close between Florenc and Kacerov on Sunday night."),
    ("New tram timetable from March", "https://dpp.example/news/tram",
     "Tram lines 17 and 18 run every six minutes during peak hours."),
])


def _register(source_id: str, url: str, priority: int = 5, neighborhood: str | None = None, enabled: bool = True):
    from pipeline.src.collect import source_registry
    from pipeline.src.models import Source
    return source_registry.upsert_source(Source(
        id=source_id, name=source_id.title(), url=url, priority=priority,
        neighborhood_id=neighborhood, enabled=enabled,
    ))


class TestScenario11Fingerprints:
    """Scenario 1.1: Fingerprint identity ignores tracking noise."""

    def test_url_normalization(self):
        from pipeline.src.models import normalize_url
        assert normalize_url("HTTPS://Example.COM/a/b/?utm_source=rss&b=2&a=1#top") == \
            "https://example.com/a/b?a=1&b=2"

    def test_same_entry_same_fingerprint(self):
        from pipeline.src.models import compute_fingerprint
        a = compute_fingerprint("praha4", "https://praha4.example/news/1/?utm_medium=feed", "A")
        b = compute_fingerprint("praha4", "https://PRAHA4.example/news/1", "B")
        assert a == b
        assert len(a) == 64

    def test_title_used_when_no_url(self):
        from pipeline.src.models import compute_fingerprint
        a = compute_fingerprint("dpp", "", "Metro  Line C   closure")
        b = compute_fingerprint("dpp", "", "metro line c closure")
        assert a == b
        assert a != compute_fingerprint("praha4", "", "metro line c closure")
        print("PASS: Scenario 1.1: fingerprints stable under URL/title noise")


class TestScenario12SourceRegistry:
    """Scenario 1.2: Source validation, upsert and fetch-health counters."""

    def test_invalid_url_rejected(self):
        from pydantic import ValidationError
        from pipeline.src.models import Source
        with pytest.raises(ValidationError):
            Source(name="Bad", url="ftp://example.com/feed")
        with pytest.raises(ValidationError):
            Source(name="Bad", url="not a url")

    def test_priority_out_of_range_rejected(self):
        from pydantic import ValidationError
        from pipeline.src.models import Source
        with pytest.raises(ValidationError):
            Source(name="Bad", url="https://example.com/rss", priority=11)
        with pytest.raises(ValidationError):
            Source(name="Bad", url="https://example.com/rss", priority=0)

    def test_id_defaults_to_slug(self):
        from pipeline.src.models import Source
        assert Source(name="Praha 4 Official", url="https://praha4.cz/rss").id == "praha-4-official"

    def test_upsert_preserves_health_counters(self):
        from pipeline.src.collect import source_registry
        from pipeline.src.models import Source

        _register("praha4", "https://praha4.example/rss", priority=8)
        source_registry.record_fetch_outcome("praha4", False, "HTTP 500")
        source_registry.record_fetch_outcome("praha4", True)

        updated = source_registry.upsert_source(
            Source(id="praha4", name="Praha 4 (renamed)", url="https://praha4.example/rss", priority=9)
        )
        assert updated.name == "Praha 4 (renamed)"
        assert updated.priority == 9
        assert updated.fetch_count == 2
        assert updated.error_count == 1

    def test_duplicate_url_rejected(self):
        from pipeline.src.collect import source_registry
        from pipeline.src.errors import DuplicateSourceError
        from pipeline.src.models import Source

        _register("praha4", "https://praha4.example/rss")
        with pytest.raises(DuplicateSourceError):
            source_registry.upsert_source(Source(id="other", name="Other", url="https://praha4.example/rss"))

    def test_error_count_never_exceeds_fetch_count(self):
        from pipeline.src.collect import source_registry

        _register("dpp", "https://dpp.example/rss")
        outcomes = [False, True, False, False, True, False]
        for ok in outcomes:
            source_registry.record_fetch_outcome("dpp", ok, None if ok else "timeout")
            s = source_registry.get_source("dpp")
            assert s.error_count <= s.fetch_count
        s = source_registry.get_source("dpp")
        assert s.fetch_count == 6
        assert s.error_count == 4
        assert s.last_error == "timeout"

    def test_success_clears_last_error(self):
        from pipeline.src.collect import source_registry
        _register("dpp", "https://dpp.example/rss")
        source_registry.record_fetch_outcome("dpp", False, "boom")
        source_registry.record_fetch_outcome("dpp", True)
        assert source_registry.get_source("dpp").last_error is None

    def test_health_status(self):
        from pipeline.src.collect import source_registry

        _register("dpp", "https://dpp.example/rss")
        assert source_registry.health_status(source_registry.get_source("dpp")) == "unchecked"
        source_registry.record_fetch_outcome("dpp", True)
        assert source_registry.health_status(source_registry.get_source("dpp")) == "healthy"
        source_registry.record_fetch_outcome("dpp", False, "HTTP 503")
        assert source_registry.health_status(source_registry.get_source("dpp")) == "warning"
        for _ in range(3):
            source_registry.record_fetch_outcome("dpp", False, "HTTP 503")
        assert source_registry.health_status(source_registry.get_source("dpp")) == "failed"

    def test_list_ordered_by_priority(self):
        from pipeline.src.collect import source_registry
        _register("weather", "https://weather.example/rss", priority=3)
        _register("dpp", "https://dpp.example/rss", priority=9)
        _register("praha4", "https://praha4.example/rss", priority=8, enabled=False)
        assert [s.id for s in source_registry.list_sources()] == ["dpp", "praha4", "weather"]
        assert [s.id for s in source_registry.list_sources(enabled_only=True)] == ["dpp", "weather"]

    def test_toggle_and_delete(self):
        from pipeline.src.collect import source_registry
        _register("dpp", "https://dpp.example/rss")
        assert source_registry.set_enabled("dpp", False)
        assert source_registry.get_source("dpp").enabled is False
        assert source_registry.delete_source("dpp")
        assert source_registry.get_source("dpp") is None
        assert not source_registry.delete_source("dpp")

    def test_seed_sources(self):
        from pipeline.src.collect import source_registry
        count = source_registry.seed_sources()
        assert count == 4
        ids = {s.id for s in source_registry.list_sources()}
        assert ids == {"praha4", "praha2", "dpp", "weather"}
        assert source_registry.get_source("weather").enabled is False
        # Re-seeding is idempotent
        assert source_registry.seed_sources() == 4
        assert len(source_registry.list_sources()) == 4
        print("PASS: Scenario 1.2: registry validation and health counters")


class TestScenario13FreshCollection:
    """Scenario 1.3: Fresh collection from two mock RSS feeds."""

    def test_all_entries_stored_unscored(self):
        from pipeline.src.collect.collector import Collector
        from pipeline.src.kb import store

        _register("praha4", "https://praha4.example/rss", priority=8, neighborhood="praha4")
        _register("dpp", "https://dpp.example/rss", priority=9)

        feeds = {"https://praha4.example/rss": PRAHA4_FEED, "https://dpp.example/rss": DPP_FEED}
        with patch("requests.get", side_effect=lambda url, **kw: _response(200, feeds[url])):
            result = Collector(max_workers=2).collect()

        assert result.collected == 5
        assert result.errors == []
        # Ordered by priority, not by completion
        assert [r.source_id for r in result.per_source_results] == ["dpp", "praha4"]
        assert [r.collected for r in result.per_source_results] == [2, 3]

        stored = store.get_unscored_items(limit=50)
        assert len(stored) == 5
        assert all(i.raw_score is None for i in stored)
        assert all(i.published_at is not None for i in stored)
        print("PASS: Scenario 1.3: fresh collection stored 5 unscored items")


class TestScenario14DeduplicationOnRerun:
    """Scenario 1.4: Same feed twice, zero new items on the second pass."""

    def test_no_duplicate_items(self):
        from pipeline.src.collect.collector import Collector
        from pipeline.src.kb import store

        _register("praha4", "https://praha4.example/rss")
        with patch("requests.get", return_value=_response(200, PRAHA4_FEED)):
            first = Collector(max_workers=1).collect()
            second = Collector(max_workers=1).collect()

        assert first.collected == 3
        assert second.collected == 0
        assert second.per_source_results[0].skipped == 3
        assert len(store.get_recent_items()) == 3
        print("PASS: Scenario 1.4: re-run collected zero new items")


class TestScenario15FailingSource:
    """Scenario 1.5: One source returns HTTP 500; others are collected."""

    def test_other_sources_collected(self):
        from pipeline.src.collect import source_registry
        from pipeline.src.collect.collector import Collector

        _register("praha4", "https://praha4.example/rss", priority=8)
        _register("broken", "https://broken.example/rss", priority=9)

        def fake_get(url, **kw):
            if "broken" in url:
                return _response(500)
            return _response(200, PRAHA4_FEED)

        with patch("requests.get", side_effect=fake_get) as mock_get:
            result = Collector(max_workers=2).collect()

        assert result.collected == 3
        assert len(result.errors) == 1
        assert "HTTP 500" in result.errors[0]
        broken = source_registry.get_source("broken")
        # One outcome per source per run, after retries
        assert broken.fetch_count == 1
        assert broken.error_count == 1
        assert "HTTP 500" in broken.last_error
        assert source_registry.get_source("praha4").error_count == 0
        # 2 attempts for the broken source, 1 for the healthy one
        assert mock_get.call_count == 3
        print("PASS: Scenario 1.5: failing source isolated")

    def test_transport_error_recorded(self):
        import requests
        from pipeline.src.collect import source_registry
        from pipeline.src.collect.collector import Collector

        _register("dpp", "https://dpp.example/rss")
        with patch("requests.get", side_effect=requests.ConnectionError("refused")):
            result = Collector(max_workers=1).collect()
        assert result.collected == 0
        assert "refused" in result.errors[0]
        assert source_registry.get_source("dpp").error_count == 1


class TestScenario16FeedParsing:
    """Scenario 1.6: Quality filter, per-source cap, malformed bodies, conditional GET."""

    def test_short_entries_dropped(self):
        from pipeline.src.collect.collector import Collector

        feed = _rss([
            ("Too short", "https://x.example/1", "This description is long enough to pass."),
            ("Long enough title here", "https://x.example/2", "Too short."),
            ("Long enough title here too", "https://x.example/3", "This description is long enough to pass."),
        ])
        _register("x", "https://x.example/rss")
        with patch("requests.get", return_value=_response(200, feed)):
            result = Collector(max_workers=1).collect()
        assert result.collected == 1
        assert result.per_source_results[0].skipped == 2

    def test_max_items_per_source(self):
        from pipeline.src.collect.collector import Collector

        feed = _rss([
            (f"Neighborhood story number {i}", f"https://x.example/{i}",
             f"Body text for neighborhood story number {i}.")
            for i in range(15)
        ])
        _register("x", "https://x.example/rss")
        with patch("requests.get", return_value=_response(200, feed)):
            result = Collector(max_workers=1).collect()
        assert result.collected == 10

    def test_html_stripped(self):
        from pipeline.src.collect.rss_collector import parse_feed
        feed = _rss([
            ("Council meeting on Thursday", "https://x.example/1",
             "&lt;p&gt;The &lt;b&gt;council&lt;/b&gt; meets at 18:00 in the town hall.&lt;/p&gt;"),
        ])
        entries = parse_feed(feed)
        assert entries[0].content_text == "The council meets at 18:00 in the town hall."

    def test_non_feed_body_is_parse_error(self):
        from pipeline.src.collect.rss_collector import parse_feed
        from pipeline.src.errors import FeedFetchError
        with pytest.raises(FeedFetchError):
            parse_feed(b"<html><body><p>Maintenance page</p></body></html>")

    def test_atom_feed_parsed(self):
        from pipeline.src.collect.rss_collector import parse_feed
        atom = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom test</title><id>urn:test</id><updated>2025-01-06T10:00:00Z</updated>
  <entry>
    <title>Smichov bridge repairs start</title>
    <link href="https://smichov.example/bridge"/>
    <id>urn:entry:1</id>
    <updated>2025-01-06T10:00:00Z</updated>
    <summary>Repairs on the bridge will last until the end of summer.</summary>
  </entry>
</feed>"""
        entries = parse_feed(atom)
        assert len(entries) == 1
        assert entries[0].url == "https://smichov.example/bridge"
        assert entries[0].published_at is not None

    def test_conditional_get(self):
        from pipeline.src.collect import rss_collector

        url = "https://x.example/rss"
        responses = [
            _response(200, PRAHA4_FEED, {"ETag": '"v1"', "Last-Modified": "Mon, 06 Jan 2025 10:00:00 GMT"}),
            _response(304),
        ]
        with patch("requests.get", side_effect=responses) as mock_get:
            assert len(rss_collector.fetch_feed(url)) == 3
            assert rss_collector.fetch_feed(url) == []
        second_headers = mock_get.call_args_list[1].kwargs["headers"]
        assert second_headers["If-None-Match"] == '"v1"'
        assert "If-Modified-Since" in second_headers
        print("PASS: Scenario 1.6: feed parsing rules")
