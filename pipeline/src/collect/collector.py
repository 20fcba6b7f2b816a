"""
Neighborhood News: Collection Stage
Fetches every enabled source, deduplicates at ingest, and stores new items unscored.
"""

from __future__ import annotations
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from pipeline.src import config
from pipeline.src.collect import rss_collector, source_registry
from pipeline.src.framework.base_stage import BaseStage
from pipeline.src.kb import store
from pipeline.src.models import FeedEntry, RawItem, Source
from pipeline.src.ops_log import log

MIN_TITLE_CHARS = 10
MIN_TEXT_CHARS = 20


@dataclass
class SourceCollection:
    source_id: str
    collected: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class CollectionResult:
    collected: int = 0
    per_source_results: list[SourceCollection] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False
    new_items: list[RawItem] = field(default_factory=list)


def passes_quality_filter(entry: FeedEntry) -> bool:
    return len(entry.title) >= MIN_TITLE_CHARS and len(entry.content_text) >= MIN_TEXT_CHARS


class Collector(BaseStage[Source, SourceCollection]):
    """
    One worker per source. A source that cannot be fetched is recorded
    against its own health counters and never stops the others.
    """

    def __init__(
        self,
        max_workers: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        max_items_per_source: Optional[int] = None,
        run_id: Optional[str] = None,
    ):
        policy = config.get_retry_policy()
        timeouts = config.get_timeouts()
        self.max_attempts = max(1, int(policy["feed_max_attempts"] if max_attempts is None else max_attempts))
        self.retry_delay = policy["feed_delay_seconds"] if retry_delay is None else retry_delay
        self.timeout = timeouts["feed_seconds"] if timeout is None else timeout
        self.max_items_per_source = (
            config.get_batch_sizes()["max_items_per_source"]
            if max_items_per_source is None else max_items_per_source
        )
        self.run_id = run_id
        self._new_items: list[RawItem] = []
        self._items_lock = threading.Lock()
        # Every retry plus its backoff has to fit inside one source's share of the deadline
        per_source = self.max_attempts * self.timeout + self.retry_delay * sum(range(self.max_attempts))
        super().__init__(
            "collector",
            max_workers=config.get_worker_counts()["collect"] if max_workers is None else max_workers,
            item_timeout=per_source,
        )

    def describe_item(self, item: Source) -> str:
        return item.id

    def _fetch_with_retries(self, source: Source) -> list[FeedEntry]:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return rss_collector.fetch_feed(source.url, timeout=self.timeout)
            except Exception as e:
                last_error = e
                if attempt < self.max_attempts and self.retry_delay > 0:
                    time.sleep(self.retry_delay * attempt)
        raise last_error

    def process_item(self, item: Source, **kwargs) -> SourceCollection:
        outcome = SourceCollection(source_id=item.id)
        try:
            entries = self._fetch_with_retries(item)
        except Exception as e:
            msg = f"{item.id}: {type(e).__name__}: {e}"
            source_registry.record_fetch_outcome(item.id, False, msg)
            outcome.errors.append(msg)
            log(
                f"Collection error (after {self.max_attempts} attempts)",
                detail=msg, level="WARNING", run_id=self.run_id, stage=self.stage_name,
            )
            return outcome

        source_registry.record_fetch_outcome(item.id, True)

        for entry in entries[: self.max_items_per_source]:
            if not passes_quality_filter(entry):
                outcome.skipped += 1
                continue
            raw = RawItem(
                source_id=item.id,
                title=entry.title,
                content_text=entry.content_text,
                url=entry.url,
                published_at=entry.published_at,
            )
            if store.item_exists(raw.fingerprint):
                outcome.skipped += 1
                continue
            # INSERT OR IGNORE: a concurrent run may have stored it in between
            if store.store_item(raw):
                outcome.collected += 1
                with self._items_lock:
                    self._new_items.append(raw)
            else:
                outcome.skipped += 1
        return outcome

    def collect(
        self,
        sources: Optional[list[Source]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CollectionResult:
        """
        Collect from the given sources (default: every enabled source, by priority).
        """
        if sources is None:
            sources = source_registry.list_sources(enabled_only=True)
        else:
            sources = sorted(
                (s for s in sources if s.enabled), key=lambda s: (-s.priority, s.name)
            )
        self._new_items = []
        log(f"Collection started: {len(sources)} sources", run_id=self.run_id, stage=self.stage_name)

        stage = self.process_batch(sources, cancel_event=cancel_event)

        result = CollectionResult(cancelled=stage.cancelled)
        by_id = {outcome.source_id: outcome for outcome in stage.output}
        for source in sources:
            outcome = by_id.get(source.id)
            if outcome is None:
                continue
            result.per_source_results.append(outcome)
            result.collected += outcome.collected
            result.errors.extend(outcome.errors)
        result.errors.extend(stage.errors)
        new_ids = {o.source_id for o in result.per_source_results}
        result.new_items = [i for i in self._new_items if i.source_id in new_ids]

        log(
            f"Collection complete: {result.collected} new, "
            f"{sum(o.skipped for o in result.per_source_results)} skipped, "
            f"{len(result.errors)} errors",
            run_id=self.run_id, stage=self.stage_name,
        )
        return result
