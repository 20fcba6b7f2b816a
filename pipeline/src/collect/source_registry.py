"""
Neighborhood News: Source Registry
Feed configurations plus their fetch-health counters.
Admin fields are written by upsert_source; counters only by record_fetch_outcome.
"""

from __future__ import annotations
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import yaml

from pipeline.src import config
from pipeline.src.errors import DuplicateSourceError
from pipeline.src.kb import store
from pipeline.src.models import Source

FAILED_ERROR_COUNT = 3


def _row_to_source(r: sqlite3.Row) -> Source:
    return Source(
        id=r["id"],
        name=r["name"],
        url=r["url"],
        category_hint=r["category_hint"],
        neighborhood_id=r["neighborhood_id"],
        priority=r["priority"],
        enabled=bool(r["enabled"]),
        last_fetched=store.parse_ts(r["last_fetched"]),
        fetch_count=r["fetch_count"],
        error_count=r["error_count"],
        last_error=r["last_error"],
    )


def list_sources(enabled_only: bool = False) -> list[Source]:
    """Sources ordered by priority (highest first), then name."""
    query = "SELECT * FROM sources"
    if enabled_only:
        query += " WHERE enabled = 1"
    query += " ORDER BY priority DESC, name ASC"
    with store._conn() as conn:
        rows = conn.execute(query).fetchall()
    return [_row_to_source(r) for r in rows]


def get_source(source_id: str) -> Optional[Source]:
    with store._conn() as conn:
        row = conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
    return _row_to_source(row) if row else None


def upsert_source(source: Source) -> Source:
    """
    Insert a new source or update the admin-owned fields of an existing one.
    Health counters of an existing row are left alone.

    Raises:
        DuplicateSourceError: another source already uses this URL
    """
    with store._conn() as conn:
        clash = conn.execute(
            "SELECT id FROM sources WHERE url = ? AND id != ?", (source.url, source.id)
        ).fetchone()
        if clash:
            raise DuplicateSourceError(
                f"Source with URL {source.url} already exists ({clash['id']})"
            )
        conn.execute(
            """
            INSERT INTO sources
                (id, name, url, category_hint, neighborhood_id, priority, enabled)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                url = excluded.url,
                category_hint = excluded.category_hint,
                neighborhood_id = excluded.neighborhood_id,
                priority = excluded.priority,
                enabled = excluded.enabled
            """,
            (
                source.id,
                source.name,
                source.url,
                source.category_hint,
                source.neighborhood_id,
                source.priority,
                int(source.enabled),
            ),
        )
        conn.commit()
    return get_source(source.id)


def record_fetch_outcome(source_id: str, success: bool, error: Optional[str] = None) -> None:
    """Bump the fetch counters for one fetch attempt in a single UPDATE."""
    now = datetime.now(timezone.utc).isoformat()
    with store._conn() as conn:
        if success:
            conn.execute(
                """
                UPDATE sources
                SET fetch_count = fetch_count + 1, last_fetched = ?, last_error = NULL
                WHERE id = ?
                """,
                (now, source_id),
            )
        else:
            conn.execute(
                """
                UPDATE sources
                SET fetch_count = fetch_count + 1, error_count = error_count + 1,
                    last_fetched = ?, last_error = ?
                WHERE id = ?
                """,
                (now, (error or "unknown error")[:500], source_id),
            )
        conn.commit()


def set_enabled(source_id: str, enabled: bool) -> bool:
    with store._conn() as conn:
        cur = conn.execute(
            "UPDATE sources SET enabled = ? WHERE id = ?", (int(enabled), source_id)
        )
        conn.commit()
        return cur.rowcount > 0


def delete_source(source_id: str) -> bool:
    """Remove a source. Items already collected from it are kept."""
    with store._conn() as conn:
        cur = conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
        conn.commit()
        return cur.rowcount > 0


def seed_sources(path: Optional[Path] = None) -> int:
    """Upsert the default sources from sources.yaml. Returns how many were written."""
    if path is None:
        entries = config.load_sources()
    else:
        with open(path) as f:
            entries = (yaml.safe_load(f) or {}).get("sources", [])
    # Validate every entry before writing any, so a bad file seeds nothing
    sources = [Source(**entry) for entry in entries]
    for source in sources:
        upsert_source(source)
    return len(sources)


def health_status(source: Source) -> str:
    """unchecked | healthy | warning | failed, as shown in the admin source list."""
    if source.fetch_count == 0 or source.last_fetched is None:
        return "unchecked"
    if source.last_error is None:
        return "healthy"
    if source.error_count > FAILED_ERROR_COUNT:
        return "failed"
    return "warning"
