"""
Neighborhood News: SQLite Structured Store
Manages: sources, raw_items, content, publications, pipeline_runs, run_lease
Each call opens its own connection, so stage worker threads never share one.
"""

from __future__ import annotations
import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from pipeline.src.errors import StoreUnavailableError
from pipeline.src.models import (
    STATUS_REVIEW,
    GeneratedContent,
    Publication,
    RawItem,
)

DB_PATH = Path(
    os.environ.get(
        "KB_DB_PATH",
        str(Path(__file__).parent.parent.parent.parent / "data/newsroom.sqlite"),
    )
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sources (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    url TEXT NOT NULL UNIQUE,
    category_hint TEXT NOT NULL DEFAULT 'other',
    neighborhood_id TEXT,
    priority INTEGER NOT NULL DEFAULT 5 CHECK (priority BETWEEN 1 AND 10),
    enabled INTEGER NOT NULL DEFAULT 1,
    last_fetched TEXT,
    fetch_count INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    CHECK (error_count <= fetch_count)
);

CREATE TABLE IF NOT EXISTS raw_items (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL,
    fingerprint TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    content_text TEXT NOT NULL,
    url TEXT,
    published_at TEXT,
    collected_at TEXT NOT NULL,
    raw_score REAL CHECK (raw_score IS NULL OR (raw_score >= 0 AND raw_score <= 1)),
    category TEXT,
    neighborhood_ids TEXT NOT NULL DEFAULT '[]',
    score_notes TEXT,
    processed_at TEXT,
    generation_attempts INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_raw_items_unscored ON raw_items(raw_score, collected_at);
CREATE INDEX IF NOT EXISTS idx_raw_items_score ON raw_items(raw_score DESC);

CREATE TABLE IF NOT EXISTS content (
    id TEXT PRIMARY KEY,
    source_item_id TEXT UNIQUE,
    title TEXT NOT NULL,
    body TEXT NOT NULL,
    summary TEXT,
    category TEXT NOT NULL,
    neighborhood_id TEXT NOT NULL,
    ai_confidence REAL,
    status TEXT NOT NULL DEFAULT 'review',
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL,
    validated_at TEXT,
    validation_notes TEXT,
    validation_checks TEXT,
    validation_flags TEXT NOT NULL DEFAULT '[]',
    published_at TEXT,
    rejected_at TEXT,
    rejection_reason TEXT,
    approved_by TEXT
);
CREATE INDEX IF NOT EXISTS idx_content_status_created ON content(status, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_content_confidence ON content(ai_confidence DESC);

CREATE TABLE IF NOT EXISTS publications (
    id TEXT PRIMARY KEY,
    content_id TEXT NOT NULL,
    neighborhood_id TEXT NOT NULL,
    category TEXT NOT NULL,
    published_at TEXT NOT NULL,
    auto_published INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_publications_neighborhood ON publications(neighborhood_id, published_at DESC);

CREATE TABLE IF NOT EXISTS pipeline_runs (
    run_id TEXT PRIMARY KEY,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    collected INTEGER NOT NULL DEFAULT 0,
    scored INTEGER NOT NULL DEFAULT 0,
    qualified INTEGER NOT NULL DEFAULT 0,
    generated INTEGER NOT NULL DEFAULT 0,
    validated INTEGER NOT NULL DEFAULT 0,
    published INTEGER NOT NULL DEFAULT 0,
    errors TEXT NOT NULL DEFAULT '[]',
    success INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_pipeline_runs_started ON pipeline_runs(started_at DESC);

CREATE TABLE IF NOT EXISTS run_lease (
    name TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value).astimezone(timezone.utc)


@contextmanager
def _conn() -> Iterator[sqlite3.Connection]:
    try:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(DB_PATH), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(SCHEMA)
    except (OSError, sqlite3.Error) as e:
        raise StoreUnavailableError(f"Store unavailable at {DB_PATH}: {e}") from e
    try:
        yield conn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Raw items
# ---------------------------------------------------------------------------

def _row_to_item(r: sqlite3.Row) -> RawItem:
    return RawItem(
        id=r["id"],
        source_id=r["source_id"],
        title=r["title"],
        content_text=r["content_text"],
        url=r["url"] or "",
        published_at=parse_ts(r["published_at"]),
        collected_at=parse_ts(r["collected_at"]),
        raw_score=r["raw_score"],
        category=r["category"],
        neighborhood_ids=json.loads(r["neighborhood_ids"] or "[]"),
        score_notes=r["score_notes"],
        processed_at=parse_ts(r["processed_at"]),
    )


def item_exists(fingerprint: str) -> bool:
    """Check if an item with this fingerprint was already collected."""
    with _conn() as conn:
        row = conn.execute(
            "SELECT 1 FROM raw_items WHERE fingerprint = ?", (fingerprint,)
        ).fetchone()
        return row is not None


def store_item(item: RawItem) -> bool:
    """
    Store a RawItem as unscored. Returns True if inserted, False if the
    fingerprint already existed.
    """
    with _conn() as conn:
        try:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO raw_items
                    (id, source_id, fingerprint, title, content_text, url,
                     published_at, collected_at, neighborhood_ids)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.id,
                    item.source_id,
                    item.fingerprint,
                    item.title,
                    item.content_text,
                    item.url,
                    _iso(item.published_at),
                    item.collected_at.isoformat(),
                    json.dumps(item.neighborhood_ids),
                ),
            )
            conn.commit()
            return cur.rowcount > 0
        except Exception:
            conn.rollback()
            raise


def get_item(item_id: str) -> Optional[RawItem]:
    with _conn() as conn:
        row = conn.execute("SELECT * FROM raw_items WHERE id = ?", (item_id,)).fetchone()
        return _row_to_item(row) if row else None


def get_unscored_items(limit: int = 20) -> list[RawItem]:
    """Oldest-first page of items that have never been scored."""
    with _conn() as conn:
        rows = conn.execute(
            """
            SELECT * FROM raw_items
            WHERE raw_score IS NULL
            ORDER BY collected_at ASC, id ASC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
    return [_row_to_item(r) for r in rows]


def update_item_score(
    item_id: str,
    score: float,
    category: str,
    neighborhood_ids: list[str],
    notes: Optional[str],
) -> bool:
    """
    Set the score exactly once. Returns False if the item was already scored
    (by an overlapping run) or does not exist.
    """
    with _conn() as conn:
        cur = conn.execute(
            """
            UPDATE raw_items
            SET raw_score = ?, category = ?, neighborhood_ids = ?,
                score_notes = ?, processed_at = ?
            WHERE id = ? AND raw_score IS NULL
            """,
            (score, category, json.dumps(neighborhood_ids), notes, _now(), item_id),
        )
        conn.commit()
        return cur.rowcount > 0


def get_qualified_ungenerated(
    threshold: float,
    limit: int = 10,
    max_attempts: Optional[int] = None,
) -> list[RawItem]:
    """
    Scored items above threshold that have no content row yet.
    Fewest failed generation attempts first, then best score, so items that
    keep failing never hold the front of the queue. Items that reached
    max_attempts are left out.
    """
    with _conn() as conn:
        rows = conn.execute(
            """
            SELECT r.* FROM raw_items r
            LEFT JOIN content c ON c.source_item_id = r.id
            WHERE r.raw_score >= ? AND r.processed_at IS NOT NULL AND c.id IS NULL
              AND (? IS NULL OR r.generation_attempts < ?)
            ORDER BY r.generation_attempts ASC, r.raw_score DESC, r.collected_at ASC
            LIMIT ?
            """,
            (threshold, max_attempts, max_attempts, limit),
        ).fetchall()
    return [_row_to_item(r) for r in rows]


def record_generation_failure(item_id: str) -> None:
    with _conn() as conn:
        conn.execute(
            "UPDATE raw_items SET generation_attempts = generation_attempts + 1 WHERE id = ?",
            (item_id,),
        )
        conn.commit()


def get_generation_attempts(item_id: str) -> int:
    with _conn() as conn:
        row = conn.execute(
            "SELECT generation_attempts FROM raw_items WHERE id = ?", (item_id,)
        ).fetchone()
        return row["generation_attempts"] if row else 0


def get_recent_items(limit: int = 100) -> list[RawItem]:
    with _conn() as conn:
        rows = conn.execute(
            "SELECT * FROM raw_items ORDER BY collected_at DESC LIMIT ?", (limit,)
        ).fetchall()
    return [_row_to_item(r) for r in rows]


# ---------------------------------------------------------------------------
# Generated content
# ---------------------------------------------------------------------------

def _row_to_content(r: sqlite3.Row) -> GeneratedContent:
    checks = r["validation_checks"]
    return GeneratedContent(
        id=r["id"],
        source_item_id=r["source_item_id"],
        title=r["title"],
        body=r["body"],
        summary=r["summary"],
        category=r["category"],
        neighborhood_id=r["neighborhood_id"],
        ai_confidence=r["ai_confidence"],
        status=r["status"],
        created_by=r["created_by"],
        created_at=parse_ts(r["created_at"]),
        validated_at=parse_ts(r["validated_at"]),
        validation_notes=r["validation_notes"],
        validation_checks=json.loads(checks) if checks else None,
        validation_flags=json.loads(r["validation_flags"] or "[]"),
        published_at=parse_ts(r["published_at"]),
        rejected_at=parse_ts(r["rejected_at"]),
        rejection_reason=r["rejection_reason"],
        approved_by=r["approved_by"],
    )


def content_exists_for_item(source_item_id: str) -> bool:
    with _conn() as conn:
        row = conn.execute(
            "SELECT 1 FROM content WHERE source_item_id = ?", (source_item_id,)
        ).fetchone()
        return row is not None


def insert_content(content: GeneratedContent) -> bool:
    """Insert a draft. Returns False if the source item already has content."""
    with _conn() as conn:
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO content
                (id, source_item_id, title, body, summary, category, neighborhood_id,
                 ai_confidence, status, created_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                content.id,
                content.source_item_id,
                content.title,
                content.body,
                content.summary,
                content.category,
                content.neighborhood_id,
                content.ai_confidence,
                content.status,
                content.created_by,
                content.created_at.isoformat(),
            ),
        )
        conn.commit()
        return cur.rowcount > 0


def get_content(content_id: str) -> Optional[GeneratedContent]:
    with _conn() as conn:
        row = conn.execute("SELECT * FROM content WHERE id = ?", (content_id,)).fetchone()
        return _row_to_content(row) if row else None


def get_unvalidated_content(limit: int = 20) -> list[GeneratedContent]:
    with _conn() as conn:
        rows = conn.execute(
            """
            SELECT * FROM content
            WHERE status = ? AND validated_at IS NULL
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (STATUS_REVIEW, limit),
        ).fetchall()
    return [_row_to_content(r) for r in rows]


def get_auto_decision_candidates(
    approve_threshold: float,
    reject_below: Optional[float] = None,
    limit: int = 20,
) -> list[GeneratedContent]:
    """
    Validated drafts in review that the automatic policy could decide now:
    confident, accurate, safe and unflagged, or (when set) below reject_below.
    Drafts the policy keeps for a human never take up a slot here.
    """
    with _conn() as conn:
        rows = conn.execute(
            """
            SELECT * FROM content
            WHERE status = ? AND validated_at IS NOT NULL
              AND (
                (ai_confidence >= ?
                 AND json_array_length(validation_flags) = 0
                 AND json_extract(validation_checks, '$.accuracy') = 1
                 AND json_extract(validation_checks, '$.safety') = 1)
                OR (? IS NOT NULL AND ai_confidence < ?)
              )
            ORDER BY ai_confidence DESC, created_at ASC
            LIMIT ?
            """,
            (STATUS_REVIEW, approve_threshold, reject_below, reject_below, limit),
        ).fetchall()
    return [_row_to_content(r) for r in rows]


def update_content_validation(
    content_id: str,
    confidence: float,
    notes: str,
    checks: dict[str, bool],
    flags: list[str],
) -> bool:
    """Write validation columns once. Status is never touched here."""
    with _conn() as conn:
        cur = conn.execute(
            """
            UPDATE content
            SET ai_confidence = ?, validation_notes = ?, validation_checks = ?,
                validation_flags = ?, validated_at = ?
            WHERE id = ? AND status = ? AND validated_at IS NULL
            """,
            (confidence, notes, json.dumps(checks), json.dumps(flags), _now(),
             content_id, STATUS_REVIEW),
        )
        conn.commit()
        return cur.rowcount > 0


def set_content_status(
    content_id: str,
    from_status: str,
    to_status: str,
    published_at: Optional[datetime] = None,
    rejected_at: Optional[datetime] = None,
    rejection_reason: Optional[str] = None,
    approved_by: Optional[str] = None,
) -> bool:
    """Compare-and-set status change. Only the approval gate calls this."""
    with _conn() as conn:
        cur = conn.execute(
            """
            UPDATE content
            SET status = ?,
                published_at = COALESCE(?, published_at),
                rejected_at = COALESCE(?, rejected_at),
                rejection_reason = COALESCE(?, rejection_reason),
                approved_by = COALESCE(?, approved_by)
            WHERE id = ? AND status = ?
            """,
            (to_status, _iso(published_at), _iso(rejected_at), rejection_reason,
             approved_by, content_id, from_status),
        )
        conn.commit()
        return cur.rowcount > 0


def list_content(
    status: str,
    category: Optional[str] = None,
    neighborhood_id: Optional[str] = None,
    min_confidence: Optional[float] = None,
    max_confidence: Optional[float] = None,
    validated_only: bool = False,
    limit: int = 50,
) -> list[GeneratedContent]:
    """Filtered listing, ordered by confidence bucket then newest first."""
    clauses = ["status = ?"]
    params: list = [status]
    if category:
        clauses.append("category = ?")
        params.append(category)
    if neighborhood_id:
        clauses.append("neighborhood_id = ?")
        params.append(neighborhood_id)
    if min_confidence is not None:
        clauses.append("ai_confidence >= ?")
        params.append(min_confidence)
    if max_confidence is not None:
        clauses.append("ai_confidence <= ?")
        params.append(max_confidence)
    if validated_only:
        clauses.append("validated_at IS NOT NULL")
    params.append(limit)

    with _conn() as conn:
        rows = conn.execute(
            f"""
            SELECT * FROM content
            WHERE {' AND '.join(clauses)}
            ORDER BY
                CASE
                    WHEN ai_confidence >= 0.9 THEN 1
                    WHEN ai_confidence >= 0.8 THEN 2
                    WHEN ai_confidence >= 0.7 THEN 3
                    ELSE 4
                END,
                created_at DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
    return [_row_to_content(r) for r in rows]


# ---------------------------------------------------------------------------
# Publications
# ---------------------------------------------------------------------------

def store_publication(publication: Publication) -> None:
    with _conn() as conn:
        conn.execute(
            """
            INSERT OR IGNORE INTO publications
                (id, content_id, neighborhood_id, category, published_at, auto_published)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                publication.id,
                publication.content_id,
                publication.neighborhood_id,
                publication.category,
                publication.published_at.isoformat(),
                int(publication.auto_published),
            ),
        )
        conn.commit()


def get_publications(content_id: str) -> list[dict]:
    with _conn() as conn:
        rows = conn.execute(
            "SELECT * FROM publications WHERE content_id = ? ORDER BY published_at",
            (content_id,),
        ).fetchall()
        return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Run lease
# ---------------------------------------------------------------------------

def acquire_lease(run_id: str, ttl_seconds: int, name: str = "pipeline") -> bool:
    """
    Take the named run lease unless another run holds an unexpired one.
    An expired lease is taken over.
    """
    now = datetime.now(timezone.utc)
    expires = now.timestamp() + ttl_seconds
    with _conn() as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute(
                "SELECT run_id, expires_at FROM run_lease WHERE name = ?", (name,)
            ).fetchone()
            if row and row["run_id"] != run_id and parse_ts(row["expires_at"]) > now:
                conn.rollback()
                return False
            conn.execute(
                "INSERT OR REPLACE INTO run_lease (name, run_id, expires_at) VALUES (?, ?, ?)",
                (name, run_id, datetime.fromtimestamp(expires, tz=timezone.utc).isoformat()),
            )
            conn.commit()
            return True
        except Exception:
            conn.rollback()
            raise


def release_lease(run_id: str, name: str = "pipeline") -> None:
    with _conn() as conn:
        conn.execute("DELETE FROM run_lease WHERE name = ? AND run_id = ?", (name, run_id))
        conn.commit()
