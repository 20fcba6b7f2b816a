"""
Neighborhood News: Core Data Models
Pydantic models for every stage of the pipeline.
"""

from __future__ import annotations
import hashlib
import re
import uuid
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel, Field, computed_field, field_validator

RUN_MODES = ("collect", "score", "generate", "validate", "publish", "full")

STATUS_REVIEW = "review"
STATUS_PUBLISHED = "published"
STATUS_REJECTED = "rejected"
CONTENT_STATUSES = (STATUS_REVIEW, STATUS_PUBLISHED, STATUS_REJECTED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or str(uuid.uuid4())


def normalize_url(url: str) -> str:
    """Lower-case scheme/host, drop fragment, trailing slash and utm_* parameters."""
    parts = urlsplit(url.strip())
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
             if not k.lower().startswith("utm_")]
    path = parts.path.rstrip("/")
    return urlunsplit((
        parts.scheme.lower(),
        parts.netloc.lower(),
        path,
        urlencode(sorted(query)),
        "",
    ))


def normalize_title(title: str) -> str:
    return re.sub(r"\s+", " ", title).strip().casefold()


def compute_fingerprint(source_id: str, url: str, title: str) -> str:
    """Stable identity of a feed entry: source + normalized URL (or title if no URL)."""
    key = normalize_url(url) if url and url.strip() else f"title:{normalize_title(title)}"
    return hashlib.sha256(f"{source_id}|{key}".encode()).hexdigest()


class Source(BaseModel):
    id: str = ""
    name: str = Field(min_length=1)
    url: str
    category_hint: str = "other"
    neighborhood_id: Optional[str] = None
    priority: int = Field(default=5, ge=1, le=10)
    enabled: bool = True
    last_fetched: Optional[datetime] = None
    fetch_count: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        parts = urlsplit(value)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"Invalid URL format: {value!r}")
        return value

    def model_post_init(self, __context) -> None:
        if not self.id:
            self.id = _slugify(self.name)


class FeedEntry(BaseModel):
    """One parsed entry from an RSS/Atom feed, before storage."""
    title: str
    content_text: str
    url: str = ""
    guid: Optional[str] = None
    published_at: Optional[datetime] = None


class RawItem(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_id: str
    title: str
    content_text: str
    url: str = ""
    published_at: Optional[datetime] = None
    collected_at: datetime = Field(default_factory=_utcnow)
    raw_score: Optional[float] = None
    category: Optional[str] = None
    neighborhood_ids: list[str] = Field(default_factory=list)
    score_notes: Optional[str] = None
    processed_at: Optional[datetime] = None

    @computed_field
    @property
    def fingerprint(self) -> str:
        return compute_fingerprint(self.source_id, self.url, self.title)


class ScoredItem(BaseModel):
    item: RawItem
    score: float
    category: str
    neighborhood_ids: list[str] = Field(default_factory=list)
    reasoning: str = ""
    qualified: bool = False
    fallback_used: bool = False
    failure_reason: Optional[str] = None


class GeneratedContent(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_item_id: Optional[str] = None
    title: str
    body: str
    summary: Optional[str] = None
    category: str
    neighborhood_id: str
    ai_confidence: Optional[float] = None
    status: str = STATUS_REVIEW
    created_by: str = "ai-generator"
    created_at: datetime = Field(default_factory=_utcnow)
    validated_at: Optional[datetime] = None
    validation_notes: Optional[str] = None
    validation_checks: Optional[dict[str, bool]] = None
    validation_flags: list[str] = Field(default_factory=list)
    published_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    approved_by: Optional[str] = None


class ValidationChecks(BaseModel):
    accuracy: bool = False
    relevance: bool = False
    safety: bool = False
    quality: bool = False


class ValidationResult(BaseModel):
    content_id: str
    confidence: float
    checks: ValidationChecks = Field(default_factory=ValidationChecks)
    flags: list[str] = Field(default_factory=list)
    notes: str = ""
    fallback_used: bool = False


class Publication(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    content_id: str
    neighborhood_id: str
    category: str
    published_at: datetime = Field(default_factory=_utcnow)
    auto_published: bool = False


class PipelineRun(BaseModel):
    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    mode: str = "full"
    status: str = "running"  # "running", "complete", "failed", "cancelled"
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    collected: int = 0
    scored: int = 0
    qualified: int = 0
    generated: int = 0
    validated: int = 0
    published: int = 0
    errors: list[str] = Field(default_factory=list)
    success: bool = True

    @property
    def duration_ms(self) -> Optional[int]:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)
