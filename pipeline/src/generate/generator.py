"""
Neighborhood News: Generation Stage
Turns qualified items into draft local news articles waiting in review.
A failed generation creates no record; the item is reported and skipped.
"""

from __future__ import annotations
import threading
from dataclasses import dataclass, field
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from pipeline.src import config
from pipeline.src.collect import source_registry
from pipeline.src.errors import GenerationError, MalformedResponseError, OracleError
from pipeline.src.framework.base_stage import BaseStage
from pipeline.src.kb import store
from pipeline.src.llm.oracle import LLMCaller, OracleClient, decode_json_object, truncate_for_log
from pipeline.src.models import GeneratedContent, RawItem
from pipeline.src.ops_log import log

MAX_TITLE_CHARS = 80

GENERATE_PROMPT_TEMPLATE = """Transform this raw content into a polished local news article for {neighborhood}, Prague.

SOURCE CONTENT:
Title: {title}
Content: {content}
Category: {category}
Source: {source_id}
AI Score: {score}

REQUIREMENTS:
- Write for residents of {neighborhood}
- Include specific neighborhood relevance
- Professional journalism tone
- 200-400 words
- Include practical implications for locals

STRUCTURE:
- Compelling headline (max 80 chars)
- Lead paragraph with key facts
- 2-3 body paragraphs with details
- Closing with local impact/next steps

Respond ONLY with valid JSON, no markdown:
{{"title": "<headline>", "body": "<full article text>", "summary": "<2-sentence summary for newsletter>", "confidence": <0.0-1.0>}}"""

MANUAL_PROMPT_TEMPLATE = """Write a short local news article (2-3 paragraphs) for residents of {neighborhood}, Prague.

Category: {category}
Editor's notes:
{context}

Compelling headline (max 80 chars), factual tone, practical information for locals.

Respond ONLY with valid JSON, no markdown:
{{"title": "<headline>", "body": "<full article text>", "summary": "<2-sentence summary for newsletter>", "confidence": <0.0-1.0>}}"""


class GenerationResponse(BaseModel):
    title: str
    body: str = Field(validation_alias=AliasChoices("body", "content"))
    summary: Optional[str] = None
    confidence: Optional[float] = Field(default=None, allow_inf_nan=False)

    @field_validator("title", "body", mode="after")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value


@dataclass
class GenerationResult:
    generated: int = 0
    content: list[GeneratedContent] = field(default_factory=list)
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False


class Generator(BaseStage[RawItem, GeneratedContent]):

    def __init__(
        self,
        llm_caller: Optional[LLMCaller] = None,
        max_workers: Optional[int] = None,
        run_id: Optional[str] = None,
    ):
        self.oracle = OracleClient("generator", caller=llm_caller)
        self.default_neighborhood = config.get_default_neighborhood()
        self.run_id = run_id
        super().__init__(
            "generator",
            max_workers=config.get_worker_counts()["llm"] if max_workers is None else max_workers,
            item_timeout=self.oracle.timeout * (self.oracle.max_retries + 1),
        )

    def describe_item(self, item: RawItem) -> str:
        return f"{item.id} ({item.title[:40]})"

    def target_neighborhood(self, item: RawItem) -> str:
        """First scored neighborhood, else the source's, else the configured default."""
        if item.neighborhood_ids:
            return item.neighborhood_ids[0]
        source = source_registry.get_source(item.source_id)
        if source and source.neighborhood_id:
            return source.neighborhood_id
        return self.default_neighborhood

    def _ask(self, prompt: str, label: str) -> GenerationResponse:
        raw_text = ""
        try:
            raw_text = self.oracle.complete(prompt)
            return GenerationResponse.model_validate(decode_json_object(raw_text))
        except (OracleError, MalformedResponseError, ValidationError) as e:
            log(
                f"Generation failed for {label}",
                detail=f"{type(e).__name__}: {e} | response: {truncate_for_log(raw_text)}",
                level="WARNING", run_id=self.run_id, stage=self.stage_name,
            )
            raise GenerationError(f"{type(e).__name__}: {str(e).splitlines()[0]}") from e

    def process_item(self, item: RawItem, **kwargs) -> Optional[GeneratedContent]:
        if store.content_exists_for_item(item.id):
            return None

        neighborhood = self.target_neighborhood(item)
        category = item.category or "other"
        prompt = GENERATE_PROMPT_TEMPLATE.format(
            neighborhood=neighborhood,
            title=item.title,
            content=item.content_text[:2000],
            category=category,
            source_id=item.source_id,
            score=f"{item.raw_score:.2f}" if item.raw_score is not None else "unknown",
        )
        try:
            response = self._ask(prompt, item.id)
        except GenerationError:
            store.record_generation_failure(item.id)
            raise

        content = GeneratedContent(
            source_item_id=item.id,
            title=response.title[:MAX_TITLE_CHARS],
            body=response.body,
            summary=response.summary,
            category=category,
            neighborhood_id=neighborhood,
            ai_confidence=_clamp(response.confidence),
        )
        if not store.insert_content(content):
            return None
        return content

    def generate_batch(
        self,
        items: list[RawItem],
        cancel_event: Optional[threading.Event] = None,
    ) -> GenerationResult:
        stage = self.process_batch(items, cancel_event=cancel_event)
        result = GenerationResult(
            generated=len(stage.output),
            content=list(stage.output),
            skipped=stage.skipped,
            errors=list(stage.errors),
            cancelled=stage.cancelled,
        )
        log(
            f"Generation complete: {result.generated} drafts, {result.skipped} already drafted",
            detail=f"{len(result.errors)} errors" if result.errors else "",
            run_id=self.run_id, stage=self.stage_name,
        )
        return result

    def generate_pending(
        self,
        limit: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> GenerationResult:
        """
        Draft qualified items that have no content yet, best score first among
        items with the fewest failed attempts.
        """
        if limit is None:
            limit = config.get_batch_sizes()["generate"]
        threshold = config.get_thresholds()["qualify"]
        max_attempts = config.get_retry_policy()["generation_max_attempts"]
        items = store.get_qualified_ungenerated(threshold, limit, max_attempts=max_attempts)
        return self.generate_batch(items, cancel_event=cancel_event)

    def generate_manual(self, neighborhood_id: str, category: str, context: str) -> GeneratedContent:
        """
        Draft an article from an editor's request instead of a collected item.

        Raises:
            GenerationError: the oracle gave nothing usable
        """
        prompt = MANUAL_PROMPT_TEMPLATE.format(
            neighborhood=neighborhood_id,
            category=category,
            context=context.strip() or "(none)",
        )
        response = self._ask(prompt, f"manual request ({neighborhood_id}/{category})")
        content = GeneratedContent(
            title=response.title[:MAX_TITLE_CHARS],
            body=response.body,
            summary=response.summary,
            category=category,
            neighborhood_id=neighborhood_id,
            ai_confidence=_clamp(response.confidence),
            created_by="manual-request",
        )
        store.insert_content(content)
        log(f"Manual draft created: {content.id}", detail=content.title, run_id=self.run_id, stage=self.stage_name)
        return content


def _clamp(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return max(0.0, min(1.0, value))
