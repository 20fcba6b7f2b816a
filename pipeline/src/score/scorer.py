"""
Neighborhood News: Scoring Stage
Scores each unscored item for local relevance (0.0-1.0), classifies it and
assigns neighborhood IDs. Items at or above the qualify threshold go on to generation.
Any oracle failure scores the item 0.3 / "other" instead of stopping the batch.
"""

from __future__ import annotations
import threading
from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from pipeline.src import config
from pipeline.src.errors import MalformedResponseError, OracleError
from pipeline.src.framework.base_stage import BaseStage
from pipeline.src.kb import store
from pipeline.src.llm.oracle import LLMCaller, OracleClient, decode_json_object, truncate_for_log
from pipeline.src.models import RawItem, ScoredItem
from pipeline.src.ops_log import log

VALID_CATEGORIES = {
    "local_government", "transport", "weather", "culture", "events",
    "safety", "business", "community", "local", "other",
}

FALLBACK_SCORE = 0.3
FALLBACK_CATEGORY = "other"

SCORE_PROMPT_TEMPLATE = """Analyze this Prague content and assign it to relevant neighborhoods.

Title: {title}
Content: {content}
Source: {source_id}

EXISTING NEIGHBORHOODS (use these IDs):
- vinohrady, karlin, smichov, zizkov
- praha1, praha2, praha4, praha5

Score local relevance from 0.0 to 1.0 and classify the item.
Valid categories: local_government, transport, weather, culture, events, safety, business, community, other

Respond ONLY with valid JSON, no markdown:
{{"score": <0.0-1.0>, "category": "<category>", "neighborhood_ids": ["<id>", ...], "reasoning": "<one sentence>"}}"""


class ScoreResponse(BaseModel):
    """What the oracle must return for one item. `score` is required and finite."""
    score: float = Field(allow_inf_nan=False)
    category: str = FALLBACK_CATEGORY
    neighborhood_ids: list[str] = []
    reasoning: str = ""

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value) -> str:
        value = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
        return value if value in VALID_CATEGORIES else FALLBACK_CATEGORY

    @field_validator("neighborhood_ids", mode="before")
    @classmethod
    def _normalize_neighborhoods(cls, value) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return [str(v).strip().lower() for v in value if str(v).strip()]


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass
class ScoringResult:
    processed: int = 0
    qualified: int = 0
    qualified_items: list[RawItem] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def qualification_rate(self) -> float:
        return self.qualified / max(self.processed, 1)


class Scorer(BaseStage[RawItem, ScoredItem]):
    """
    Args:
        llm_caller: Optional callable(prompt) -> str, replaces the LiteLLM call
    """

    def __init__(
        self,
        llm_caller: Optional[LLMCaller] = None,
        max_workers: Optional[int] = None,
        threshold: Optional[float] = None,
        run_id: Optional[str] = None,
    ):
        self.oracle = OracleClient("scorer", caller=llm_caller)
        self.threshold = config.get_thresholds()["qualify"] if threshold is None else threshold
        self.run_id = run_id
        super().__init__(
            "scorer",
            max_workers=config.get_worker_counts()["llm"] if max_workers is None else max_workers,
            item_timeout=self.oracle.timeout * (self.oracle.max_retries + 1),
        )

    def describe_item(self, item: RawItem) -> str:
        return f"{item.id} ({item.title[:40]})"

    def build_prompt(self, item: RawItem) -> str:
        return SCORE_PROMPT_TEMPLATE.format(
            title=item.title,
            content=item.content_text[:500],
            source_id=item.source_id,
        )

    def score_item(self, item: RawItem) -> ScoredItem:
        """Ask the oracle for a score. Never raises for oracle trouble."""
        raw_text = ""
        try:
            raw_text = self.oracle.complete(self.build_prompt(item))
            response = ScoreResponse.model_validate(decode_json_object(raw_text))
        except (OracleError, MalformedResponseError, ValidationError) as e:
            reason = f"Scoring failed: {type(e).__name__}: {str(e).splitlines()[0]}"
            log(
                f"Scoring fallback for {item.id}",
                detail=f"{reason} | response: {truncate_for_log(raw_text)}",
                level="WARNING", run_id=self.run_id, stage=self.stage_name,
            )
            return ScoredItem(
                item=item,
                score=FALLBACK_SCORE,
                category=FALLBACK_CATEGORY,
                reasoning="Scoring failed - manual review required",
                qualified=FALLBACK_SCORE >= self.threshold,
                fallback_used=True,
                failure_reason=reason,
            )

        score = clamp(response.score)
        return ScoredItem(
            item=item,
            score=score,
            category=response.category,
            neighborhood_ids=response.neighborhood_ids,
            reasoning=response.reasoning.strip() or "No reasoning provided",
            qualified=score >= self.threshold,
        )

    def process_item(self, item: RawItem, **kwargs) -> Optional[ScoredItem]:
        scored = self.score_item(item)
        notes = scored.failure_reason or scored.reasoning
        if not store.update_item_score(
            item.id, scored.score, scored.category, scored.neighborhood_ids, notes
        ):
            # Already scored by an overlapping run
            return None
        scored.item = item.model_copy(update={
            "raw_score": scored.score,
            "category": scored.category,
            "neighborhood_ids": scored.neighborhood_ids,
            "score_notes": notes,
        })
        return scored

    def score_batch(
        self,
        items: list[RawItem],
        cancel_event: Optional[threading.Event] = None,
    ) -> ScoringResult:
        stage = self.process_batch(items, cancel_event=cancel_event)
        result = ScoringResult(errors=list(stage.errors), cancelled=stage.cancelled)
        for scored in stage.output:
            result.processed += 1
            if scored.fallback_used:
                result.errors.append(f"scorer: {scored.item.id}: {scored.failure_reason}")
            if scored.qualified:
                result.qualified += 1
                result.qualified_items.append(scored.item)
        log(
            f"Scoring complete: {result.processed} scored, {result.qualified} qualified "
            f"({result.qualification_rate:.0%})",
            detail=f"{len(result.errors)} errors" if result.errors else "",
            run_id=self.run_id, stage=self.stage_name,
        )
        return result

    def score_pending(self, limit: Optional[int] = None, cancel_event: Optional[threading.Event] = None) -> ScoringResult:
        """Score the oldest page of unscored items from the store."""
        if limit is None:
            limit = config.get_batch_sizes()["score"]
        return self.score_batch(store.get_unscored_items(limit), cancel_event=cancel_event)
