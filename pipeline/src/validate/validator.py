"""
Neighborhood News: Validation Stage
Asks the oracle whether a draft is fit for publication. Writes confidence,
checks and flags onto the content row. Never changes status (the approval gate does).
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
from pipeline.src.models import GeneratedContent, ValidationChecks, ValidationResult
from pipeline.src.ops_log import log

FALLBACK_CONFIDENCE = 0.3
FALLBACK_FLAG = "validation_error"
FALLBACK_NOTES = "Validation failed - requires manual review"

VALIDATE_PROMPT_TEMPLATE = """Validate this Prague news content for publication.

Title: {title}
Content: {body}
Category: {category}
Neighborhood: {neighborhood}

Check for:
1. Factual accuracy (verifiable claims)
2. Local relevance to Prague neighborhoods
3. Safety (no harmful/misleading info)
4. Grammar and readability

Flag any issues: unverified claims, inappropriate content, poor quality writing,
misleading information.

Rate confidence 0.0-1.0 for auto-publication.

Respond ONLY with valid JSON, no markdown:
{{"confidence": <0.0-1.0>, "checks": {{"accuracy": <bool>, "relevance": <bool>, "safety": <bool>, "quality": <bool>}}, "flags": ["<issue>", ...], "notes": "<brief assessment>"}}"""


class ValidationResponse(BaseModel):
    confidence: float = Field(allow_inf_nan=False)
    checks: ValidationChecks = Field(default_factory=ValidationChecks)
    flags: list[str] = []
    notes: str = ""

    @field_validator("flags", mode="before")
    @classmethod
    def _normalize_flags(cls, value) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return [str(v).strip() for v in value if str(v).strip()]


def fallback_result(content_id: str) -> ValidationResult:
    return ValidationResult(
        content_id=content_id,
        confidence=FALLBACK_CONFIDENCE,
        checks=ValidationChecks(),
        flags=[FALLBACK_FLAG],
        notes=FALLBACK_NOTES,
        fallback_used=True,
    )


@dataclass
class ValidationBatchResult:
    validated: int = 0
    results: list[ValidationResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False


class Validator(BaseStage[GeneratedContent, ValidationResult]):

    def __init__(
        self,
        llm_caller: Optional[LLMCaller] = None,
        max_workers: Optional[int] = None,
        run_id: Optional[str] = None,
    ):
        self.oracle = OracleClient("validator", caller=llm_caller)
        self.run_id = run_id
        super().__init__(
            "validator",
            max_workers=config.get_worker_counts()["llm"] if max_workers is None else max_workers,
            item_timeout=self.oracle.timeout * (self.oracle.max_retries + 1),
        )

    def describe_item(self, item: GeneratedContent) -> str:
        return f"{item.id} ({item.title[:40]})"

    def validate_content(self, content: GeneratedContent) -> ValidationResult:
        """Oracle assessment of one draft. Oracle trouble yields the fallback result."""
        raw_text = ""
        try:
            raw_text = self.oracle.complete(
                VALIDATE_PROMPT_TEMPLATE.format(
                    title=content.title,
                    body=content.body[:3000],
                    category=content.category,
                    neighborhood=content.neighborhood_id,
                )
            )
            response = ValidationResponse.model_validate(decode_json_object(raw_text))
        except (OracleError, MalformedResponseError, ValidationError) as e:
            log(
                f"Validation fallback for {content.id}",
                detail=f"{type(e).__name__}: {str(e).splitlines()[0]} | "
                       f"response: {truncate_for_log(raw_text)}",
                level="WARNING", run_id=self.run_id, stage=self.stage_name,
            )
            return fallback_result(content.id)

        return ValidationResult(
            content_id=content.id,
            confidence=max(0.0, min(1.0, response.confidence)),
            checks=response.checks,
            flags=response.flags,
            notes=response.notes.strip(),
        )

    def process_item(self, item: GeneratedContent, **kwargs) -> Optional[ValidationResult]:
        result = self.validate_content(item)
        if not store.update_content_validation(
            item.id,
            result.confidence,
            result.notes,
            result.checks.model_dump(),
            result.flags,
        ):
            # Already validated, or no longer in review
            return None
        return result

    def validate_batch(
        self,
        items: list[GeneratedContent],
        cancel_event: Optional[threading.Event] = None,
    ) -> ValidationBatchResult:
        stage = self.process_batch(items, cancel_event=cancel_event)
        result = ValidationBatchResult(
            validated=len(stage.output),
            results=list(stage.output),
            errors=list(stage.errors),
            cancelled=stage.cancelled,
        )
        for vr in stage.output:
            if vr.fallback_used:
                result.errors.append(f"validator: {vr.content_id}: {FALLBACK_NOTES}")
        log(
            f"Validation complete: {result.validated} drafts assessed",
            detail=f"{len(result.errors)} errors" if result.errors else "",
            run_id=self.run_id, stage=self.stage_name,
        )
        return result

    def validate_pending(
        self,
        limit: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ValidationBatchResult:
        if limit is None:
            limit = config.get_batch_sizes()["validate"]
        return self.validate_batch(store.get_unvalidated_content(limit), cancel_event=cancel_event)
