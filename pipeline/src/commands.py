"""
Neighborhood News: Command Surface
What the admin UI, CLI and scheduler call. Every command returns a CommandResult;
domain errors come back as ok=False instead of being raised.
"""

from __future__ import annotations
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from pipeline.src.collect import source_registry
from pipeline.src.errors import PipelineError
from pipeline.src.generate.generator import Generator
from pipeline.src.kb import run_ledger, store
from pipeline.src.llm.oracle import LLMCaller
from pipeline.src.models import RUN_MODES, STATUS_REVIEW, Source
from pipeline.src.ops_log import log
from pipeline.src.orchestration.orchestrator import PipelineOrchestrator
from pipeline.src.publish import approval_gate
from pipeline.src.publish.publisher import PublisherHook


class CommandResult(BaseModel):
    ok: bool
    data: Any = None
    error: Optional[str] = None


class ReviewQueueFilters(BaseModel):
    category: Optional[str] = None
    neighborhood_id: Optional[str] = None
    min_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    max_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    validated_only: bool = False
    limit: int = Field(default=50, ge=1, le=500)


def _fail(error: Exception | str) -> CommandResult:
    return CommandResult(ok=False, error=str(error))


def _validation_message(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "source"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def trigger_pipeline(
    mode: str = "full",
    llm_caller: Optional[LLMCaller] = None,
    publisher_hook: Optional[PublisherHook] = None,
    exclusive: bool = True,
) -> CommandResult:
    """Run the pipeline once. data is the PipelineRun that was written to the ledger."""
    if mode not in RUN_MODES:
        return _fail(f"Invalid mode {mode!r}. Use one of: {', '.join(RUN_MODES)}")
    orchestrator = PipelineOrchestrator(
        llm_caller=llm_caller, publisher_hook=publisher_hook, exclusive=exclusive,
    )
    run = orchestrator.run(mode)
    return CommandResult(
        ok=run.success,
        data=run.model_dump(mode="json"),
        error=None if run.success else (run.errors[-1] if run.errors else run.status),
    )


def approve_content(
    content_id: str,
    notes: str = "",
    actor: str = "admin",
    publisher_hook: Optional[PublisherHook] = None,
) -> CommandResult:
    try:
        outcome = approval_gate.transition(
            content_id, approval_gate.APPROVE, actor=actor, reason=notes or None,
            hook=publisher_hook,
        )
    except PipelineError as e:
        return _fail(e)
    data = {"content": outcome.content.model_dump(mode="json")}
    if outcome.hook_error:
        data["warning"] = outcome.hook_error
    return CommandResult(ok=True, data=data)


def reject_content(content_id: str, reason: str, actor: str = "admin") -> CommandResult:
    if not reason or not reason.strip():
        return _fail("Rejection reason is required")
    try:
        outcome = approval_gate.transition(
            content_id, approval_gate.REJECT, actor=actor, reason=reason.strip(),
        )
    except PipelineError as e:
        return _fail(e)
    return CommandResult(ok=True, data={"content": outcome.content.model_dump(mode="json")})


BATCH_ACTIONS = (approval_gate.APPROVE, approval_gate.REJECT)


def _batch_summary(action: str, actor: str, results: list[dict]) -> dict:
    succeeded = sum(1 for r in results if r["success"])
    log(
        f"Batch {action}: {succeeded}/{len(results)} succeeded",
        detail=f"actor={actor}",
        stage="gate",
    )
    return {
        "action": action,
        "items_processed": len(results),
        "succeeded": succeeded,
        "results": results,
    }


def batch_transition(
    content_ids: list[str],
    action: str,
    actor: str = "admin",
    reason: str = "",
    publisher_hook: Optional[PublisherHook] = None,
) -> CommandResult:
    """
    Approve or reject several drafts at once. Each id goes through the same
    transition as a single approve/reject; one failure never stops the rest.
    data["results"] holds one {id, success, old_status, new_status | error} per id.
    """
    if action not in BATCH_ACTIONS:
        return _fail(f"Invalid batch action {action!r}. Use one of: {', '.join(BATCH_ACTIONS)}")
    if not content_ids:
        return _fail("content_ids must not be empty")
    if action == approval_gate.REJECT and not (reason and reason.strip()):
        return _fail("Rejection reason is required")

    results = []
    for content_id in dict.fromkeys(content_ids):
        try:
            outcome = approval_gate.transition(
                content_id, action, actor=actor, reason=reason.strip() or None,
                hook=publisher_hook,
            )
        except PipelineError as e:
            results.append({"id": content_id, "success": False, "error": str(e)})
            continue
        entry = {
            "id": content_id,
            "success": True,
            "old_status": STATUS_REVIEW,
            "new_status": outcome.content.status,
        }
        if outcome.hook_error:
            entry["warning"] = outcome.hook_error
        results.append(entry)
    return CommandResult(ok=True, data=_batch_summary(action, actor, results))


def bulk_approve_by_confidence(
    threshold: float = 0.8,
    max_items: int = 50,
    actor: str = "admin",
    publisher_hook: Optional[PublisherHook] = None,
) -> CommandResult:
    """Publish validated review drafts at or above threshold, most confident first."""
    if not 0 <= threshold <= 1:
        return _fail("threshold must be between 0 and 1")
    if max_items < 1:
        return _fail("max_items must be at least 1")
    try:
        candidates = store.list_content(
            STATUS_REVIEW, min_confidence=threshold, validated_only=True, limit=max_items,
        )
    except PipelineError as e:
        return _fail(e)
    if not candidates:
        return CommandResult(ok=True, data=_batch_summary(approval_gate.APPROVE, actor, []))
    candidates.sort(key=lambda c: c.ai_confidence, reverse=True)
    return batch_transition(
        [c.id for c in candidates], approval_gate.APPROVE, actor=actor,
        publisher_hook=publisher_hook,
    )


def list_review_queue(filters: Optional[ReviewQueueFilters] = None) -> CommandResult:
    filters = filters or ReviewQueueFilters()
    try:
        items = store.list_content(
            STATUS_REVIEW,
            category=filters.category,
            neighborhood_id=filters.neighborhood_id,
            min_confidence=filters.min_confidence,
            max_confidence=filters.max_confidence,
            validated_only=filters.validated_only,
            limit=filters.limit,
        )
    except PipelineError as e:
        return _fail(e)
    return CommandResult(ok=True, data=[c.model_dump(mode="json") for c in items])


def get_run_history(limit: int = 20) -> CommandResult:
    try:
        runs = run_ledger.get_run_history(max(1, limit))
    except PipelineError as e:
        return _fail(e)
    return CommandResult(
        ok=True,
        data=[dict(r.model_dump(mode="json"), duration_ms=r.duration_ms) for r in runs],
    )


def upsert_source(data: dict) -> CommandResult:
    try:
        source = source_registry.upsert_source(Source(**data))
    except ValidationError as e:
        return _fail(f"Invalid source: {_validation_message(e)}")
    except PipelineError as e:
        return _fail(e)
    return CommandResult(ok=True, data=source.model_dump(mode="json"))


def seed_sources(path: Optional[Path] = None) -> CommandResult:
    """Upsert the default sources from sources.yaml (or path). A bad file seeds nothing."""
    try:
        count = source_registry.seed_sources(path)
    except ValidationError as e:
        return _fail(f"Invalid source in seed file: {_validation_message(e)}")
    except (TypeError, AttributeError) as e:
        return _fail(f"Malformed seed file: {e}")
    except yaml.YAMLError as e:
        return _fail(f"Seed file is not valid YAML: {e}")
    except OSError as e:
        return _fail(f"Cannot read seed file: {e}")
    except PipelineError as e:
        return _fail(e)
    return CommandResult(ok=True, data={"seeded": count})


def toggle_source(source_id: str, enabled: bool) -> CommandResult:
    try:
        found = source_registry.set_enabled(source_id, enabled)
    except PipelineError as e:
        return _fail(e)
    if not found:
        return _fail(f"Source {source_id} not found")
    return CommandResult(ok=True, data={"id": source_id, "enabled": enabled})


def delete_source(source_id: str) -> CommandResult:
    try:
        found = source_registry.delete_source(source_id)
    except PipelineError as e:
        return _fail(e)
    if not found:
        return _fail(f"Source {source_id} not found")
    return CommandResult(ok=True, data={"id": source_id, "deleted": True})


def list_sources() -> CommandResult:
    try:
        sources = source_registry.list_sources()
    except PipelineError as e:
        return _fail(e)
    return CommandResult(
        ok=True,
        data=[
            dict(s.model_dump(mode="json"), health=source_registry.health_status(s))
            for s in sources
        ],
    )


def generate_content(
    neighborhood_id: str,
    category: str,
    context: str = "",
    llm_caller: Optional[LLMCaller] = None,
) -> CommandResult:
    """Manual draft request; the result waits in the review queue like any other."""
    if not neighborhood_id or not category:
        return _fail("neighborhood_id and category are required")
    try:
        content = Generator(llm_caller=llm_caller).generate_manual(neighborhood_id, category, context)
    except PipelineError as e:
        return _fail(e)
    return CommandResult(ok=True, data=content.model_dump(mode="json"))
