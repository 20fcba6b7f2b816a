"""
Neighborhood News: Auto-Approval Gate
The only place content status changes. review -> published | rejected;
both end states are terminal.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from pipeline.src import config
from pipeline.src.errors import ContentNotFoundError, InvalidTransitionError
from pipeline.src.kb import store
from pipeline.src.models import (
    STATUS_PUBLISHED,
    STATUS_REJECTED,
    STATUS_REVIEW,
    GeneratedContent,
    Publication,
    ValidationChecks,
    ValidationResult,
)
from pipeline.src.ops_log import log
from pipeline.src.publish import publisher

AUTO_APPROVE = "auto_approve"
APPROVE = "approve"
REJECT = "reject"
AUTO_REJECT = "auto_reject"

# action -> (allowed from, resulting status)
TRANSITIONS = {
    AUTO_APPROVE: (STATUS_REVIEW, STATUS_PUBLISHED),
    APPROVE: (STATUS_REVIEW, STATUS_PUBLISHED),
    REJECT: (STATUS_REVIEW, STATUS_REJECTED),
    AUTO_REJECT: (STATUS_REVIEW, STATUS_REJECTED),
}

AUTO_ACTOR = "ai-auto-approval"


def should_auto_approve(result: ValidationResult, threshold: Optional[float] = None) -> bool:
    """confidence >= threshold, accurate, safe and unflagged. Pure."""
    if threshold is None:
        threshold = config.get_thresholds()["auto_approve"]
    return (
        result.confidence >= threshold
        and result.checks.accuracy
        and result.checks.safety
        and len(result.flags) == 0
    )


def should_auto_reject(result: ValidationResult, below: Optional[float] = None) -> bool:
    """Only when an auto_reject_below policy is configured. Off by default."""
    if below is None:
        below = config.get_thresholds()["auto_reject_below"]
    if below is None:
        return False
    return result.confidence < below


def result_from_content(content: GeneratedContent) -> Optional[ValidationResult]:
    """Rebuild the stored validation result of a draft (None if never validated)."""
    if content.validated_at is None or content.ai_confidence is None:
        return None
    return ValidationResult(
        content_id=content.id,
        confidence=content.ai_confidence,
        checks=ValidationChecks(**(content.validation_checks or {})),
        flags=list(content.validation_flags),
        notes=content.validation_notes or "",
    )


@dataclass
class TransitionOutcome:
    content: GeneratedContent
    publication: Optional[Publication] = None
    hook_error: Optional[str] = None


def transition(
    content_id: str,
    action: str,
    actor: str = AUTO_ACTOR,
    reason: Optional[str] = None,
    result: Optional[ValidationResult] = None,
    hook: Optional[publisher.PublisherHook] = None,
    run_id: Optional[str] = None,
) -> TransitionOutcome:
    """
    Apply one status transition.

    Raises:
        ContentNotFoundError: no such content
        InvalidTransitionError: unknown action, content not in review, the
            automatic policy does not allow it, or another decider won the race
    """
    if action not in TRANSITIONS:
        raise InvalidTransitionError(f"Unknown action: {action}")

    content = store.get_content(content_id)
    if content is None:
        raise ContentNotFoundError(f"Content {content_id} not found")

    from_status, to_status = TRANSITIONS[action]
    if content.status != from_status:
        raise InvalidTransitionError(
            f"Cannot {action} content {content_id}: status is {content.status}"
        )

    if action in (AUTO_APPROVE, AUTO_REJECT):
        result = result or result_from_content(content)
        if result is None:
            raise InvalidTransitionError(f"Cannot {action} content {content_id}: not validated")
        if action == AUTO_APPROVE and not should_auto_approve(result):
            raise InvalidTransitionError(
                f"Content {content_id} does not meet the auto-approval policy"
            )
        if action == AUTO_REJECT and not should_auto_reject(result):
            raise InvalidTransitionError(
                f"Content {content_id} does not meet the auto-reject policy"
            )

    now = datetime.now(timezone.utc)
    if to_status == STATUS_PUBLISHED:
        changed = store.set_content_status(
            content_id, from_status, to_status, published_at=now, approved_by=actor,
        )
    else:
        changed = store.set_content_status(
            content_id, from_status, to_status, rejected_at=now,
            rejection_reason=reason or "Rejected",
        )
    if not changed:
        raise InvalidTransitionError(f"Content {content_id} left review concurrently")

    content = store.get_content(content_id)
    outcome = TransitionOutcome(content=content)
    log(
        f"Content {to_status}: {content_id}",
        detail=f"action={action} actor={actor}" + (f" reason={reason}" if reason else ""),
        run_id=run_id, stage="gate",
    )

    if to_status == STATUS_PUBLISHED:
        outcome.publication, outcome.hook_error = publisher.record_publication(
            content, auto_published=(action == AUTO_APPROVE), hook=hook,
        )
        if outcome.hook_error:
            log("Publisher hook failed", detail=outcome.hook_error, level="WARNING", run_id=run_id, stage="gate")
    return outcome


@dataclass
class GateResult:
    published: int = 0
    rejected: int = 0
    kept_for_review: int = 0
    skipped: int = 0  # decided elsewhere before the gate got to it
    published_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def evaluate(
    results: list[ValidationResult],
    hook: Optional[publisher.PublisherHook] = None,
    run_id: Optional[str] = None,
    cancel_event=None,
) -> GateResult:
    """Publish every result that passes the policy; everything else stays in review."""
    gate = GateResult()
    for result in results:
        if cancel_event is not None and cancel_event.is_set():
            break
        if should_auto_approve(result):
            action = AUTO_APPROVE
        elif should_auto_reject(result):
            action = AUTO_REJECT
        else:
            gate.kept_for_review += 1
            continue
        try:
            outcome = transition(
                result.content_id, action, actor=AUTO_ACTOR,
                reason="Confidence below auto-reject threshold" if action == AUTO_REJECT else None,
                result=result, hook=hook, run_id=run_id,
            )
        except (InvalidTransitionError, ContentNotFoundError) as e:
            # A human decided first, or the row is gone
            gate.skipped += 1
            log("Gate skipped content", detail=str(e), level="WARNING", run_id=run_id, stage="gate")
            continue
        if outcome.hook_error:
            gate.errors.append(f"gate: {outcome.hook_error}")
        if action == AUTO_APPROVE:
            gate.published += 1
            gate.published_ids.append(result.content_id)
        else:
            gate.rejected += 1
    log(
        f"Gate complete: {gate.published} published, {gate.rejected} rejected, "
        f"{gate.kept_for_review} kept for review, {gate.skipped} skipped",
        run_id=run_id, stage="gate",
    )
    return gate


def evaluate_pending(
    limit: Optional[int] = None,
    hook: Optional[publisher.PublisherHook] = None,
    run_id: Optional[str] = None,
    cancel_event=None,
) -> GateResult:
    """
    publish mode: re-run the policy over validated drafts still in review.
    Only drafts the policy can decide are loaded, so drafts waiting for a
    human never crowd out the ones behind them.
    """
    if limit is None:
        limit = config.get_batch_sizes()["publish"]
    results = []
    thresholds = config.get_thresholds()
    candidates = store.get_auto_decision_candidates(
        thresholds["auto_approve"], thresholds["auto_reject_below"], limit,
    )
    for content in candidates:
        result = result_from_content(content)
        if result is not None:
            results.append(result)
    return evaluate(results, hook=hook, run_id=run_id, cancel_event=cancel_event)
