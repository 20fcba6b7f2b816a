"""
Neighborhood News: Pipeline Orchestrator
Sequences collect -> score -> generate -> validate -> publish for one run mode
and appends exactly one PipelineRun to the run ledger.

Per-item failures are collected in run.errors and never stop later stages.
Only a store failure fails the run.
"""

from __future__ import annotations
import threading
import uuid
from datetime import datetime, timezone
from typing import Optional

from pipeline.src import config
from pipeline.src.collect.collector import Collector
from pipeline.src.errors import LeaseHeldError, RunCancelled
from pipeline.src.framework.base_stage import FATAL_ERRORS
from pipeline.src.generate.generator import GenerationResult, Generator
from pipeline.src.kb import run_ledger, store
from pipeline.src.llm.oracle import LLMCaller
from pipeline.src.models import RUN_MODES, PipelineRun
from pipeline.src.ops_log import log, log_error, log_run_complete, log_run_start
from pipeline.src.publish import approval_gate
from pipeline.src.publish.publisher import PublisherHook
from pipeline.src.score.scorer import Scorer, ScoringResult
from pipeline.src.validate.validator import ValidationBatchResult, Validator

STAGES_BY_MODE = {
    "collect": ("collect",),
    "score": ("score",),
    "generate": ("generate",),
    "validate": ("validate",),
    "publish": ("publish",),
    "full": ("collect", "score", "generate", "validate", "publish"),
}


class PipelineOrchestrator:
    """
    Args:
        llm_caller: Optional callable(prompt) -> str used by every oracle stage
        scorer_caller / generator_caller / validator_caller: per-stage override
        publisher_hook: Optional hand-off called for each published article
        exclusive: hold the run lease so two exclusive runs never overlap
    """

    def __init__(
        self,
        llm_caller: Optional[LLMCaller] = None,
        scorer_caller: Optional[LLMCaller] = None,
        generator_caller: Optional[LLMCaller] = None,
        validator_caller: Optional[LLMCaller] = None,
        publisher_hook: Optional[PublisherHook] = None,
        exclusive: bool = False,
    ):
        self.scorer_caller = scorer_caller or llm_caller
        self.generator_caller = generator_caller or llm_caller
        self.validator_caller = validator_caller or llm_caller
        self.publisher_hook = publisher_hook
        self.exclusive = exclusive
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop before the next item/stage. Safe to call from another thread."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _check_cancel(self) -> None:
        if self._cancel.is_set():
            raise RunCancelled("run cancelled")

    def run(self, mode: str = "full", run_id: Optional[str] = None) -> PipelineRun:
        if mode not in RUN_MODES:
            raise ValueError(f"Unknown run mode: {mode!r} (expected one of {', '.join(RUN_MODES)})")

        run = PipelineRun(run_id=run_id or str(uuid.uuid4()), mode=mode)
        self._cancel.clear()
        log_run_start(run.run_id, mode)
        lease_taken = False

        try:
            if self.exclusive:
                if not store.acquire_lease(run.run_id, config.get_lease_ttl()):
                    raise LeaseHeldError("another exclusive pipeline run is in progress")
                lease_taken = True
            self._run_stages(run)
            run.status = "complete"
        except (RunCancelled, KeyboardInterrupt):
            run.status = "cancelled"
            run.success = False
            run.errors.append("run cancelled before completion")
            log("Pipeline run cancelled", level="WARNING", run_id=run.run_id)
        except LeaseHeldError as e:
            run.status = "failed"
            run.success = False
            run.errors.append(str(e))
            log("Pipeline run refused", detail=str(e), level="WARNING", run_id=run.run_id)
        except FATAL_ERRORS as e:
            run.status = "failed"
            run.success = False
            run.errors.append(f"store: {type(e).__name__}: {e}")
            log_error("Pipeline run aborted: store unavailable", e, run_id=run.run_id)

        run.completed_at = datetime.now(timezone.utc)
        self._finish(run, lease_taken)
        return run

    def _finish(self, run: PipelineRun, lease_taken: bool) -> None:
        try:
            run_ledger.record_run(run)
        except FATAL_ERRORS as e:
            log_error("Run ledger write failed", e, run_id=run.run_id)
        if lease_taken:
            try:
                store.release_lease(run.run_id)
            except FATAL_ERRORS as e:
                log_error("Run lease release failed", e, run_id=run.run_id)
        log_run_complete(
            run.run_id,
            run.status,
            collected=run.collected,
            scored=run.scored,
            generated=run.generated,
            validated=run.validated,
            published=run.published,
            errors=len(run.errors),
        )

    def _run_stages(self, run: PipelineRun) -> None:
        stages = STAGES_BY_MODE[run.mode]
        full = run.mode == "full"
        scoring: Optional[ScoringResult] = None
        generation: Optional[GenerationResult] = None
        validation: Optional[ValidationBatchResult] = None

        if "collect" in stages:
            self._check_cancel()
            log("Stage: Collection", run_id=run.run_id)
            collection = Collector(run_id=run.run_id).collect(cancel_event=self._cancel)
            run.collected = collection.collected
            run.errors.extend(collection.errors)
            if collection.cancelled:
                raise RunCancelled("cancelled during collection")

        if "score" in stages:
            self._check_cancel()
            log("Stage: Scoring", run_id=run.run_id)
            scorer = Scorer(llm_caller=self.scorer_caller, run_id=run.run_id)
            scoring = scorer.score_pending(cancel_event=self._cancel)
            run.scored = scoring.processed
            run.qualified = scoring.qualified
            run.errors.extend(scoring.errors)
            if scoring.cancelled:
                raise RunCancelled("cancelled during scoring")

        if "generate" in stages:
            self._check_cancel()
            generator = Generator(llm_caller=self.generator_caller, run_id=run.run_id)
            if full:
                log(f"Stage: Generation ({len(scoring.qualified_items)} qualified)", run_id=run.run_id)
                generation = generator.generate_batch(scoring.qualified_items, cancel_event=self._cancel)
            else:
                log("Stage: Generation", run_id=run.run_id)
                generation = generator.generate_pending(cancel_event=self._cancel)
            run.generated = generation.generated
            run.errors.extend(generation.errors)
            if generation.cancelled:
                raise RunCancelled("cancelled during generation")

        if "validate" in stages:
            self._check_cancel()
            validator = Validator(llm_caller=self.validator_caller, run_id=run.run_id)
            if full:
                log(f"Stage: Validation ({len(generation.content)} drafts)", run_id=run.run_id)
                validation = validator.validate_batch(generation.content, cancel_event=self._cancel)
            else:
                log("Stage: Validation", run_id=run.run_id)
                validation = validator.validate_pending(cancel_event=self._cancel)
            run.validated = validation.validated
            run.errors.extend(validation.errors)
            if validation.cancelled:
                raise RunCancelled("cancelled during validation")

        if "publish" in stages:
            self._check_cancel()
            log("Stage: Auto-approval", run_id=run.run_id)
            if full:
                gate = approval_gate.evaluate(
                    validation.results, hook=self.publisher_hook,
                    run_id=run.run_id, cancel_event=self._cancel,
                )
            else:
                gate = approval_gate.evaluate_pending(
                    hook=self.publisher_hook, run_id=run.run_id, cancel_event=self._cancel,
                )
            run.published = gate.published
            run.errors.extend(gate.errors)
            self._check_cancel()
