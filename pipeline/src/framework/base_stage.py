"""
Neighborhood News Pipeline Framework: Base Stage Interface
Domain-agnostic. No hardcoded source URLs, neighborhoods, or prompts.
"""

from __future__ import annotations
import math
import sqlite3
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar

from pipeline.src.errors import RunCancelled, StoreUnavailableError

Input = TypeVar("Input")
Output = TypeVar("Output")

# Errors that mean the stage cannot reach its store. They abort the stage
# instead of being recorded against a single item.
FATAL_ERRORS: tuple[type[BaseException], ...] = (StoreUnavailableError, sqlite3.Error)


@dataclass
class StageResult(Generic[Output]):
    """Result of running a pipeline stage."""
    output: list[Output]
    errors: list[str] = field(default_factory=list)
    stage_name: str = ""
    skipped: int = 0
    cancelled: bool = False

    @property
    def success_rate(self) -> float:
        total = len(self.output) + len(self.errors)
        return len(self.output) / total if total > 0 else 1.0


class BaseStage(ABC, Generic[Input, Output]):
    """
    Abstract base class for all pipeline stages.

    Subclass this to implement a pipeline stage. Each stage:
    1. Receives input from the previous stage (or from the store)
    2. Processes items on a bounded worker pool
    3. Returns a StageResult whose output keeps input order

    process_item returns None when there was nothing to persist (the item
    was already handled elsewhere); that counts as skipped, not as an error.
    """

    def __init__(
        self,
        stage_name: str,
        config: dict | None = None,
        max_workers: int = 1,
        item_timeout: Optional[float] = None,
    ):
        self.stage_name = stage_name
        self.config = config or {}
        self.max_workers = max(1, int(max_workers))
        self.item_timeout = item_timeout

    @abstractmethod
    def process_item(self, item: Input, **kwargs) -> Optional[Output]:
        """Process a single input item. Implement in subclass."""
        ...

    def describe_item(self, item: Input) -> str:
        """Short label used in error messages."""
        return str(getattr(item, "id", item))[:60]

    def process_batch(
        self,
        items: list[Input],
        cancel_event: Optional[threading.Event] = None,
        **kwargs,
    ) -> StageResult[Output]:
        """
        Process a batch of items concurrently.

        One item's failure is recorded and never stops the batch. Store
        failures are re-raised once the pool has drained. Items still running
        when the batch deadline passes are recorded as timed out.

        Everything that finished by the time the deadline is handled is
        counted, including futures that completed while the timeout was being
        raised. A worker thread cannot be interrupted: one still running at the
        deadline may persist its item later, and that write is not counted in
        this batch. Stage writes are guarded, so a later batch skips it.
        """
        if not items:
            return StageResult(output=[], stage_name=self.stage_name)

        workers = min(self.max_workers, len(items))
        deadline = None
        if self.item_timeout:
            deadline = self.item_timeout * math.ceil(len(items) / workers)
        expired = threading.Event()

        def run_one(item: Input) -> Optional[Output]:
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelled(f"{self.stage_name} cancelled")
            if expired.is_set():
                raise TimeoutError("batch deadline passed before the item started")
            return self.process_item(item, **kwargs)

        results: dict[int, Output] = {}
        errors: list[tuple[int, str]] = []
        harvested: set[int] = set()
        skipped = 0
        cancelled = False
        fatal: Optional[BaseException] = None

        def harvest(future: Future, idx: int) -> None:
            nonlocal skipped, cancelled, fatal
            harvested.add(idx)
            try:
                output = future.result()
            except RunCancelled:
                cancelled = True
                return
            except FATAL_ERRORS as e:
                fatal = fatal or e
                return
            except Exception as e:
                errors.append((idx, f"{self.stage_name}: {self.describe_item(items[idx])}: {e}"))
                return
            if output is None:
                skipped += 1
            else:
                results[idx] = output

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=self.stage_name)
        try:
            futures = {executor.submit(run_one, item): idx for idx, item in enumerate(items)}
            try:
                for future in as_completed(futures, timeout=deadline):
                    harvest(future, futures[future])
            except FuturesTimeout:
                expired.set()
                for future, idx in futures.items():
                    if idx in harvested:
                        continue
                    if future.done() and not future.cancelled():
                        harvest(future, idx)
                        continue
                    future.cancel()
                    errors.append(
                        (idx, f"{self.stage_name}: {self.describe_item(items[idx])}: "
                              f"timed out after {deadline:.0f}s")
                    )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if fatal is not None:
            raise fatal

        return StageResult(
            output=[results[idx] for idx in sorted(results)],
            errors=[msg for _, msg in sorted(errors)],
            stage_name=self.stage_name,
            skipped=skipped,
            cancelled=cancelled,
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(stage={self.stage_name}, workers={self.max_workers})"
