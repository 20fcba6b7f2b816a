"""
Neighborhood News: Operations Log
Appends pipeline events to logs/pipeline-log.md.
Stage workers write concurrently, so every append holds a process-wide lock.
"""

from __future__ import annotations
import os
import threading
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

OPS_LOG_PATH = Path(
    os.environ.get(
        "OPS_LOG_PATH",
        str(Path(__file__).parent.parent.parent / "logs/pipeline-log.md"),
    )
)

_lock = threading.Lock()


def log(
    action: str,
    detail: str = "",
    level: str = "INFO",
    run_id: Optional[str] = None,
    stage: Optional[str] = None,
) -> None:
    """
    Append a log entry to the operations log.

    Args:
        action: Short description of what happened (e.g., "Collection complete")
        detail: Optional additional context
        level: INFO, WARNING, ERROR
        run_id: Pipeline run ID if applicable
        stage: Stage name if applicable
    """
    now = datetime.now(timezone.utc).isoformat(timespec="seconds")
    run_tag = f" [run:{run_id}]" if run_id else ""
    stage_tag = f" [{stage}]" if stage else ""

    if level == "ERROR":
        entry = f"\n**[ERROR {now}{run_tag}{stage_tag}]** {action}"
        if detail:
            entry += f"\n\n```\n{detail}\n```"
        entry += "\n"
    else:
        entry = f"\n**[{level} {now}{run_tag}{stage_tag}]** {action}"
        if detail:
            entry += f": {detail}"
        entry += "\n"

    with _lock:
        OPS_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        with open(OPS_LOG_PATH, "a", encoding="utf-8") as f:
            f.write(entry)


def log_error(action: str, error: Exception, run_id: Optional[str] = None) -> None:
    """Log an error with traceback."""
    detail = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    log(action=action, detail=detail, level="ERROR", run_id=run_id)


def log_run_start(run_id: str, mode: str) -> None:
    log(action=f"Pipeline run started ({mode})", run_id=run_id)


def log_run_complete(
    run_id: str,
    status: str,
    collected: int,
    scored: int,
    generated: int,
    validated: int,
    published: int,
    errors: int = 0,
) -> None:
    """Log pipeline run completion summary."""
    log(
        action=f"Pipeline run {status}",
        detail=(
            f"Collected: {collected} | Scored: {scored} | Generated: {generated} | "
            f"Validated: {validated} | Published: {published} | Errors: {errors}"
        ),
        level="INFO" if status == "complete" else "WARNING",
        run_id=run_id,
    )
