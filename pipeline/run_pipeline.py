"""
Neighborhood News: Main Pipeline Runner
Scheduler entry point (cron, three times a day): one run, one ledger record.

Modes:
  collect | score | generate | validate | publish: a single stage
  full: collect -> score -> generate -> validate -> publish

Usage:
  python -m pipeline.run_pipeline [mode]
"""

from __future__ import annotations
import os
import signal
import sys
import threading

# Ensure paths
PIPELINE_ROOT = os.path.dirname(os.path.abspath(__file__))
REPO_ROOT = os.path.dirname(PIPELINE_ROOT)
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


def run(mode: str = "full", exclusive: bool = True) -> int:
    """
    Execute one pipeline run.
    Returns exit code: 0 = success, 1 = failed or cancelled.
    """
    from pipeline.src.orchestration.orchestrator import PipelineOrchestrator

    orchestrator = PipelineOrchestrator(exclusive=exclusive)
    if threading.current_thread() is not threading.main_thread():
        pipeline_run = orchestrator.run(mode)
    else:
        # SIGTERM from the scheduler stops the run cleanly and still writes the ledger
        previous = signal.signal(signal.SIGTERM, lambda signum, frame: orchestrator.cancel())
        try:
            pipeline_run = orchestrator.run(mode)
        finally:
            signal.signal(signal.SIGTERM, previous)

    print(
        f"Run {pipeline_run.run_id} [{pipeline_run.status}] "
        f"collected={pipeline_run.collected} scored={pipeline_run.scored} "
        f"qualified={pipeline_run.qualified} generated={pipeline_run.generated} "
        f"validated={pipeline_run.validated} published={pipeline_run.published} "
        f"errors={len(pipeline_run.errors)}"
    )
    return 0 if pipeline_run.success else 1


def main() -> int:
    from pipeline.src.models import RUN_MODES

    mode = sys.argv[1] if len(sys.argv) > 1 else "full"
    if mode not in RUN_MODES:
        print(f"Error: mode must be one of {RUN_MODES}", file=sys.stderr)
        return 1
    return run(mode)


if __name__ == "__main__":
    sys.exit(main())
