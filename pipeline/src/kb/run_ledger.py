"""
Neighborhood News: Run Ledger
Append-only history of pipeline invocations. A run is written once, when it ends.
"""

from __future__ import annotations
import json
import sqlite3

from pipeline.src.kb import store
from pipeline.src.models import PipelineRun


def record_run(run: PipelineRun) -> None:
    """Append a finished run. Writing the same run_id twice is an error."""
    with store._conn() as conn:
        conn.execute(
            """
            INSERT INTO pipeline_runs
                (run_id, mode, status, started_at, completed_at, collected, scored,
                 qualified, generated, validated, published, errors, success)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.run_id,
                run.mode,
                run.status,
                run.started_at.isoformat(),
                run.completed_at.isoformat() if run.completed_at else None,
                run.collected,
                run.scored,
                run.qualified,
                run.generated,
                run.validated,
                run.published,
                json.dumps(run.errors),
                int(run.success),
            ),
        )
        conn.commit()


def _row_to_run(r: sqlite3.Row) -> PipelineRun:
    return PipelineRun(
        run_id=r["run_id"],
        mode=r["mode"],
        status=r["status"],
        started_at=store.parse_ts(r["started_at"]),
        completed_at=store.parse_ts(r["completed_at"]),
        collected=r["collected"],
        scored=r["scored"],
        qualified=r["qualified"],
        generated=r["generated"],
        validated=r["validated"],
        published=r["published"],
        errors=json.loads(r["errors"] or "[]"),
        success=bool(r["success"]),
    )


def get_run_history(limit: int = 20) -> list[PipelineRun]:
    """Most recent runs first."""
    with store._conn() as conn:
        rows = conn.execute(
            "SELECT * FROM pipeline_runs ORDER BY started_at DESC LIMIT ?", (limit,)
        ).fetchall()
    return [_row_to_run(r) for r in rows]


def get_run(run_id: str) -> PipelineRun | None:
    with store._conn() as conn:
        row = conn.execute(
            "SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,)
        ).fetchone()
    return _row_to_run(row) if row else None
