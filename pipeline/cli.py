"""
Neighborhood News: Admin CLI
Implements all `newsroom <command>` commands on top of pipeline.src.commands.
"""

from __future__ import annotations
import argparse
import json
import sys
from pathlib import Path

from pydantic import ValidationError

from pipeline.src import commands
from pipeline.src.models import RUN_MODES


def _print_result(result: commands.CommandResult, as_json: bool = False) -> int:
    if not result.ok:
        print(f"Error: {result.error}", file=sys.stderr)
        if as_json and result.data is not None:
            print(json.dumps(result.data, indent=2))
        return 1
    if as_json:
        print(json.dumps(result.data, indent=2))
    return 0


def cmd_run(args) -> int:
    result = commands.trigger_pipeline(args.mode, exclusive=not args.no_lease)
    run = result.data or {}
    if run:
        print(f"Run {run['run_id']} [{run['status']}] mode={run['mode']}")
        print(f"  collected={run['collected']} scored={run['scored']} qualified={run['qualified']} "
              f"generated={run['generated']} validated={run['validated']} published={run['published']}")
        for err in run["errors"][:10]:
            print(f"  ! {err}")
        if len(run["errors"]) > 10:
            print(f"  ... {len(run['errors']) - 10} more errors")
    return _print_result(result, as_json=args.json)


def cmd_history(args) -> int:
    result = commands.get_run_history(args.limit)
    if result.ok and not args.json:
        if not result.data:
            print("No runs yet")
        for run in result.data:
            duration = f"{run['duration_ms'] / 1000:.1f}s" if run["duration_ms"] is not None else "-"
            print(f"{run['started_at'][:19]}  {run['mode']:9s} {run['status']:9s} {duration:>8s}  "
                  f"c={run['collected']} s={run['scored']} g={run['generated']} "
                  f"v={run['validated']} p={run['published']} errors={len(run['errors'])}")
    return _print_result(result, as_json=args.json)


def cmd_queue(args) -> int:
    try:
        filters = commands.ReviewQueueFilters(
            category=args.category,
            neighborhood_id=args.neighborhood,
            min_confidence=args.min_confidence,
            max_confidence=args.max_confidence,
            validated_only=args.validated_only,
            limit=args.limit,
        )
    except ValidationError as e:
        print(f"Error: invalid filters: {e.errors()[0]['msg']}", file=sys.stderr)
        return 1
    result = commands.list_review_queue(filters)
    if result.ok and not args.json:
        if not result.data:
            print("Review queue is empty")
        for item in result.data:
            conf = item["ai_confidence"]
            conf_text = f"{conf:.2f}" if conf is not None else " -- "
            flags = ",".join(item["validation_flags"]) or "-"
            print(f"{item['id']}  [{conf_text}] {item['neighborhood_id']:10s} {item['category']:16s} "
                  f"{item['title'][:60]}  flags={flags}")
    return _print_result(result, as_json=args.json)


def cmd_approve(args) -> int:
    result = commands.approve_content(args.content_id, notes=args.notes or "", actor=args.actor)
    if result.ok:
        print(f"Published {args.content_id}")
        if result.data.get("warning"):
            print(f"Warning: {result.data['warning']}")
    return _print_result(result)


def cmd_reject(args) -> int:
    result = commands.reject_content(args.content_id, " ".join(args.reason), actor=args.actor)
    if result.ok:
        print(f"Rejected {args.content_id}")
    return _print_result(result)


def cmd_generate(args) -> int:
    result = commands.generate_content(args.neighborhood, args.category, " ".join(args.context))
    if result.ok and not args.json:
        print(f"Draft {result.data['id']} waiting in review: {result.data['title']}")
    return _print_result(result, as_json=args.json)


def cmd_sources(args) -> int:
    action = args.action
    if action == "list":
        result = commands.list_sources()
        if result.ok and not args.json:
            for s in result.data:
                state = "on " if s["enabled"] else "off"
                print(f"{s['id']:20s} {state} p={s['priority']:<2d} {s['health']:9s} "
                      f"fetches={s['fetch_count']} errors={s['error_count']}  {s['url']}")
        return _print_result(result, as_json=args.json)
    if action == "add":
        data = {
            "name": args.name,
            "url": args.url,
            "category_hint": args.category,
            "neighborhood_id": args.neighborhood,
            "priority": args.priority,
        }
        if args.id:
            data["id"] = args.id
        result = commands.upsert_source(data)
        if result.ok:
            print(f"Saved source {result.data['id']}")
        return _print_result(result)
    if action in ("enable", "disable"):
        result = commands.toggle_source(args.source_id, action == "enable")
        if result.ok:
            print(f"Source {args.source_id} {action}d")
        return _print_result(result)
    if action == "delete":
        result = commands.delete_source(args.source_id)
        if result.ok:
            print(f"Deleted source {args.source_id}")
        return _print_result(result)
    if action == "seed":
        result = commands.seed_sources(args.file)
        if result.ok:
            print(f"Seeded {result.data['seeded']} sources")
        return _print_result(result)
    return 1


def _print_batch(result: commands.CommandResult, as_json: bool) -> int:
    if result.ok and not as_json:
        summary = result.data
        print(f"{summary['action']}: {summary['succeeded']}/{summary['items_processed']} succeeded")
        for entry in summary["results"]:
            if entry["success"]:
                line = f"  {entry['id']}  {entry['old_status']} -> {entry['new_status']}"
                if entry.get("warning"):
                    line += f"  (warning: {entry['warning']})"
            else:
                line = f"  {entry['id']}  failed: {entry['error']}"
            print(line)
    return _print_result(result, as_json=as_json)


def cmd_batch(args) -> int:
    result = commands.batch_transition(
        args.content_ids, args.action, actor=args.actor, reason=args.reason or "",
    )
    return _print_batch(result, args.json)


def cmd_bulk_approve(args) -> int:
    result = commands.bulk_approve_by_confidence(
        threshold=args.threshold, max_items=args.max_items, actor=args.actor,
    )
    return _print_batch(result, args.json)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="newsroom",
        description="Neighborhood News: pipeline admin interface",
    )
    subparsers = parser.add_subparsers(dest="command")

    # run
    p = subparsers.add_parser("run", help="Run the pipeline once")
    p.add_argument("mode", nargs="?", choices=RUN_MODES, default="full")
    p.add_argument("--no-lease", action="store_true", help="Skip the exclusive run lease")
    p.add_argument("--json", action="store_true")

    # history
    p = subparsers.add_parser("history", help="Recent pipeline runs")
    p.add_argument("--limit", type=int, default=20, metavar="N")
    p.add_argument("--json", action="store_true")

    # queue
    p = subparsers.add_parser("queue", help="Content waiting for review")
    p.add_argument("--category")
    p.add_argument("--neighborhood")
    p.add_argument("--min-confidence", type=float)
    p.add_argument("--max-confidence", type=float)
    p.add_argument("--validated-only", action="store_true")
    p.add_argument("--limit", type=int, default=50, metavar="N")
    p.add_argument("--json", action="store_true")

    # approve / reject
    p = subparsers.add_parser("approve", help="Publish a draft")
    p.add_argument("content_id")
    p.add_argument("--notes")
    p.add_argument("--actor", default="admin")

    p = subparsers.add_parser("reject", help="Reject a draft")
    p.add_argument("content_id")
    p.add_argument("reason", nargs="+")
    p.add_argument("--actor", default="admin")

    # batch / bulk-approve
    p = subparsers.add_parser("batch", help="Approve or reject several drafts")
    p.add_argument("action", choices=commands.BATCH_ACTIONS)
    p.add_argument("content_ids", nargs="+")
    p.add_argument("--reason", help="Required for reject")
    p.add_argument("--actor", default="admin")
    p.add_argument("--json", action="store_true")

    p = subparsers.add_parser("bulk-approve", help="Publish validated drafts above a confidence")
    p.add_argument("--threshold", type=float, default=0.8)
    p.add_argument("--max-items", type=int, default=50, metavar="N")
    p.add_argument("--actor", default="admin")
    p.add_argument("--json", action="store_true")

    # generate
    p = subparsers.add_parser("generate", help="Request a manual draft")
    p.add_argument("neighborhood")
    p.add_argument("category")
    p.add_argument("context", nargs="*")
    p.add_argument("--json", action="store_true")

    # sources
    p = subparsers.add_parser("sources", help="Manage feed sources")
    actions = p.add_subparsers(dest="action", required=True)
    sp = actions.add_parser("list")
    sp.add_argument("--json", action="store_true")
    sp = actions.add_parser("add")
    sp.add_argument("name")
    sp.add_argument("url")
    sp.add_argument("--id")
    sp.add_argument("--category", default="other")
    sp.add_argument("--neighborhood")
    sp.add_argument("--priority", type=int, default=5)
    for name in ("enable", "disable", "delete"):
        sp = actions.add_parser(name)
        sp.add_argument("source_id")
    sp = actions.add_parser("seed")
    sp.add_argument("--file", type=Path, help="Seed from this YAML file instead of config/sources.yaml")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    handlers = {
        "run": cmd_run,
        "history": cmd_history,
        "queue": cmd_queue,
        "approve": cmd_approve,
        "reject": cmd_reject,
        "batch": cmd_batch,
        "bulk-approve": cmd_bulk_approve,
        "generate": cmd_generate,
        "sources": cmd_sources,
    }

    if args.command is None:
        parser.print_help()
        return 0

    handler = handlers.get(args.command)
    if handler:
        return handler(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
