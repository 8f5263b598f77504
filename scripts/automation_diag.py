"""Automation diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from lucid_automation.config import AutomationSettings
from lucid_automation.storage import ChromaStore, ChromaUnavailableError


def load_store(settings: AutomationSettings) -> ChromaStore:
    store = ChromaStore(settings.chroma_persist_path)
    try:
        store.ping()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    return store


def cmd_jobs(args: argparse.Namespace) -> None:
    store = load_store(AutomationSettings())
    jobs = store.replay_jobs(project_id=args.project_id)
    if args.json:
        print(json.dumps([job.to_payload() for job in jobs], indent=2))
    else:
        for job in jobs:
            print(f"{job.id} {job.type.tag} [{job.status.value}] project={job.project_id}")


def cmd_halts(args: argparse.Namespace) -> None:
    store = load_store(AutomationSettings())
    halts = store.list_autofix_halts(project_id=args.project_id)
    halts.sort(key=lambda record: record.recorded_at)
    if args.limit is not None and args.limit > 0:
        halts = halts[-args.limit :]
    payload = [
        {
            "project_id": record.project_id,
            "reason": record.reason,
            "attempts": record.attempts,
            "message": record.metadata.get("message"),
            "recorded_at": record.recorded_at.isoformat(),
        }
        for record in halts
    ]
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    store = load_store(AutomationSettings())
    jobs = store.replay_jobs()
    events = store.list_autofix_events()

    status_counts: dict[str, int] = {}
    type_counts: dict[str, int] = {}
    for job in jobs:
        status_counts[job.status.value] = status_counts.get(job.status.value, 0) + 1
        type_counts[job.type.tag] = type_counts.get(job.type.tag, 0) + 1

    halt_reasons: dict[str, int] = {}
    dispatches = 0
    for event in events:
        if event.event_type == "autofix_dispatch":
            dispatches += 1
        elif event.event_type == "autofix_halt":
            reason = event.reason or "unknown"
            halt_reasons[reason] = halt_reasons.get(reason, 0) + 1

    metrics = {
        "jobs_total": len(jobs),
        "status_counts": status_counts,
        "type_counts": type_counts,
        "autofix_dispatches": dispatches,
        "autofix_halts": sum(halt_reasons.values()),
        "halt_reasons": halt_reasons,
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Automation diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_jobs = sub.add_parser("jobs", help="List the latest recorded state of every job")
    p_jobs.add_argument("--project-id")
    p_jobs.add_argument("--json", action="store_true", help="Output JSON")
    p_jobs.set_defaults(func=cmd_jobs)

    p_halts = sub.add_parser("halts", help="List auto-fix halts")
    p_halts.add_argument("--project-id")
    p_halts.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N halts",
    )
    p_halts.set_defaults(func=cmd_halts)

    p_metrics = sub.add_parser("metrics", help="Show job and auto-fix counts")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
