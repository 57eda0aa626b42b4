"""Fleet MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json

from fleet_mcp.config import FleetSettings, get_settings
from fleet_mcp.errors import StoreError, ToolNotFoundError
from fleet_mcp.storage import InstanceRecord, InstanceStore
from fleet_mcp.tmux import SessionController, session_name_for


def load_store(settings: FleetSettings) -> InstanceStore:
    return InstanceStore(settings.state_path)


def _load_records(settings: FleetSettings) -> list[InstanceRecord]:
    store = load_store(settings)
    try:
        return asyncio.run(store.load())
    except StoreError as exc:
        print(f"Store unavailable: {exc}")
        raise SystemExit(1)


def load_sessions(settings: FleetSettings) -> list[str]:
    try:
        controller = SessionController(prefix=settings.session_prefix)
    except ToolNotFoundError as exc:
        print(f"tmux unavailable: {exc}")
        raise SystemExit(1)
    return asyncio.run(controller.list_sessions())


def cmd_instances(args: argparse.Namespace) -> None:
    settings = get_settings()
    records = _load_records(settings)
    if args.json:
        print(json.dumps([record.model_dump(mode="json") for record in records], indent=2))
    else:
        for record in records:
            print(f"{record.title} [{record.status}] {record.branch} -> {record.worktree_path or '-'}")


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = get_settings()
    records = _load_records(settings)
    sessions = load_sessions(settings)

    expected = {
        session_name_for(record.title, settings.session_prefix): record.title
        for record in records
        if not record.paused
    }
    payload = {
        "sessions": [
            {"name": name, "title": expected.get(name)}
            for name in sessions
        ],
        # stored as running but no tmux session backs them
        "missing": sorted(title for name, title in expected.items() if name not in sessions),
        # fleet-prefixed sessions no stored instance claims
        "orphaned": sorted(name for name in sessions if name not in expected),
    }
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = get_settings()
    records = _load_records(settings)

    status_counts: dict[str, int] = {}
    program_counts: dict[str, int] = {}
    for record in records:
        status_counts[record.status] = status_counts.get(record.status, 0) + 1
        program_counts[record.program] = program_counts.get(record.program, 0) + 1

    metrics = {
        "instances_total": len(records),
        "instance_limit": settings.instance_limit,
        "status_counts": status_counts,
        "program_counts": program_counts,
        "paused_total": sum(1 for record in records if record.paused),
        "auto_accept_total": sum(1 for record in records if record.auto_accept_prompts),
        "state_path": str(settings.state_path),
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fleet MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_instances = sub.add_parser("instances", help="List stored instances")
    p_instances.add_argument("--json", action="store_true", help="Output JSON")
    p_instances.set_defaults(func=cmd_instances)

    p_sessions = sub.add_parser("sessions", help="Compare tmux sessions with stored instances")
    p_sessions.set_defaults(func=cmd_sessions)

    p_metrics = sub.add_parser("metrics", help="Show instance counts by status and program")
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
