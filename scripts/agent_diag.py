"""Coding agent orchestrator diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict

from codeagent_mcp.adapters import (
    AdapterConfigError,
    AdapterOverrideLoader,
    AdapterPreflight,
    default_registry,
)
from codeagent_mcp.config import OrchestratorSettings
from codeagent_mcp.metrics import AgentMetrics
from codeagent_mcp.selection import compute_agent_score
from codeagent_mcp.storage import ChromaStore, ChromaUnavailableError


def load_store(settings: OrchestratorSettings) -> ChromaStore:
    try:
        store = ChromaStore(settings.chroma_persist_path)
        store.ping()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    return store


def _record_dict(record) -> dict:
    payload = asdict(record)
    payload["recorded_at"] = record.recorded_at.isoformat()
    return payload


def cmd_preflight(args: argparse.Namespace) -> None:
    settings = OrchestratorSettings()
    try:
        overrides = AdapterOverrideLoader(settings.adapter_config_paths).load_all()
    except AdapterConfigError as exc:
        print(f"Adapter configuration invalid: {exc}")
        raise SystemExit(1)

    preflight = AdapterPreflight(
        default_registry(), overrides=overrides, timeout=settings.preflight_timeout_seconds
    )
    adapter_types = [args.adapter] if args.adapter else list(preflight.registry.adapter_types)

    async def _check_all():
        return await asyncio.gather(*(preflight.check_installed(name) for name in adapter_types))

    results = asyncio.run(_check_all())
    if args.json:
        print(json.dumps([result.to_dict() for result in results], indent=2))
        return
    for result in results:
        if result.installed:
            print(f"{result.adapter_type}: installed ({result.version or 'unknown version'})")
        else:
            print(f"{result.adapter_type}: missing -> {result.install_command}")


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = OrchestratorSettings()
    store = load_store(settings)
    try:
        snapshot = store.load_metrics()
        sessions = store.list_session_tracking()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    latest_status: dict[str, str] = {}
    for record in sessions:
        latest_status[record.session_id] = record.status
    status_counts: dict[str, int] = {}
    for status in latest_status.values():
        status_counts[status] = status_counts.get(status, 0) + 1

    metrics = {
        "strategy": settings.selection_strategy,
        "adapters": snapshot,
        "scores": {
            adapter: compute_agent_score(AgentMetrics.from_dict(payload))
            for adapter, payload in snapshot.items()
        },
        "sessions_total": len(latest_status),
        "session_status_counts": status_counts,
    }
    print(json.dumps(metrics, indent=2))


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = OrchestratorSettings()
    store = load_store(settings)
    try:
        records = store.list_session_tracking(adapter_type=args.adapter)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps([_record_dict(record) for record in records], indent=2))


def cmd_workspaces(args: argparse.Namespace) -> None:
    settings = OrchestratorSettings()
    store = load_store(settings)
    try:
        records = store.list_workspaces(workspace_id=args.workspace_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps([_record_dict(record) for record in records], indent=2))


def cmd_events(args: argparse.Namespace) -> None:
    settings = OrchestratorSettings()
    store = load_store(settings)
    try:
        events = store.fetch_session_events(args.session_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    if args.limit is not None and args.limit > 0:
        events = events[-args.limit :]

    payload = [
        {
            "event_id": event.id,
            "event_type": event.event_type,
            "status": event.metadata.get("status"),
            "timestamp": event.timestamp.isoformat(),
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Coding agent orchestrator diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_preflight = sub.add_parser("preflight", help="Check which agent CLIs are installed")
    p_preflight.add_argument("--adapter", help="Only check this adapter type")
    p_preflight.add_argument("--json", action="store_true", help="Output JSON")
    p_preflight.set_defaults(func=cmd_preflight)

    p_metrics = sub.add_parser("metrics", help="Show persisted agent metrics and scores")
    p_metrics.set_defaults(func=cmd_metrics)

    p_sessions = sub.add_parser("sessions", help="List session tracking records")
    p_sessions.add_argument("--adapter")
    p_sessions.set_defaults(func=cmd_sessions)

    p_workspaces = sub.add_parser("workspaces", help="List workspace records")
    p_workspaces.add_argument("--workspace-id")
    p_workspaces.set_defaults(func=cmd_workspaces)

    p_events = sub.add_parser("events", help="List events recorded for one session")
    p_events.add_argument("session_id")
    p_events.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N events",
    )
    p_events.set_defaults(func=cmd_events)

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
