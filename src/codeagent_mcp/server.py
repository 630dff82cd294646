"""FastMCP server bootstrap for the coding agent orchestrator."""

import asyncio
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from fastmcp import Context, FastMCP

from . import __version__
from .adapters import (
    AdapterConfigError,
    AdapterOverride,
    AdapterOverrideLoader,
    AdapterPreflight,
    AdapterRegistry,
    PreflightResult,
    default_registry,
)
from .config import OrchestratorSettings, get_settings
from .metrics import MetricsStore
from .selection import AgentSelector, SelectionConfig
from .sessions import Session, SessionManager
from .storage import ChromaStore, ChromaUnavailableError
from .tools import ToolHandles, register_tools
from .workspace import GhCli, GitRunner, WorkspaceService

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the orchestrator server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@dataclass(slots=True)
class OrchestratorRuntime:
    """Every long-lived component the tools and status resource share."""

    settings: OrchestratorSettings
    registry: AdapterRegistry
    preflight: AdapterPreflight
    metrics: MetricsStore
    selector: AgentSelector
    workspaces: WorkspaceService
    sessions: SessionManager
    chroma_store: ChromaStore | None
    overrides: dict[str, AdapterOverride] = field(default_factory=dict)
    adapter_config_error: str | None = None
    chroma_metadata: dict[str, Any] = field(default_factory=dict)


def _open_chroma(settings: OrchestratorSettings) -> tuple[ChromaStore | None, dict[str, Any]]:
    metadata: dict[str, Any] = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "coding_agent_runs",
        "error": None,
    }
    try:
        store = ChromaStore(settings.chroma_persist_path)
        store.ping()
    except ChromaUnavailableError as exc:
        metadata["error"] = str(exc)
        return None, metadata
    metadata["available"] = True
    return store, metadata


def _session_tracker(chroma_store: ChromaStore):
    def _on_terminal(session: Session) -> None:
        chroma_store.record_event(
            session_id=session.id,
            event_type="session_finished",
            body=session.to_dict(),
            metadata={
                "adapter_type": session.adapter_type,
                "status": session.status.value,
                "exit_code": session.exit_code,
                "workspace_id": session.workspace_id,
            },
        )
        chroma_store.record_session_tracking(
            session_id=session.id,
            adapter_type=session.adapter_type,
            status=session.status.value,
            workdir=session.workdir,
            workspace_id=session.workspace_id,
            metadata={"exit_code": session.exit_code, "stall_episodes": session.stall_episodes},
        )

    return _on_terminal


def build_runtime(
    settings: Optional[OrchestratorSettings] = None,
    *,
    registry: AdapterRegistry | None = None,
    chroma_store: ChromaStore | None = None,
    process_factory=None,
    use_chroma: bool = True,
) -> OrchestratorRuntime:
    """Wire adapters, metrics, selection, workspaces and sessions together."""

    settings = settings or get_settings()
    registry = registry or default_registry()

    overrides: dict[str, AdapterOverride] = {}
    adapter_config_error: str | None = None
    try:
        overrides = AdapterOverrideLoader(settings.adapter_config_paths).load_all()
    except AdapterConfigError as exc:
        adapter_config_error = str(exc)
        logger.error("Ignoring invalid adapter configuration", extra={"error": str(exc)})

    if chroma_store is not None:
        chroma_metadata = {
            "available": True,
            "path": str(chroma_store.path),
            "collection": "coding_agent_runs",
            "error": None,
        }
    elif use_chroma:
        chroma_store, chroma_metadata = _open_chroma(settings)
    else:
        chroma_metadata = {"available": False, "path": None, "collection": None, "error": "disabled"}

    metrics: MetricsStore | None = None
    if settings.persist_metrics and chroma_store is not None:
        try:
            metrics = MetricsStore(backing=chroma_store)
        except Exception as exc:
            logger.warning("Could not load persisted metrics", extra={"error": str(exc)})
    if metrics is None:
        metrics = MetricsStore()

    preflight = AdapterPreflight(
        registry, overrides=overrides, timeout=settings.preflight_timeout_seconds
    )
    selector = AgentSelector(
        SelectionConfig(
            strategy=settings.selection_strategy,
            fixed_agent_type=settings.fixed_agent_type,
        ),
        metrics=metrics,
        preflight=preflight,
    )
    workspaces = WorkspaceService(
        settings.workspace_root,
        git=GitRunner(
            timeout=settings.git_timeout_seconds,
            author_name=settings.git_author_name,
            author_email=settings.git_author_email,
        ),
        gh=GhCli(settings.gh_path, timeout=settings.git_timeout_seconds),
        branch_prefix=settings.branch_prefix,
    )
    sessions = SessionManager(
        registry=registry,
        preflight=preflight,
        metrics=metrics,
        selector=selector,
        workspaces=workspaces,
        stall_timeout=settings.stall_timeout_seconds,
        kill_grace=settings.kill_grace_seconds,
        history_limit=settings.session_history_limit,
        tail_chars=settings.transcript_tail_chars,
        process_factory=process_factory,
    )
    if chroma_store is not None:
        sessions.add_terminal_listener(_session_tracker(chroma_store))

    return OrchestratorRuntime(
        settings=settings,
        registry=registry,
        preflight=preflight,
        metrics=metrics,
        selector=selector,
        workspaces=workspaces,
        sessions=sessions,
        chroma_store=chroma_store,
        overrides=overrides,
        adapter_config_error=adapter_config_error,
        chroma_metadata=chroma_metadata,
    )


def build_status_payload(
    runtime: OrchestratorRuntime,
    *,
    adapter_results: Sequence[PreflightResult] = (),
    request_id: str | None = None,
) -> dict[str, Any]:
    """Summarize sessions, workspaces, metrics and storage for the status resource."""

    settings = runtime.settings
    sessions = runtime.sessions.list()
    workspaces = runtime.workspaces.list()

    recent_tracking: list[dict[str, Any]] = []
    storage_error = None
    if runtime.chroma_store is not None:
        try:
            recent_tracking = [
                {
                    "session_id": record.session_id,
                    "adapter_type": record.adapter_type,
                    "status": record.status,
                }
                for record in runtime.chroma_store.list_session_tracking()[-5:]
            ]
        except Exception as exc:  # status must render even if storage breaks
            storage_error = str(exc)

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "server_version": __version__,
        "log_level": settings.log_level,
        "adapters": {
            "registered": list(runtime.registry.adapter_types),
            "installed": [result.adapter_type for result in adapter_results if result.installed],
            "checks": [result.to_dict() for result in adapter_results],
            "overrides": sorted(runtime.overrides),
            "config_error": runtime.adapter_config_error,
        },
        "selection": {
            "strategy": settings.selection_strategy,
            "fixed_agent_type": settings.fixed_agent_type,
            "scores": runtime.selector.scores(),
        },
        "sessions": {
            "count": len(sessions),
            "status_counts": dict(Counter(session.status.value for session in sessions)),
            "recent": [session.to_dict(tail_chars=200) for session in sessions[-5:]],
        },
        "workspaces": {
            "root": str(runtime.workspaces.root),
            "count": len(workspaces),
            "status_counts": dict(Counter(workspace.status.value for workspace in workspaces)),
        },
        "metrics": {
            adapter: stats.to_dict() for adapter, stats in runtime.metrics.snapshot().items()
        },
        "storage": {
            "chroma": runtime.chroma_metadata,
            "persist_metrics": settings.persist_metrics,
            "sessions_preview": recent_tracking,
            "error": storage_error,
        },
        "request_id": request_id,
    }


def create_server(
    settings: Optional[OrchestratorSettings] = None,
    runtime: OrchestratorRuntime | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with tools and a status resource."""

    runtime = runtime or build_runtime(settings)
    settings = runtime.settings

    startup_checks = _run_sync(runtime.preflight.list_installed())
    logger.info(
        "Adapter preflight complete",
        extra={"installed": [result.adapter_type for result in startup_checks if result.installed]},
    )

    server = FastMCP(
        name="Coding Agent Orchestrator",
        version=__version__,
        instructions=(
            "Runs interactive coding agent CLIs (Claude Code, Gemini CLI, Codex, Aider or a "
            "shell) in isolated git workspaces. Provision a workspace, spawn an agent in it, "
            "watch and steer it, then finalize the workspace into a pull request."
        ),
    )

    handles: ToolHandles = register_tools(
        server,
        settings=settings,
        sessions=runtime.sessions,
        workspaces=runtime.workspaces,
        preflight=runtime.preflight,
        selector=runtime.selector,
        metrics=runtime.metrics,
        chroma_store=runtime.chroma_store,
    )

    @server.resource(
        "resource://codeagent/status",
        name="codeagent_status",
        title="Coding Agent Orchestrator Status",
        description="Current adapters, sessions, workspaces, metrics and storage state.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    async def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        adapter_results = await runtime.preflight.list_installed()
        payload = build_status_payload(
            runtime,
            adapter_results=adapter_results,
            request_id=getattr(context, "request_id", None),
        )
        return json.dumps(payload)

    setattr(server, "runtime", runtime)
    setattr(server, "tool_handles", handles)
    setattr(server, "startup_checks", startup_checks)
    return server


def main() -> None:
    """Entry point for running the orchestrator MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    runtime: OrchestratorRuntime = getattr(server, "runtime")
    logger.info(
        "Launching coding agent orchestrator",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "strategy": settings.selection_strategy,
            "chroma_available": runtime.chroma_metadata.get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
