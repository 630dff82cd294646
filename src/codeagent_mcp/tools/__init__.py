"""Tool registration for the coding agent orchestrator."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..adapters import AdapterPreflight
from ..config import OrchestratorSettings
from ..errors import (
    InvalidArgumentError,
    OrchestratorError,
    ServiceUnavailableError,
    WorkspaceBusyError,
    WorkspaceNotFoundError,
)
from ..metrics import MetricsStore
from ..selection import AgentSelector
from ..sessions import SessionManager
from ..storage import ChromaStore
from ..workspace import WorkspaceService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    spawn_coding_agent: Any
    send_to_coding_agent: Any
    list_coding_agents: Any
    stop_coding_agent: Any
    provision_workspace: Any
    finalize_workspace: Any
    check_coding_agents: Any
    teardown_workspace: Any
    get_agent_metrics: Any


def _require(service: Any, name: str) -> Any:
    if service is None:
        raise ServiceUnavailableError(
            f"{name} is unavailable on this server", details={"service": name}
        )
    return service


def _failure(exc: Exception, action: str) -> dict[str, Any]:
    error = exc if isinstance(exc, OrchestratorError) else InvalidArgumentError(str(exc))
    return {
        "success": False,
        "summary": f"{action} failed: {error.message}",
        "error": error.to_dict(),
    }


def register_tools(
    server: FastMCP,
    *,
    settings: OrchestratorSettings,
    sessions: SessionManager | None,
    workspaces: WorkspaceService | None,
    preflight: AdapterPreflight | None,
    selector: AgentSelector | None,
    metrics: MetricsStore | None,
    chroma_store: ChromaStore | None,
) -> ToolHandles:
    """Register the orchestrator's MCP tools on the server."""

    tail_chars = min(settings.transcript_tail_chars, 2000)

    async def _record(event_type: str, *, session_id: str, body: dict[str, Any], **metadata: Any) -> None:
        if chroma_store is None:
            return
        try:
            await asyncio.to_thread(
                chroma_store.record_event,
                session_id=session_id,
                event_type=event_type,
                body=body,
                metadata=metadata or None,
            )
        except Exception as exc:  # event store is best-effort
            logger.warning(
                "Failed to record event",
                extra={"event_type": event_type, "session_id": session_id, "error": str(exc)},
            )

    async def _track_workspace(workspace_payload: dict[str, Any]) -> None:
        if chroma_store is None:
            return
        try:
            await asyncio.to_thread(
                chroma_store.record_workspace,
                workspace_id=workspace_payload["workspace_id"],
                path=workspace_payload["local_path"],
                branch=workspace_payload.get("branch"),
                status=workspace_payload["status"],
                metadata={"repo": workspace_payload.get("repo")},
            )
        except Exception as exc:  # event store is best-effort
            logger.warning(
                "Failed to record workspace",
                extra={"workspace_id": workspace_payload.get("workspace_id"), "error": str(exc)},
            )

    async def _spawn_coding_agent(
        task: str,
        workdir: str,
        agent_type: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start an interactive coding agent on a task inside a ready workspace."""

        try:
            manager = _require(sessions, "Session manager")
            if not task or not task.strip():
                raise ValueError("task must not be empty")
            session = await manager.spawn(task, workdir, agent_type)
        except (OrchestratorError, ValueError) as exc:
            _emit_log(context, "warning", "Spawn failed", extra={"workdir": workdir, "error": str(exc)})
            return _failure(exc, "Spawn")

        payload = session.to_dict(tail_chars=0)
        await _record(
            "spawn_coding_agent",
            session_id=session.id,
            body=payload,
            adapter_type=session.adapter_type,
            workspace_id=session.workspace_id,
            task=task[:2000],
        )
        if chroma_store is not None:
            try:
                chroma_store.record_session_tracking(
                    session_id=session.id,
                    adapter_type=session.adapter_type,
                    status=session.status.value,
                    workdir=session.workdir,
                    workspace_id=session.workspace_id,
                )
            except Exception as exc:  # event store is best-effort
                logger.warning(
                    "Failed to record session tracking",
                    extra={"session_id": session.id, "error": str(exc)},
                )

        _emit_log(
            context,
            "info",
            "Spawned coding agent",
            extra={"session_id": session.id, "adapter_type": session.adapter_type},
        )
        return {
            "success": True,
            "summary": f"Started {session.adapter_type} session {session.id}",
            "session_id": session.id,
            "adapter_type": session.adapter_type,
            "status": session.status.value,
            "workdir": session.workdir,
            "workspace_id": session.workspace_id,
        }

    async def _send_to_coding_agent(
        session_id: str,
        input: str | None = None,
        keys: list[str] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Send text (followed by Enter) and/or named keys to a running session."""

        try:
            manager = _require(sessions, "Session manager")
            result = await manager.send(session_id, input=input, keys=keys)
        except (OrchestratorError, ValueError) as exc:
            return _failure(exc, "Send")

        _emit_log(context, "debug", "Sent input to session", extra={"session_id": session_id})
        return {
            "success": True,
            "summary": f"Sent input to {session_id}",
            **result,
        }

    def _list_coding_agents(context: Context | None = None) -> dict[str, Any]:
        """List live and recently finished coding agent sessions."""

        try:
            manager = _require(sessions, "Session manager")
        except OrchestratorError as exc:
            return _failure(exc, "List")

        snapshots = manager.list()
        counts = Counter(session.status.value for session in snapshots)
        _emit_log(context, "debug", "Listed sessions", extra={"count": len(snapshots)})
        return {
            "success": True,
            "summary": f"{len(snapshots)} session(s): "
            + (", ".join(f"{count} {status}" for status, count in sorted(counts.items())) or "none"),
            "sessions": [session.to_dict(tail_chars=tail_chars) for session in snapshots],
            "status_counts": dict(counts),
        }

    async def _stop_coding_agent(
        session_id: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Stop one session, or every live session when session_id is "all"."""

        try:
            manager = _require(sessions, "Session manager")
        except OrchestratorError as exc:
            return _failure(exc, "Stop")

        if session_id.strip().lower() == "all":
            stopped = await manager.stop_all()
        else:
            stopped = [session_id] if await manager.stop(session_id) else []

        for stopped_id in stopped:
            await _record("stop_coding_agent", session_id=stopped_id, body={"session_id": stopped_id})

        _emit_log(context, "info", "Stopped sessions", extra={"stopped": stopped})
        return {
            "success": True,
            "summary": f"Stopped {len(stopped)} session(s)" if stopped else "No live sessions matched",
            "stopped": stopped,
        }

    async def _provision_workspace(
        repo: str,
        base_branch: str = "main",
        use_worktree: bool = False,
        name: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Clone a repository (or add a worktree) on a fresh branch for an agent to work in."""

        try:
            service = _require(workspaces, "Workspace service")
            workspace = await service.provision(
                repo, base_branch=base_branch, use_worktree=use_worktree, name=name
            )
        except (OrchestratorError, ValueError) as exc:
            _emit_log(context, "warning", "Provision failed", extra={"repo": repo, "error": str(exc)})
            return _failure(exc, "Provision")

        payload = workspace.to_dict()
        await _record(
            "provision_workspace",
            session_id=f"workspace::{workspace.id}",
            body=payload,
            workspace_id=workspace.id,
        )
        await _track_workspace(payload)
        _emit_log(
            context,
            "info",
            "Provisioned workspace",
            extra={"workspace_id": workspace.id, "local_path": workspace.local_path},
        )
        return {
            "success": True,
            "summary": f"Workspace {workspace.id} ready at {workspace.local_path} on {workspace.branch}",
            **payload,
        }

    async def _finalize_workspace(
        workspace_id: str,
        commit_message: str,
        pr_title: str,
        pr_body: str = "",
        draft: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Commit outstanding changes, push the branch and open a pull request."""

        try:
            service = _require(workspaces, "Workspace service")
            workspace = service.get(workspace_id)
            if workspace is None:
                raise WorkspaceNotFoundError(workspace_id)
            if sessions is not None and sessions.has_active_session(workspace.local_path):
                raise WorkspaceBusyError(
                    f"Workspace '{workspace_id}' still has a running session",
                    details={"workspace_id": workspace_id},
                )
            result = await service.finalize(
                workspace_id, commit_message, pr_title, pr_body, draft=draft
            )
        except (OrchestratorError, ValueError) as exc:
            _emit_log(
                context,
                "warning",
                "Finalize failed",
                extra={"workspace_id": workspace_id, "error": str(exc)},
            )
            return _failure(exc, "Finalize")

        payload = result.to_dict()
        await _record(
            "finalize_workspace",
            session_id=f"workspace::{workspace_id}",
            body=payload,
            workspace_id=workspace_id,
            pr_url=result.pr_url,
        )
        finalized = service.get(workspace_id)
        if finalized is not None:
            await _track_workspace(finalized.to_dict())
        _emit_log(
            context,
            "info",
            "Finalized workspace",
            extra={"workspace_id": workspace_id, "pr_url": result.pr_url},
        )
        return {
            "success": True,
            "summary": f"Pushed {result.branch}" + (f"; PR: {result.pr_url}" if result.pr_url else ""),
            **payload,
        }

    async def _check_coding_agents(context: Context | None = None) -> dict[str, Any]:
        """Report which coding agent CLIs are installed and how to install the rest."""

        try:
            checker = _require(preflight, "Adapter preflight")
        except OrchestratorError as exc:
            return _failure(exc, "Check")

        results = await asyncio.gather(
            *(checker.check_installed(adapter_type) for adapter_type in checker.registry.adapter_types)
        )
        installed = [result.adapter_type for result in results if result.installed]
        _emit_log(context, "debug", "Checked adapters", extra={"installed": installed})
        return {
            "success": True,
            "summary": "Installed: " + (", ".join(installed) or "none"),
            "adapters": [result.to_dict() for result in results],
        }

    async def _teardown_workspace(
        workspace_id: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Remove a workspace's clone or worktree."""

        try:
            service = _require(workspaces, "Workspace service")
            workspace = service.get(workspace_id)
            if (
                workspace is not None
                and sessions is not None
                and sessions.has_active_session(workspace.local_path)
            ):
                raise WorkspaceBusyError(
                    f"Workspace '{workspace_id}' still has a running session",
                    details={"workspace_id": workspace_id},
                )
            torn_down = await service.teardown(workspace_id)
        except OrchestratorError as exc:
            return _failure(exc, "Teardown")

        if torn_down:
            await _record(
                "teardown_workspace",
                session_id=f"workspace::{workspace_id}",
                body={"workspace_id": workspace_id},
                workspace_id=workspace_id,
            )
            removed = service.get(workspace_id)
            if removed is not None:
                await _track_workspace(removed.to_dict())

        _emit_log(
            context, "info", "Teardown workspace", extra={"workspace_id": workspace_id, "torn_down": torn_down}
        )
        return {
            "success": True,
            "summary": f"Removed workspace {workspace_id}" if torn_down else f"Workspace {workspace_id} was already gone",
            "torn_down": torn_down,
        }

    def _get_agent_metrics(context: Context | None = None) -> dict[str, Any]:
        """Return per-adapter success metrics and the scores used for ranked selection."""

        try:
            store = _require(metrics, "Metrics store")
        except OrchestratorError as exc:
            return _failure(exc, "Metrics")

        snapshot = {adapter: stats.to_dict() for adapter, stats in store.snapshot().items()}
        scores = selector.scores() if selector is not None else {}
        _emit_log(context, "debug", "Fetched metrics", extra={"adapters": sorted(snapshot)})
        return {
            "success": True,
            "summary": f"Metrics for {len(snapshot)} adapter(s); strategy {settings.selection_strategy}",
            "metrics": snapshot,
            "scores": scores,
            "strategy": settings.selection_strategy,
            "fixed_agent_type": settings.fixed_agent_type,
        }

    tool_spawn = server.tool(
        name="SPAWN_CODING_AGENT",
        description=(
            "Spawn an interactive coding agent (claude, gemini, codex, aider or shell) on a task "
            "inside a provisioned workspace. Omit agent_type to let the orchestrator choose."
        ),
    )(_spawn_coding_agent)

    tool_send = server.tool(
        name="SEND_TO_CODING_AGENT",
        description="Send text and/or named keys (enter, tab, escape, up, ctrl-c, ...) to a running agent.",
    )(_send_to_coding_agent)

    tool_list = server.tool(
        name="LIST_CODING_AGENTS",
        description="List coding agent sessions with status and a tail of their terminal output.",
    )(_list_coding_agents)

    tool_stop = server.tool(
        name="STOP_CODING_AGENT",
        description='Stop a coding agent session by id, or every live session with "all".',
    )(_stop_coding_agent)

    tool_provision = server.tool(
        name="PROVISION_WORKSPACE",
        description="Create an isolated git workspace (fresh clone or worktree) on a new branch.",
    )(_provision_workspace)

    tool_finalize = server.tool(
        name="FINALIZE_WORKSPACE",
        description="Commit, push and open a pull request for a workspace. Safe to repeat.",
    )(_finalize_workspace)

    tool_check = server.tool(
        name="CHECK_CODING_AGENTS",
        description="Check which coding agent CLIs are installed, with install hints for missing ones.",
    )(_check_coding_agents)

    tool_teardown = server.tool(
        name="TEARDOWN_WORKSPACE",
        description="Delete a workspace's checkout. Unknown or already removed workspaces are a no-op.",
    )(_teardown_workspace)

    tool_metrics = server.tool(
        name="GET_AGENT_METRICS",
        description="Show per-agent success, stall and speed metrics and current selection scores.",
    )(_get_agent_metrics)

    return ToolHandles(
        spawn_coding_agent=tool_spawn,
        send_to_coding_agent=tool_send,
        list_coding_agents=tool_list,
        stop_coding_agent=tool_stop,
        provision_workspace=tool_provision,
        finalize_workspace=tool_finalize,
        check_coding_agents=tool_check,
        teardown_workspace=tool_teardown,
        get_agent_metrics=tool_metrics,
    )


__all__ = ["register_tools", "ToolHandles"]


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
