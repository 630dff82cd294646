from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from codeagent_mcp.adapters import PreflightResult, default_registry
from codeagent_mcp.config import OrchestratorSettings
from codeagent_mcp.errors import PushRejectedError
from codeagent_mcp.metrics import MetricsStore
from codeagent_mcp.selection import AgentSelector, SelectionConfig
from codeagent_mcp.sessions import FakeAgentProcess, SessionManager
from codeagent_mcp.tools import register_tools
from codeagent_mcp.workspace import FinalizeResult, Workspace, WorkspaceStatus

TOOL_NAMES = {
    "SPAWN_CODING_AGENT",
    "SEND_TO_CODING_AGENT",
    "LIST_CODING_AGENTS",
    "STOP_CODING_AGENT",
    "PROVISION_WORKSPACE",
    "FINALIZE_WORKSPACE",
    "CHECK_CODING_AGENTS",
    "TEARDOWN_WORKSPACE",
    "GET_AGENT_METRICS",
}


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


@dataclass
class StubEvent:
    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]


class StubChromaStore:
    def __init__(self, *, fail: bool = False) -> None:
        self.events: list[StubEvent] = []
        self.tracking: list[dict[str, Any]] = []
        self.workspaces: list[dict[str, Any]] = []
        self.fail = fail

    def record_event(self, *, session_id: str, event_type: str, body: Any, metadata: dict[str, Any] | None = None) -> StubEvent:
        if self.fail:
            raise RuntimeError("chroma offline")
        event = StubEvent(
            id=f"{session_id}:{len(self.events) + 1}",
            session_id=session_id,
            event_type=event_type,
            document=body if isinstance(body, str) else json.dumps(body),
            metadata=dict(metadata or {}),
        )
        self.events.append(event)
        return event

    def record_session_tracking(self, **kwargs: Any) -> None:
        if self.fail:
            raise RuntimeError("chroma offline")
        self.tracking.append(kwargs)

    def record_workspace(self, **kwargs: Any) -> None:
        if self.fail:
            raise RuntimeError("chroma offline")
        self.workspaces.append(kwargs)


class StubPreflight:
    def __init__(self, installed: tuple[str, ...] = ("claude", "shell")) -> None:
        self.registry = default_registry()
        self.installed = set(installed)

    async def check_installed(self, adapter_type: str) -> PreflightResult:
        spec = self.registry.get(adapter_type)
        return PreflightResult(
            adapter_type=adapter_type,
            installed=adapter_type in self.installed,
            install_command=spec.install_command,
            docs_url=spec.docs_url,
        )

    async def list_installed(self) -> list[PreflightResult]:
        return [await self.check_installed(name) for name in self.registry.candidates]

    def override_for(self, adapter_type: str):
        return None

    def resolve_executable(self, adapter_type: str) -> str:
        return self.registry.get(adapter_type).binary


class StubWorkspaceService:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.workspaces: dict[str, Workspace] = {}
        self.finalize_calls = 0
        self.finalize_error: Exception | None = None

    async def provision(self, repo, base_branch="main", use_worktree=False, name=None) -> Workspace:
        workspace_id = f"ws{len(self.workspaces) + 1}"
        path = self.root / workspace_id
        path.mkdir(parents=True)
        workspace = Workspace(
            id=workspace_id,
            repo=repo,
            base_branch=base_branch,
            worktree=use_worktree,
            local_path=str(path.resolve()),
            branch=f"agent/{workspace_id}",
            status=WorkspaceStatus.READY,
            created_at=datetime.now(timezone.utc),
            name=name,
        )
        self.workspaces[workspace_id] = workspace
        return replace(workspace)

    def get(self, workspace_id: str) -> Workspace | None:
        workspace = self.workspaces.get(workspace_id)
        return replace(workspace) if workspace else None

    def find_by_path(self, path) -> Workspace | None:
        target = str(Path(path).resolve())
        for workspace in self.workspaces.values():
            if workspace.local_path == target:
                return replace(workspace)
        return None

    async def finalize(self, workspace_id, commit_message, pr_title, pr_body, draft=False) -> FinalizeResult:
        self.finalize_calls += 1
        if self.finalize_error is not None:
            raise self.finalize_error
        workspace = self.workspaces[workspace_id]
        workspace.status = WorkspaceStatus.FINALIZED
        return FinalizeResult(
            workspace_id=workspace_id,
            branch=workspace.branch,
            commit_sha="abc123",
            pr_url="https://github.com/example/repo/pull/1",
            committed=True,
            draft=draft,
        )

    async def teardown(self, workspace_id: str) -> bool:
        workspace = self.workspaces.get(workspace_id)
        if workspace is None or workspace.status is WorkspaceStatus.TORN_DOWN:
            return False
        workspace.status = WorkspaceStatus.TORN_DOWN
        return True


class Harness:
    def __init__(self, tmp_path: Path, *, chroma: StubChromaStore | None = None, **overrides: Any) -> None:
        self.processes: list[FakeAgentProcess] = []
        self.settings = OrchestratorSettings()
        self.metrics = MetricsStore()
        self.preflight = StubPreflight()
        self.workspaces = StubWorkspaceService(tmp_path / "workspaces")
        self.selector = AgentSelector(
            SelectionConfig(strategy="fixed", fixed_agent_type="claude"),
            metrics=self.metrics,
            preflight=self.preflight,  # type: ignore[arg-type]
        )

        async def factory(argv, cwd, env):
            process = FakeAgentProcess(argv, cwd=cwd, env=env)
            self.processes.append(process)
            return process

        self.sessions = SessionManager(
            registry=self.preflight.registry,
            preflight=self.preflight,  # type: ignore[arg-type]
            metrics=self.metrics,
            selector=self.selector,
            workspaces=self.workspaces,  # type: ignore[arg-type]
            stall_timeout=30.0,
            kill_grace=0.2,
            process_factory=factory,
        )
        self.chroma = chroma if chroma is not None else StubChromaStore()
        services: dict[str, Any] = {
            "sessions": self.sessions,
            "workspaces": self.workspaces,
            "preflight": self.preflight,
            "selector": self.selector,
            "metrics": self.metrics,
            "chroma_store": self.chroma,
        }
        services.update(overrides)
        self.server = StubServer()
        self.handles = register_tools(self.server, settings=self.settings, **services)

    def tool(self, name: str):
        return self.server._tools[name].fn


def test_register_tools_exposes_every_tool(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    assert set(harness.server._tools) == TOOL_NAMES
    assert harness.handles.spawn_coding_agent.name == "SPAWN_CODING_AGENT"


def test_provision_spawn_send_list_and_stop(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario() -> dict[str, Any]:
        provisioned = await harness.tool("PROVISION_WORKSPACE")("https://example.com/repo.git", name="demo")
        assert provisioned["success"] is True
        assert provisioned["status"] == "ready"

        spawned = await harness.tool("SPAWN_CODING_AGENT")("write docs", provisioned["local_path"])
        assert spawned["success"] is True
        assert spawned["adapter_type"] == "claude"
        assert spawned["status"] == "running"
        assert spawned["workspace_id"] == provisioned["workspace_id"]

        sent = await harness.tool("SEND_TO_CODING_AGENT")(spawned["session_id"], input="yes", keys=["enter"])
        assert sent == {"success": True, "summary": f"Sent input to {spawned['session_id']}", "ok": True}
        assert harness.processes[0].writes == ["yes\r\r"]

        listing = harness.tool("LIST_CODING_AGENTS")()
        assert listing["status_counts"] == {"running": 1}
        assert listing["sessions"][0]["session_id"] == spawned["session_id"]

        stopped = await harness.tool("STOP_CODING_AGENT")("all")
        again = await harness.tool("STOP_CODING_AGENT")("all")
        assert again["stopped"] == []
        return {"spawned": spawned, "stopped": stopped}

    result = asyncio.run(scenario())

    assert result["stopped"]["stopped"] == [result["spawned"]["session_id"]]
    event_types = [event.event_type for event in harness.chroma.events]
    assert event_types == ["provision_workspace", "spawn_coding_agent", "stop_coding_agent"]
    assert harness.chroma.tracking[0]["status"] == "running"
    assert harness.chroma.workspaces[0]["status"] == "ready"


def test_spawn_errors_are_structured(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario() -> tuple[dict[str, Any], dict[str, Any], dict[str, Any]]:
        missing = await harness.tool("SPAWN_CODING_AGENT")("task", str(tmp_path / "nowhere"))
        workspace = await harness.tool("PROVISION_WORKSPACE")("repo")
        uninstalled = await harness.tool("SPAWN_CODING_AGENT")(
            "task", workspace["local_path"], agent_type="gemini"
        )
        empty = await harness.tool("SPAWN_CODING_AGENT")("   ", workspace["local_path"])
        return missing, uninstalled, empty

    missing, uninstalled, empty = asyncio.run(scenario())

    assert missing["success"] is False
    assert missing["error"]["kind"] == "WorkdirInvalid"
    assert missing["summary"].startswith("Spawn failed:")
    assert uninstalled["error"]["kind"] == "AdapterNotInstalled"
    assert uninstalled["error"]["details"]["install_command"] == "npm install -g @google/gemini-cli"
    assert empty["error"]["kind"] == "InvalidArgument"
    assert harness.sessions.list() == []


def test_send_to_unknown_session(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    result = asyncio.run(harness.tool("SEND_TO_CODING_AGENT")("claude-missing", input="hi"))

    assert result["success"] is False
    assert result["error"] == {
        "kind": "SessionNotFound",
        "message": "Session 'claude-missing' not found or already finished",
        "retryable": False,
        "details": {"session_id": "claude-missing"},
    }


def test_finalize_refuses_while_session_runs(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        workspace = await harness.tool("PROVISION_WORKSPACE")("repo")
        spawned = await harness.tool("SPAWN_CODING_AGENT")("task", workspace["local_path"])
        busy = await harness.tool("FINALIZE_WORKSPACE")(workspace["workspace_id"], "msg", "title")
        teardown_busy = await harness.tool("TEARDOWN_WORKSPACE")(workspace["workspace_id"])

        harness.processes[0].exit(0)
        for _ in range(200):
            if not harness.sessions.has_active_session(workspace["local_path"]):
                break
            await asyncio.sleep(0.01)

        done = await harness.tool("FINALIZE_WORKSPACE")(
            workspace["workspace_id"], "msg", "title", "body", draft=True
        )
        return spawned, busy, teardown_busy, done

    spawned, busy, teardown_busy, done = asyncio.run(scenario())

    assert busy["success"] is False
    assert busy["error"]["kind"] == "WorkspaceBusy"
    assert busy["error"]["retryable"] is True
    assert teardown_busy["error"]["kind"] == "WorkspaceBusy"
    assert done["success"] is True
    assert done["pr_url"] == "https://github.com/example/repo/pull/1"
    assert done["draft"] is True
    assert harness.workspaces.finalize_calls == 1
    assert harness.sessions.get(spawned["session_id"]).status.value == "completed"


def test_finalize_errors(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        unknown = await harness.tool("FINALIZE_WORKSPACE")("nope", "msg", "title")
        workspace = await harness.tool("PROVISION_WORKSPACE")("repo")
        harness.workspaces.finalize_error = PushRejectedError("remote rejected")
        rejected = await harness.tool("FINALIZE_WORKSPACE")(workspace["workspace_id"], "msg", "title")
        return unknown, rejected

    unknown, rejected = asyncio.run(scenario())

    assert unknown["error"]["kind"] == "WorkspaceNotFound"
    assert rejected["error"]["kind"] == "PushRejected"
    assert rejected["error"]["retryable"] is True


def test_teardown_workspace(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario():
        workspace = await harness.tool("PROVISION_WORKSPACE")("repo")
        first = await harness.tool("TEARDOWN_WORKSPACE")(workspace["workspace_id"])
        second = await harness.tool("TEARDOWN_WORKSPACE")(workspace["workspace_id"])
        return first, second

    first, second = asyncio.run(scenario())

    assert first["torn_down"] is True
    assert second == {
        "success": True,
        "summary": "Workspace ws1 was already gone",
        "torn_down": False,
    }
    assert harness.chroma.workspaces[-1]["status"] == "torn_down"


def test_check_coding_agents_reports_every_adapter(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    result = asyncio.run(harness.tool("CHECK_CODING_AGENTS")())

    assert result["success"] is True
    by_type = {entry["adapter_type"]: entry for entry in result["adapters"]}
    assert set(by_type) == {"claude", "gemini", "codex", "aider", "shell"}
    assert by_type["claude"]["installed"] is True
    assert by_type["codex"]["installed"] is False
    assert by_type["codex"]["install_command"] == "npm install -g @openai/codex"
    assert result["summary"] == "Installed: claude, shell"


def test_get_agent_metrics(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.metrics.record_spawn("claude")
    harness.metrics.record_terminal("claude", success=True, elapsed_ms=1_500)

    result = harness.tool("GET_AGENT_METRICS")()

    assert result["strategy"] == "fixed"
    assert result["metrics"]["claude"]["completed"] == 1
    assert set(result["scores"]) == {"claude", "gemini", "codex", "aider"}
    assert result["scores"]["gemini"] == 0.5


def test_missing_services_report_unavailable(tmp_path: Path) -> None:
    harness = Harness(
        tmp_path,
        sessions=None,
        workspaces=None,
        preflight=None,
        metrics=None,
        chroma_store=None,
    )

    async def scenario() -> list[dict[str, Any]]:
        return [
            await harness.tool("SPAWN_CODING_AGENT")("task", str(tmp_path)),
            await harness.tool("SEND_TO_CODING_AGENT")("id", input="x"),
            harness.tool("LIST_CODING_AGENTS")(),
            await harness.tool("STOP_CODING_AGENT")("all"),
            await harness.tool("PROVISION_WORKSPACE")("repo"),
            await harness.tool("FINALIZE_WORKSPACE")("ws", "msg", "title"),
            await harness.tool("CHECK_CODING_AGENTS")(),
            await harness.tool("TEARDOWN_WORKSPACE")("ws"),
            harness.tool("GET_AGENT_METRICS")(),
        ]

    results = asyncio.run(scenario())

    for result in results:
        assert result["success"] is False
        assert result["error"]["kind"] == "ServiceUnavailable"
        assert result["error"]["retryable"] is True


def test_event_store_failures_do_not_break_tools(tmp_path: Path, caplog) -> None:
    harness = Harness(tmp_path, chroma=StubChromaStore(fail=True))

    async def scenario() -> dict[str, Any]:
        workspace = await harness.tool("PROVISION_WORKSPACE")("repo")
        spawned = await harness.tool("SPAWN_CODING_AGENT")("task", workspace["local_path"])
        await harness.tool("STOP_CODING_AGENT")(spawned["session_id"])
        return spawned

    spawned = asyncio.run(scenario())

    assert spawned["success"] is True
    assert "Failed to record event" in caplog.text
