"""Lifecycle management for interactive coding agent sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Sequence
from uuid import uuid4

from ..adapters import AdapterPreflight, AdapterRegistry, CompletionDetector
from ..adapters.utils import sanitize_environment, strip_ansi
from ..errors import (
    AdapterNotInstalledError,
    ServiceUnavailableError,
    SessionNotFoundError,
    WorkdirInvalidError,
)
from ..metrics import MetricsStore
from .models import Session, SessionStatus
from .pty import AgentProcess, PtyProcess

if TYPE_CHECKING:
    from ..selection import AgentSelector
    from ..workspace import WorkspaceService

logger = logging.getLogger(__name__)

ProcessFactory = Callable[[Sequence[str], str, Mapping[str, str]], Awaitable[AgentProcess]]
TerminalListener = Callable[[Session], None]

KEY_SEQUENCES: dict[str, str] = {
    "enter": "\r",
    "return": "\r",
    "tab": "\t",
    "space": " ",
    "escape": "\x1b",
    "esc": "\x1b",
    "backspace": "\x7f",
    "up": "\x1b[A",
    "down": "\x1b[B",
    "right": "\x1b[C",
    "left": "\x1b[D",
    "ctrl-c": "\x03",
    "ctrl-d": "\x04",
    "ctrl-z": "\x1a",
    "ctrl-l": "\x0c",
}


async def spawn_pty_process(
    argv: Sequence[str], cwd: str, env: Mapping[str, str]
) -> AgentProcess:
    return await PtyProcess.spawn(argv, cwd=cwd, env=env)


@dataclass(slots=True)
class _SessionEntry:
    session: Session
    process: AgentProcess | None
    detector: CompletionDetector
    started_monotonic: float
    last_output_monotonic: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    activity: asyncio.Event = field(default_factory=asyncio.Event)
    stop_requested: bool = False
    reader_task: asyncio.Task[None] | None = None
    stall_task: asyncio.Task[None] | None = None


class SessionManager:
    """Owns every session and the single pty process behind each one.

    Sessions are independent: each has its own lock, output reader task and
    stall watcher task. Terminal transitions happen exactly once and fold the
    outcome into the metrics store.
    """

    def __init__(
        self,
        *,
        registry: AdapterRegistry,
        preflight: AdapterPreflight,
        metrics: MetricsStore,
        selector: "AgentSelector | None" = None,
        workspaces: "WorkspaceService | None" = None,
        stall_timeout: float = 60.0,
        kill_grace: float = 5.0,
        history_limit: int = 100,
        tail_chars: int = 8000,
        process_factory: ProcessFactory | None = None,
    ) -> None:
        self._registry = registry
        self._preflight = preflight
        self._metrics = metrics
        self._selector = selector
        self._workspaces = workspaces
        self._stall_timeout = stall_timeout
        self._kill_grace = kill_grace
        self._history_limit = history_limit
        self._tail_chars = tail_chars
        self._process_factory = process_factory or spawn_pty_process
        self._sessions: dict[str, _SessionEntry] = {}
        self._listeners: list[TerminalListener] = []

    def add_terminal_listener(self, listener: TerminalListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------ spawn

    async def spawn(
        self,
        task: str,
        workdir: str,
        agent_type: str | None = None,
    ) -> Session:
        resolved_workdir, workspace_id = self._validate_workdir(workdir)
        adapter_type = agent_type or await self._select_adapter()

        spec = self._registry.get(adapter_type)
        if spec is None:
            raise AdapterNotInstalledError(adapter_type, reason="Unknown adapter type")

        preflight = await self._preflight.check_installed(adapter_type)
        if not preflight.installed:
            raise AdapterNotInstalledError(
                adapter_type,
                install_command=preflight.install_command,
                docs_url=preflight.docs_url,
                reason=preflight.error,
            )

        override = self._preflight.override_for(adapter_type)
        argv = spec.launch_command(
            task,
            executable=self._preflight.resolve_executable(adapter_type),
            extra_args=override.extra_args if override else (),
        )
        env = sanitize_environment(
            {"TERM": "xterm-256color", **(override.env if override else {})}
        )

        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        session = Session(
            id=f"{adapter_type}-{stamp}-{uuid4().hex[:6]}",
            adapter_type=adapter_type,
            workdir=str(resolved_workdir),
            task=task,
            status=SessionStatus.SPAWNING,
            started_at=datetime.now(timezone.utc),
            workspace_id=workspace_id,
        )

        try:
            process = await self._process_factory(argv, str(resolved_workdir), env)
        except FileNotFoundError as exc:
            raise AdapterNotInstalledError(
                adapter_type,
                install_command=spec.install_command,
                docs_url=spec.docs_url,
                reason=str(exc),
            ) from exc
        except OSError as exc:
            raise ServiceUnavailableError(
                f"Failed to start {spec.display_name}: {exc}",
                details={"adapter_type": adapter_type},
            ) from exc

        # metrics and listeners may write to Chroma, so they run off the event loop
        await asyncio.to_thread(self._metrics.record_spawn, adapter_type)
        now = asyncio.get_running_loop().time()
        entry = _SessionEntry(
            session=session,
            process=process,
            detector=spec.detector,
            started_monotonic=now,
            last_output_monotonic=now,
        )
        session.status = SessionStatus.RUNNING
        self._sessions[session.id] = entry
        entry.reader_task = asyncio.create_task(
            self._read_output(entry), name=f"session-output-{session.id}"
        )
        entry.stall_task = asyncio.create_task(
            self._watch_stall(entry), name=f"session-stall-{session.id}"
        )

        initial_input = spec.initial_input(task)
        if initial_input:
            try:
                process.write(initial_input)
            except OSError as exc:
                logger.warning(
                    "Failed to write initial input",
                    extra={"session_id": session.id, "error": str(exc)},
                )

        logger.info(
            "Spawned coding agent",
            extra={
                "session_id": session.id,
                "adapter_type": adapter_type,
                "workdir": session.workdir,
                "pid": process.pid,
            },
        )
        return session.snapshot()

    async def _select_adapter(self) -> str:
        if self._selector is None:
            raise ValueError("agent_type is required when no selector is configured")
        return await self._selector.choose()

    def _validate_workdir(self, workdir: str) -> tuple[Path, str | None]:
        path = Path(workdir).expanduser()
        if not path.is_dir():
            raise WorkdirInvalidError(
                f"Working directory '{workdir}' does not exist",
                details={"workdir": workdir},
            )
        resolved = path.resolve()
        if self._workspaces is None:
            return resolved, None

        workspace = self._workspaces.find_by_path(resolved)
        if workspace is None:
            raise WorkdirInvalidError(
                f"Working directory '{workdir}' is not a provisioned workspace",
                details={"workdir": workdir},
            )
        if not workspace.is_ready:
            raise WorkdirInvalidError(
                f"Workspace '{workspace.id}' is {workspace.status.value}, not ready",
                details={"workdir": workdir, "workspace_id": workspace.id},
            )
        return resolved, workspace.id

    # ------------------------------------------------------------------- send

    async def send(
        self,
        session_id: str,
        input: str | None = None,
        keys: Sequence[str] | None = None,
    ) -> dict[str, Any]:
        """Write text and/or named keys to a live session without awaiting a reply."""

        if input is None and not keys:
            raise ValueError("Provide input text or keys to send")

        entry = self._sessions.get(session_id)
        if entry is None or entry.session.status.is_terminal or entry.process is None:
            raise SessionNotFoundError(session_id)

        payload = "" if input is None else f"{input}\r"
        for key in keys or ():
            payload += KEY_SEQUENCES.get(key.strip().lower(), key)

        try:
            entry.process.write(payload)
        except OSError as exc:
            logger.warning(
                "Write to session failed",
                extra={"session_id": session_id, "error": str(exc)},
            )
            raise SessionNotFoundError(session_id) from exc

        logger.debug("Sent input", extra={"session_id": session_id, "length": len(payload)})
        return {"ok": True}

    # ------------------------------------------------------------------ query

    def list(self) -> list[Session]:
        return [entry.session.snapshot() for entry in list(self._sessions.values())]

    def get(self, session_id: str) -> Session | None:
        entry = self._sessions.get(session_id)
        return entry.session.snapshot() if entry is not None else None

    def has_active_session(self, workdir: str | Path) -> bool:
        target = str(Path(workdir).expanduser().resolve())
        return any(
            entry.session.workdir == target and not entry.session.status.is_terminal
            for entry in list(self._sessions.values())
        )

    # ------------------------------------------------------------------- stop

    async def stop(self, session_id: str) -> bool:
        """Stop a session; unknown or finished sessions are a no-op."""

        entry = self._sessions.get(session_id)
        if entry is None or entry.session.status.is_terminal:
            return False
        entry.stop_requested = True
        stopped = await self._finish(entry, SessionStatus.STOPPED, terminate=True)
        if stopped:
            logger.info("Stopped coding agent", extra={"session_id": session_id})
        return stopped

    async def stop_all(self) -> list[str]:
        live = [
            session_id
            for session_id, entry in list(self._sessions.items())
            if not entry.session.status.is_terminal
        ]
        results = await asyncio.gather(*(self.stop(session_id) for session_id in live))
        return [session_id for session_id, stopped in zip(live, results) if stopped]

    # -------------------------------------------------------- background work

    async def _read_output(self, entry: _SessionEntry) -> None:
        process = entry.process
        if process is None:
            return
        try:
            while True:
                chunk = await process.read()
                if not chunk:
                    break
                outcome = self._handle_output(entry, chunk)
                if outcome is not None:
                    await self._finish(entry, SessionStatus(outcome), terminate=True)
                    return
            returncode = await process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Output processing failed", extra={"session_id": entry.session.id})
            await self._finish(
                entry,
                SessionStatus.FAILED,
                error=f"Output processing failed: {exc}",
                terminate=True,
            )
            return

        if entry.stop_requested:
            status = SessionStatus.STOPPED
        else:
            status = SessionStatus(CompletionDetector.from_exit_code(returncode))
        await self._finish(entry, status, exit_code=returncode)

    def _handle_output(self, entry: _SessionEntry, chunk: bytes) -> str | None:
        session = entry.session
        text = strip_ansi(chunk.decode("utf-8", errors="replace"))
        session.last_output_at = datetime.now(timezone.utc)
        entry.last_output_monotonic = asyncio.get_running_loop().time()
        session.transcript_tail = (session.transcript_tail + text)[-self._tail_chars:]
        if session.status is SessionStatus.STALLED:
            session.status = SessionStatus.RUNNING
            logger.info("Session resumed output", extra={"session_id": session.id})
        entry.activity.set()
        return entry.detector.detect(session.transcript_tail)

    async def _watch_stall(self, entry: _SessionEntry) -> None:
        loop = asyncio.get_running_loop()
        session = entry.session
        while not session.status.is_terminal:
            if session.status is SessionStatus.STALLED:
                entry.activity.clear()
                await entry.activity.wait()
                continue
            remaining = self._stall_timeout - (loop.time() - entry.last_output_monotonic)
            if remaining > 0:
                await asyncio.sleep(remaining)
                continue
            if session.status is SessionStatus.RUNNING:
                session.status = SessionStatus.STALLED
                session.stall_episodes += 1
                logger.warning(
                    "Session stalled",
                    extra={
                        "session_id": session.id,
                        "quiet_seconds": self._stall_timeout,
                        "stall_episodes": session.stall_episodes,
                    },
                )

    async def _terminate_process(self, process: AgentProcess, session_id: str) -> None:
        if process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self._kill_grace)
            return
        except asyncio.TimeoutError:
            logger.warning(
                "Agent ignored SIGTERM; killing",
                extra={"session_id": session_id, "grace_seconds": self._kill_grace},
            )
        process.kill()
        try:
            await asyncio.wait_for(process.wait(), timeout=self._kill_grace)
        except asyncio.TimeoutError:
            logger.error("Agent did not exit after SIGKILL", extra={"session_id": session_id})

    async def _finish(
        self,
        entry: _SessionEntry,
        status: SessionStatus,
        *,
        exit_code: int | None = None,
        error: str | None = None,
        terminate: bool = False,
    ) -> bool:
        async with entry.lock:
            session = entry.session
            if session.status.is_terminal:
                return False

            process = entry.process
            if process is not None:
                if terminate:
                    await self._terminate_process(process, session.id)
                if exit_code is None:
                    exit_code = process.returncode
                process.close()
            entry.process = None

            session.status = status
            session.completed_at = datetime.now(timezone.utc)
            session.exit_code = exit_code
            if error:
                session.error = error
            elapsed_ms = (asyncio.get_running_loop().time() - entry.started_monotonic) * 1000
            await asyncio.to_thread(
                self._metrics.record_terminal,
                session.adapter_type,
                success=status is SessionStatus.COMPLETED,
                elapsed_ms=elapsed_ms,
                stall_episodes=session.stall_episodes,
            )

        current = asyncio.current_task()
        for task in (entry.stall_task, entry.reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        logger.info(
            "Session finished",
            extra={
                "session_id": session.id,
                "status": status.value,
                "exit_code": exit_code,
                "elapsed_ms": round(elapsed_ms),
            },
        )
        await self._notify(session.snapshot())
        self._prune_history()
        return True

    async def _notify(self, session: Session) -> None:
        for listener in list(self._listeners):
            try:
                await asyncio.to_thread(listener, session)
            except Exception as exc:
                logger.warning(
                    "Terminal listener failed",
                    extra={"session_id": session.id, "error": str(exc)},
                )

    def _prune_history(self) -> None:
        terminal = [
            session_id
            for session_id, entry in self._sessions.items()
            if entry.session.status.is_terminal
        ]
        for session_id in terminal[: max(0, len(terminal) - self._history_limit)]:
            self._sessions.pop(session_id, None)


__all__ = ["KEY_SEQUENCES", "SessionManager", "spawn_pty_process"]
