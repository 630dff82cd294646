"""Async runners for the git and gh command line tools."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from ..adapters.utils import sanitize_environment
from ..errors import OrchestratorTimeoutError, ServiceUnavailableError


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of a git or gh invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stderr.strip() or self.stdout.strip())


class CommandRunner:
    """Execute one CLI asynchronously with a bounded timeout."""

    def __init__(
        self,
        executable: str,
        *,
        timeout: float = 120.0,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._executable = executable
        self._timeout = timeout
        self._env = dict(env or {})

    @property
    def executable(self) -> str:
        return self._executable

    async def run(self, *args: str, cwd: Path | str | None = None) -> CommandResult:
        cmd = [self._executable, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd) if cwd is not None else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(self._env),
            )
        except FileNotFoundError as exc:
            raise ServiceUnavailableError(
                f"'{self._executable}' executable not found",
                details={"executable": self._executable},
            ) from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            raise OrchestratorTimeoutError(
                f"'{' '.join(cmd[:3])}' timed out after {self._timeout:g}s",
                details={"args": cmd},
            ) from exc

        return CommandResult(
            args=tuple(cmd),
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )


class GitRunner(CommandRunner):
    """Git with the configured commit identity."""

    def __init__(
        self,
        executable: str = "git",
        *,
        timeout: float = 120.0,
        author_name: str | None = None,
        author_email: str | None = None,
    ) -> None:
        env: dict[str, str] = {"GIT_TERMINAL_PROMPT": "0"}
        if author_name:
            env["GIT_AUTHOR_NAME"] = env["GIT_COMMITTER_NAME"] = author_name
        if author_email:
            env["GIT_AUTHOR_EMAIL"] = env["GIT_COMMITTER_EMAIL"] = author_email
        super().__init__(executable, timeout=timeout, env=env)


class GhCli(CommandRunner):
    """Pull request operations through the GitHub CLI."""

    def __init__(self, executable: str = "gh", *, timeout: float = 120.0) -> None:
        super().__init__(executable, timeout=timeout, env={"GH_PROMPT_DISABLED": "1"})

    async def find_pull_request(self, branch: str, *, cwd: Path) -> str | None:
        result = await self.run("pr", "view", branch, "--json", "url", "--jq", ".url", cwd=cwd)
        if not result.ok:
            return None
        url = result.stdout.strip()
        return url or None

    async def create_pull_request(
        self,
        *,
        cwd: Path,
        title: str,
        body: str,
        head: str,
        base: str,
        draft: bool = False,
    ) -> CommandResult:
        args = ["pr", "create", "--title", title, "--body", body, "--head", head, "--base", base]
        if draft:
            args.append("--draft")
        return await self.run(*args, cwd=cwd)


__all__ = ["CommandResult", "CommandRunner", "GhCli", "GitRunner"]
