"""Provisioning and finalization of isolated git workspaces."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from ..errors import (
    BranchNotFoundError,
    NothingToCommitError,
    OrchestratorError,
    PrCreationFailedError,
    PushRejectedError,
    RepoUnreachableError,
    ServiceUnavailableError,
    WorkdirInvalidError,
    WorkspaceNotFoundError,
)
from .git import GhCli, GitRunner
from .models import FinalizeResult, Workspace, WorkspaceStatus

logger = logging.getLogger(__name__)

_BRANCH_MISSING_MARKERS = (
    "remote branch",
    "couldn't find remote ref",
    "invalid reference",
    "not a valid object name",
)


def _slug(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", str(value or "").strip())
    cleaned = cleaned.strip("-.")
    return cleaned[:40] or "workspace"


def _repo_name(repo: str) -> str:
    name = Path(repo.rstrip("/")).name
    return name[: -len(".git")] if name.endswith(".git") else name


def _extract_url(output: str) -> str | None:
    for line in reversed(output.strip().splitlines()):
        candidate = line.strip()
        if candidate.startswith(("http://", "https://")):
            return candidate
    return output.strip() or None


class WorkspaceService:
    """Clones or worktrees a repository per task and turns the result into a PR.

    Provision and finalize are serialized per workspace id. Workspaces are only
    removed on provisioning rollback or an explicit teardown.
    """

    def __init__(
        self,
        root: Path,
        *,
        git: GitRunner | None = None,
        gh: GhCli | None = None,
        branch_prefix: str = "agent",
    ) -> None:
        self._root = Path(root).expanduser().resolve()
        self._git = git or GitRunner()
        self._gh = gh or GhCli()
        self._branch_prefix = branch_prefix.strip("/") or "agent"
        self._workspaces: dict[str, Workspace] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def root(self) -> Path:
        return self._root

    def _lock_for(self, workspace_id: str) -> asyncio.Lock:
        lock = self._locks.get(workspace_id)
        if lock is None:
            lock = self._locks[workspace_id] = asyncio.Lock()
        return lock

    # --------------------------------------------------------------- queries

    def get(self, workspace_id: str) -> Workspace | None:
        workspace = self._workspaces.get(workspace_id)
        return workspace.snapshot() if workspace is not None else None

    def list(self) -> list[Workspace]:
        return [workspace.snapshot() for workspace in self._workspaces.values()]

    def find_by_path(self, path: Path | str) -> Workspace | None:
        target = Path(path).expanduser().resolve()
        for workspace in self._workspaces.values():
            if Path(workspace.local_path) == target:
                return workspace.snapshot()
        return None

    # ------------------------------------------------------------- provision

    async def provision(
        self,
        repo: str,
        base_branch: str = "main",
        use_worktree: bool = False,
        name: str | None = None,
    ) -> Workspace:
        workspace_id = uuid4().hex
        slug = _slug(name or _repo_name(repo))
        suffix = f"{slug}-{workspace_id[:8]}"
        workspace = Workspace(
            id=workspace_id,
            repo=repo,
            base_branch=base_branch,
            worktree=use_worktree,
            local_path=str(self._root / suffix),
            branch=f"{self._branch_prefix}/{suffix}",
            status=WorkspaceStatus.PROVISIONING,
            created_at=datetime.now(timezone.utc),
            name=name,
        )

        async with self._lock_for(workspace_id):
            try:
                self._root.mkdir(parents=True, exist_ok=True)
                if use_worktree:
                    await self._add_worktree(workspace)
                else:
                    await self._clone(workspace)
            except Exception as exc:
                await self._rollback(workspace)
                self._locks.pop(workspace_id, None)
                logger.warning(
                    "Workspace provisioning failed",
                    extra={"repo": repo, "base_branch": base_branch, "error": str(exc)},
                )
                raise

            workspace.status = WorkspaceStatus.READY
            self._workspaces[workspace_id] = workspace

        logger.info(
            "Provisioned workspace",
            extra={
                "workspace_id": workspace_id,
                "local_path": workspace.local_path,
                "branch": workspace.branch,
                "worktree": use_worktree,
            },
        )
        return workspace.snapshot()

    async def _clone(self, workspace: Workspace) -> None:
        result = await self._git.run(
            "clone", "--branch", workspace.base_branch, "--", workspace.repo, workspace.local_path
        )
        if not result.ok:
            output = result.output
            lowered = output.lower()
            if any(marker in lowered for marker in _BRANCH_MISSING_MARKERS):
                raise BranchNotFoundError(
                    f"Branch '{workspace.base_branch}' not found in {workspace.repo}",
                    details={"repo": workspace.repo, "base_branch": workspace.base_branch},
                )
            raise RepoUnreachableError(
                f"Unable to clone {workspace.repo}: {output}",
                details={"repo": workspace.repo},
            )

        workspace.base_ref = f"origin/{workspace.base_branch}"
        checkout = await self._git.run("checkout", "-b", workspace.branch, cwd=workspace.local_path)
        if not checkout.ok:
            raise WorkdirInvalidError(
                f"Failed to create branch '{workspace.branch}': {checkout.output}",
                details={"branch": workspace.branch},
            )

    async def _add_worktree(self, workspace: Workspace) -> None:
        source = Path(workspace.repo).expanduser()
        if not source.is_dir():
            raise RepoUnreachableError(
                f"Worktree source '{workspace.repo}' is not a local checkout",
                details={"repo": workspace.repo},
            )

        toplevel = await self._git.run("rev-parse", "--show-toplevel", cwd=source)
        if not toplevel.ok:
            raise RepoUnreachableError(
                f"'{workspace.repo}' is not a git repository: {toplevel.output}",
                details={"repo": workspace.repo},
            )
        source_root = Path(toplevel.stdout.strip())

        base_ref = await self._resolve_ref(source_root, workspace.base_branch)
        if base_ref is None:
            raise BranchNotFoundError(
                f"Branch '{workspace.base_branch}' not found in {workspace.repo}",
                details={"repo": workspace.repo, "base_branch": workspace.base_branch},
            )

        workspace.source_path = str(source_root)
        workspace.base_ref = base_ref
        added = await self._git.run(
            "worktree", "add", "-b", workspace.branch, workspace.local_path, base_ref, cwd=source_root
        )
        if not added.ok:
            raise RepoUnreachableError(
                f"git worktree add failed: {added.output}",
                details={"repo": workspace.repo},
            )

    async def _resolve_ref(self, repo_path: Path, branch: str) -> str | None:
        for candidate in (branch, f"origin/{branch}"):
            result = await self._git.run(
                "rev-parse", "--verify", "--quiet", f"{candidate}^{{commit}}", cwd=repo_path
            )
            if result.ok:
                return candidate
        return None

    async def _remove_checkout(self, workspace: Workspace) -> None:
        path = Path(workspace.local_path)
        if workspace.worktree and workspace.source_path:
            source = workspace.source_path
            try:
                if path.exists():
                    await self._git.run("worktree", "remove", "--force", str(path), cwd=source)
                await self._git.run("worktree", "prune", cwd=source)
            except OrchestratorError as exc:
                logger.warning(
                    "Worktree removal failed",
                    extra={"workspace_id": workspace.id, "error": str(exc)},
                )
        shutil.rmtree(path, ignore_errors=True)

    async def _rollback(self, workspace: Workspace) -> None:
        await self._remove_checkout(workspace)
        if workspace.worktree and workspace.source_path:
            try:
                await self._git.run("branch", "-D", workspace.branch, cwd=workspace.source_path)
            except OrchestratorError as exc:
                logger.warning(
                    "Branch rollback failed",
                    extra={"workspace_id": workspace.id, "error": str(exc)},
                )
        workspace.status = WorkspaceStatus.FAILED

    # -------------------------------------------------------------- finalize

    async def finalize(
        self,
        workspace_id: str,
        commit_message: str,
        pr_title: str,
        pr_body: str,
        draft: bool = False,
    ) -> FinalizeResult:
        """Commit, push and open a PR; repeat calls return the first result."""

        workspace = self._workspaces.get(workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(workspace_id)

        async with self._lock_for(workspace_id):
            if workspace.status is WorkspaceStatus.FINALIZED and workspace.finalize_result:
                return replace(workspace.finalize_result)
            if workspace.status is not WorkspaceStatus.READY:
                raise WorkdirInvalidError(
                    f"Workspace '{workspace_id}' is {workspace.status.value}; only ready workspaces can be finalized",
                    details={"workspace_id": workspace_id, "status": workspace.status.value},
                )

            workspace.status = WorkspaceStatus.FINALIZING
            try:
                result = await self._finalize(workspace, commit_message, pr_title, pr_body, draft)
            except Exception as exc:
                workspace.status = WorkspaceStatus.READY
                workspace.last_error = str(exc)
                logger.warning(
                    "Workspace finalize failed",
                    extra={"workspace_id": workspace_id, "error": str(exc)},
                )
                raise

            workspace.status = WorkspaceStatus.FINALIZED
            workspace.finalize_result = result
            workspace.last_error = None

        logger.info(
            "Finalized workspace",
            extra={
                "workspace_id": workspace_id,
                "commit_sha": result.commit_sha,
                "pr_url": result.pr_url,
            },
        )
        return replace(result)

    async def _finalize(
        self,
        workspace: Workspace,
        commit_message: str,
        pr_title: str,
        pr_body: str,
        draft: bool,
    ) -> FinalizeResult:
        path = Path(workspace.local_path)
        if not path.is_dir():
            raise WorkdirInvalidError(
                f"Workspace directory '{path}' is missing",
                details={"workspace_id": workspace.id},
            )

        status = await self._git.run("status", "--porcelain", cwd=path)
        if not status.ok:
            raise WorkdirInvalidError(f"git status failed: {status.output}")

        committed = False
        if status.stdout.strip():
            staged = await self._git.run("add", "-A", cwd=path)
            if not staged.ok:
                raise WorkdirInvalidError(f"git add failed: {staged.output}")
            commit = await self._git.run("commit", "-m", commit_message, cwd=path)
            if not commit.ok:
                raise WorkdirInvalidError(f"git commit failed: {commit.output}")
            committed = True
        elif await self._commits_ahead(workspace) == 0:
            raise NothingToCommitError(
                f"Workspace '{workspace.id}' has no changes relative to {workspace.base_branch}",
                details={"workspace_id": workspace.id},
            )

        head = await self._git.run("rev-parse", "HEAD", cwd=path)
        commit_sha = head.stdout.strip() if head.ok else None

        push = await self._git.run("push", "--set-upstream", "origin", workspace.branch, cwd=path)
        if not push.ok:
            raise PushRejectedError(
                f"git push rejected for '{workspace.branch}': {push.output}",
                details={"branch": workspace.branch, "commit_sha": commit_sha},
            )

        try:
            pr_url = await self._gh.find_pull_request(workspace.branch, cwd=path)
            if pr_url is None:
                created = await self._gh.create_pull_request(
                    cwd=path,
                    title=pr_title,
                    body=pr_body,
                    head=workspace.branch,
                    base=workspace.base_branch,
                    draft=draft,
                )
                if not created.ok:
                    raise PrCreationFailedError(
                        f"Pull request creation failed: {created.output}",
                        details={"branch": workspace.branch, "commit_sha": commit_sha},
                    )
                pr_url = _extract_url(created.stdout)
        except ServiceUnavailableError as exc:
            raise PrCreationFailedError(
                f"Pull request creation failed: {exc}",
                details={"branch": workspace.branch, "commit_sha": commit_sha},
            ) from exc

        return FinalizeResult(
            workspace_id=workspace.id,
            branch=workspace.branch,
            commit_sha=commit_sha,
            pr_url=pr_url,
            committed=committed,
            draft=draft,
        )

    async def _commits_ahead(self, workspace: Workspace) -> int:
        base = workspace.base_ref or f"origin/{workspace.base_branch}"
        result = await self._git.run(
            "rev-list", "--count", f"{base}..HEAD", cwd=workspace.local_path
        )
        count = result.stdout.strip() if result.ok else ""
        if not count.isdigit():
            raise WorkdirInvalidError(
                f"Unable to compare {workspace.branch} with {base}: {result.output}",
                details={"workspace_id": workspace.id, "base_ref": base},
            )
        return int(count)

    # -------------------------------------------------------------- teardown

    async def teardown(self, workspace_id: str) -> bool:
        """Remove a workspace checkout; unknown or removed workspaces are a no-op."""

        workspace = self._workspaces.get(workspace_id)
        if workspace is None or workspace.status is WorkspaceStatus.TORN_DOWN:
            return False

        async with self._lock_for(workspace_id):
            if workspace.status is WorkspaceStatus.TORN_DOWN:
                return False
            await self._remove_checkout(workspace)
            workspace.status = WorkspaceStatus.TORN_DOWN

        logger.info("Tore down workspace", extra={"workspace_id": workspace_id})
        return True


__all__ = ["WorkspaceService"]
