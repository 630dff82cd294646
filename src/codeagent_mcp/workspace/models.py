"""Workspace records."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class WorkspaceStatus(str, Enum):
    PROVISIONING = "provisioning"
    READY = "ready"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"
    FAILED = "failed"
    TORN_DOWN = "torn_down"


@dataclass(slots=True)
class FinalizeResult:
    workspace_id: str
    branch: str
    commit_sha: str | None = None
    pr_url: str | None = None
    committed: bool = False
    draft: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Workspace:
    id: str
    repo: str
    base_branch: str
    worktree: bool
    local_path: str
    branch: str
    status: WorkspaceStatus
    created_at: datetime
    name: str | None = None
    # checkout the worktree was added to; None for clones
    source_path: str | None = None
    # ref the branch was cut from, e.g. origin/main
    base_ref: str | None = None
    finalize_result: FinalizeResult | None = None
    last_error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_ready(self) -> bool:
        return self.status is WorkspaceStatus.READY

    def snapshot(self) -> "Workspace":
        return replace(self, metadata=dict(self.metadata))

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.id,
            "repo": self.repo,
            "base_branch": self.base_branch,
            "base_ref": self.base_ref,
            "worktree": self.worktree,
            "local_path": self.local_path,
            "branch": self.branch,
            "status": self.status.value,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "finalize_result": self.finalize_result.to_dict() if self.finalize_result else None,
            "last_error": self.last_error,
        }


__all__ = ["FinalizeResult", "Workspace", "WorkspaceStatus"]
