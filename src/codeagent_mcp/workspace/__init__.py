"""Isolated git workspaces for coding agent sessions."""

from .git import CommandResult, CommandRunner, GhCli, GitRunner
from .models import FinalizeResult, Workspace, WorkspaceStatus
from .service import WorkspaceService

__all__ = [
    "CommandResult",
    "CommandRunner",
    "FinalizeResult",
    "GhCli",
    "GitRunner",
    "Workspace",
    "WorkspaceService",
    "WorkspaceStatus",
]
