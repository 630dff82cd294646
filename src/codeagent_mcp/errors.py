"""Error taxonomy shared by sessions, workspaces and the tool surface."""

from __future__ import annotations

from typing import Any


class OrchestratorError(RuntimeError):
    """Base class for failures reported back to tool callers."""

    kind = "OrchestratorError"
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class AdapterNotInstalledError(OrchestratorError):
    """The requested adapter's CLI is missing or unusable on this host."""

    kind = "AdapterNotInstalled"

    def __init__(
        self,
        adapter_type: str,
        *,
        install_command: str = "",
        docs_url: str = "",
        reason: str | None = None,
    ) -> None:
        message = f"Coding agent '{adapter_type}' is not installed"
        if install_command:
            message += f"; install it with: {install_command}"
        super().__init__(
            message,
            details={
                "adapter_type": adapter_type,
                "install_command": install_command,
                "docs_url": docs_url,
                "reason": reason,
            },
        )
        self.adapter_type = adapter_type
        self.install_command = install_command
        self.docs_url = docs_url


class WorkdirInvalidError(OrchestratorError):
    kind = "WorkdirInvalid"


class SessionNotFoundError(OrchestratorError):
    kind = "SessionNotFound"

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session '{session_id}' not found or already finished",
            details={"session_id": session_id},
        )
        self.session_id = session_id


class RepoUnreachableError(OrchestratorError):
    kind = "RepoUnreachable"


class BranchNotFoundError(OrchestratorError):
    kind = "BranchNotFound"


class NothingToCommitError(OrchestratorError):
    kind = "NothingToCommit"


class PushRejectedError(OrchestratorError):
    kind = "PushRejected"
    retryable = True


class PrCreationFailedError(OrchestratorError):
    kind = "PrCreationFailed"


class ServiceUnavailableError(OrchestratorError):
    kind = "ServiceUnavailable"
    retryable = True


class OrchestratorTimeoutError(OrchestratorError):
    kind = "Timeout"
    retryable = True


class WorkspaceNotFoundError(OrchestratorError):
    kind = "WorkspaceNotFound"

    def __init__(self, workspace_id: str) -> None:
        super().__init__(
            f"Workspace '{workspace_id}' not found",
            details={"workspace_id": workspace_id},
        )
        self.workspace_id = workspace_id


class WorkspaceBusyError(OrchestratorError):
    kind = "WorkspaceBusy"
    retryable = True


class InvalidArgumentError(OrchestratorError):
    kind = "InvalidArgument"


__all__ = [
    "AdapterNotInstalledError",
    "BranchNotFoundError",
    "InvalidArgumentError",
    "NothingToCommitError",
    "OrchestratorError",
    "OrchestratorTimeoutError",
    "PrCreationFailedError",
    "PushRejectedError",
    "RepoUnreachableError",
    "ServiceUnavailableError",
    "SessionNotFoundError",
    "WorkdirInvalidError",
    "WorkspaceBusyError",
    "WorkspaceNotFoundError",
]
