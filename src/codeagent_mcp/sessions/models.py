"""Session records."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    SPAWNING = "spawning"
    RUNNING = "running"
    STALLED = "stalled"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.STOPPED}
)


@dataclass(slots=True)
class Session:
    id: str
    adapter_type: str
    workdir: str
    task: str
    status: SessionStatus
    started_at: datetime
    workspace_id: str | None = None
    last_output_at: datetime | None = None
    completed_at: datetime | None = None
    transcript_tail: str = ""
    exit_code: int | None = None
    error: str | None = None
    stall_episodes: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def snapshot(self) -> "Session":
        return replace(self, metadata=dict(self.metadata))

    def to_dict(self, *, tail_chars: int | None = 2000) -> dict[str, Any]:
        tail = self.transcript_tail
        if tail_chars is not None:
            tail = tail[-tail_chars:] if tail_chars > 0 else ""
        return {
            "session_id": self.id,
            "adapter_type": self.adapter_type,
            "workdir": self.workdir,
            "workspace_id": self.workspace_id,
            "task": self.task,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "last_output_at": self.last_output_at.isoformat() if self.last_output_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "exit_code": self.exit_code,
            "error": self.error,
            "stall_episodes": self.stall_episodes,
            "transcript_tail": tail,
        }


__all__ = ["Session", "SessionStatus", "TERMINAL_STATUSES"]
