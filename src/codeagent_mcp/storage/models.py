"""Data models for persistent tracking."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class WorkspaceRecord:
    workspace_id: str
    path: str
    branch: str | None
    status: str
    recorded_at: datetime
    metadata: dict[str, Any]


@dataclass(slots=True)
class SessionTrackingRecord:
    session_id: str
    adapter_type: str
    status: str
    workdir: str | None
    workspace_id: str | None
    recorded_at: datetime
    metadata: dict[str, Any]


__all__ = ["WorkspaceRecord", "SessionTrackingRecord"]
