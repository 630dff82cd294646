"""Storage abstractions for the coding agent orchestrator."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError
from .models import SessionTrackingRecord, WorkspaceRecord

__all__ = [
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "SessionTrackingRecord",
    "WorkspaceRecord",
]
