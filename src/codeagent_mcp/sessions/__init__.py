"""Interactive coding agent sessions."""

from .manager import KEY_SEQUENCES, SessionManager
from .models import Session, SessionStatus, TERMINAL_STATUSES
from .pty import AgentProcess, FakeAgentProcess, PtyProcess

__all__ = [
    "KEY_SEQUENCES",
    "AgentProcess",
    "FakeAgentProcess",
    "PtyProcess",
    "Session",
    "SessionManager",
    "SessionStatus",
    "TERMINAL_STATUSES",
]
