"""Adapter capability sets for coding agent CLIs."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence


@dataclass(slots=True)
class PreflightResult:
    """Outcome of probing one adapter's CLI on this host."""

    adapter_type: str
    installed: bool
    install_command: str
    docs_url: str
    version: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "adapter_type": self.adapter_type,
            "installed": self.installed,
            "install_command": self.install_command,
            "docs_url": self.docs_url,
            "version": self.version,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class CompletionDetector:
    """Decides when a session has finished from its output or exit code.

    Patterns are matched against the ANSI-stripped transcript tail. A pattern
    with a ``code`` group reports an exit status; zero means success. The tail
    also holds the agent's own output, so failure patterns are anchored to the
    CLI's error lines.
    """

    success_patterns: tuple[re.Pattern[str], ...] = ()
    failure_patterns: tuple[re.Pattern[str], ...] = ()

    def detect(self, transcript: str) -> str | None:
        for pattern in self.failure_patterns:
            if pattern.search(transcript):
                return "failed"
        for pattern in self.success_patterns:
            match = pattern.search(transcript)
            if match is None:
                continue
            code = match.groupdict().get("code")
            if code is not None and int(code) != 0:
                return "failed"
            return "completed"
        return None

    @staticmethod
    def from_exit_code(returncode: int | None) -> str:
        return "completed" if returncode == 0 else "failed"


def _task_as_argument(*prefix: str) -> Callable[[str], list[str]]:
    def build(task: str) -> list[str]:
        return [*prefix, task] if task else list(prefix)

    return build


@dataclass(frozen=True, slots=True)
class AdapterSpec:
    """Static description of one coding agent CLI."""

    adapter_type: str
    display_name: str
    binary: str
    install_command: str
    docs_url: str
    # placed before extra_args, e.g. ("exec",) for codex
    subcommand: tuple[str, ...] = ()
    task_args: Callable[[str], list[str]] = field(default=_task_as_argument())
    version_args: tuple[str, ...] = ("--version",)
    stdin_task: Callable[[str], str | None] | None = None
    detector: CompletionDetector = field(default_factory=CompletionDetector)

    def launch_command(
        self,
        task: str,
        *,
        executable: str | None = None,
        extra_args: Sequence[str] = (),
    ) -> list[str]:
        return [executable or self.binary, *self.subcommand, *extra_args, *self.task_args(task)]

    def initial_input(self, task: str) -> str | None:
        if self.stdin_task is None:
            return None
        return self.stdin_task(task)

    def version_command(self, executable: str) -> list[str]:
        return [executable, *self.version_args]


__all__ = ["AdapterSpec", "CompletionDetector", "PreflightResult"]
