"""Static registry of supported coding agent adapters."""

from __future__ import annotations

import re
from typing import Iterable

from .base import AdapterSpec, CompletionDetector

SHELL_EXIT_SENTINEL = "__CODING_AGENT_EXIT__"

# Ranked selection only considers these, and ties go to the earliest entry.
DEFAULT_ORDER: tuple[str, ...] = ("claude", "gemini", "codex", "aider")

# CLI error lines start with the message, optionally after "Error:" or "API Error:"
_CLI_ERROR_LINE = r"^\s*(?:(?:API )?Error:\s*)?"


def _shell_task(task: str) -> str:
    return f"{task}\nprintf '\\n{SHELL_EXIT_SENTINEL}:%s\\n' \"$?\"\n"


CLAUDE = AdapterSpec(
    adapter_type="claude",
    display_name="Claude Code",
    binary="claude",
    install_command="npm install -g @anthropic-ai/claude-code",
    docs_url="https://docs.anthropic.com/en/docs/claude-code",
    task_args=lambda task: ["-p", task] if task else [],
    detector=CompletionDetector(
        failure_patterns=(
            re.compile(_CLI_ERROR_LINE + r"invalid api key", re.IGNORECASE | re.MULTILINE),
            re.compile(_CLI_ERROR_LINE + r"credit balance is too low", re.IGNORECASE | re.MULTILINE),
        ),
    ),
)

GEMINI = AdapterSpec(
    adapter_type="gemini",
    display_name="Gemini CLI",
    binary="gemini",
    install_command="npm install -g @google/gemini-cli",
    docs_url="https://github.com/google-gemini/gemini-cli",
    task_args=lambda task: ["-p", task] if task else [],
)

CODEX = AdapterSpec(
    adapter_type="codex",
    display_name="OpenAI Codex CLI",
    binary="codex",
    install_command="npm install -g @openai/codex",
    docs_url="https://github.com/openai/codex",
    subcommand=("exec",),
    task_args=lambda task: [task] if task else [],
)

AIDER = AdapterSpec(
    adapter_type="aider",
    display_name="Aider",
    binary="aider",
    install_command="python -m pip install aider-install && aider-install",
    docs_url="https://aider.chat/docs/install.html",
    task_args=lambda task: ["--yes-always", "--message", task] if task else ["--yes-always"],
)

SHELL = AdapterSpec(
    adapter_type="shell",
    display_name="Shell",
    binary="bash",
    install_command="Install bash with your system package manager",
    docs_url="https://www.gnu.org/software/bash/",
    task_args=lambda task: ["--noprofile", "--norc", "-i"],
    stdin_task=lambda task: _shell_task(task) if task else None,
    detector=CompletionDetector(
        success_patterns=(re.compile(rf"{SHELL_EXIT_SENTINEL}:(?P<code>\d+)"),),
    ),
)


class AdapterRegistry:
    """Lookup table of adapter specs keyed by adapter type."""

    def __init__(
        self,
        specs: Iterable[AdapterSpec],
        *,
        candidates: Iterable[str] = DEFAULT_ORDER,
    ) -> None:
        self._specs: dict[str, AdapterSpec] = {spec.adapter_type: spec for spec in specs}
        self._candidates = tuple(name for name in candidates if name in self._specs)

    def get(self, adapter_type: str) -> AdapterSpec | None:
        return self._specs.get(adapter_type)

    def __contains__(self, adapter_type: object) -> bool:
        return adapter_type in self._specs

    @property
    def adapter_types(self) -> tuple[str, ...]:
        return tuple(self._specs)

    @property
    def candidates(self) -> tuple[str, ...]:
        """Adapters eligible for ranked selection, in tie-break order."""

        return self._candidates

def default_registry() -> AdapterRegistry:
    return AdapterRegistry([CLAUDE, GEMINI, CODEX, AIDER, SHELL])


__all__ = [
    "AIDER",
    "CLAUDE",
    "CODEX",
    "DEFAULT_ORDER",
    "GEMINI",
    "SHELL",
    "SHELL_EXIT_SENTINEL",
    "AdapterRegistry",
    "default_registry",
]
