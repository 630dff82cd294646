"""Configuration management for the coding agent orchestrator."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    selection_strategy: str = Field(default="fixed", validation_alias="CODING_AGENT_SELECTION_STRATEGY")
    fixed_agent_type: str = Field(default="claude", validation_alias="CODING_AGENT_DEFAULT_TYPE")
    stall_timeout_seconds: float = Field(default=60.0, validation_alias="CODING_AGENT_STALL_TIMEOUT")
    kill_grace_seconds: float = Field(default=5.0, validation_alias="CODING_AGENT_KILL_GRACE")
    session_history_limit: int = Field(default=100, validation_alias="CODING_AGENT_HISTORY_LIMIT")
    transcript_tail_chars: int = Field(default=8000, validation_alias="CODING_AGENT_TRANSCRIPT_TAIL")
    preflight_timeout_seconds: float = Field(
        default=10.0, validation_alias="CODING_AGENT_PREFLIGHT_TIMEOUT"
    )
    adapter_config_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("adapters"),), validation_alias="CODING_AGENT_ADAPTER_CONFIG_PATHS"
    )
    workspace_root: Path = Field(
        default=Path("~/.codeagent/workspaces"), validation_alias="CODING_AGENT_WORKSPACE_ROOT"
    )
    branch_prefix: str = Field(default="agent", validation_alias="CODING_AGENT_BRANCH_PREFIX")
    git_timeout_seconds: float = Field(default=120.0, validation_alias="CODING_AGENT_GIT_TIMEOUT")
    gh_path: str = Field(default="gh", validation_alias="GH_PATH")
    git_author_name: str | None = Field(default=None, validation_alias="CODING_AGENT_GIT_AUTHOR_NAME")
    git_author_email: str | None = Field(
        default=None, validation_alias="CODING_AGENT_GIT_AUTHOR_EMAIL"
    )
    persist_metrics: bool = Field(default=False, validation_alias="CODING_AGENT_PERSIST_METRICS")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="CODING_AGENT_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "CODING_AGENT_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("selection_strategy")
    @classmethod
    def _normalize_strategy(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"fixed", "ranked"}:
            raise ValueError("CODING_AGENT_SELECTION_STRATEGY must be 'fixed' or 'ranked'")
        return normalized

    @field_validator("fixed_agent_type", "branch_prefix")
    @classmethod
    def _strip_identifier(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("value must not be empty")
        return normalized

    @field_validator(
        "stall_timeout_seconds",
        "kill_grace_seconds",
        "preflight_timeout_seconds",
        "git_timeout_seconds",
    )
    @classmethod
    def _validate_positive_duration(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be greater than zero")
        return value

    @field_validator("session_history_limit", "transcript_tail_chars")
    @classmethod
    def _validate_positive_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("limits must be >= 1")
        return value

    @field_validator("adapter_config_paths", mode="before")
    @classmethod
    def _parse_adapter_config_paths(cls, value):
        if value is None or value == "":
            return (Path("adapters"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("adapters"),)
        raise TypeError(
            "CODING_AGENT_ADAPTER_CONFIG_PATHS must be a list of paths or a path-separated string"
        )


@lru_cache(maxsize=1)
def get_settings() -> OrchestratorSettings:
    """Return cached settings instance."""

    settings = OrchestratorSettings()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.workspace_root = settings.workspace_root.expanduser().resolve()
    settings.adapter_config_paths = tuple(
        path.expanduser().resolve() for path in settings.adapter_config_paths
    )
    return settings


__all__ = ["OrchestratorSettings", "get_settings"]
