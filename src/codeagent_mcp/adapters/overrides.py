"""Per-adapter launch overrides loaded from YAML."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator


class AdapterConfigError(RuntimeError):
    """Raised when one or more adapter override files cannot be parsed."""


class AdapterOverride(BaseModel):
    """Host-specific tweaks to how a registered adapter is launched."""

    adapter_type: str = Field(..., description="Registered adapter this override applies to.")
    executable: str | None = Field(
        default=None,
        description="Explicit path to the CLI binary instead of a PATH lookup.",
    )
    extra_args: list[str] = Field(
        default_factory=list,
        description="Arguments inserted before the task arguments.",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Environment variables added to the agent process.",
    )

    @field_validator("adapter_type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Adapter override adapter_type must not be empty")
        return normalized

    @field_validator("extra_args", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, str):
            return value.split()
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("extra_args must be a string or a sequence of strings")


class AdapterOverrideLoader:
    """Loads adapter overrides from YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, AdapterOverride]:
        """Load overrides from all configured search paths.

        Later search paths override earlier ones when adapter types collide.
        """

        if not self._search_paths:
            return {}

        overrides: dict[str, AdapterOverride] = {}
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:  # pragma: no cover - library type
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                entries = [document]
                if isinstance(document, dict) and "adapters" in document:
                    entries = document["adapters"]
                if not isinstance(entries, list):
                    errors.append(f"'adapters' in {path} must be a list")
                    continue

                for entry in entries:
                    try:
                        override = AdapterOverride.model_validate(entry)
                    except ValidationError as exc:
                        errors.append(f"Adapter override validation error in {path}: {exc}")
                        continue
                    overrides[override.adapter_type] = override

        if errors:
            raise AdapterConfigError("; ".join(errors))

        return overrides


__all__ = ["AdapterConfigError", "AdapterOverride", "AdapterOverrideLoader"]
