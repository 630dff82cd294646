"""Coding agent CLI adapters."""

from .base import AdapterSpec, CompletionDetector, PreflightResult
from .overrides import AdapterConfigError, AdapterOverride, AdapterOverrideLoader
from .preflight import AdapterPreflight
from .registry import DEFAULT_ORDER, AdapterRegistry, default_registry

__all__ = [
    "DEFAULT_ORDER",
    "AdapterConfigError",
    "AdapterOverride",
    "AdapterOverrideLoader",
    "AdapterPreflight",
    "AdapterRegistry",
    "AdapterSpec",
    "CompletionDetector",
    "PreflightResult",
    "default_registry",
]
