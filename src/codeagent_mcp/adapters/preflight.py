"""Installation checks for coding agent CLIs."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Mapping

from .base import AdapterSpec, PreflightResult
from .overrides import AdapterOverride
from .registry import AdapterRegistry
from .utils import sanitize_environment

logger = logging.getLogger(__name__)


class AdapterPreflight:
    """Probe adapter binaries with a bounded version invocation."""

    def __init__(
        self,
        registry: AdapterRegistry,
        *,
        overrides: Mapping[str, AdapterOverride] | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._registry = registry
        self._overrides = dict(overrides or {})
        self._timeout = timeout

    @property
    def registry(self) -> AdapterRegistry:
        return self._registry

    def override_for(self, adapter_type: str) -> AdapterOverride | None:
        return self._overrides.get(adapter_type)

    def resolve_executable(self, adapter_type: str) -> str | None:
        """Return the executable path for an adapter, or None when absent."""

        spec = self._registry.get(adapter_type)
        if spec is None:
            return None
        override = self._overrides.get(adapter_type)
        if override is not None and override.executable:
            candidate = Path(override.executable).expanduser()
            if candidate.is_file():
                return str(candidate)
            return shutil.which(override.executable)
        return shutil.which(spec.binary)

    async def check_installed(self, adapter_type: str) -> PreflightResult:
        """Return whether the adapter's CLI is usable. Never raises."""

        spec = self._registry.get(adapter_type)
        if spec is None:
            return PreflightResult(
                adapter_type=adapter_type,
                installed=False,
                install_command="",
                docs_url="",
                error=f"Unknown adapter type '{adapter_type}'",
            )

        executable = self.resolve_executable(adapter_type)
        if executable is None:
            return self._missing(spec, f"'{spec.binary}' not found on PATH")

        override = self._overrides.get(adapter_type)
        env = sanitize_environment(override.env if override else None)
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.version_command(executable),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            return self._missing(spec, f"Failed to execute {executable}: {exc}")

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            return self._missing(
                spec, f"Version check timed out after {self._timeout:g}s"
            )
        except Exception as exc:  # pragma: no cover
            logger.warning(
                "Preflight check failed",
                extra={"adapter_type": adapter_type, "error": str(exc)},
            )
            return self._missing(spec, str(exc))

        if process.returncode != 0:
            stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
            return self._missing(
                spec,
                stderr or f"Version check exited with code {process.returncode}",
            )

        output = stdout_bytes.decode("utf-8", errors="replace").strip()
        version = output.splitlines()[0] if output else None
        return PreflightResult(
            adapter_type=spec.adapter_type,
            installed=True,
            install_command=spec.install_command,
            docs_url=spec.docs_url,
            version=version,
        )

    async def list_installed(self) -> list[PreflightResult]:
        """Check every ranked candidate concurrently, in candidate order."""

        results = await asyncio.gather(
            *(self.check_installed(adapter_type) for adapter_type in self._registry.candidates)
        )
        logger.debug(
            "Preflight complete",
            extra={"installed": [result.adapter_type for result in results if result.installed]},
        )
        return list(results)

    @staticmethod
    def _missing(spec: AdapterSpec, reason: str) -> PreflightResult:
        return PreflightResult(
            adapter_type=spec.adapter_type,
            installed=False,
            install_command=spec.install_command,
            docs_url=spec.docs_url,
            error=reason,
        )


__all__ = ["AdapterPreflight"]
