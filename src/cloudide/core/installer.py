"""
Installs a session's detected dependencies with the guest package manager.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from cloudide.core.constants import DEFAULT_PACKAGE_MANAGER
from cloudide.utils import metrics

logger = logging.getLogger(__name__)

_POSIX = os.name == "posix"


@dataclass(frozen=True)
class InstallResult:
    """Outcome of one installation attempt."""

    success: bool
    exit_code: int | None = None
    error: str | None = None


class PackageInstaller:
    """Runs ``<pm> init -y`` (when needed) and ``<pm> install <packages>``.

    Output of the package manager is discarded; the editor only sees the
    orchestrator's own status lines.
    """

    def __init__(self, command: str = DEFAULT_PACKAGE_MANAGER, timeout: float | None = None) -> None:
        self.command = command
        self.timeout = timeout

    async def install(self, workdir: Path, packages: Sequence[str]) -> InstallResult:
        if not packages:
            return InstallResult(success=True, exit_code=0)

        try:
            async with asyncio.timeout(self.timeout):
                if not (workdir / "package.json").exists():
                    code = await self._run(workdir, "init", "-y")
                    if code != 0:
                        metrics.package_installs_total.labels(status="failed").inc()
                        return InstallResult(False, code, f"{self.command} init exited with code {code}")
                code = await self._run(workdir, "install", *packages)
        except TimeoutError:
            metrics.package_installs_total.labels(status="timeout").inc()
            return InstallResult(False, None, f"timed out after {self.timeout:g}s")
        except OSError as e:
            metrics.package_installs_total.labels(status="failed").inc()
            logger.warning(f"Package manager '{self.command}' could not be started: {e}")
            return InstallResult(False, None, f"{self.command} could not be started ({e.strerror or e})")

        if code != 0:
            metrics.package_installs_total.labels(status="failed").inc()
            return InstallResult(False, code, f"{self.command} install exited with code {code}")

        metrics.package_installs_total.labels(status="success").inc()
        return InstallResult(True, 0)

    async def _run(self, workdir: Path, *args: str) -> int:
        logger.debug(f"Running {self.command} {' '.join(args)} in {workdir}")
        proc = await asyncio.create_subprocess_exec(
            self.command,
            *args,
            cwd=workdir,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=_POSIX,
        )
        try:
            return await proc.wait()
        except BaseException:
            # Cancelled or timed out: kill the package manager and its children
            _kill_group(proc)
            with contextlib.suppress(Exception):
                await asyncio.shield(proc.wait())
            raise


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError, PermissionError):
        if _POSIX:
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
