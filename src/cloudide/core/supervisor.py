"""
Guest process supervision for one session.

A run request goes through one pipeline: reset the scratch directory, write
the file set, resolve and install dependencies, check the entry point, spawn
the runtime with the session's port in its environment and stream its output.
A new run (or ``kill()``) first stops the previous pipeline and its guest.

Kill ordering:
    1. Mute the old run so nothing it produces reaches the client.
    2. SIGTERM the guest's process group and wait for the exit, escalating to
       SIGKILL after the grace period. Output pumps keep draining the pipes
       meanwhile, otherwise a guest blocked on a full pipe never exits.
    3. Cancel whatever is left of the pipeline and wait for a workspace
       reset or write still running in a worker thread.
    4. Sleep the settle delay so the port is free for the replacement.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import signal

from collections.abc import Awaitable, Callable, Mapping, Sequence
from enum import Enum
from typing import TYPE_CHECKING

from cloudide.core.constants import (
    DEFAULT_ENTRY_POINT,
    DEFAULT_KILL_GRACE_PERIOD,
    DEFAULT_RESPAWN_SETTLE_DELAY,
    DEFAULT_RUNTIME_COMMAND,
    GUEST_PORT_ENV_VAR,
    OUTPUT_CHUNK_SIZE,
)
from cloudide.core.workspace import WorkspaceError
from cloudide.models.event_models import OutboundMessage, OutputChunk, ProcessExit
from cloudide.utils import metrics
from cloudide.utils.terminal import CYAN, GREEN, YELLOW, error_line, exit_line, stderr_chunk, system_line

if TYPE_CHECKING:
    from pathlib import Path

    from cloudide.core.constants import Settings
    from cloudide.core.dependency_scan import DependencyResolver
    from cloudide.core.installer import PackageInstaller
    from cloudide.core.workspace import WorkspaceManager
    from cloudide.models.session_models import Session

logger = logging.getLogger(__name__)

#: Callback delivering an event to the session's client.
EmitFn = Callable[[OutboundMessage], Awaitable[None]]

_POSIX = os.name == "posix"


class ProcessState(str, Enum):
    """Lifecycle of a session's guest process."""

    IDLE = "idle"
    INSTALLING = "installing"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


class GuestProcessSupervisor:
    """Owns the run pipeline and the single live guest process of one session."""

    def __init__(
        self,
        session: Session,
        workspace: WorkspaceManager,
        resolver: DependencyResolver,
        installer: PackageInstaller,
        emit: EmitFn,
        *,
        runtime_argv: Sequence[str] = (DEFAULT_RUNTIME_COMMAND,),
        entry_point: str = DEFAULT_ENTRY_POINT,
        kill_grace_period: float = DEFAULT_KILL_GRACE_PERIOD,
        respawn_settle_delay: float = DEFAULT_RESPAWN_SETTLE_DELAY,
        run_timeout: float | None = None,
        extra_env: Mapping[str, str] | None = None,
    ) -> None:
        if not runtime_argv:
            raise ValueError("runtime_argv must name an executable")
        self.session = session
        self.workspace = workspace
        self.resolver = resolver
        self.installer = installer
        self.runtime_argv = list(runtime_argv)
        self.entry_point = entry_point
        self.kill_grace_period = kill_grace_period
        self.respawn_settle_delay = respawn_settle_delay
        self.run_timeout = run_timeout
        self.extra_env = dict(extra_env or {})

        self._emit_fn = emit
        self._lock = asyncio.Lock()
        self._run_id = 0
        self._task: asyncio.Task[None] | None = None
        self._materializing: asyncio.Future[Path] | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._state = ProcessState.IDLE

    @classmethod
    def from_settings(
        cls,
        session: Session,
        workspace: WorkspaceManager,
        resolver: DependencyResolver,
        installer: PackageInstaller,
        emit: EmitFn,
        settings: Settings,
    ) -> GuestProcessSupervisor:
        return cls(
            session,
            workspace,
            resolver,
            installer,
            emit,
            runtime_argv=settings.runtime_argv,
            entry_point=settings.entry_point,
            kill_grace_period=settings.kill_grace_period,
            respawn_settle_delay=settings.respawn_settle_delay,
            run_timeout=settings.run_timeout,
        )

    # ========================================================================
    # Public API
    # ========================================================================

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def pid(self) -> int | None:
        """PID of the live guest process, if any."""
        proc = self._process
        if proc is None or proc.returncode is not None:
            return None
        return proc.pid

    @property
    def current_task(self) -> asyncio.Task[None] | None:
        return self._task

    async def submit(self, files: Mapping[str, str]) -> asyncio.Task[None]:
        """Stop whatever the session is running and start a new run.

        Returns:
            The background task executing the run pipeline.
        """
        async with self._lock:
            await self._stop_locked()
            self._run_id += 1
            self._task = asyncio.create_task(
                self._pipeline(self._run_id, dict(files)),
                name=f"run-{self.session.session_id}-{self._run_id}",
            )
            return self._task

    async def kill(self) -> None:
        """Stop the running pipeline and guest process. Safe to call at any time."""
        async with self._lock:
            await self._stop_locked()

    # ========================================================================
    # Kill
    # ========================================================================

    async def _stop_locked(self) -> None:
        self._run_id += 1
        proc, task = self._process, self._task
        was_active = False

        if proc is not None and proc.returncode is None:
            was_active = True
            await self._terminate(proc)

        if task is not None and not task.done():
            was_active = True
            task.cancel()
            await asyncio.wait({task})

        materializing = self._materializing
        if materializing is not None and not materializing.done():
            was_active = True
            await asyncio.wait({materializing})

        self._process = None
        self._task = None
        self._materializing = None
        if was_active:
            logger.info(f"Stopped run in session {self.session.session_id}")
            self._state = ProcessState.KILLED
            await asyncio.sleep(self.respawn_settle_delay)
        self._state = ProcessState.IDLE

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, wait for the grace period, then SIGKILL."""
        self._signal(proc, force=False)
        try:
            await asyncio.wait_for(proc.wait(), self.kill_grace_period)
            return
        except TimeoutError:
            logger.warning(f"Guest {proc.pid} ignored SIGTERM, sending SIGKILL")

        self._signal(proc, force=True)
        try:
            await asyncio.wait_for(proc.wait(), self.kill_grace_period)
        except TimeoutError:
            # Something outside the process group still holds the pipes open
            logger.error(f"Guest {proc.pid} did not exit after SIGKILL")

    @staticmethod
    def _signal(proc: asyncio.subprocess.Process, *, force: bool) -> None:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            if _POSIX:
                os.killpg(proc.pid, signal.SIGKILL if force else signal.SIGTERM)
            elif force:
                proc.kill()
            else:
                proc.terminate()

    # ========================================================================
    # Run pipeline
    # ========================================================================

    async def _pipeline(self, run_id: int, files: dict[str, str]) -> None:
        session_id = self.session.session_id
        try:
            await self._run(run_id, files)
        except asyncio.CancelledError:
            raise
        except WorkspaceError as e:
            logger.error(f"Workspace error in session {session_id}: {e}")
            metrics.runs_total.labels(outcome="error").inc()
            await self._emit(run_id, OutputChunk(data=error_line(str(e), "System Error")))
            self._set_state(run_id, ProcessState.IDLE)
        except Exception as e:
            logger.error(f"Run pipeline failed in session {session_id}", exc_info=True)
            metrics.runs_total.labels(outcome="error").inc()
            await self._emit(run_id, OutputChunk(data=error_line(type(e).__name__, "System Error")))
            self._set_state(run_id, ProcessState.IDLE)

    async def _run(self, run_id: int, files: dict[str, str]) -> None:
        session_id = self.session.session_id
        # Cancelling the run does not stop the worker thread, so the kill path waits on this future
        self._materializing = asyncio.ensure_future(asyncio.to_thread(self._materialize, files))
        workdir = await asyncio.shield(self._materializing)

        packages = self.resolver.resolve(files)
        if packages:
            self._set_state(run_id, ProcessState.INSTALLING)
            await self._emit(
                run_id,
                OutputChunk(data=system_line(f"Installing: {', '.join(packages)}...", YELLOW)),
            )
            result = await self.installer.install(workdir, packages)
            if result.success:
                await self._emit(run_id, OutputChunk(data=system_line("Packages installed successfully.", GREEN)))
            else:
                logger.warning(f"Install failed in session {session_id}: {result.error}")
                await self._emit(run_id, OutputChunk(data=error_line(f"Failed to install packages: {result.error}")))

        if not (workdir / self.entry_point).is_file():
            metrics.runs_total.labels(outcome="missing_entry_point").inc()
            await self._emit(run_id, OutputChunk(data=error_line(f"{self.entry_point} not found.")))
            self._set_state(run_id, ProcessState.IDLE)
            return

        port = self.session.port
        await self._emit(run_id, OutputChunk(data=system_line(f"Starting server on port {port}...", CYAN)))

        env = {**os.environ, **self.extra_env, GUEST_PORT_ENV_VAR: str(port)}
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.runtime_argv,
                self.entry_point,
                cwd=workdir,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=_POSIX,
            )
        except OSError as e:
            logger.warning(f"Failed to spawn {self.runtime_argv[0]} in session {session_id}: {e}")
            metrics.runs_total.labels(outcome="spawn_failed").inc()
            await self._emit(run_id, OutputChunk(data=error_line(e.strerror or str(e), "Spawn Error")))
            self._set_state(run_id, ProcessState.IDLE)
            return

        logger.info(f"Guest {proc.pid} started in session {session_id} on port {port}")
        metrics.runs_total.labels(outcome="spawned").inc()
        self._process = proc
        self._set_state(run_id, ProcessState.RUNNING)
        await self._supervise(run_id, proc)

    def _materialize(self, files: dict[str, str]) -> Path:
        session_id = self.session.session_id
        workdir = self.workspace.reset(session_id)
        self.workspace.write(session_id, files)
        return workdir

    async def _supervise(self, run_id: int, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None and proc.stderr is not None
        metrics.guest_processes_active.inc()
        pumps = [
            asyncio.create_task(self._pump(run_id, proc.stdout, None)),
            asyncio.create_task(self._pump(run_id, proc.stderr, stderr_chunk)),
        ]
        try:
            try:
                async with asyncio.timeout(self.run_timeout):
                    code = await proc.wait()
            except TimeoutError:
                await self._emit(
                    run_id,
                    OutputChunk(data=system_line(f"Run time limit of {self.run_timeout:g}s reached, stopping.", YELLOW)),
                )
                await self._terminate(proc)
                code = await proc.wait()
            await asyncio.gather(*pumps)
        finally:
            if proc.returncode is None:
                await self._terminate(proc)
            for pump in pumps:
                pump.cancel()
            metrics.guest_processes_active.dec()
            if self._process is proc:
                self._process = None

        logger.info(f"Guest {proc.pid} in session {self.session.session_id} exited with code {code}")
        # Negative return codes mean the guest died from a signal
        signal_name: str | None = None
        if code < 0:
            with contextlib.suppress(ValueError):
                signal_name = signal.Signals(-code).name
        await self._emit(run_id, OutputChunk(data=exit_line(code, signal_name)))
        await self._emit(run_id, ProcessExit(code=code if code >= 0 else None))
        self._set_state(run_id, ProcessState.EXITED)

    async def _pump(
        self,
        run_id: int,
        stream: asyncio.StreamReader,
        fmt: Callable[[str], str] | None,
    ) -> None:
        """Forward one pipe to the client until EOF, decoding UTF-8 across chunk boundaries."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while chunk := await stream.read(OUTPUT_CHUNK_SIZE):
            if text := decoder.decode(chunk):
                await self._emit(run_id, OutputChunk(data=fmt(text) if fmt else text))
        if tail := decoder.decode(b"", final=True):
            await self._emit(run_id, OutputChunk(data=fmt(tail) if fmt else tail))

    # ========================================================================
    # Helpers
    # ========================================================================

    def _set_state(self, run_id: int, state: ProcessState) -> None:
        if run_id == self._run_id:
            self._state = state

    async def _emit(self, run_id: int, message: OutboundMessage) -> None:
        """Deliver an event unless its run has been stopped."""
        if run_id != self._run_id:
            return
        try:
            await self._emit_fn(message)
        except Exception as e:
            # The pumps must keep draining even when the client is gone
            logger.debug(f"Dropped {type(message).__name__} for session {self.session.session_id}: {e}")
