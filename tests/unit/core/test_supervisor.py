"""Tests for guest process supervision.

Guests are Python scripts run with the current interpreter.
"""

from __future__ import annotations

import asyncio
import os
import sys
import time

from collections.abc import Mapping
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from cloudide.core.dependency_scan import RegexDependencyResolver
from cloudide.core.installer import InstallResult
from cloudide.core.supervisor import GuestProcessSupervisor, ProcessState
from cloudide.core.workspace import WorkspaceManager
from cloudide.models.event_models import OutboundMessage, OutputChunk, ProcessExit
from cloudide.models.session_models import Session

LONG_RUNNING = """\
import os, sys, time
print(f"A started pid={os.getpid()} port={os.environ['PORT']}", flush=True)
while True:
    print("A tick", flush=True)
    time.sleep(0.05)
"""

IGNORES_SIGTERM = """\
import signal, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print("stubborn", flush=True)
while True:
    time.sleep(0.05)
"""


class Collector:
    """Records events emitted by a supervisor."""

    def __init__(self) -> None:
        self.events: list[OutboundMessage] = []

    async def __call__(self, message: OutboundMessage) -> None:
        self.events.append(message)

    @property
    def text(self) -> str:
        return "".join(e.data for e in self.events if isinstance(e, OutputChunk))

    def exits(self) -> list[ProcessExit]:
        return [e for e in self.events if isinstance(e, ProcessExit)]


async def wait_for(predicate: Any, timeout: float = 10.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class SlowWorkspace(WorkspaceManager):
    """Workspace whose writes take long enough to overlap a replacement run."""

    def write(self, session_id: str, files: Mapping[str, str]) -> list[Path]:
        time.sleep(0.3)
        return super().write(session_id, files)


@pytest.fixture
def collector() -> Collector:
    return Collector()


@pytest.fixture
def supervisor(workspace_root: Path, mock_installer: Any, collector: Collector) -> GuestProcessSupervisor:
    workspace = WorkspaceManager(workspace_root)
    session = Session(session_id="sess1", port=45678, workspace=workspace.path_for("sess1"))
    return GuestProcessSupervisor(
        session,
        workspace,
        RegexDependencyResolver(),
        mock_installer,
        collector,
        runtime_argv=[sys.executable, "-u"],
        entry_point="main.py",
        kill_grace_period=1.0,
        respawn_settle_delay=0.01,
    )


class TestRunPipeline:
    """Tests for a single run."""

    @pytest.mark.asyncio
    async def test_runs_to_completion(self, supervisor: GuestProcessSupervisor, collector: Collector) -> None:
        """Output is streamed and the exit code is reported."""
        program = "import os, sys\nprint('out', os.environ['PORT'])\nprint('bad', file=sys.stderr)\nsys.exit(3)\n"
        task = await supervisor.submit({"main.py": program})
        await asyncio.wait_for(task, timeout=10)

        assert "[System] Starting server on port 45678..." in collector.text
        assert "out 45678" in collector.text
        assert "\x1b[31mbad" in collector.text
        assert "[Process exited with code 3]" in collector.text
        assert [e.code for e in collector.exits()] == [3]
        assert supervisor.state is ProcessState.EXITED
        assert supervisor.pid is None

    @pytest.mark.asyncio
    async def test_missing_entry_point_spawns_nothing(
        self, supervisor: GuestProcessSupervisor, collector: Collector
    ) -> None:
        task = await supervisor.submit({"other.py": "print('never')"})
        await asyncio.wait_for(task, timeout=10)

        assert "[Error] main.py not found." in collector.text
        assert "Starting server" not in collector.text
        assert collector.exits() == []
        assert supervisor.state is ProcessState.IDLE

    @pytest.mark.asyncio
    async def test_install_runs_for_detected_packages(
        self, supervisor: GuestProcessSupervisor, collector: Collector, mock_installer: Any
    ) -> None:
        files = {"main.py": "print('ok')", "client.js": "const axios = require('axios');"}
        task = await supervisor.submit(files)
        await asyncio.wait_for(task, timeout=10)

        mock_installer.install.assert_awaited_once()
        assert mock_installer.install.await_args.args[1] == ["axios"]
        assert "[System] Installing: axios..." in collector.text
        assert "Packages installed successfully." in collector.text

    @pytest.mark.asyncio
    async def test_install_failure_does_not_abort_run(
        self, supervisor: GuestProcessSupervisor, collector: Collector, mock_installer: Any
    ) -> None:
        mock_installer.install.return_value = InstallResult(success=False, exit_code=1, error="npm exploded")
        files = {"main.py": "print('still ran')", "x.js": "require('left-pad')"}
        task = await supervisor.submit(files)
        await asyncio.wait_for(task, timeout=10)

        assert "[Error] Failed to install packages: npm exploded" in collector.text
        assert "still ran" in collector.text

    @pytest.mark.asyncio
    async def test_spawn_failure_is_reported(
        self, workspace_root: Path, mock_installer: Any, collector: Collector
    ) -> None:
        workspace = WorkspaceManager(workspace_root)
        session = Session(session_id="s2", port=1, workspace=workspace.path_for("s2"))
        supervisor = GuestProcessSupervisor(
            session,
            workspace,
            RegexDependencyResolver(),
            mock_installer,
            collector,
            runtime_argv=["no-such-runtime-binary-xyz"],
            entry_point="index.js",
        )
        task = await supervisor.submit({"index.js": "console.log(1)"})
        await asyncio.wait_for(task, timeout=10)

        assert "[Spawn Error]" in collector.text
        assert supervisor.state is ProcessState.IDLE

    @pytest.mark.asyncio
    async def test_bad_filename_reported_as_system_error(
        self, supervisor: GuestProcessSupervisor, collector: Collector
    ) -> None:
        task = await supervisor.submit({"../main.py": "print(1)"})
        await asyncio.wait_for(task, timeout=10)

        assert "[System Error]" in collector.text
        assert supervisor.state is ProcessState.IDLE

    @pytest.mark.asyncio
    async def test_multibyte_output_survives_chunking(
        self, supervisor: GuestProcessSupervisor, collector: Collector
    ) -> None:
        program = "import sys\nsys.stdout.buffer.write(('é' * 5000).encode())\n"
        task = await supervisor.submit({"main.py": program})
        await asyncio.wait_for(task, timeout=10)

        assert "é" * 5000 in collector.text
        assert "�" not in collector.text


class TestKill:
    """Tests for stopping and replacing guests."""

    @pytest.mark.asyncio
    async def test_kill_without_process_is_noop(self, supervisor: GuestProcessSupervisor) -> None:
        await supervisor.kill()
        await supervisor.kill()
        assert supervisor.state is ProcessState.IDLE
        assert supervisor.pid is None

    @pytest.mark.asyncio
    async def test_kill_stops_running_guest(self, supervisor: GuestProcessSupervisor, collector: Collector) -> None:
        await supervisor.submit({"main.py": LONG_RUNNING})
        await wait_for(lambda: supervisor.pid is not None and "A tick" in collector.text)
        pid = supervisor.pid
        assert pid is not None

        await supervisor.kill()

        assert supervisor.pid is None
        assert supervisor.state is ProcessState.IDLE
        await wait_for(lambda: not pid_alive(pid), timeout=5)
        await supervisor.kill()

    @pytest.mark.asyncio
    async def test_replacement_mutes_previous_run(
        self, supervisor: GuestProcessSupervisor, collector: Collector
    ) -> None:
        """After a second run starts, nothing from the first reaches the client."""
        await supervisor.submit({"main.py": LONG_RUNNING})
        await wait_for(lambda: "A tick" in collector.text)
        first_pid = supervisor.pid
        assert first_pid is not None

        task = await supervisor.submit({"main.py": "print('B says hi')"})
        boundary = len(collector.events)
        await asyncio.wait_for(task, timeout=10)

        assert not pid_alive(first_pid)
        after = "".join(e.data for e in collector.events[boundary:] if isinstance(e, OutputChunk))
        assert "A tick" not in after
        assert "B says hi" in after
        assert [e.code for e in collector.exits()] == [0]

    @pytest.mark.skipif(os.name != "posix", reason="signal handling is POSIX-specific")
    @pytest.mark.asyncio
    async def test_kill_escalates_to_sigkill(self, supervisor: GuestProcessSupervisor, collector: Collector) -> None:
        supervisor.kill_grace_period = 0.3
        await supervisor.submit({"main.py": IGNORES_SIGTERM})
        await wait_for(lambda: "stubborn" in collector.text)
        pid = supervisor.pid
        assert pid is not None

        await asyncio.wait_for(supervisor.kill(), timeout=5)
        await wait_for(lambda: not pid_alive(pid), timeout=5)

    @pytest.mark.asyncio
    async def test_run_timeout_stops_guest(self, supervisor: GuestProcessSupervisor, collector: Collector) -> None:
        supervisor.run_timeout = 0.5
        task = await supervisor.submit({"main.py": LONG_RUNNING})
        await asyncio.wait_for(task, timeout=10)

        assert "Run time limit of 0.5s reached" in collector.text
        assert supervisor.state is ProcessState.EXITED
        assert [e.code for e in collector.exits()] == [None]

    @pytest.mark.asyncio
    async def test_emit_failure_does_not_stall_output(
        self, workspace_root: Path, mock_installer: Any
    ) -> None:
        """A client that went away must not block the guest on a full pipe."""
        emit = AsyncMock(side_effect=RuntimeError("socket closed"))
        workspace = WorkspaceManager(workspace_root)
        session = Session(session_id="s3", port=45679, workspace=workspace.path_for("s3"))
        supervisor = GuestProcessSupervisor(
            session,
            workspace,
            RegexDependencyResolver(),
            mock_installer,
            emit,
            runtime_argv=[sys.executable, "-u"],
            entry_point="main.py",
        )
        task = await supervisor.submit({"main.py": "print('x' * 1_000_000)"})
        await asyncio.wait_for(task, timeout=10)
        assert supervisor.state is ProcessState.EXITED

    @pytest.mark.asyncio
    async def test_replacement_during_file_write_leaves_no_stale_files(
        self, workspace_root: Path, mock_installer: Any, collector: Collector
    ) -> None:
        """A write still running in a worker thread finishes before the next run resets the directory."""
        workspace = SlowWorkspace(workspace_root)
        session = Session(session_id="s4", port=45680, workspace=workspace.path_for("s4"))
        supervisor = GuestProcessSupervisor(
            session,
            workspace,
            RegexDependencyResolver(),
            mock_installer,
            collector,
            runtime_argv=[sys.executable, "-u"],
            entry_point="main.py",
            respawn_settle_delay=0.01,
        )
        await supervisor.submit({"main.py": "print('A ran')", "stale_from_A.txt": "x"})
        await asyncio.sleep(0.05)

        task = await supervisor.submit({"main.py": "print('B ran')"})
        await asyncio.wait_for(task, timeout=10)

        assert sorted(os.listdir(workspace.path_for("s4"))) == ["main.py"]
        assert (workspace.path_for("s4") / "main.py").read_text() == "print('B ran')"
        assert "A ran" not in collector.text
        assert "B ran" in collector.text
        assert [e.code for e in collector.exits()] == [0]

    @pytest.mark.asyncio
    async def test_replacement_during_install_cancels_it(
        self, supervisor: GuestProcessSupervisor, collector: Collector, mock_installer: Any
    ) -> None:
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def slow_install(workdir: Path, packages: list[str]) -> InstallResult:
            started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return InstallResult(success=True, exit_code=0)

        mock_installer.install.side_effect = slow_install

        await supervisor.submit({"main.py": "print('A ran')", "dep.js": "require('lodash')"})
        await asyncio.wait_for(started.wait(), timeout=10)
        assert supervisor.state is ProcessState.INSTALLING

        boundary = len(collector.events)
        task = await supervisor.submit({"main.py": "print('B ran')"})
        await asyncio.wait_for(task, timeout=10)

        assert cancelled.is_set()
        mock_installer.install.assert_awaited_once()
        after = "".join(e.data for e in collector.events[boundary:] if isinstance(e, OutputChunk))
        assert "A ran" not in collector.text
        assert "installed successfully" not in after
        assert "B ran" in after
        assert [e.code for e in collector.exits()] == [0]
