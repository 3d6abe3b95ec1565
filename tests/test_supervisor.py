"""Tests for the cohort supervisor: retries, draining and the reboot short-circuit."""

import asyncio
import sys
import textwrap
from typing import Dict, List, Optional, Tuple
from unittest.mock import patch

import pytest

from cloudlibs.errors import WorkerSpawnError
from cloudlibs.ipc import signals
from cloudlibs.local.config import effective_settings
from cloudlibs.supervisor import persistence
from cloudlibs.supervisor.process_utils import WorkerSpec
from cloudlibs.supervisor.supervisor import DRAINED, REBOOT, ScriptSupervisor


class FakeProcess:
    """Stands in for asyncio.subprocess.Process; exits when told to."""

    _next_pid = 40000

    def __init__(self) -> None:
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode: Optional[int] = None
        self._exited = asyncio.Event()

    def exit(self, returncode: Optional[int]) -> None:
        self.returncode = returncode
        self._exited.set()

    async def wait(self) -> Optional[int]:
        await self._exited.wait()
        return self.returncode


class FakeLauncher:
    """
    Records every attempt. Modules listed in `exit_codes` exit on their own,
    one code per attempt; all other workers run until the test exits them.
    A code of SPAWN_ERROR makes that attempt fail to launch.
    """

    SPAWN_ERROR = object()

    def __init__(self, exit_codes: Optional[Dict[str, List]] = None) -> None:
        self.exit_codes = {module: list(codes) for module, codes in (exit_codes or {}).items()}
        self.attempts: List[Tuple[str, int]] = []
        self.processes: Dict[str, List[FakeProcess]] = {}

    def count(self, module: str) -> int:
        return sum(1 for name, _ in self.attempts if name == module)

    async def __call__(self, spec: WorkerSpec) -> FakeProcess:
        self.attempts.append((spec.module, spec.attempt))
        codes = self.exit_codes.get(spec.module)
        code = codes.pop(0) if codes else None
        if code is self.SPAWN_ERROR:
            raise WorkerSpawnError(spec.module, "boom")

        proc = FakeProcess()
        self.processes.setdefault(spec.module, []).append(proc)
        if codes is not None:
            asyncio.get_running_loop().call_soon(proc.exit, code)
        return proc


@pytest.fixture
def any_module():
    """Accept every worker module name without looking it up."""
    with patch("cloudlibs.supervisor.process_utils.resolve_worker_module"):
        yield


def make_supervisor(store, launcher, **kwargs) -> ScriptSupervisor:
    return ScriptSupervisor(store=store, max_attempts=3, launcher=launcher, **kwargs)


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_always_failing_worker_is_attempted_exactly_three_times(self, store, any_module, wait_until):
        launcher = FakeLauncher({"flaky": [1, 1, 1]})
        supervisor = make_supervisor(store, launcher)

        await supervisor.spawn("flaky")
        await supervisor.spawn("steady")
        assert supervisor.outstanding == 2

        run = asyncio.ensure_future(supervisor.run())
        assert await wait_until(lambda: len(supervisor.failed) == 1)

        assert launcher.attempts[:1] == [("flaky", 1)]
        assert [a for m, a in launcher.attempts if m == "flaky"] == [1, 2, 3]
        assert supervisor.outstanding == 1
        assert not run.done()

        launcher.processes["steady"][0].exit(0)
        assert await asyncio.wait_for(run, 2) == DRAINED
        assert launcher.count("flaky") == 3
        assert supervisor.outstanding == 0
        assert supervisor.exit_code == 1

    @pytest.mark.asyncio
    async def test_killed_worker_is_retried(self, store, any_module):
        launcher = FakeLauncher({"killed": [-9, 0]})
        supervisor = make_supervisor(store, launcher)

        await supervisor.spawn("killed")
        assert await asyncio.wait_for(supervisor.run(), 2) == DRAINED

        assert launcher.attempts == [("killed", 1), ("killed", 2)]
        assert supervisor.failed == []
        assert supervisor.exit_code == 0

    @pytest.mark.asyncio
    async def test_retry_reuses_the_same_arguments(self, store, any_module):
        launcher = FakeLauncher({"onboard": [2, 0]})
        supervisor = make_supervisor(store, launcher)
        seen = []
        original = launcher.__call__

        async def recording_launcher(spec):
            seen.append((spec.args, spec.string_args))
            return await original(spec)

        supervisor.launcher = recording_launcher
        await supervisor.spawn("onboard", ["--first"], "--host 10.0.0.1")
        await asyncio.wait_for(supervisor.run(), 2)

        assert seen == [(["--first"], "--host 10.0.0.1")] * 2

    @pytest.mark.asyncio
    async def test_failed_retry_launch_gives_up_on_the_worker(self, store, any_module):
        launcher = FakeLauncher({"broken": [1, FakeLauncher.SPAWN_ERROR]})
        supervisor = make_supervisor(store, launcher)

        await supervisor.spawn("broken")
        assert await asyncio.wait_for(supervisor.run(), 2) == DRAINED

        assert [spec.module for spec in supervisor.failed] == ["broken"]
        assert supervisor.outstanding == 0


# ---------------------------------------------------------------------------
# Draining
# ---------------------------------------------------------------------------

class TestDraining:
    @pytest.mark.asyncio
    async def test_finishes_once_after_every_worker_resolved(self, store, any_module, wait_until):
        launcher = FakeLauncher({"worker1": [0], "worker2": [0]})
        supervisor = make_supervisor(store, launcher)

        with patch.object(supervisor, "finish", wraps=supervisor.finish) as finish:
            for module in ("worker1", "worker2", "worker3"):
                await supervisor.spawn(module)
            run = asyncio.ensure_future(supervisor.run())

            assert await wait_until(lambda: supervisor.outstanding == 1)
            launcher.processes["worker3"][0].exit(1)
            assert await wait_until(lambda: launcher.count("worker3") == 2)
            await asyncio.sleep(0.05)
            assert not run.done()
            finish.assert_not_called()

            launcher.processes["worker3"][1].exit(0)
            assert await asyncio.wait_for(run, 2) == DRAINED

        finish.assert_called_once_with(DRAINED)
        assert supervisor.outstanding == 0
        assert supervisor.exit_code == 0

    @pytest.mark.asyncio
    async def test_exits_in_the_same_tick_are_all_counted(self, store, any_module):
        launcher = FakeLauncher()
        supervisor = make_supervisor(store, launcher)
        for module in ("a", "b", "c"):
            await supervisor.spawn(module)
        run = asyncio.ensure_future(supervisor.run())
        await asyncio.sleep(0)

        for module in ("a", "b", "c"):
            launcher.processes[module][0].exit(0)

        assert await asyncio.wait_for(run, 2) == DRAINED
        assert supervisor.outstanding == 0

    @pytest.mark.asyncio
    async def test_does_not_drain_before_run_is_called(self, store, any_module):
        launcher = FakeLauncher({"fast": [0]})
        supervisor = make_supervisor(store, launcher)

        await supervisor.spawn("fast")
        await asyncio.sleep(0.05)
        assert supervisor.outstanding == 0
        assert not supervisor.finished.done()

        assert await asyncio.wait_for(supervisor.run(), 1) == DRAINED

    @pytest.mark.asyncio
    async def test_empty_cohort_finishes_immediately(self, store):
        supervisor = make_supervisor(store, FakeLauncher())
        assert await asyncio.wait_for(supervisor.run(), 1) == DRAINED

    @pytest.mark.asyncio
    async def test_finish_only_takes_effect_once(self, store):
        supervisor = make_supervisor(store, FakeLauncher())
        assert supervisor.finish(REBOOT) is True
        assert supervisor.finish(DRAINED) is False
        assert await supervisor.finished == REBOOT


# ---------------------------------------------------------------------------
# Reboot short-circuit
# ---------------------------------------------------------------------------

class TestReboot:
    @pytest.mark.asyncio
    async def test_reboot_signal_stops_supervision_with_workers_outstanding(self, store, any_module):
        launcher = FakeLauncher()
        supervisor = make_supervisor(store, launcher)
        await supervisor.spawn("onboard")
        await supervisor.spawn("cluster")
        run = asyncio.ensure_future(supervisor.run())
        await asyncio.sleep(0.05)
        assert not run.done()

        store.send(signals.REBOOT)

        assert await asyncio.wait_for(run, 2) == REBOOT
        assert supervisor.outstanding == 2
        assert supervisor.exit_code == 0

    @pytest.mark.asyncio
    async def test_reboot_already_signalled(self, store, any_module):
        store.send(signals.REBOOT)
        supervisor = make_supervisor(store, FakeLauncher())
        await supervisor.spawn("onboard")

        assert await asyncio.wait_for(supervisor.run(), 1) == REBOOT

    @pytest.mark.asyncio
    async def test_exits_after_reboot_do_not_respawn(self, store, any_module):
        launcher = FakeLauncher()
        supervisor = make_supervisor(store, launcher)
        await supervisor.spawn("onboard")
        store.send(signals.REBOOT)
        await asyncio.wait_for(supervisor.run(), 1)

        supervisor.handle_exit(WorkerSpec("onboard"), "onboard#1", 1)
        await asyncio.sleep(0.02)

        assert launcher.count("onboard") == 1

    @pytest.mark.asyncio
    async def test_reboot_wait_error_is_raised_from_run(self, store, any_module):
        supervisor = make_supervisor(store, FakeLauncher())
        await supervisor.spawn("onboard")
        with patch.object(type(store), "_marker_exists", side_effect=OSError(5, "I/O error")):
            with pytest.raises(OSError):
                await asyncio.wait_for(supervisor.run(), 1)


# ---------------------------------------------------------------------------
# Spawn errors
# ---------------------------------------------------------------------------

class TestSpawnErrors:
    @pytest.mark.asyncio
    async def test_missing_module_is_fatal_and_not_retried(self, store):
        launcher = FakeLauncher()
        supervisor = make_supervisor(store, launcher)

        with pytest.raises(WorkerSpawnError):
            await supervisor.spawn("definitely_missing_worker")

        assert launcher.attempts == []
        assert supervisor.outstanding == 0

    @pytest.mark.asyncio
    async def test_launch_failure_is_fatal_and_not_retried(self, store, any_module):
        launcher = FakeLauncher({"onboard": [FakeLauncher.SPAWN_ERROR, 0]})
        supervisor = make_supervisor(store, launcher)

        with pytest.raises(WorkerSpawnError):
            await supervisor.spawn("onboard")

        assert launcher.attempts == [("onboard", 1)]
        assert supervisor.outstanding == 0


# ---------------------------------------------------------------------------
# PID bookkeeping
# ---------------------------------------------------------------------------

class TestPidFile:
    @pytest.mark.asyncio
    async def test_pid_file_tracks_live_workers_and_is_removed_at_the_end(self, store, any_module, tmp_path):
        pid_file = tmp_path / "state" / "cohort.pid"
        launcher = FakeLauncher()
        supervisor = make_supervisor(store, launcher, pid_file=pid_file)

        with patch("cloudlibs.supervisor.persistence.psutil.pid_exists", return_value=True):
            await supervisor.spawn("onboard")
            info = persistence.get_pid_info(pid_file)
            assert info["onboard#1"] == launcher.processes["onboard"][0].pid
            assert persistence.SUPERVISOR_KEY in info

            run = asyncio.ensure_future(supervisor.run())
            launcher.processes["onboard"][0].exit(0)
            await asyncio.wait_for(run, 2)

        assert not pid_file.exists()


# ---------------------------------------------------------------------------
# Real processes
# ---------------------------------------------------------------------------

@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process handling")
class TestRealWorkers:
    @pytest.mark.asyncio
    async def test_flaky_worker_succeeds_on_second_attempt(self, store, tmp_path, monkeypatch):
        counter = tmp_path / "attempts.txt"
        (tmp_path / "flaky_worker.py").write_text(textwrap.dedent(f"""
            import sys
            from pathlib import Path

            counter = Path({str(counter)!r})
            attempts = int(counter.read_text()) + 1 if counter.exists() else 1
            counter.write_text(str(attempts))
            sys.exit(0 if attempts >= 2 else 1)
        """))
        monkeypatch.setattr(effective_settings, "SCRIPTS_CWD", tmp_path)
        monkeypatch.setattr(effective_settings, "PYTHON_EXECUTABLE", sys.executable)

        supervisor = ScriptSupervisor(store=store, max_attempts=3)
        await supervisor.spawn("flaky_worker")

        assert await asyncio.wait_for(supervisor.run(), 30) == DRAINED
        assert counter.read_text() == "2"
        assert supervisor.exit_code == 0
