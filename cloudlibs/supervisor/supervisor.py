import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Set

from cloudlibs import ipc
from cloudlibs.ipc import signals
from cloudlibs.ipc.store import SignalStore
from cloudlibs.errors import WorkerSpawnError
from cloudlibs.local.config import effective_settings as config
from cloudlibs.supervisor import persistence, process_utils
from cloudlibs.supervisor.process_utils import WorkerSpec

log = logging.getLogger(__name__)

DRAINED = "drained"
REBOOT = "reboot"

Launcher = Callable[[WorkerSpec], Awaitable[asyncio.subprocess.Process]]


class ScriptSupervisor:
    """
    Runs a cohort of worker scripts as independent processes until all of
    them have resolved.

    A worker that exits with anything but 0 is launched again with the same
    arguments until it has been attempted `max_attempts` times. The cohort is
    tracked as one outstanding counter: it goes up when a worker is spawned,
    down when that worker's final attempt resolves, and is only touched from
    the exit path. The supervisor finishes when the counter drains to zero,
    or as soon as the REBOOT signal is seen.
    """

    def __init__(self, store: Optional[SignalStore] = None, max_attempts: Optional[int] = None,
                 launcher: Optional[Launcher] = None, pid_file: Optional[Path] = None) -> None:
        """
        :param store: Signal store used for the REBOOT subscription.
        :param max_attempts: Retry ceiling per worker, first attempt included.
        :param launcher: Coroutine function starting one attempt of a worker.
        :param pid_file: Where to record worker PIDs. None disables the PID file.
        """
        self.store = store if store is not None else ipc.get_store()
        self.max_attempts = max_attempts if max_attempts is not None else config.MAX_SCRIPT_ATTEMPTS
        self.launcher = launcher or process_utils.launch_worker
        self.pid_file = pid_file

        self.outstanding = 0
        self.failed: List[WorkerSpec] = []
        self.running_procs: Dict[str, asyncio.subprocess.Process] = {}
        self.finish_reason: Optional[str] = None

        self._finished: Optional[asyncio.Future] = None
        self._running = False
        self._slots = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def finished(self) -> asyncio.Future:
        """Future resolved exactly once with the reason the supervisor stopped."""
        if self._finished is None:
            self._finished = asyncio.get_running_loop().create_future()
        return self._finished

    @property
    def exit_code(self) -> int:
        """0 on success or reboot, 1 if any worker exhausted its attempts."""
        if self.finish_reason == REBOOT or not self.failed:
            return 0
        return 1

    #* --- Spawning ---
    async def spawn(self, module: str, args: Optional[List[str]] = None,
                    string_args: Optional[str] = None) -> WorkerSpec:
        """
        Launches a new cohort member.

        :param module: Module run with `python -m`.
        :param args: Positional arguments.
        :param string_args: Free-form argument string, split on whitespace and appended.
        :return: The spec of the first attempt.
        :raises WorkerSpawnError: If the worker cannot be started at all. Not retried.
        """
        spec = WorkerSpec(module, list(args or []), string_args)
        process_utils.resolve_worker_module(module, config.SCRIPTS_CWD)

        self._slots += 1
        slot = f"{spec.name}#{self._slots}"
        self.outstanding += 1
        try:
            await self._launch(spec, slot)
        except WorkerSpawnError:
            self.outstanding -= 1
            log.critical(f"Could not start worker '{module}'.", exc_info=True)
            raise
        return spec

    async def _launch(self, spec: WorkerSpec, slot: str) -> None:
        proc = await self.launcher(spec)
        self.running_procs[slot] = proc
        log.info(f"Started {spec.module} (attempt {spec.attempt} of {self.max_attempts}) with PID: {proc.pid}")
        persistence.write_pid_file(self)
        self._track(self._wait_for_exit(spec, slot, proc))

    async def _relaunch(self, spec: WorkerSpec, slot: str) -> None:
        try:
            await self._launch(spec, slot)
        except WorkerSpawnError as e:
            log.error(f"Retry of {spec.module} could not be started: {e}")
            self._give_up(spec)

    def _track(self, coro: Awaitable) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    #* --- Exit Handling ---
    async def _wait_for_exit(self, spec: WorkerSpec, slot: str, proc: asyncio.subprocess.Process) -> None:
        returncode = await proc.wait()
        self.handle_exit(spec, slot, returncode)

    def handle_exit(self, spec: WorkerSpec, slot: str, returncode: Optional[int]) -> None:
        """
        Applies the retry policy to one finished attempt.

        :param spec: The attempt that exited.
        :param slot: Cohort slot of the worker.
        :param returncode: The asyncio return code. Negative or None means killed.
        """
        self.running_procs.pop(slot, None)
        if self.finished.done():
            return

        code, signal_name = process_utils.describe_exit(returncode)
        log.debug(
            f"{spec.module} exited with code: {'null' if code is None else code} "
            f"/ signal: {signal_name or 'null'}"
        )

        if code == 0:
            log.info(f"{spec.module} finished successfully.")
            self._resolve()
            return

        if spec.attempt < self.max_attempts:
            log.warning(f"Bad exit code for {spec.module}, retrying (attempt {spec.attempt + 1} of {self.max_attempts}).")
            self._track(self._relaunch(spec.next_attempt(), slot))
            return

        self._give_up(spec)

    def _give_up(self, spec: WorkerSpec) -> None:
        log.error(f"{spec.module} failed after {spec.attempt} attempt(s). Giving up on it.")
        self.failed.append(spec)
        self._resolve()

    def _resolve(self) -> None:
        self.outstanding -= 1
        persistence.write_pid_file(self)
        self._check_drained()

    def _check_drained(self) -> None:
        if self._running and self.outstanding == 0:
            log.info("All children have exited. Exiting.")
            self.finish(DRAINED)

    #* --- Lifecycle ---
    def finish(self, reason: str) -> bool:
        """
        Stops supervision. Only the first call has an effect.

        :return: True if this call stopped the supervisor.
        """
        if self.finished.done():
            return False
        self.finish_reason = reason
        self.finished.set_result(reason)
        return True

    def _on_reboot(self, waiter: asyncio.Future) -> None:
        if waiter.cancelled() or self.finished.done():
            return
        error = waiter.exception()
        if error is not None:
            log.error(f"Waiting for the {signals.REBOOT} signal failed: {error}")
            self.finished.set_exception(error)
            return
        log.info(f"{signals.REBOOT} signalled with {self.outstanding} worker(s) outstanding. Exiting.")
        self.finish(REBOOT)

    async def run(self) -> str:
        """
        Waits until the cohort drains or REBOOT is signalled.

        Workers keep running after a reboot short-circuit; only our own
        watch tasks are cancelled.

        :return: DRAINED or REBOOT.
        """
        finished = self.finished
        reboot_waiter = self.store.once(signals.REBOOT)
        reboot_waiter.add_done_callback(self._on_reboot)
        self._running = True
        self._check_drained()
        try:
            return await finished
        finally:
            if not reboot_waiter.done():
                reboot_waiter.cancel()
            for task in list(self._tasks):
                task.cancel()
            persistence.cleanup_pid_file(self.pid_file)
            if self.failed:
                names = ", ".join(spec.module for spec in self.failed)
                log.error(f"Worker(s) failed after exhausting retries: {names}")
