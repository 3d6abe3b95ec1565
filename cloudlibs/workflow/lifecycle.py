import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from cloudlibs import ipc
from cloudlibs.ipc import signals
from cloudlibs.ipc.store import SignalStore

log = logging.getLogger(__name__)


class WorkerLifecycle:
    """
    The worker half of the signalling protocol.

    A worker optionally waits for a prerequisite signal, announces that it is
    running, does its work and announces that it is done. If the work fails it
    sends CLOUD_LIBS_ERROR instead. While working it also listens to its
    siblings: a CLOUD_LIBS_ERROR from another script makes it mark itself
    done and exit, and a REBOOT it did not initiate makes it exit right away.
    """

    def __init__(self, name: str, store: Optional[SignalStore] = None,
                 running_signal: Optional[str] = None, done_signal: Optional[str] = None,
                 wait_for_signal: Optional[str] = None) -> None:
        self.name = name
        self.store = store if store is not None else ipc.get_store()
        self.running_signal = running_signal
        self.done_signal = done_signal
        self.wait_for_signal = wait_for_signal
        self.rebooting = False
        self.exiting = False

    async def wait_for_prerequisite(self) -> None:
        if self.wait_for_signal:
            log.info(f"Waiting for {self.wait_for_signal}")
            await self.store.once(self.wait_for_signal)

    def mark_running(self) -> None:
        if self.running_signal:
            self.store.send(self.running_signal)

    def mark_done(self) -> None:
        if self.done_signal:
            self.store.send(self.done_signal)

    def mark_error(self) -> None:
        self.store.send(signals.CLOUD_LIBS_ERROR)

    def initiate_reboot(self) -> None:
        """Tells every other process that this worker is rebooting the host."""
        self.rebooting = True
        self.store.send(signals.REBOOT)

    async def _run_task(self, task: Callable[[], Awaitable[Any]]) -> int:
        try:
            await self.wait_for_prerequisite()
            self.mark_running()
            log.info(f"{self.name} starting.")
            await task()
        except Exception as e:
            self.exiting = True
            log.error(f"{self.name} failed: {e}", exc_info=True)
            self.mark_error()
            return 1

        if not self.rebooting:
            self.mark_done()
        log.info(f"{self.name} finished.")
        return 0

    async def run(self, task: Callable[[], Awaitable[Any]]) -> int:
        """
        Runs `task` inside the signalling protocol.

        :param task: Coroutine function doing the actual work.
        :return: The exit code for the worker process.
        """
        main = asyncio.ensure_future(self._run_task(task))
        error_waiter = self.store.once(signals.CLOUD_LIBS_ERROR)
        reboot_waiter = self.store.once(signals.REBOOT)
        pending = {main, error_waiter, reboot_waiter}
        try:
            while main in pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if main in done:
                    break

                if error_waiter in done:
                    error_waiter.result()
                    if not self.exiting:
                        log.info("ERROR signaled from other script. Exiting.")
                        self.mark_done()
                        return 0

                if reboot_waiter in done:
                    reboot_waiter.result()
                    if not self.rebooting:
                        log.info("REBOOT signaled. Exiting.")
                        return 0
            return main.result()
        finally:
            for future in pending:
                future.cancel()
