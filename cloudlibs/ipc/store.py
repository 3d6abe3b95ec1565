import os
import sys
import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional, Set, Union

from cloudlibs.ipc.signals import validate_signal_name
from cloudlibs.ipc.watcher import SignalWatcher
from cloudlibs.local.config import effective_settings as config

log = logging.getLogger(__name__)


class SignalStore:
    """
    Durable, existence-only signalling between unrelated processes on one host.

    Each raised signal is a zero-byte marker file named after the signal,
    directly inside `base_path`. Markers survive process exit and reboot and
    are only removed by `clear_signals`, so any number of processes can wait
    for the same signal, before or after it was sent.
    """

    def __init__(self, base_path: Optional[Union[str, Path]] = None,
                 poll_interval: Optional[float] = None, watch: Optional[bool] = None) -> None:
        """
        :param base_path: Directory holding the markers. Defaults to SIGNAL_BASE_PATH.
        :param poll_interval: Seconds between existence checks while waiting.
        :param watch: Use a filesystem watcher to wake waiters early.
        """
        self.base_path = Path(base_path) if base_path is not None else Path(config.SIGNAL_BASE_PATH)
        self.poll_interval = poll_interval if poll_interval is not None else config.SIGNAL_POLL_INTERVAL
        self.watch = config.SIGNAL_WATCH_ENABLED if watch is None else watch
        self._watcher: Optional[SignalWatcher] = None
        self._pollers: Set[asyncio.Task] = set()

    def __repr__(self) -> str:
        return f"SignalStore(base_path='{self.base_path}')"

    def _marker_path(self, name: str) -> Path:
        return self.base_path / validate_signal_name(name)

    def _ensure_base_path(self) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _marker_exists(marker: Path) -> bool:
        """Existence check that only treats 'not found' as absence."""
        try:
            os.stat(marker)
        except FileNotFoundError:
            return False
        return True

    def _sync_base_path(self) -> None:
        """Flushes the directory entry so a new marker survives a reboot."""
        if sys.platform == "win32":
            return
        fd = os.open(self.base_path, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    #* --- Synchronous operations ---
    def send(self, name: str) -> None:
        """
        Records that signal `name` has occurred. Sending twice is a no-op.

        :param name: The signal name.
        :raises OSError: If the directory or marker cannot be created.
        """
        marker = self._marker_path(name)
        self._ensure_base_path()
        fd = os.open(marker, os.O_WRONLY | os.O_CREAT, 0o644)
        os.close(fd)
        self._sync_base_path()
        log.debug(f"Sent signal '{name}'.")

    def signaled(self, name: str) -> bool:
        """
        Non-blocking check of whether `name` has been sent.

        :raises OSError: If the check fails for a reason other than absence.
        """
        return self._marker_exists(self._marker_path(name))

    def list_signals(self) -> List[str]:
        """Returns the sorted names of all signals currently raised."""
        try:
            return sorted(os.listdir(self.base_path))
        except FileNotFoundError:
            return []

    def clear_signals(self) -> None:
        """
        Removes every signal. Meant to run once at the start of a fresh
        top-level invocation, never while other processes depend on old signals.

        :raises OSError: If listing or removing markers fails.
        """
        try:
            entries = os.listdir(self.base_path)
        except FileNotFoundError:
            return

        for entry in entries:
            try:
                os.unlink(self.base_path / entry)
            except FileNotFoundError:
                continue
        log.debug(f"Cleared {len(entries)} signal(s) from {self.base_path}.")

    #* --- Waiting ---
    def once(self, name: str) -> "asyncio.Future[str]":
        """
        Returns a future resolved with `name` the first time the signal is seen.

        Resolves right away if the signal is already raised. Every call gets
        its own future, so one send satisfies all waiters. An I/O error during
        the existence check rejects the future. Cancelling the future stops
        the wait. Must be called from a running event loop.

        :param name: The signal name.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        marker = self._marker_path(name)

        try:
            self._ensure_base_path()
            if self._marker_exists(marker):
                future.set_result(name)
                return future
        except OSError as e:
            future.set_exception(e)
            return future

        wakeup = asyncio.Event()
        unsubscribe = self._subscribe(name, loop, wakeup.set) if self.watch else None

        # The poller checks the marker again before its first sleep, after the
        # watcher subscription is in place.
        poller = loop.create_task(self._poll(name, marker, future, wakeup))
        self._pollers.add(poller)
        poller.add_done_callback(self._pollers.discard)

        def _cleanup(_: asyncio.Future) -> None:
            if not poller.done():
                poller.cancel()
            if unsubscribe is not None:
                unsubscribe()

        future.add_done_callback(_cleanup)
        log.debug(f"Waiting for signal '{name}'.")
        return future

    async def _poll(self, name: str, marker: Path, future: asyncio.Future, wakeup: asyncio.Event) -> None:
        while not future.done():
            wakeup.clear()
            try:
                found = self._marker_exists(marker)
            except OSError as e:
                if not future.done():
                    future.set_exception(e)
                return

            if found:
                if not future.done():
                    log.debug(f"Signal '{name}' observed.")
                    future.set_result(name)
                return

            try:
                await asyncio.wait_for(wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def wait_for(self, name: str, timeout: Optional[float] = None) -> bool:
        """
        Waits for `name` with an optional deadline.

        :param name: The signal name.
        :param timeout: Seconds to wait. None waits forever.
        :return: True if the signal was observed, False if the timeout elapsed first.
        """
        try:
            await asyncio.wait_for(self.once(name), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    #* --- Watcher ---
    def _subscribe(self, name: str, loop: asyncio.AbstractEventLoop,
                   callback: Callable[[], None]) -> Optional[Callable[[], None]]:
        if self._watcher is None:
            self._watcher = SignalWatcher(self.base_path)
        try:
            return self._watcher.subscribe(name, loop, callback)
        except OSError as e:
            log.warning(f"Could not watch {self.base_path}, falling back to polling: {e}")
            return None

    def close(self) -> None:
        """Stops the filesystem watcher, if one was started."""
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
