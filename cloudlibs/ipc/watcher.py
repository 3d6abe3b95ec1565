import asyncio
import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

log = logging.getLogger(__name__)

Subscriber = Tuple[asyncio.AbstractEventLoop, Callable[[], None]]


class SignalEventHandler(FileSystemEventHandler):
    """A watchdog event handler that reports new marker files in the signal directory."""

    def __init__(self, watcher: "SignalWatcher"):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event) -> None:
        if not event.is_directory:
            self.watcher.notify(Path(event.src_path).name)

    def on_moved(self, event) -> None:
        if not event.is_directory:
            self.watcher.notify(Path(event.dest_path).name)


class SignalWatcher:
    """
    Wakes up signal waiters as soon as a marker appears, instead of at the next poll.

    Callbacks run on the waiter's own event loop through call_soon_threadsafe,
    since watchdog delivers events on its observer thread. The watcher only
    accelerates polling; waiters keep polling and must re-check the marker
    after subscribing.
    """

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._lock = threading.Lock()
        self._observer: Optional[Observer] = None

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        """Starts the observer thread on the signal directory if it is not running yet."""
        with self._lock:
            if self._observer is not None:
                return
            observer = Observer()
            observer.schedule(SignalEventHandler(self), str(self.base_path), recursive=False)
            observer.daemon = True
            observer.start()
            self._observer = observer
        log.debug(f"Watching signal directory {self.base_path} for new markers.")

    def subscribe(self, name: str, loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Registers a callback for the creation of marker `name`.

        :param name: The signal name to watch.
        :param loop: The event loop the callback must run on.
        :param callback: Called without arguments on `loop`.
        :return: A function that removes the subscription.
        """
        entry = (loop, callback)
        with self._lock:
            self._subscribers.setdefault(name, []).append(entry)

        def unsubscribe() -> None:
            with self._lock:
                entries = self._subscribers.get(name, [])
                if entry in entries:
                    entries.remove(entry)
                if not entries:
                    self._subscribers.pop(name, None)

        try:
            self.start()
        except OSError:
            unsubscribe()
            raise
        return unsubscribe

    def notify(self, name: str) -> None:
        """Called from the observer thread when a marker named `name` shows up."""
        with self._lock:
            entries = list(self._subscribers.get(name, ()))
        for loop, callback in entries:
            try:
                loop.call_soon_threadsafe(callback)
            except RuntimeError:
                # The waiter's loop is already closed.
                continue

    def stop(self) -> None:
        """Stops the observer thread and drops all subscriptions."""
        with self._lock:
            observer, self._observer = self._observer, None
            self._subscribers.clear()
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)
