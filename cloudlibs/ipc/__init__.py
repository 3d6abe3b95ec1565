"""
The ipc package.
Durable signalling between the supervisor and the worker scripts it spawns.

Most callers use the module-level functions, which all go through one
process-wide SignalStore rooted at SIGNAL_BASE_PATH.
"""
import asyncio
from typing import Optional

from . import signals
from .store import SignalStore

_default_store: Optional[SignalStore] = None


def get_store() -> SignalStore:
    """Returns the process-wide signal store, creating it on first use."""
    global _default_store
    if _default_store is None:
        _default_store = SignalStore()
    return _default_store


def set_store(store: Optional[SignalStore]) -> None:
    """Replaces the process-wide signal store. Passing None resets it to the default."""
    global _default_store
    if _default_store is not None and _default_store is not store:
        _default_store.close()
    _default_store = store


def send(name: str) -> None:
    get_store().send(name)


def signaled(name: str) -> bool:
    return get_store().signaled(name)


def once(name: str) -> "asyncio.Future[str]":
    return get_store().once(name)


async def wait_for(name: str, timeout: Optional[float] = None) -> bool:
    return await get_store().wait_for(name, timeout)


def clear_signals() -> None:
    get_store().clear_signals()


__all__ = [
    'SignalStore', 'signals', 'get_store', 'set_store',
    'send', 'signaled', 'once', 'wait_for', 'clear_signals',
]
