"""
Append-only cache with single-flight initialization per key
"""

import threading
from concurrent.futures import Future
from typing import Callable, Dict, Generic, Hashable, TypeVar

T = TypeVar("T")


class OnceCache(Generic[T]):
    """
    Map from key to value where each value is computed at most once.

    Concurrent callers asking for a key that is still being computed wait for
    the in-flight result instead of computing it again. A failed computation
    is not cached, so a later caller may retry it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, Future] = {}

    def get_or_create(self, key: Hashable, create: Callable[[], T]) -> T:
        with self._lock:
            future = self._entries.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._entries[key] = future

        if not owner:
            return future.result()

        try:
            value = create()
        except BaseException as exc:
            with self._lock:
                self._entries.pop(key, None)
            future.set_exception(exc)
            raise
        future.set_result(value)
        return value

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            future = self._entries.get(key)
        return future is not None and future.done() and future.exception() is None

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for f in self._entries.values() if f.done() and f.exception() is None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
