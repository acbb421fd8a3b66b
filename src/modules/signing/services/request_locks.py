import threading
import weakref
from contextlib import contextmanager


class _KeyLock:
    __slots__ = ("lock", "__weakref__")

    def __init__(self):
        self.lock = threading.Lock()


class RequestLockRegistry:
    """
    One lock per key (signing request or document), created on demand and
    dropped once nobody holds it.

    Only serializes callers inside this process. Across processes the
    row lock (SELECT ... FOR UPDATE) and the version counter on
    SigningRequest do the same job.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = weakref.WeakValueDictionary()

    def _entry_for(self, key) -> _KeyLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._locks[key] = entry
            return entry

    @contextmanager
    def hold(self, key):
        entry = self._entry_for(key)
        with entry.lock:
            yield


request_locks = RequestLockRegistry()
