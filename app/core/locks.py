from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Iterator


@dataclass
class _LockState:
    lock: Lock
    holders: int = 0


class KeyedLock:
    """
    One mutex per key, created on demand and released when no caller holds it.
    Used to serialize same-tenant writers while leaving other tenants unblocked.
    """

    def __init__(self) -> None:
        self._states: dict[str, _LockState] = {}
        self._guard = Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            state = self._states.setdefault(key, _LockState(lock=Lock()))
            state.holders += 1
        state.lock.acquire()
        try:
            yield
        finally:
            state.lock.release()
            with self._guard:
                state.holders -= 1
                if state.holders == 0:
                    self._states.pop(key, None)
