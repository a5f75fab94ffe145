"""
Analysis serializer: a FIFO single-flight gate around the engine conversation.

A UCI engine is one stateful conversation. "position" replaces the previous
position and the next "bestmove" belongs to whichever "go" came last, so two
analyses interleaving their commands would each read the other's result. Every
position-then-go sequence therefore runs while holding this gate.

threading.Lock makes no fairness promise, so the gate hands out tickets and
serves them in order: requests are answered in arrival order and none starves
as long as each analysis finishes or times out.
"""

import threading
from typing import Callable, TypeVar

T = TypeVar("T")


class AnalysisSerializer:
    """
    FIFO mutual-exclusion gate.

    Usable as a context manager or through run_exclusive(). The gate is not
    reentrant: a thread that already holds it and tries to enter again would
    wait on its own ticket forever, so that case raises instead.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._now_serving = 0
        self._owner: int | None = None

    def acquire(self) -> None:
        me = threading.get_ident()
        with self._cond:
            if self._owner == me:
                raise RuntimeError("AnalysisSerializer is not reentrant")
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._now_serving:
                self._cond.wait()
            self._owner = me

    def release(self) -> None:
        with self._cond:
            if self._owner != threading.get_ident():
                raise RuntimeError("release() called by a thread that does not hold the gate")
            self._owner = None
            self._now_serving += 1
            self._cond.notify_all()

    def __enter__(self) -> "AnalysisSerializer":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    def run_exclusive(self, fn: Callable[..., T], *args, **kwargs) -> T:
        """Run fn while holding the gate; the gate is released even if fn raises."""
        self.acquire()
        try:
            return fn(*args, **kwargs)
        finally:
            self.release()

    def held(self) -> bool:
        """True if the calling thread currently holds the gate."""
        with self._cond:
            return self._owner == threading.get_ident()

    @property
    def locked(self) -> bool:
        with self._cond:
            return self._owner is not None

    @property
    def waiting(self) -> int:
        """Number of callers queued behind the current holder."""
        with self._cond:
            return self._next_ticket - self._now_serving - (1 if self._owner is not None else 0)
