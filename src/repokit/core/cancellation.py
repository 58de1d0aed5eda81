"""Cancellation tokens for database calls.

A :class:`CancelToken` is the single optional ``cancel=`` argument every
executing operation accepts.  It can be cancelled explicitly from another
thread, or carry a deadline.  While a statement is in flight the database
handle registers an interrupt callback on the token; cancelling the token
(or reaching the deadline) fires it.

Example::

    token = CancelToken(timeout=2.5)
    users = repo.query().where({"status": 1}).to_list(cancel=token)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from repokit.core.errors import CancelledError


class CancelToken:
    """Thread-safe cancellation flag with an optional deadline."""

    def __init__(self, *, timeout: float | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self.deadline: float | None = (
            time.monotonic() + timeout if timeout is not None else None
        )

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.cancel()
            return True
        return False

    def remaining(self) -> float | None:
        """Seconds left before the deadline, ``None`` without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback()

    def raise_if_cancelled(self, operation: str | None = None) -> None:
        if self.cancelled:
            what = operation or "operation"
            raise CancelledError(f"{what} cancelled")

    @contextmanager
    def watch(self, on_cancel: Callable[[], None]) -> Iterator[None]:
        """Run ``on_cancel`` if the token fires while the block executes.

        A timer enforces the deadline for the duration of the block.
        """
        with self._lock:
            self._callbacks.append(on_cancel)
        timer: threading.Timer | None = None
        remaining = self.remaining()
        if remaining is not None:
            timer = threading.Timer(remaining, self.cancel)
            timer.daemon = True
            timer.start()
        try:
            yield
        finally:
            if timer is not None:
                timer.cancel()
            with self._lock:
                self._callbacks.remove(on_cancel)


__all__ = ["CancelToken"]
