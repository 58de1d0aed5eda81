"""
Unit of Work - one transaction shared by every repository attached to it.

Lifecycle::

    UNATTACHED ──begin()──▶ OPEN ──commit() / rollback()──▶ CLOSED

CLOSED is terminal: ``begin``, ``commit``, ``rollback`` and ``transaction``
on a closed unit of work raise ``InvalidStateError``, as does ``begin`` on
one that is already open, and ``commit``/``rollback``/``transaction`` on one
that was never begun.

``run_in_transaction(fn)`` is the scoped form: it begins, calls ``fn(uow)``
and commits.  If ``fn`` raises, the transaction is rolled back before the
error propagates, including for ``KeyboardInterrupt`` and ``SystemExit``.

Examples:
    >>> uow = UnitOfWork(db)
    >>> def transfer(uow):
    ...     accounts.with_unit_of_work(uow).update_fields_by_id(1, {"balance": 90})
    ...     accounts.with_unit_of_work(uow).update_fields_by_id(2, {"balance": 110})
    >>> uow.run_in_transaction(transfer)

    >>> with UnitOfWork(db).scope() as uow:
    ...     orders.with_unit_of_work(uow).create(order)

Tags:
    unit-of-work, transaction, rollback, repokit
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import Enum
from typing import TypeVar

from repokit.core.cancellation import CancelToken
from repokit.core.database import Transaction
from repokit.core.errors import InvalidStateError, RollbackError
from repokit.core.logging import get_logger
from repokit.core.protocols import Beginnable

logger = get_logger(__name__)

R = TypeVar("R")


class UnitOfWorkState(str, Enum):
    UNATTACHED = "unattached"
    OPEN = "open"
    CLOSED = "closed"


class UnitOfWork:
    """Owns at most one transaction, retired exactly once.

    Not thread-safe; the transaction is single-writer.
    """

    def __init__(self, db: Beginnable) -> None:
        self.db = db
        self.id = uuid.uuid4().hex[:12]
        self.state = UnitOfWorkState.UNATTACHED
        self._tx: Transaction | None = None
        self._started: float | None = None
        self._log = logger.bind(unit_of_work=self.id)

    def __repr__(self) -> str:
        return f"UnitOfWork(id={self.id!r}, state={self.state.value})"

    @property
    def transaction(self) -> Transaction:
        """The open transaction; raises ``InvalidStateError`` otherwise."""
        return self._require_open("transaction")

    @property
    def is_open(self) -> bool:
        return self.state is UnitOfWorkState.OPEN

    def _require_open(self, operation: str) -> Transaction:
        if self.state is not UnitOfWorkState.OPEN or self._tx is None:
            raise InvalidStateError(
                f"cannot {operation}: unit of work is {self.state.value}"
            ).with_context(operation=operation, unit_of_work=self.id)
        return self._tx

    def begin(self, *, cancel: CancelToken | None = None) -> None:
        if self.state is not UnitOfWorkState.UNATTACHED:
            raise InvalidStateError(
                f"cannot begin: unit of work is {self.state.value}"
            ).with_context(operation="begin", unit_of_work=self.id)
        self._tx = self.db.begin(cancel=cancel)
        self._started = time.perf_counter()
        self.state = UnitOfWorkState.OPEN
        self._log.debug("unit_of_work_begin")

    def commit(self) -> None:
        tx = self._require_open("commit")
        self.state = UnitOfWorkState.CLOSED
        tx.commit()
        self._log.info("unit_of_work_committed", duration_ms=self._elapsed_ms())

    def rollback(self) -> None:
        tx = self._require_open("rollback")
        self.state = UnitOfWorkState.CLOSED
        tx.rollback()
        self._log.info("unit_of_work_rolled_back", duration_ms=self._elapsed_ms())

    def _elapsed_ms(self) -> float | None:
        if self._started is None:
            return None
        return round((time.perf_counter() - self._started) * 1000, 3)

    def run_in_transaction(
        self,
        fn: Callable[[UnitOfWork], R],
        *,
        cancel: CancelToken | None = None,
    ) -> R:
        """Begin, run ``fn(self)``, commit; roll back if ``fn`` raises.

        The original error is re-raised after the rollback.  When the
        rollback fails too, ``RollbackError`` is raised carrying the original
        error as ``original`` and the rollback failure as ``cause``.
        """
        with self.scope(cancel=cancel):
            return fn(self)

    @contextmanager
    def scope(self, *, cancel: CancelToken | None = None) -> Iterator[UnitOfWork]:
        """Context-manager form of :meth:`run_in_transaction`."""
        self.begin(cancel=cancel)
        try:
            yield self
        except Exception as exc:
            self._log.warning(
                "unit_of_work_failed", error=str(exc), error_type=type(exc).__name__
            )
            try:
                self.rollback()
            except Exception as rollback_exc:
                raise RollbackError(
                    f"rollback failed after: {exc}",
                    original=exc,
                    cause=rollback_exc,
                ).with_context(operation="rollback", unit_of_work=self.id) from rollback_exc
            raise
        except BaseException as exc:
            self._log.warning("unit_of_work_interrupted", error_type=type(exc).__name__)
            try:
                self.rollback()
            except Exception as rollback_exc:
                self._log.error(
                    "unit_of_work_rollback_failed",
                    error=str(rollback_exc),
                    error_type=type(rollback_exc).__name__,
                )
            raise
        self.commit()


__all__ = ["UnitOfWorkState", "UnitOfWork"]
