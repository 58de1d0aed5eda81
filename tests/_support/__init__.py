"""
Test support utilities for repokit tests.

Entity types shared by the test modules live in :mod:`tests._support.models`;
this module holds helpers that don't fit as pytest fixtures.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class QueryRecord:
    """One statement as seen by the query logger."""

    kind: str
    sql: str
    params: Any
    duration: float
    error: BaseException | None


class RecordingQueryLogger:
    """
    Query logger that keeps every call for later assertions.

    Usage:
        log = RecordingQueryLogger()
        db = Database(engine, query_logger=log)
        ...
        assert len(log.statements("INSERT")) == 3
    """

    def __init__(self) -> None:
        self.records: list[QueryRecord] = []

    def __call__(
        self,
        kind: str,
        sql: str,
        params: Any,
        duration: float,
        error: BaseException | None,
    ) -> None:
        self.records.append(QueryRecord(kind, sql, params, duration, error))

    def statements(self, prefix: str) -> list[QueryRecord]:
        """Records whose SQL starts with ``prefix`` (case-insensitive)."""
        prefix = prefix.upper()
        return [r for r in self.records if r.sql.lstrip().upper().startswith(prefix)]

    def kinds(self) -> list[str]:
        return [r.kind for r in self.records]

    @property
    def errors(self) -> list[QueryRecord]:
        return [r for r in self.records if r.error is not None]

    def clear(self) -> None:
        self.records.clear()
