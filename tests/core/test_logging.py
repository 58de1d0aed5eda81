"""Tests for structlog configuration."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
import structlog

from repokit.core import logging as repokit_logging
from repokit.core.logging import configure_logging, get_logger


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()
    repokit_logging._SERVICE_NAME = "repokit"


class TestConfigureLogging:
    def test_json_renderer(self) -> None:
        configure_logging(level="INFO", json_format=True, service="orders-api")
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert repokit_logging._elasticsearch_compatible in processors

    def test_console_renderer(self) -> None:
        configure_logging(level="DEBUG", json_format=False)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
        assert repokit_logging._elasticsearch_compatible not in processors

    def test_timestamp_optional(self) -> None:
        configure_logging(json_format=True, add_timestamp=False)
        processors = structlog.get_config()["processors"]
        assert not any(isinstance(p, structlog.processors.TimeStamper) for p in processors)

    def test_service_metadata(self) -> None:
        configure_logging(json_format=True, service="orders-api")
        event = repokit_logging._add_service_metadata(None, "info", {"event": "x"})
        assert event["service.name"] == "orders-api"


class TestProcessors:
    def test_elasticsearch_field_names(self) -> None:
        event = repokit_logging._elasticsearch_compatible(
            None, "info", {"timestamp": "2026-01-01T00:00:00Z", "level": "info", "event": "x"}
        )
        assert event == {
            "@timestamp": "2026-01-01T00:00:00Z",
            "log.level": "info",
            "event": "x",
        }

    def test_get_logger_binds(self) -> None:
        with structlog.testing.capture_logs() as logs:
            get_logger("repokit.test").bind(unit_of_work="abc").info("unit_of_work_committed")
        assert logs == [
            {"unit_of_work": "abc", "event": "unit_of_work_committed", "log_level": "info"}
        ]
