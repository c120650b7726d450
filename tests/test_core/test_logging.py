"""Tests for pgalert/core/logging.py."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator

import pytest
import structlog

from pgalert.core.config import reset_settings
from pgalert.core.logging import add_service, setup_logging


@pytest.fixture(autouse=True)
def _restore_root() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    reset_settings()
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()
    reset_settings()


class TestSetupLogging:
    def test_level_override(self) -> None:
        setup_logging(level="debug", fmt="json")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    def test_quiet_loggers_raised_to_warning(self) -> None:
        setup_logging(level="DEBUG", fmt="console")
        assert logging.getLogger("asyncio").level == logging.WARNING
        assert logging.getLogger("aiohttp.access").level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self) -> None:
        setup_logging(level="verbose", fmt="json")
        assert logging.getLogger().level == logging.INFO

    def test_json_output_carries_service_and_context(
        self, capsys: pytest.CaptureFixture[str]
    ) -> None:
        setup_logging(level="INFO", fmt="json")
        with structlog.contextvars.bound_contextvars(cycle_at="2024-03-01T12:00:00+00:00"):
            structlog.get_logger("pgalert.test").info("cycle_event_logged", alerts=2)

        record = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert record["event"] == "cycle_event_logged"
        assert record["service"] == "pgalert"
        assert record["cycle_at"] == "2024-03-01T12:00:00+00:00"
        assert record["alerts"] == 2
        assert record["level"] == "info"


class TestAddService:
    def test_keeps_explicit_service(self) -> None:
        assert add_service(None, "info", {"service": "other"})["service"] == "other"
        assert add_service(None, "info", {})["service"] == "pgalert"
