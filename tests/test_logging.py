"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from calimport.core.logging import (
    add_import_context,
    configure_logging,
    get_import_context,
    set_import_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    set_import_context(None)


def test_import_context_processor():
    set_import_context("2026-10-19")
    assert get_import_context() == "2026-10-19"
    assert add_import_context(None, "info", {"event": "x"}) == {
        "event": "x",
        "import_day": "2026-10-19",
    }


def test_processor_without_context_leaves_event_dict():
    set_import_context(None)
    assert add_import_context(None, "info", {"event": "x"}) == {"event": "x"}


def test_configure_sets_level_and_quiets_http_loggers():
    configure_logging(level="debug")
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING
    assert len(logging.getLogger().handlers) == 1


def test_reconfigure_does_not_duplicate_handlers():
    configure_logging()
    configure_logging()
    assert len(logging.getLogger().handlers) == 1


def test_log_file_receives_json_lines(tmp_path):
    log_file = tmp_path / "logs" / "calimport.log"
    configure_logging(level="INFO", fmt="json", log_file=log_file)
    set_import_context("2026-10-19")

    logging.getLogger("calimport.test").info("Imported %d event node(s)", 3)
    for handler in logging.getLogger().handlers:
        handler.flush()

    record = json.loads(log_file.read_text().splitlines()[-1])
    assert record["event"] == "Imported 3 event node(s)"
    assert record["level"] == "info"
    assert record["logger"] == "calimport.test"
    assert record["import_day"] == "2026-10-19"
