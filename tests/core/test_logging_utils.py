from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from onebot_bridge.core.logging_utils import log_event, setup_rotating_logger


def test_log_event_emits_json_and_drops_none_fields(
    caplog: pytest.LogCaptureFixture,
) -> None:
    logger = logging.getLogger("test.log_event")
    with caplog.at_level(logging.INFO, logger="test.log_event"):
        log_event(
            logger,
            logging.INFO,
            "onebot.inbound.message",
            account_id="default",
            group_id=None,
            exc=RuntimeError("boom"),
            ids=("1", 2),
        )

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload == {
        "event": "onebot.inbound.message",
        "account_id": "default",
        "exc": "RuntimeError: boom",
        "ids": ["1", 2],
    }


def test_log_event_skips_disabled_levels(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("test.log_event.disabled")
    with caplog.at_level(logging.WARNING, logger="test.log_event.disabled"):
        log_event(logger, logging.DEBUG, "onebot.debug")
    assert caplog.records == []


def test_setup_rotating_logger_replaces_handlers(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "bridge.log"
    logger = setup_rotating_logger("test.rotating", log_path)
    logger = setup_rotating_logger("test.rotating", log_path)
    try:
        assert len(logger.handlers) == 2
        assert logger.propagate is False
        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()
        assert "hello" in log_path.read_text(encoding="utf-8")
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
