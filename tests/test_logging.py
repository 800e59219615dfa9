from __future__ import annotations

import json
import logging

from swarm_gateway.utils.logging_config import (
    LogContext,
    RichConsoleFormatter,
    StructuredFormatter,
    clear_context,
    set_context,
    set_model_id,
    set_request_id,
)


def _record(message: str) -> logging.LogRecord:
    return logging.LogRecord("swarm_gateway.test", logging.INFO, __file__, 1, message, None, None)


def test_structured_formatter_includes_correlation() -> None:
    set_request_id("req-1")
    set_model_id("transformers.js/phi-3.5")
    set_context(path="/v1/completions")
    try:
        with LogContext(service="transformers-js-phi-3-5"):
            data = json.loads(StructuredFormatter().format(_record("[Gateway] hello")))
    finally:
        clear_context()

    assert data["message"] == "[Gateway] hello"
    assert data["request_id"] == "req-1"
    assert data["model"] == "transformers.js/phi-3.5"
    assert data["context"] == {"path": "/v1/completions", "service": "transformers-js-phi-3-5"}


def test_log_context_restores_previous_fields() -> None:
    set_context(path="/health")
    try:
        with LogContext(service="svc"):
            pass
        data = json.loads(StructuredFormatter().format(_record("x")))
    finally:
        clear_context()

    assert data["context"] == {"path": "/health"}


def test_console_formatter_shows_request() -> None:
    set_request_id("abc")
    try:
        line = RichConsoleFormatter().format(_record("ready"))
    finally:
        clear_context()

    assert "req=abc" in line
    assert "ready" in line
