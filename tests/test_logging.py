"""Tests for the structlog renderer chain and request-scoped log context."""

import json

import structlog

from marginalia.core.logging import request_log_context
from marginalia.core.logging.setup import renderer_chain


def render(chain, event_dict):
    for processor in chain:
        event_dict = processor(None, "error", event_dict)
    return event_dict


def test_json_logs_carry_the_traceback():
    try:
        raise ValueError("model exploded")
    except ValueError:
        output = render(renderer_chain(log_json=True), {"event": "embed_failed", "exc_info": True})

    payload = json.loads(output)
    assert payload["event"] == "embed_failed"
    assert "exc_info" not in payload
    assert payload["exception"][0]["exc_type"] == "ValueError"
    assert payload["exception"][0]["exc_value"] == "model exploded"


def test_console_logs_carry_the_traceback():
    try:
        raise ValueError("model exploded")
    except ValueError:
        output = render(renderer_chain(log_json=False), {"event": "embed_failed", "exc_info": True})

    assert "embed_failed" in output
    assert "ValueError" in output


def test_request_log_context_is_scoped():
    before = structlog.contextvars.get_contextvars()

    with request_log_context(method="semanticSearch", request_id="r1"):
        bound = structlog.contextvars.get_contextvars()
        assert bound["method"] == "semanticSearch"
        assert bound["request_id"] == "r1"

    assert structlog.contextvars.get_contextvars() == before
