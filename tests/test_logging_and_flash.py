from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

from starlette.requests import Request

APP_ROOT = Path(__file__).resolve().parents[1] / "app"
if str(APP_ROOT) not in sys.path:
    sys.path.insert(0, str(APP_ROOT))

from armory_app.infrastructure.logging import (  # noqa: E402
    PolicyJsonFormatter,
    RequestIdFilter,
    bind_request_id,
    reset_request_id,
)
from armory_app.web.http.flash import MAX_QUEUED_FLASHES, add_flash, pop_flashes  # noqa: E402


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord("armory_app.policy.engine", logging.INFO, __file__, 1, "Policy loaded. generation=%s", (3,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def _session_request() -> Request:
    return Request({"type": "http", "method": "POST", "path": "/admin/permissions", "headers": [], "session": {}})


def test_json_lines_carry_request_id_and_event_fields() -> None:
    record = _record(event="policy_loaded", generation=3)
    token = bind_request_id("abc123")
    try:
        RequestIdFilter().filter(record)
    finally:
        reset_request_id(token)

    payload = json.loads(PolicyJsonFormatter().format(record))

    assert payload["request_id"] == "abc123"
    assert payload["message"] == "Policy loaded. generation=3"
    assert payload["event"] == "policy_loaded"
    assert payload["generation"] == 3
    assert "args" not in payload


def test_records_outside_a_request_get_placeholder_id() -> None:
    record = _record()
    RequestIdFilter().filter(record)

    assert record.request_id == "-"


def test_flash_queue_is_bounded_and_levels_are_normalized() -> None:
    request = _session_request()
    for index in range(MAX_QUEUED_FLASHES + 2):
        add_flash(request, f"message {index}", "success")
    add_flash(request, "odd level", "critical")

    flashes = pop_flashes(request)

    assert len(flashes) == MAX_QUEUED_FLASHES
    assert flashes[-1] == {"message": "odd level", "level": "info"}
    assert flashes[0]["message"] == "message 3"
    assert pop_flashes(request) == []
