import json
import logging
from decimal import Decimal

from estatefeed.core.logging import JSONFormatter, get_logger


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "estatefeed.test", logging.WARNING, __file__, 1, "Skipped apartments record", None, None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_line_carries_known_extras_only():
    line = JSONFormatter().format(
        _record(collection="apartments", error_kind="invalid_value", payload={"huge": True})
    )
    entry = json.loads(line)

    assert entry["level"] == "WARNING"
    assert entry["message"] == "Skipped apartments record"
    assert entry["collection"] == "apartments"
    assert entry["error_kind"] == "invalid_value"
    assert "payload" not in entry


def test_none_extras_are_dropped_and_decimals_stringified():
    entry = json.loads(JSONFormatter().format(_record(entity_id=None, status_code=Decimal("502"))))

    assert "entity_id" not in entry
    assert entry["status_code"] == "502"


def test_emoji_messages_stay_readable():
    record = _record()
    record.msg = "✅ Database tables ready"

    assert "✅" in JSONFormatter().format(record)


def test_get_logger_is_namespaced_and_reuses_its_handler():
    first = get_logger("tests")
    second = get_logger("tests")

    assert first is second
    assert first.name == "estatefeed.tests"
    assert len(first.handlers) == 1
