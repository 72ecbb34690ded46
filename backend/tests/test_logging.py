import json
import logging
import sys

from gptcore.core.logging import JsonFormatter


def _record(**extra):
    record = logging.LogRecord(
        name="gptcore.services.jobs",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Research progress: %s",
        args=("searching",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_structured_fields_are_emitted():
    line = JsonFormatter().format(_record(job_id="resp_1", step="poll", status="in_progress"))
    payload = json.loads(line)

    assert payload["message"] == "Research progress: searching"
    assert payload["level"] == "INFO"
    assert payload["service"] == "gptcore"
    assert payload["job_id"] == "resp_1"
    assert payload["step"] == "poll"
    assert payload["status"] == "in_progress"
    assert "request_id" not in payload


def test_exception_info_is_included():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record()
        record.exc_info = sys.exc_info()

    payload = json.loads(JsonFormatter().format(record))
    assert "RuntimeError: boom" in payload["exc_info"]
