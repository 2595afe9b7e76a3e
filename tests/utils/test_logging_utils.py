"""Tests for log redaction and JSON formatting."""
import json
import logging
import sys

import pytest

from oauth_broker.utils.logging_utils import (
    REDACTED,
    JSONFormatter,
    redact_sensitive_data,
    setup_json_logging,
)


def test_redact_nested():
    data = {
        "grant_type": "authorization_code",
        "Code": "auth_abc",
        "code_verifier": "verifier",
        "nested": [{"client_secret": "s", "scope": "read"}],
    }

    assert redact_sensitive_data(data) == {
        "grant_type": "authorization_code",
        "Code": REDACTED,
        "code_verifier": REDACTED,
        "nested": [{"client_secret": REDACTED, "scope": "read"}],
    }


def test_redact_passes_scalars_through():
    assert redact_sensitive_data("plain") == "plain"
    assert redact_sensitive_data(None) is None


def make_record(msg="hello %s", args=("world",), exc_info=None, **extra):
    record = logging.LogRecord("oauth_broker.test", logging.INFO, __file__, 10, msg, args, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_standard_fields(self):
        payload = json.loads(JSONFormatter().format(make_record()))

        assert payload["message"] == "hello world"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "oauth_broker.test"
        assert payload["line"] == 10
        assert "timestamp" in payload

    def test_extra_fields_redacted(self):
        record = make_record(session_id="abc", body={"refresh_token": "r", "grant_type": "refresh_token"})

        payload = json.loads(JSONFormatter().format(record))

        assert payload["session_id"] == "abc"
        assert payload["body"] == {"refresh_token": REDACTED, "grant_type": "refresh_token"}

    def test_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record(exc_info=sys.exc_info())

        payload = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in payload["exception"]


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_setup_json_logging_stdout(restore_root_logger):
    root = setup_json_logging("DEBUG")

    assert root.level == logging.DEBUG
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, JSONFormatter)


def test_setup_json_logging_file(restore_root_logger, tmp_path):
    log_file = tmp_path / "broker.log"

    root = setup_json_logging(logging.INFO, output="file", file_path=str(log_file))
    logging.getLogger("oauth_broker.test").info("written", extra={"code": "auth_x"})
    root.handlers[0].flush()

    payload = json.loads(log_file.read_text().strip())
    assert payload["message"] == "written"
    assert payload["code"] == REDACTED
    root.handlers[0].close()
