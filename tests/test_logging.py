import json
import logging

from shared.core.logging_config import SecurityFilter, StructuredFormatter, set_job_context


def _record(msg, *args, **attrs):
    record = logging.LogRecord("orderflow.test", logging.INFO, __file__, 1, msg, args, None)
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


def test_security_filter_redacts_credentials():
    record = _record("calling gateway with api_key=abc123 and checksum_key: s3cr3t")

    assert SecurityFilter().filter(record) is True
    message = record.getMessage()
    assert "abc123" not in message and "s3cr3t" not in message
    assert "api_key=***REDACTED***" in message


def test_security_filter_leaves_plain_messages_alone():
    record = _record("Order %s created", 42)
    SecurityFilter().filter(record)
    assert record.getMessage() == "Order 42 created"


def test_formatter_emits_json_with_custom_fields_and_job():
    token = set_job_context("auto_cancel")
    try:
        line = StructuredFormatter().format(_record("Job finished", extra_fields={"acted": 2}))
    finally:
        token.var.reset(token)

    payload = json.loads(line)
    assert payload["message"] == "Job finished"
    assert payload["custom"] == {"acted": 2}
    assert payload["trace"]["job"] == "auto_cancel"
