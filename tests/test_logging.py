"""Tests for logging configuration."""

import json
import logging
import sys

import pytest

from tunnel_provisioner.core.logging import (
    JSONFormatter,
    RunContextFormatter,
    record_context,
    setup_logging,
)


pytestmark = pytest.mark.usefixtures("restore_root_logger")


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    return logging.getLogger("tunnel_provisioner.test").makeRecord(
        "tunnel_provisioner.test", logging.INFO, __file__, 1, msg, None, None, extra=extra
    )


class TestRecordContext:
    def test_only_present_fields(self):
        record = _record(serial="12345", step="create_tunnel", unrelated="x")

        assert record_context(record) == {"serial": "12345", "step": "create_tunnel"}

    def test_empty_without_extra(self):
        assert record_context(_record()) == {}


class TestJSONFormatter:
    def test_one_object_per_line(self):
        output = JSONFormatter().format(_record('body: {"a": "line\nbreak"}'))

        assert "\n" not in output
        entry = json.loads(output)
        assert entry["level"] == "INFO"
        assert entry["logger"] == "tunnel_provisioner.test"
        assert entry["msg"] == 'body: {"a": "line\nbreak"}'
        assert "exc" not in entry

    def test_context_fields_are_keys(self):
        record = _record(
            "Cloudflare API response",
            serial="12345",
            step="create_dns_record",
            method="POST",
            url="zones/z/dns_records",
            status_code=200,
        )

        entry = json.loads(JSONFormatter().format(record))

        assert entry["serial"] == "12345"
        assert entry["step"] == "create_dns_record"
        assert entry["method"] == "POST"
        assert entry["status_code"] == 200
        assert "tunnel_id" not in entry
        assert "[12345" not in entry["msg"]

    def test_includes_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.getLogger("x").makeRecord(
                "x", logging.ERROR, __file__, 1, "failed", None, exc_info=sys.exc_info()
            )

        entry = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: boom" in entry["exc"]


class TestRunContextFormatter:
    def test_serial_and_step_prefix(self):
        output = RunContextFormatter().format(
            _record("Starting create_dns_record", serial="12345", step="create_dns_record")
        )

        assert output.endswith(
            "tunnel_provisioner.test: [12345/create_dns_record] Starting create_dns_record"
        )

    def test_serial_only_prefix(self):
        output = RunContextFormatter().format(_record("Provisioning complete", serial="12345"))

        assert output.endswith("tunnel_provisioner.test: [12345] Provisioning complete")

    def test_no_prefix_without_context(self):
        output = RunContextFormatter().format(_record("Starting up"))

        assert output.endswith("tunnel_provisioner.test: Starting up")


class TestSetupLogging:
    def test_structured(self):
        setup_logging("DEBUG", "structured")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert logging.getLogger("httpx").level == logging.DEBUG

    def test_dev_quiets_libraries(self):
        setup_logging("info", "dev")

        assert logging.getLogger().level == logging.INFO
        assert isinstance(logging.getLogger().handlers[0].formatter, RunContextFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("uvicorn.access").level == logging.WARNING

    def test_unknown_level(self):
        with pytest.raises(KeyError):
            setup_logging("LOUD")
