import io
import json
import logging

from snapshot_engine.observability.logging import (
    JsonFormatter,
    get_logger,
    log_fields,
    setup_logging,
)


def test_json_formatter():
    formatter = JsonFormatter()
    log_record = logging.LogRecord(
        name="test_logger",
        level=logging.INFO,
        pathname="test.py",
        lineno=10,
        msg="test message",
        args=(),
        exc_info=None
    )
    # Add extra fields as we do in the code
    log_record.extra_fields = {"snapshot_id": "snap-1", "files": 3}
    log_record.base_path = "/tmp/project"

    formatted = formatter.format(log_record)
    data = json.loads(formatted)

    assert data["message"] == "test message"
    assert data["level"] == "INFO"
    assert data["component"] == "test_logger"
    assert data["snapshot_id"] == "snap-1"
    assert data["files"] == 3
    assert data["base_path"] == "/tmp/project"
    assert "timestamp" in data


def test_json_formatter_serializes_unknown_types():
    formatter = JsonFormatter()
    log_record = logging.LogRecord("t", logging.WARNING, "t.py", 1, "msg", (), None)
    log_record.extra_fields = {"obj": object()}

    data = json.loads(formatter.format(log_record))
    assert data["obj"].startswith("<object")


def test_setup_logging_writes_jsonl():
    log_output = io.StringIO()
    setup_logging("DEBUG", stream=log_output)

    logger = get_logger("snapshot_engine.test")
    logger.info("setup test", extra=log_fields(test="ok"))

    data = json.loads(log_output.getvalue().strip().splitlines()[-1])
    assert data["message"] == "setup test"
    assert data["test"] == "ok"
    assert data["component"] == "snapshot_engine.test"


def test_setup_logging_replaces_handlers():
    setup_logging("INFO", stream=io.StringIO())
    setup_logging("INFO", stream=io.StringIO())
    assert len(logging.getLogger("snapshot_engine").handlers) == 1


def test_setup_logging_reads_env_level(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "warning")
    setup_logging(stream=io.StringIO())
    assert logging.getLogger("snapshot_engine").level == logging.WARNING


def test_get_logger():
    logger = get_logger("my_name")
    assert logger.name == "my_name"
    assert isinstance(logger, logging.Logger)


def test_log_fields():
    assert log_fields(a=1) == {"extra_fields": {"a": 1}}
