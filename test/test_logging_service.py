import logging
import sys
from logging.handlers import TimedRotatingFileHandler

import pytest

from switchboard.services.logging_service import (
    build_handlers,
    configure_logging,
    install_exception_hooks,
)
from switchboard.tool.config_loader import LoggingConfig


@pytest.fixture
def restore_logging(monkeypatch):
    root = logging.getLogger()
    level = root.level
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)
    yield root
    for handler in root.handlers:
        handler.close()
    root.setLevel(level)


def test_console_and_rotating_file(tmp_path):
    log_file = tmp_path / "logs" / "switchboard.log"
    handlers = build_handlers(LoggingConfig(file=str(log_file)))
    try:
        assert len(handlers) == 2
        assert isinstance(handlers[1], TimedRotatingFileHandler)
        assert log_file.parent.is_dir()
    finally:
        for handler in handlers:
            handler.close()


def test_console_only():
    handlers = build_handlers(LoggingConfig(file=None))
    assert [type(h) for h in handlers] == [logging.StreamHandler]


def test_configure_logging_writes_to_file(tmp_path, restore_logging):
    log_file = tmp_path / "switchboard.log"
    app_logger = configure_logging(LoggingConfig(level="Warn", console=False, file=str(log_file)))

    app_logger.info("hidden")
    app_logger.warning("visible")
    for handler in logging.getLogger().handlers:
        handler.flush()

    contents = log_file.read_text(encoding="utf-8")
    assert app_logger.name == "switchboard"
    assert "visible" in contents
    assert "hidden" not in contents


def test_excepthook_logs_unhandled_errors(restore_logging, caplog):
    app_logger = logging.getLogger("switchboard")
    install_exception_hooks(app_logger)

    try:
        raise RuntimeError("boom")
    except RuntimeError:
        with caplog.at_level(logging.CRITICAL, logger="switchboard"):
            sys.excepthook(*sys.exc_info())

    assert "Unhandled exception occurred" in caplog.text


def test_structured_records_carry_extra_fields():
    handler = build_handlers(LoggingConfig(file=None, structured=True))[0]
    record = logging.LogRecord(
        "switchboard.tool", logging.INFO, __file__, 1, "Calling %s", ("Add",), None
    )
    record.server_id = "calc"
    record.tool_name = "Add"

    assert handler.format(record).endswith("Calling Add {server_id=calc tool_name=Add}")


def test_plain_records_omit_extra_fields():
    handler = build_handlers(LoggingConfig(file=None, structured=False))[0]
    record = logging.LogRecord(
        "switchboard.tool", logging.INFO, __file__, 1, "Calling Add", None, None
    )
    record.server_id = "calc"

    assert handler.format(record) == "INFO:switchboard.tool:Calling Add"
