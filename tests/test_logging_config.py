"""
Brief: Tests for burrow.config.logging_config.init_logging and formatters.

Inputs:
  - None

Outputs:
  - None
"""

import logging
import logging.handlers
from pathlib import Path

import pytest

from burrow.config.logging_config import (
    BracketLevelFormatter,
    SyslogFormatter,
    init_logging,
    parse_level,
)

pytestmark = pytest.mark.usefixtures("restore_root_logger")


def test_init_logging_adds_stderr_handler():
    """
    Brief: init_logging configures root logger with stderr handler by default.

    Inputs:
      - cfg: minimal dict with level

    Outputs:
      - None: Asserts StreamHandler present and level applied
    """
    root = init_logging({"level": "debug"})
    assert root is logging.getLogger()
    assert root.level == logging.DEBUG
    assert any(type(h) is logging.StreamHandler for h in root.handlers)
    assert logging.getLogger("urllib3").level == logging.WARNING


def test_init_logging_without_stderr_has_no_handlers():
    root = init_logging({"level": "warn", "stderr": False})
    assert root.handlers == []
    assert root.level == logging.WARNING


def test_init_logging_file_handler_writes(tmp_path):
    """
    Brief: init_logging creates file handler and writes formatted entries.

    Inputs:
      - cfg: file path in a not-yet-existing directory

    Outputs:
      - None: Asserts file created and contains message
    """
    log_path = tmp_path / "logs" / "burrow.log"
    init_logging({"level": "info", "stderr": False, "file": str(log_path)})
    logging.getLogger("burrow.test").info("file message")
    logging.getLogger("burrow.test").debug("hidden message")
    for h in logging.getLogger().handlers:
        h.flush()

    content = Path(log_path).read_text()
    assert "[info] burrow.test: file message" in content
    assert "hidden message" not in content
    assert content.split(" ", 1)[0].endswith("Z")


class _RecordingSysLogHandler(logging.Handler):
    LOG_USER = logging.handlers.SysLogHandler.LOG_USER
    LOG_LOCAL0 = logging.handlers.SysLogHandler.LOG_LOCAL0
    created = []

    def __init__(self, address=None, facility=None):
        super().__init__()
        _RecordingSysLogHandler.created.append((address, facility))

    def emit(self, record):
        pass


def test_init_logging_syslog(monkeypatch):
    _RecordingSysLogHandler.created = []
    monkeypatch.setattr(logging.handlers, "SysLogHandler", _RecordingSysLogHandler)

    root = init_logging({"stderr": False, "syslog": True})
    assert _RecordingSysLogHandler.created == [
        ("/dev/log", logging.handlers.SysLogHandler.LOG_USER)
    ]
    handler = root.handlers[0]
    assert isinstance(handler.formatter, SyslogFormatter)
    assert handler.formatter.tag == "burrow"

    init_logging(
        {
            "stderr": False,
            "syslog": {"address": ["localhost", 514], "facility": "local0", "tag": "dns"},
        }
    )
    assert _RecordingSysLogHandler.created[-1] == (
        ("localhost", 514),
        logging.handlers.SysLogHandler.LOG_LOCAL0,
    )


@pytest.mark.parametrize(
    "name,expected",
    [
        ("debug", logging.DEBUG),
        ("WARN", logging.WARNING),
        ("crit", logging.CRITICAL),
        (None, logging.INFO),
        ("chatty", logging.INFO),
    ],
)
def test_parse_level(name, expected):
    assert parse_level(name) == expected


def test_formatters_produce_expected_tags():
    """
    Brief: BracketLevelFormatter and SyslogFormatter include bracketed tags.

    Inputs:
      - LogRecord instances at different levels

    Outputs:
      - None: Asserts formatted strings contain expected tags
    """
    fmt = BracketLevelFormatter(fmt="%(asctime)s %(level_tag)s %(name)s: %(message)s")
    rec = logging.LogRecord("n", logging.ERROR, __file__, 1, "m", (), None)
    rec.created = 0.0
    out = fmt.format(rec)
    assert out == "1970-01-01T00:00:00Z [error] n: m"

    s = SyslogFormatter(tag="")
    rec2 = logging.LogRecord("n2", logging.WARNING, __file__, 2, "m2", (), None)
    assert s.format(rec2) == "[warn] n2: m2"
    assert SyslogFormatter().format(rec2) == "burrow: [warn] n2: m2"
