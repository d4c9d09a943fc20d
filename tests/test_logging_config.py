"""
Tests for logging setup.
"""

import logging
from contextlib import contextmanager

from autodbpatch.infrastructure.logging_config import ColoredFormatter, setup_logging


@contextmanager
def isolated_root_logger():
    """Undo setup_logging's handler replacement when the block exits."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    try:
        yield root
    finally:
        for handler in root.handlers[:]:
            if handler not in handlers:
                root.removeHandler(handler)
                handler.close()
        for handler in handlers:
            if handler not in root.handlers:
                root.addHandler(handler)
        root.setLevel(level)


class TestColoredFormatter:

    def test_record_is_restored_after_formatting(self):
        formatter = ColoredFormatter("%(levelname)s %(name)s %(message)s", use_colors=True)
        record = logging.LogRecord("autodbpatch.test", logging.WARNING, __file__, 1, "stale", None, None)

        text = formatter.format(record)

        assert "\033[" in text
        assert record.levelname == "WARNING"
        assert record.name == "autodbpatch.test"

    def test_plain_output(self):
        formatter = ColoredFormatter("%(levelname)s %(message)s", use_colors=False)
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "hello", None, None)
        assert formatter.format(record) == "INFO hello"


class TestSetupLogging:

    def test_file_receives_debug_messages(self, tmp_path):
        log_file = tmp_path / "logs" / "patch.log"
        with isolated_root_logger() as root:
            setup_logging(logging.WARNING, str(log_file))
            logging.getLogger("autodbpatch.hotfix.service").debug("planning %s", "SQL01")
            for handler in root.handlers:
                handler.flush()

        content = log_file.read_text(encoding="utf-8")
        assert "planning SQL01" in content
        assert "[MainThread]" in content

    def test_library_loggers_are_quieted(self):
        with isolated_root_logger():
            setup_logging(logging.DEBUG)
        assert logging.getLogger("winrm").level == logging.WARNING
        assert logging.getLogger("urllib3").level == logging.WARNING
