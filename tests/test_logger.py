"""
Tests for the ledger logging setup
"""

import logging

from reward.logger import LedgerLogHighlighter, SanitizingFormatter, get_logger, set_level


class TestSanitizingFormatter:

    def test_strips_escapes_and_control_chars(self):
        raw = "user=7 name=\x1b[31mmallory\x1b[0m\r\x07 joined"
        assert SanitizingFormatter.sanitize(raw) == "user=7 name=mallory joined"

    def test_keeps_tabs_and_newlines(self):
        assert SanitizingFormatter.sanitize("a\tb\nc") == "a\tb\nc"

    def test_format_sanitizes_message(self):
        formatter = SanitizingFormatter(fmt="%(message)s")
        record = logging.LogRecord(
            name="reward.engine", level=logging.INFO, pathname="", lineno=0,
            msg="display name %s", args=("\x1b]0;pwned\x07eve",), exc_info=None,
        )
        assert "\x1b" not in formatter.format(record)


class TestLevels:

    def test_set_level(self):
        root = logging.getLogger()
        before = root.level
        try:
            set_level("debug")
            assert root.level == logging.DEBUG
            set_level("LOUD")
            assert root.level == logging.INFO
        finally:
            root.setLevel(before)

    def test_get_logger_returns_named_logger(self):
        assert get_logger("reward.test").name == "reward.test"

    def test_highlighter_styles_order_fields(self):
        text = LedgerLogHighlighter()("Settled order=1700000000000-ab12cd user=7 long")
        styles = {str(span.style) for span in text.spans}
        assert {"reward.order_id", "reward.user", "reward.side_long"} <= styles
