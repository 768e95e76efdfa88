"""
Reward Logging
==============

Root logger setup for the ledger node: a rich console handler that
colours order ids, users, sides and rejections, plus a rotating file under
``logs/``. Both strip terminal control sequences, since display names and
wallet addresses are user-supplied and end up in log lines.

Usage:
    >>> from reward.logger import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Settled order=1700000000000-ab12cd user=7")
"""

import logging
import logging.handlers
import re
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    LOG_BACKUP_COUNT,
    LOG_CONSOLE_HIGHLIGHTING,
    LOG_DATE_FORMAT,
    LOG_FORMAT,
    LOG_LEVEL,
    LOG_MAX_FILE_SIZE,
)

LOG_FILE_PATH = Path(__file__).parent.parent / "logs" / "reward.log"

# Noisy transports, and the level they are capped at
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "uvicorn": logging.ERROR,
    "uvicorn.error": logging.ERROR,
}

LEDGER_THEME = Theme({
    "reward.level_error":   "bold red",
    "reward.level_warning": "bold yellow",
    "reward.level_info":    "bold green",
    "reward.level_debug":   "dim",
    "reward.logger_name":   "magenta",
    "reward.side_long":     "bold green",
    "reward.side_short":    "bold red",
    "reward.order_id":      "cyan",
    "reward.user":          "bold white",
    "reward.amount":        "yellow",
    "reward.rejected":      "bold red",
})


class LedgerLogHighlighter(RegexHighlighter):
    """Colours the ``key=value`` fields the engine and vault log."""

    base_style = "reward."
    highlights = [
        r"(?P<level_error>\b(?:ERROR|CRITICAL)\b)",
        r"(?P<level_warning>\bWARNING\b)",
        r"(?P<level_info>\bINFO\b)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"\s-\s(?P<logger_name>reward[\w.]*)\s-\s",
        r"(?P<side_long>\blong\b)",
        r"(?P<side_short>\bshort\b)",
        r"(?P<order_id>\border=[\w-]+)",
        r"(?P<user>\buser=\d+)",
        r"(?P<amount>\b(?:return|pnl|network_fee|balance|debt)=-?[\d.]+)",
        r"(?P<rejected>\b(?:rejected|Rolling back|failed)\b)",
    ]


class SanitizingFormatter(logging.Formatter):
    """Formatter that drops ANSI escapes and control characters (tabs and newlines survive)."""

    _unsafe = re.compile(
        r"\x1b\[[0-?]*[ -/]*[@-~]"    # CSI sequences
        r"|\x1b[@-Z\\-_]"             # two-byte escapes
        r"|[\x00-\x08\x0B-\x1F\x7F]"  # control chars incl. carriage return
    )

    @classmethod
    def sanitize(cls, text: str) -> str:
        return cls._unsafe.sub("", text) if text else text

    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


_lock = threading.Lock()
_configured = False


def _formatter() -> SanitizingFormatter:
    formatter = SanitizingFormatter(fmt=str(LOG_FORMAT), datefmt=f"{LOG_DATE_FORMAT} UTC")
    formatter.converter = time.gmtime
    return formatter


def _console_handler(formatter: logging.Formatter) -> logging.Handler:
    if not LOG_CONSOLE_HIGHLIGHTING:
        handler: logging.Handler = logging.StreamHandler(sys.stdout)
    else:
        handler = RichHandler(
            console=Console(theme=LEDGER_THEME, highlight=False),
            highlighter=LedgerLogHighlighter(),
            keywords=[],
            rich_tracebacks=True,
            show_path=False,
            show_time=False,
            show_level=False,
            markup=False,
        )
    handler.setFormatter(formatter)
    return handler


def configure(
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None,
    console_output: bool = True,
    file_output: bool = True,
) -> None:
    """
    Install the ledger handlers on the root logger. Runs once per process;
    later calls are no-ops (use ``set_level`` to change verbosity).
    """
    global _configured
    with _lock:
        if _configured:
            return

        root = logging.getLogger()
        root.handlers.clear()
        for name, level in QUIET_LOGGERS.items():
            logging.getLogger(name).setLevel(level)

        formatter = _formatter()
        if console_output:
            root.addHandler(_console_handler(formatter))
        if file_output:
            path = log_file or LOG_FILE_PATH
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                filename=str(path),
                maxBytes=LOG_MAX_FILE_SIZE,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

        _configured = True
    set_level(log_level or str(LOG_LEVEL))


def set_level(log_level: str) -> None:
    """Apply *log_level* (``"DEBUG"``, ``"info"``...) to the root logger; unknown names mean INFO."""
    logging.getLogger().setLevel(getattr(logging, str(log_level).upper(), logging.INFO))


def get_logger(name: str) -> logging.Logger:
    configure()
    return logging.getLogger(name)
