"""
perpdex logging

Library modules only call ``logging.getLogger(__name__)``. Entry points (the
simulation CLI, an embedding application) call :func:`configure_logging` once,
usually with the ``[logging]`` config section; :func:`get_logger` falls back to
the ``.env`` defaults when nothing was configured.

Console output goes through ``rich`` with a highlighter for clearing house
lines (markets, order ids, sides, amounts). Every handler shares one
:class:`TerminalSafeFormatter`, so caller-supplied trader and market names
cannot inject escape sequences into a terminal or a log file.
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
    LOG_FILE_PATH,
    LOG_FORMAT,
    LOG_LEVEL,
    LOG_MAX_FILE_SIZE,
)

CONSOLE_THEME = Theme({
    "perpdex.amount": "bold white",
    "perpdex.level_critical": "bold red reverse",
    "perpdex.level_debug": "bold dim",
    "perpdex.level_error": "bold red",
    "perpdex.level_info": "bold green",
    "perpdex.level_warning": "bold yellow",
    "perpdex.logger_name": "magenta",
    "perpdex.market": "bold cyan",
    "perpdex.order_id": "dim cyan",
    "perpdex.side_long": "bold green",
    "perpdex.side_short": "bold red",
    "perpdex.timestamp": "bold cyan",
})

# strftime directives and the separators allowed between them
_DATE_FORMAT_RE = re.compile(r"(?:%[EO]?[-_0^#]*[a-zA-Z%]|[0-9 \t:\-/.,TZ+])+")

_lock = threading.Lock()
_configured = False


class TerminalSafeFormatter(logging.Formatter):
    """Formatter that strips ANSI escapes, carriage returns and control characters."""

    _unsafe_re = re.compile(
        r"\x1b\[[0-?]*[ -/]*[@-~]"  # CSI sequences: colors, cursor moves
        r"|\x1b[@-Z\\-_]"
        r"|[\x00-\x08\x0B-\x1F\x7F]"  # everything but tab and newline
    )

    @classmethod
    def sanitize(cls, text: str) -> str:
        return cls._unsafe_re.sub("", text) if text else text

    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


class PerpDexLogHighlighter(RegexHighlighter):
    """Highlights levels, markets, order ids, sides and decimal amounts."""

    base_style = "perpdex."
    highlights = [
        r"(?P<level_critical>\bCRITICAL\b)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"(?P<level_error>\bERROR\b)",
        r"(?P<level_info>\bINFO\b)",
        r"(?P<level_warning>\bWARNING\b)",
        r"\-\s+\w+\s+-\s+(?P<logger_name>[\w.]+)(?=\s-\s)",
        r"market=(?P<market>[\w.\-]+)",
        r"order=(?P<order_id>[0-9a-f]{8,})",
        r"(?P<side_long>\bLONG\b)",
        r"(?P<side_short>\bSHORT\b)",
        r"(?P<amount>(?<![\w.])-?\d+\.\d+\b)",
        r"(?P<timestamp>^(.*?)UTC)",
    ]


def _warn(message: str) -> None:
    # logging is not set up yet when a format is rejected
    print(f"perpdex.logger: {message}", file=sys.stderr)


def validate_log_format(log_format: Optional[str]) -> str:
    """
    Return ``log_format`` when it is a usable %-style format, otherwise the
    built-in default.
    """
    if not log_format:
        return LOG_FORMAT.default()
    try:
        formatter = logging.Formatter(fmt=str(log_format), validate=True)
        formatter.format(logging.makeLogRecord({"msg": "check"}))
    except (ValueError, KeyError, TypeError) as e:
        _warn(f"invalid log format {log_format!r} ({e}), using the default")
        return LOG_FORMAT.default()
    return str(log_format)


def validate_date_format(date_format: Optional[str]) -> str:
    """Return ``date_format`` when it is made of strftime directives, otherwise the default."""
    if not date_format:
        return LOG_DATE_FORMAT.default()
    date_format = str(date_format)
    if "%" not in date_format or not _DATE_FORMAT_RE.fullmatch(date_format):
        _warn(f"invalid date format {date_format!r}, using the default")
        return LOG_DATE_FORMAT.default()
    return date_format


def _console_handler(formatter: logging.Formatter) -> logging.Handler:
    if not LOG_CONSOLE_HIGHLIGHTING.enabled():
        handler = logging.StreamHandler(sys.stderr)
    else:
        handler = RichHandler(
            console=Console(theme=CONSOLE_THEME, highlight=False, stderr=True),
            highlighter=PerpDexLogHighlighter(),
            keywords=[],
            rich_tracebacks=True,
            show_path=False,
            show_time=False,
            show_level=False,
            markup=False,
        )
    handler.setFormatter(formatter)
    return handler


def _file_handler(log_file: Path, formatter: logging.Formatter) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        filename=str(log_file),
        maxBytes=LOG_MAX_FILE_SIZE,
        backupCount=LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None,
    console_output: bool = True,
    file_output: bool = False,
) -> None:
    """
    Replace the root logger's handlers.

    Args:
        log_level: level name; ``LOG_LEVEL`` from ``.env`` when omitted
        log_file: rotating log file, used when ``file_output`` is set
        console_output: log to stderr, through rich unless highlighting is off
        file_output: also log to ``log_file``
    """
    global _configured

    level = getattr(logging, str(log_level or LOG_LEVEL).upper(), logging.INFO)
    formatter = TerminalSafeFormatter(
        fmt=validate_log_format(LOG_FORMAT),
        datefmt=validate_date_format(LOG_DATE_FORMAT) + " UTC",
    )
    formatter.converter = time.gmtime

    handlers = []
    if console_output:
        handlers.append(_console_handler(formatter))
    if file_output:
        handlers.append(_file_handler(Path(log_file or LOG_FILE_PATH), formatter))

    with _lock:
        root = logging.getLogger()
        root.setLevel(level)
        root.handlers.clear()
        for handler in handlers:
            handler.setLevel(level)
            root.addHandler(handler)
        _configured = True


def is_configured() -> bool:
    return _configured


def get_logger(name: str) -> logging.Logger:
    """``logging.getLogger(name)``, configuring console logging on first use."""
    if not _configured:
        configure_logging()
    return logging.getLogger(name)
