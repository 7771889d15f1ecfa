"""
localvl :: Structured Logging

JSON or human-readable log output under the "localvl" logger tree,
with request-scoped context for generation calls.
"""

import logging
import json
import time
import sys
from typing import Optional


# Level names accepted from the outside world (CLI, env, HTTP settings).
_LEVEL_ALIASES = {
    "TRACE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "request_id"):
            log_entry["request_id"] = record.request_id
        if hasattr(record, "extra_data"):
            log_entry.update(record.extra_data)
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


class HumanFormatter(logging.Formatter):
    """Colored single-line formatter for terminals."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[41m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = self.formatTime(record, "%H:%M:%S")
        prefix = f"{color}{ts} [{record.levelname:>7}]{self.RESET}"
        msg = f"{prefix} {record.name}: {record.getMessage()}"
        if hasattr(record, "request_id"):
            msg += f" [req={record.request_id}]"
        extra = getattr(record, "extra_data", None)
        if extra:
            msg += " " + " ".join(f"{k}={v}" for k, v in extra.items())
        if record.exc_info and record.exc_info[1]:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def parse_level(level: str) -> int:
    """Map a level name (trace/debug/info/warn/error) to a logging level."""
    try:
        return _LEVEL_ALIASES[level.strip().upper()]
    except KeyError:
        raise ValueError(
            f"Unknown log level '{level}', expected one of "
            f"{sorted(k.lower() for k in _LEVEL_ALIASES)}"
        ) from None


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure logging for localvl.

    Args:
        level: trace, debug, info, warn or error
        json_output: use JSON lines on the console
        log_file: optional file path; file output is always JSON
    """
    logger = logging.getLogger("localvl")
    logger.setLevel(parse_level(level))
    logger.handlers.clear()
    logger.propagate = False

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(JSONFormatter() if json_output else HumanFormatter())
    logger.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(JSONFormatter())
        logger.addHandler(fh)

    return logger


def set_log_level(level: str) -> str:
    """Change the level of the running "localvl" logger. Returns the applied name."""
    value = parse_level(level)
    logging.getLogger("localvl").setLevel(value)
    return logging.getLevelName(value)


def get_log_level() -> str:
    """Lowercase name of the current "localvl" logger level."""
    return logging.getLevelName(logging.getLogger("localvl").getEffectiveLevel()).lower()


def get_logger(name: str = "localvl") -> logging.Logger:
    return logging.getLogger(name)


class RequestLogger:
    """Logger bound to one generation request."""

    def __init__(self, request_id: int, logger: Optional[logging.Logger] = None):
        self.request_id = request_id
        self.logger = logger or get_logger()
        self.start_time = time.perf_counter()

    def debug(self, msg: str, **kwargs):
        self.logger.debug(msg, extra={"request_id": self.request_id, "extra_data": kwargs})

    def info(self, msg: str, **kwargs):
        self.logger.info(msg, extra={"request_id": self.request_id, "extra_data": kwargs})

    def warning(self, msg: str, **kwargs):
        self.logger.warning(msg, extra={"request_id": self.request_id, "extra_data": kwargs})

    def error(self, msg: str, **kwargs):
        self.logger.error(msg, extra={"request_id": self.request_id, "extra_data": kwargs})

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000
