"""Structured key=value log lines.

Every significant state transition is printed as a single line:

    time=2025-09-01T11:09:07.942+03:30 level=INFO msg="serving proxy" address=127.0.0.1:1080

Lines go through a rich Console with markup and highlighting disabled so
bracketed IPv6 endpoints are printed verbatim.
"""

import re
from datetime import datetime

from rich.console import Console

console = Console(highlight=False, soft_wrap=True)

LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}

_STYLES = {"WARN": "yellow", "ERROR": "red"}

# Timestamps already present in relayed subprocess output
_TIME_PATTERN = re.compile(
    r"(\d{4}[-/]\d{2}[-/]\d{2}[ T]\d{2}:\d{2}:\d{2}(\.\d+)?)",
)

_threshold = LEVELS["INFO"]


def set_level(level: str) -> None:
    """Only emit lines at or above ``level`` (DEBUG, INFO, WARN, ERROR)."""
    global _threshold
    try:
        _threshold = LEVELS[level.upper()]
    except KeyError:
        raise ValueError(f"unknown log level: {level}") from None


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_line(level: str, msg: str, fields: dict | None = None) -> str:
    msg = _TIME_PATTERN.sub("", msg).strip()
    ts = datetime.now().astimezone().isoformat(timespec="milliseconds")

    parts = [f"time={ts}", f"level={level}", f"msg={_quote(msg)}"]
    for key in sorted(fields or {}):
        value = fields[key]
        if value is None:
            continue
        value = str(value)
        if value == "":
            continue
        if any(c in value for c in " \t"):
            value = _quote(value)
        parts.append(f"{key}={value}")
    return " ".join(parts)


def log(level: str, msg: str, **fields) -> None:
    if LEVELS.get(level, LEVELS["INFO"]) < _threshold:
        return
    console.print(
        format_line(level, msg, fields),
        markup=False,
        style=_STYLES.get(level),
    )


def debug(msg: str, **fields) -> None:
    log("DEBUG", msg, **fields)


def info(msg: str, **fields) -> None:
    log("INFO", msg, **fields)


def warn(msg: str, **fields) -> None:
    log("WARN", msg, **fields)


def error(msg: str, **fields) -> None:
    log("ERROR", msg, **fields)
