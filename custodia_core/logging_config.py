"""
Logging setup for the Custodia service.

Two console renderings are available:
  - **human** – coloured, single-line, readable
  - **json**  – newline-delimited JSON for log aggregators

A log file, when configured, always receives JSON.

Core modules log through named loggers (``custodia_keystore``,
``custodia_session``, ``custodia_rpc``, ``custodia_gateway``,
``custodia_api``) and attach transfer context through ``extra=``::

    logger.info("Submitted", extra={"tx_hash": h, "address": sender})

Context keys listed in ``CONTEXT_FIELDS`` become top-level JSON fields and a
``key=value`` suffix in human output.  Raw byte values are never rendered:
``_RedactBytesFilter`` swaps them for a length marker before any handler
formats the record, since private keys and passwords only ever travel as
bytes.

Usage:
    from custodia_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="custodia.log")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

CONTEXT_FIELDS = ("address", "chain_id", "tx_hash", "nonce", "rpc_method", "block")

# Third-party loggers that are too chatty at INFO.
_NOISY_LOGGERS = ("aiohttp.access", "asyncio")

_BYTES_TYPES = (bytes, bytearray, memoryview)


def _redacted(value: Any) -> Any:
    if isinstance(value, _BYTES_TYPES):
        return f"<{len(value)} bytes redacted>"
    return value


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class _RedactBytesFilter(logging.Filter):
    """Replace bytes-like message args and context values with a marker."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, tuple):
            record.args = tuple(_redacted(a) for a in record.args)
        elif isinstance(record.args, dict):
            record.args = {k: _redacted(v) for k, v in record.args.items()}
        for key in CONTEXT_FIELDS:
            if isinstance(getattr(record, key, None), _BYTES_TYPES):
                setattr(record, key, _redacted(getattr(record, key)))
        return True


class _JSONFormatter(logging.Formatter):
    """One JSON object per record, context fields at top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        log_obj.update(_context(record))
        if record.exc_info and record.exc_info[1]:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str)


class _HumanFormatter(logging.Formatter):
    """``HH:MM:SS [LEVEL  ] logger: message key=value ...``"""

    COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, colour: bool = True):
        super().__init__()
        self.colour = colour

    def format(self, record: logging.LogRecord) -> str:
        level = f"[{record.levelname:<7}]"
        if self.colour:
            level = f"{self.COLOURS.get(record.levelname, '')}{level}{self.RESET}"
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        parts = [f"{ts} {level} {record.name}: {record.getMessage()}"]
        parts.extend(f"{k}={v}" for k, v in _context(record).items())
        line = " ".join(parts)
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(_RedactBytesFilter())
    return handler


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
) -> None:
    """
    Configure the root logger for the service.

    Parameters
    ----------
    level : str
        One of DEBUG, INFO, WARNING, ERROR, CRITICAL (case-insensitive).
    fmt : str
        ``"human"`` or ``"json"`` for the console.
    log_file : str, optional
        Additional JSON log file; parent directories are created.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console_fmt = _JSONFormatter() if fmt == "json" else _HumanFormatter(colour=sys.stderr.isatty())
    root.addHandler(_handler(logging.StreamHandler(sys.stderr), console_fmt))

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        root.addHandler(_handler(logging.FileHandler(str(path)), _JSONFormatter()))

    quiet = root.level > logging.DEBUG
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING if quiet else logging.NOTSET)
