"""Logging for the Tesy bridge.

Modules log through ``get_logger(__name__)``. The returned ``BridgeLogger``
accepts an ``extra=`` mapping of structured context next to the usual
%-style arguments.

Only the ``tesy_bridge`` package logger carries a handler, installed once by
``configure_logging`` at startup. Module loggers propagate to it and on to the
root logger, so anything attached there (pytest's caplog included) still sees
every record.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
if sys.version_info >= (3, 12):
    from typing import override
else:
    from typing_extensions import override

from tesy_bridge.const import TESY_DEBUG, TESY_LOG_FORMAT, TESY_LOG_OUTPUT
from tesy_bridge.correlation import CORRELATION_ID_LENGTH, get_correlation_id
from tesy_bridge.exceptions import ConfigError

__all__ = [
    "PACKAGE_LOGGER",
    "BridgeLogger",
    "BridgeStreamHandler",
    "CorrelationFilter",
    "HumanFormatter",
    "JSONFormatter",
    "configure_logging",
    "get_logger",
    "set_package_level",
]

PACKAGE_LOGGER = "tesy_bridge"
CONTEXT_ATTR = "bridge_context"
NO_CORRELATION = "-" * CORRELATION_ID_LENGTH


def _context(record: logging.LogRecord) -> dict[str, object]:
    context = getattr(record, CONTEXT_ATTR, None)
    return dict(context) if isinstance(context, Mapping) else {}


class CorrelationFilter(logging.Filter):
    """Stamp each record with the correlation id of the task that logged it."""

    @override
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or NO_CORRELATION
        return True


class HumanFormatter(logging.Formatter):
    """Single-line text: time, level, logger, correlation id, message, then context."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(name)s] %(correlation_id)s > %(message)s",
            datefmt="%m/%d/%y %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id() or NO_CORRELATION
        line = super().format(record)
        context = _context(record)
        if context:
            line += " | " + " ".join(f"{k}={v}" for k, v in context.items())
        return line


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "line": record.lineno,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }
        context = _context(record)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class BridgeStreamHandler(logging.StreamHandler):
    """The handler ``configure_logging`` owns on the package logger."""


FORMATTERS: dict[str, type[logging.Formatter]] = {
    "human": HumanFormatter,
    "json": JSONFormatter,
}


def configure_logging(
    log_format: str = TESY_LOG_FORMAT,
    output: str = TESY_LOG_OUTPUT,
    *,
    debug: bool = TESY_DEBUG,
) -> logging.Handler:
    """Install the bridge's handler on the package logger.

    Calling it again replaces the handler from the previous call.

    Raises:
        ConfigError: unknown ``log_format`` or ``output``

    """
    formatter_cls = FORMATTERS.get(log_format.casefold())
    if formatter_cls is None:
        msg = f"TESY_LOG_FORMAT must be one of {sorted(FORMATTERS)}, got {log_format!r}"
        raise ConfigError(msg)
    streams = {"stdout": sys.stdout, "stderr": sys.stderr}
    stream = streams.get(output.casefold())
    if stream is None:
        msg = f"TESY_LOG_OUTPUT must be stdout or stderr, got {output!r}"
        raise ConfigError(msg)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for old in [h for h in package_logger.handlers if isinstance(h, BridgeStreamHandler)]:
        package_logger.removeHandler(old)

    handler = BridgeStreamHandler(stream)
    handler.addFilter(CorrelationFilter())
    handler.setFormatter(formatter_cls())
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    return handler


def set_package_level(level: int) -> None:
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)


class BridgeLogger:
    """Thin wrapper over a stdlib logger that takes structured ``extra`` context."""

    def __init__(self, name: str) -> None:
        self.name: str = name
        self.logger: logging.Logger = logging.getLogger(name)

    def _log(
        self,
        level: int,
        msg: str,
        args: tuple[object, ...],
        extra: Mapping[str, object] | None,
        exc_info: bool = False,
    ) -> None:
        if not self.logger.isEnabledFor(level):
            return
        # stacklevel 3 points line numbers at our caller
        self.logger.log(
            level,
            msg,
            *args,
            extra={CONTEXT_ATTR: dict(extra)} if extra else None,
            exc_info=exc_info,
            stacklevel=3,
        )

    def debug(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.DEBUG, msg, args, extra)

    def info(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.INFO, msg, args, extra)

    def warning(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.WARNING, msg, args, extra)

    def error(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.ERROR, msg, args, extra)

    def exception(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        """Log at ERROR with the active exception's traceback."""
        self._log(logging.ERROR, msg, args, extra, exc_info=True)


def get_logger(name: str) -> BridgeLogger:
    return BridgeLogger(name)
