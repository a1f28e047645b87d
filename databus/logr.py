"""Log sinks for the data bus.

Every module logs through logging.getLogger("databus.*"). Out of the box
warnings and errors reach stderr through logging's last-resort handler and
info/debug go nowhere.

init() routes the records to four plain callables instead, one per level,
each receiving a single formatted string:

    logr.init(info=print, debug=print)

Sinks are diagnostics only; nothing in the registry depends on them.
"""

import logging
import sys
from typing import Callable, Dict, Optional, Union

from config.settings import settings

Sink = Callable[[str], None]

ROOT_LOGGER = "databus"
LOG_FORMAT = "%(name)s: %(message)s"

_handler: Optional["SinkHandler"] = None


def console_sink(message: str) -> None:
    print(message, file=sys.stderr)


def null_sink(message: str) -> None:
    return None


class SinkHandler(logging.Handler):
    """Forwards log records to the sink registered for their level."""

    def __init__(
        self,
        info: Optional[Sink] = None,
        warn: Optional[Sink] = None,
        error: Optional[Sink] = None,
        debug: Optional[Sink] = None,
    ):
        super().__init__(level=logging.DEBUG)
        self.sinks: Dict[str, Sink] = {
            "info": info or null_sink,
            "warn": warn or console_sink,
            "error": error or console_sink,
            "debug": debug or null_sink,
        }

    def sink_for(self, levelno: int) -> Sink:
        if levelno >= logging.ERROR:
            return self.sinks["error"]
        if levelno >= logging.WARNING:
            return self.sinks["warn"]
        if levelno >= logging.INFO:
            return self.sinks["info"]
        return self.sinks["debug"]

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.sink_for(record.levelno)(self.format(record))
        except Exception:
            self.handleError(record)


def init(
    info: Optional[Sink] = None,
    warn: Optional[Sink] = None,
    error: Optional[Sink] = None,
    debug: Optional[Sink] = None,
) -> SinkHandler:
    """
    Route data bus logging to the given sinks.

    Omitted sinks keep their defaults (warn/error to stderr, info/debug
    dropped). Calling init() again replaces the previous sinks.
    """
    global _handler
    logger = logging.getLogger(ROOT_LOGGER)
    if _handler is not None:
        logger.removeHandler(_handler)

    _handler = SinkHandler(info=info, warn=warn, error=error, debug=debug)
    _handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(_handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return _handler


def reset() -> None:
    """Remove the sinks installed by init() and restore the configured level."""
    global _handler
    logger = logging.getLogger(ROOT_LOGGER)
    if _handler is not None:
        logger.removeHandler(_handler)
        _handler = None
    logger.propagate = True
    configure_logging()


def configure_logging(level: Union[str, int, None] = None) -> None:
    """Apply the configured level (DATABUS_LOG_LEVEL) to the data bus loggers."""
    level = level if level is not None else settings.log_level
    if isinstance(level, str):
        level = level.upper()
    logging.getLogger(ROOT_LOGGER).setLevel(level)
