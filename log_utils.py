import logging
import os
import re
from logging.handlers import RotatingFileHandler

# Rotating log for the signal engine. Override with SIGNAL_ENGINE_LOG_FILE when
# the working directory is not writable.
LOG_FILE = os.getenv("SIGNAL_ENGINE_LOG_FILE", os.path.join("logs", "signal_engine.log"))
LOG_LEVEL = os.getenv("SIGNAL_ENGINE_LOG_LEVEL", "INFO").upper()

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class _NoiseFilter(logging.Filter):
    """Drop websocket keepalive chatter while keeping warnings and lifecycle logs."""

    DROP_PATTERNS = [
        re.compile(r"[Ss]ending ping frame"),
        re.compile(r"[Rr]eceived pong"),
        re.compile(r"keepalive ping"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        return not any(p.search(msg) for p in self.DROP_PATTERNS)


_NOISE_FILTER = _NoiseFilter()


def _handler(handler: logging.Handler) -> logging.Handler:
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler.addFilter(_NOISE_FILTER)
    return handler


def setup_logger(name: str) -> logging.Logger:
    """Return the logger ``name`` writing to the console and the rotating file.

    Handlers are attached once; later calls for the same name hand back the
    configured logger unchanged.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    directory = os.path.dirname(LOG_FILE)
    if directory:
        os.makedirs(directory, exist_ok=True)
    # Keep the last 5 files of ~1MB each
    logger.addHandler(_handler(RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5)))
    logger.addHandler(_handler(logging.StreamHandler()))
    return logger
