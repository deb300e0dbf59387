"""
Structured JSON logging configuration.

LOG_LEVEL, LOG_FORMAT (json|text) and LOG_FILE come from AppSettings.
Module loggers (``logging.getLogger(__name__)``) propagate to the root
logger configured here.
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Extra attributes copied from log records into the JSON entry
_EXTRA_ATTRS = (
    'request_id', 'endpoint', 'method', 'status_code', 'duration_ms',
    'remote_addr', 'error_id', 'device_id',
)

# Libraries that log every request/packet at INFO
_NOISY_LOGGERS = ('aiohttp.access', 'engineio', 'socketio')


class JSONFormatter(logging.Formatter):
    """One JSON object per line, UTC timestamp with a Z suffix."""

    def format(self, record):
        entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        entry.update(
            (attr, getattr(record, attr)) for attr in _EXTRA_ATTRS if hasattr(record, attr)
        )
        return json.dumps(entry, default=str)


def _handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    log_level: str = 'INFO',
    log_format: str = 'json',
    log_file: Optional[str] = None,
) -> logging.Logger:
    """Configure the root logger and return it.

    The console gets JSON or plain text per ``log_format``; the optional
    rotating file (10MB x 5) is always JSON.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers = []

    console_formatter = JSONFormatter() if log_format == 'json' else logging.Formatter(TEXT_FORMAT)
    root.addHandler(_handler(logging.StreamHandler(), console_formatter))

    if log_file:
        rotating = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        root.addHandler(_handler(rotating, JSONFormatter()))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root
