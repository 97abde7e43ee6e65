import logging
import sys
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from config import Config

# Connection currently being served; each WebSocket endpoint runs in its own task
connection_id_var: ContextVar[str] = ContextVar("connection_id", default="-")


class ConnectionIdFilter(logging.Filter):
    """Stamp log records with the connection they were emitted for."""

    def filter(self, record):
        record.connection_id = connection_id_var.get()
        return True


class SafeFormatter(logging.Formatter):
    """Formatter that ensures connection_id always exists."""

    def format(self, record):
        if not hasattr(record, "connection_id"):
            record.connection_id = "-"
        return super().format(record)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None, fmt: str = Config.LOG_FORMAT):
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter = SafeFormatter(fmt)

    # Re-running setup (tests, reload) must not stack handlers
    for handler in list(root.handlers):
        if getattr(handler, "_chat_handler", False):
            root.removeHandler(handler)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(ConnectionIdFilter())
    stream_handler._chat_handler = True
    root.addHandler(stream_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(ConnectionIdFilter())
        file_handler._chat_handler = True
        root.addHandler(file_handler)

    logging.getLogger(__name__).info("Logging is set up (level=%s, file=%s)", level, log_file)
    return root
