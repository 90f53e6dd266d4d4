import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

# Configure logging levels
LOG_LEVEL_STR = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_LEVEL = getattr(logging, LOG_LEVEL_STR, logging.INFO)

NOISY_LOGGERS = ("httpcore", "httpx", "sqlalchemy.engine", "alembic.runtime.migration")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line; structured context travels in ``extra={"data": ...}``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_record: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "request_id"):
            log_record["request_id"] = record.request_id  # type: ignore[attr-defined]

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "data"):
            log_record["data"] = record.data  # type: ignore[attr-defined]

        return json.dumps(log_record, default=str)


def setup_logging(level: int | None = None) -> logging.Logger:
    """
    Configures the root logger to use JSON formatting on stdout.
    """
    logger = logging.getLogger()
    logger.setLevel(level if level is not None else LOG_LEVEL)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    # Replace handlers so uvicorn's default config does not double-log
    logger.handlers = []
    logger.addHandler(handler)

    logging.getLogger("uvicorn.access").disabled = True

    for noisy_logger in NOISY_LOGGERS:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    return logger
