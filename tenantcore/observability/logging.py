"""
Structured JSON logging.
"""
import logging
import os
import sys

from pythonjsonlogger.json import JsonFormatter

from ..db.base import utcnow

SERVICE_NAME = "tenantcore"


class CustomJsonFormatter(JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = utcnow().isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = SERVICE_NAME


class StructuredLogger:
    """Logger wrapper that attaches keyword fields to the JSON record."""

    def __init__(self, name):
        self.logger = logging.getLogger(name)

    def _log(self, level, message, **kwargs):
        self.logger.log(level, message, extra=kwargs)

    def info(self, message, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def error(self, message, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def warning(self, message, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def debug(self, message, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)


def setup_logging(level: str = None):
    """Configure root logger to use structured JSON."""
    root = logging.getLogger()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s"))
    root.handlers = [handler]
    root.setLevel(logging.INFO)
    level = level or ("DEBUG" if os.getenv("DEBUG") else os.getenv("LOG_LEVEL", "INFO"))
    logging.getLogger("tenantcore").setLevel(level.upper())
    return root
