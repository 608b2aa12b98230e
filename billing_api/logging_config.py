"""Structured logging: JSON output, correlation ids and secret redaction."""

import logging
import sys
from contextvars import ContextVar
from typing import Optional

from pythonjsonlogger.json import JsonFormatter

SERVICE_NAME = "billing-api"

# Set per request by CorrelationIdMiddleware
correlation_id: ContextVar[str] = ContextVar("correlation_id", default="-")

# Extra fields that must never reach a log sink
REDACTED_FIELDS = frozenset({"signature", "contract_signature", "contract_signature_encrypted", "session_token"})
REDACTED = "[redacted]"

JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(correlation_id)s %(message)s"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s"

_FIELD_RENAMES = {"asctime": "timestamp", "levelname": "level"}


class CorrelationIdFilter(logging.Filter):
    """Stamp each record with the current request's correlation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get()
        return True


class RedactionFilter(logging.Filter):
    """Replace contract signatures and session tokens passed via ``extra``."""

    def filter(self, record: logging.LogRecord) -> bool:
        for field in REDACTED_FIELDS:
            if hasattr(record, field):
                setattr(record, field, REDACTED)
        return True


class CustomJsonFormatter(JsonFormatter):
    """JSON formatter using the field names our log pipeline indexes on."""

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict,
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        for old, new in _FIELD_RENAMES.items():
            if old in log_record:
                log_record[new] = log_record.pop(old)

        log_record.setdefault("correlation_id", correlation_id.get())
        log_record.setdefault("service", SERVICE_NAME)

        # Records that bypassed the handler filter still must not leak secrets
        for key in REDACTED_FIELDS.intersection(log_record):
            log_record[key] = REDACTED


def _formatter(json_format: bool) -> logging.Formatter:
    if json_format:
        return CustomJsonFormatter(fmt=JSON_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S.%fZ")
    return logging.Formatter(fmt=TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    logger_name: Optional[str] = None,
) -> None:
    """
    Configure logging for the service.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: JSON lines when True, human-readable text otherwise
        logger_name: Configure only this logger instead of the root logger
    """
    level = log_level.upper()
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_formatter(json_format))
    handler.addFilter(CorrelationIdFilter())
    handler.addFilter(RedactionFilter())
    logger.addHandler(handler)

    if logger_name:
        logger.propagate = False

    # httpx logs every gateway request line at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
