"""
Structured JSON logging utility for the deposit relay.

Every log line is a JSON object so that correlation records can be traced
from the STK push through to the callback by grepping for a record id or a
CheckoutRequestID.
"""

import json
import logging
import sys

# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "correlation_id",
    }
)

# Fields whose values are never written to logs
_SENSITIVE_SUBSTRINGS = ("password", "token", "secret", "passkey", "authorization")


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Formats log records as JSON objects with timestamp, level, logger name,
    message, and any additional fields passed via the 'extra' parameter.
    Fields that look like credentials are redacted.
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format a log record as a JSON string.

        Args:
            record: The log record to format

        Returns:
            JSON-formatted string representation of the log record
        """
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "correlation_id"):
            log_data["correlation_id"] = record.correlation_id

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            if any(s in key.lower() for s in _SENSITIVE_SUBSTRINGS):
                log_data[key] = "***"
                continue
            log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """
    Configure application logging with JSON formatting.

    Args:
        level: The logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to INFO.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the specified name.

    Args:
        name: The name for the logger, typically __name__ of the calling module

    Returns:
        A configured logger instance

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("STK push accepted", extra={"record_id": "4b1e..."})
    """
    return logging.getLogger(name)


def mask_msisdn(msisdn: str | None) -> str:
    """
    Mask the middle digits of a phone number for logging.

    Args:
        msisdn: Phone number in any format

    Returns:
        The number with all but the first 3 and last 3 characters replaced,
        e.g. "254712345678" -> "254******678"
    """
    if not msisdn:
        return ""
    if len(msisdn) <= 6:
        return "*" * len(msisdn)
    return f"{msisdn[:3]}{'*' * (len(msisdn) - 6)}{msisdn[-3:]}"


def log_api_call(
    service: str,
    endpoint: str,
    method: str,
    status_code: int | None,
    duration_ms: float,
    error_type: str | None = None,
) -> None:
    """
    Log an outbound API call with metadata only (no bodies).

    Args:
        service: API service name (e.g. "mpesa")
        endpoint: API endpoint path
        method: HTTP method (GET, POST, etc.)
        status_code: HTTP response status code, None if no response arrived
        duration_ms: Request duration in milliseconds
        error_type: Exception type if the call failed

    Example:
        >>> log_api_call(
        ...     service="mpesa",
        ...     endpoint="/oauth/v1/generate",
        ...     method="GET",
        ...     status_code=200,
        ...     duration_ms=245.5,
        ... )
    """
    logger = get_logger(__name__)
    extra_data = {
        "service": service,
        "endpoint": endpoint,
        "method": method,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2),
    }

    if error_type:
        extra_data["error_type"] = error_type

    logger.info(f"API call to {service}", extra=extra_data)
