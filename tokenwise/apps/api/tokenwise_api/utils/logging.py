"""Structured JSON logging utilities.

- JSON format for log aggregation
- Includes request_id, user_id and ledger_op from context
- Standard fields: timestamp, level, message, module, func, line

user_id and ledger_op are set inside the handler, which FastAPI may run in a
worker thread with a copied context. They therefore appear on logs emitted
during the handler (ledger.*, session.*) but not on the middleware's
http.request.completed line, which takes user_id from request.state instead.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from tokenwise_api.context import ledger_op_var, request_id_var, user_id_var
from tokenwise_api.utils.sanitize import sanitize_exc, sanitize_obj, sanitize_str

# LogRecord attributes that are never copied as extra fields
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
    }
)


class JSONFormatter(logging.Formatter):
    """JSON log formatter with request context.

    Formats log records as JSON with standard fields:
    - timestamp: ISO 8601 UTC
    - level: log level (INFO, ERROR, etc.)
    - message: log message
    - module / func / line: call site
    - request_id, user_id, ledger_op: from context variables (when set)

    Any extra={...} fields are appended after sanitization.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": sanitize_str(record.getMessage()),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }

        # Context fields are omitted (not empty) outside a request
        for key, var in (
            ("request_id", request_id_var),
            ("user_id", user_id_var),
            ("ledger_op", ledger_op_var),
        ):
            value = var.get()
            if value:
                log_data[key] = value

        if record.exc_info:
            log_data["exc_info"] = sanitize_exc(record.exc_info)

        # Add any extra fields from logger.info(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = sanitize_obj(value)

        return json.dumps(log_data, default=str)


def configure_json_logging(log_level: str = "INFO") -> None:
    """Configure root logger with JSON formatter.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
