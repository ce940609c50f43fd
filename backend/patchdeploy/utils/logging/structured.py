"""
Structured logging setup.

Development mode prints a plain one-line format; otherwise every record is
emitted as a single JSON object so log shippers can index deployment ids.
"""
import json
import logging
import os
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """
    Format log records as JSON.
    """

    def __init__(self, service_name: str, include_caller: bool = True):
        super().__init__()
        self.service_name = service_name
        self.include_caller = include_caller

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }

        if record.exc_info:
            log_data["exception"] = self._format_exception(record.exc_info)

        if self.include_caller:
            log_data["caller"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        # Fields passed via logger.info(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        return json.dumps(log_data, default=str)

    def _format_exception(self, exc_info) -> Dict[str, str]:
        exc_type, exc_value, _ = exc_info
        return {
            "type": exc_type.__name__,
            "message": str(exc_value),
            "traceback": "".join(traceback.format_exception(*exc_info)),
        }


def configure_logging(
    service_name: str = "patchdeploy",
    log_level: Optional[str] = None,
    development_mode: Optional[bool] = None,
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        service_name: Name of the service
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        development_mode: Whether to use the plain development format

    Returns:
        The root logger
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")

    if development_mode is None:
        development_mode = os.getenv("ENVIRONMENT", "development") == "development"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Remove existing handlers
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if development_mode:
        handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s'))
    else:
        handler.setFormatter(JsonFormatter(service_name))
    root.addHandler(handler)

    return root
