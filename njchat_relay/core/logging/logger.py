"""
Thin wrapper over the relay's stdlib logger.

Keyword arguments become structured `extra` fields on the log record; the
formatter prints the relay context ones (session_id, chat_id...) inline.
"""

import json
import logging
from typing import Any, Dict

from .config import setup_logging

# LogRecord attributes that may not be overwritten through `extra`
_RESERVED = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class Logger:
    """
    Project-wide logger.

    Full payload dumps (debug_data, stream_event) are only produced when
    LOG_LEVEL=DEBUG is enabled.
    """

    def __init__(self):
        self._logger = setup_logging()

    def is_debug_enabled(self) -> bool:
        return self._logger.isEnabledFor(logging.DEBUG)

    @staticmethod
    def _extra(kwargs: Dict[str, Any]) -> Dict[str, Any]:
        return {(f"field_{k}" if k in _RESERVED else k): v for k, v in kwargs.items()}

    def info(self, message: str, /, **kwargs):
        self._logger.info(message, extra=self._extra(kwargs))

    def debug(self, message: str, /, **kwargs):
        self._logger.debug(message, extra=self._extra(kwargs))

    def warning(self, message: str, /, **kwargs):
        self._logger.warning(message, extra=self._extra(kwargs))

    def error(self, message: str, /, exc_info: bool = True, **kwargs):
        """Log an error, with the active traceback unless exc_info=False."""
        self._logger.error(message, extra=self._extra(kwargs), exc_info=exc_info)

    def request(self, operation: str, request_id: str, **kwargs):
        """Incoming HTTP request."""
        parts = [f"Request: {operation}"]
        if "method" in kwargs and "path" in kwargs:
            parts.append(f"{kwargs['method']} {kwargs['path']}")
        self.info(" | ".join(parts), request_id=request_id, log_type="request", **kwargs)

    def response(self, operation: str, request_id: str, status_code: int = 200, **kwargs):
        """Outgoing HTTP response."""
        parts = [f"Response: {operation}", f"status={status_code}"]
        if "processing_time_ms" in kwargs:
            parts.append(f"time={kwargs['processing_time_ms']}ms")
        self.info(" | ".join(parts), request_id=request_id, status_code=status_code,
                  log_type="response", **kwargs)

    def debug_data(self, title: str, data: Any, request_id: str, **kwargs):
        """Pretty-printed payload dump at DEBUG level."""
        if not self.is_debug_enabled():
            return

        if isinstance(data, (dict, list)):
            data_str = json.dumps(data, indent=2, ensure_ascii=False, default=str)
        else:
            data_str = str(data)

        message = f"DEBUG: {title}"
        if "component" in kwargs:
            message += f" | component={kwargs['component']}"
        if "data_flow" in kwargs:
            message += f" | flow={kwargs['data_flow']}"

        self.debug(f"{message}\n{data_str}", request_id=request_id, **kwargs)

    def stream_event(self, session_id: str, event: str, data: Dict[str, Any]):
        """One outbound SSE event, at DEBUG level only."""
        if not self.is_debug_enabled():
            return
        self.debug(f"SSE {event}: {json.dumps(data, ensure_ascii=False)}",
                   session_id=session_id, log_type="stream_event")
