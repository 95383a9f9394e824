"""
Error Logging Utility

HTTP-level rejections, provider failures and failed relay sessions are logged
through here so they carry the same structured fields.
"""

from typing import Dict, Any, Optional

from .error_types import ErrorType, ErrorContext
from ..exceptions import NetworkError, RelayError, UpstreamHTTPError
from ..logging import logger
from ..logging.config import decode_unicode_escapes


class ErrorLogger:
    """Единый логгер ошибок, использующий общую систему."""

    @staticmethod
    def log_error(
        error_type: ErrorType,
        context: ErrorContext,
        original_exception: Optional[Exception] = None,
        additional_data: Optional[Dict[str, Any]] = None
    ):
        """
        Log an API error. Client errors (4xx) are warnings, server-side ones
        are errors with the traceback of the original exception.
        """
        log_extra = context.to_log_extra()
        log_extra["error_code"] = error_type.code
        log_extra["http_status_code"] = error_type.status_code
        if additional_data:
            log_extra.update(additional_data)

        format_dict = {**context.__dict__, **context.additional_context}
        log_message = error_type.format_message(**format_dict)

        if original_exception is not None:
            log_extra["original_exception"] = str(original_exception)
            log_extra["original_exception_type"] = type(original_exception).__name__

        if error_type.status_code < 500:
            logger.warning(log_message, **log_extra)
        else:
            logger.error(log_message, exc_info=original_exception is not None, **log_extra)

    @staticmethod
    def log_provider_error(
        provider_name: str,
        error_details: str,
        status_code: Optional[int],
        context: ErrorContext,
        original_exception: Optional[Exception] = None
    ):
        """Log a failed call to a backend (model listing, title completion...)."""
        decoded_error_details = decode_unicode_escapes(error_details)

        log_extra = context.to_log_extra()
        log_extra.update({
            "provider_name": provider_name,
            "provider_error_details": decoded_error_details,
            "provider_status_code": status_code,
            "error_code": "provider_error"
        })
        if original_exception is not None:
            log_extra["original_exception_type"] = type(original_exception).__name__

        status = status_code if status_code is not None else "n/a"
        logger.error(
            f"Provider '{provider_name}' failed (status {status}): {decoded_error_details}",
            exc_info=False,
            **log_extra
        )

    @staticmethod
    def log_relay_failure(error: RelayError, context: ErrorContext):
        """A streaming session ended with an error event instead of a final one."""
        log_extra = context.to_log_extra()
        log_extra["error_code"] = "relay_failed"
        log_extra["error_class"] = type(error).__name__
        if isinstance(error, UpstreamHTTPError):
            log_extra["provider_status_code"] = error.status_code
        elif isinstance(error, NetworkError) and error.original_exception is not None:
            log_extra["original_exception_type"] = type(error.original_exception).__name__

        logger.warning(f"Relay session failed: {decode_unicode_escapes(error.message)}", **log_extra)
