"""
Main Error Handler

Creates standardized HTTPExceptions with proper logging for the relay API.
"""

from typing import Optional
from fastapi import HTTPException

from .error_types import ErrorType, ErrorContext
from .error_logger import ErrorLogger


class ErrorHandler:
    """Maps relay failures to HTTPException with the shared detail shape."""

    @staticmethod
    def create_http_exception(
        error_type: ErrorType,
        context: Optional[ErrorContext] = None,
        original_exception: Optional[Exception] = None,
        log_error: bool = True,
        **format_kwargs
    ) -> HTTPException:
        """Build the exception for error_type; message fields come from context and format_kwargs."""
        if context is None:
            context = ErrorContext()

        format_dict = {**context.__dict__, **context.additional_context, **format_kwargs}
        error_detail = error_type.create_error_detail(**format_dict)

        if log_error:
            ErrorLogger.log_error(
                error_type=error_type,
                context=context,
                original_exception=original_exception,
                additional_data={"error_detail": error_detail}
            )

        return HTTPException(
            status_code=error_type.status_code,
            detail=error_detail
        )

    @staticmethod
    def handle_chat_not_found(chat_id: str, context: ErrorContext) -> HTTPException:
        context.chat_id = chat_id
        return ErrorHandler.create_http_exception(ErrorType.CHAT_NOT_FOUND, context=context)

    @staticmethod
    def handle_message_not_found(message_id: str, context: ErrorContext) -> HTTPException:
        context.message_id = message_id
        return ErrorHandler.create_http_exception(ErrorType.MESSAGE_NOT_FOUND, context=context)

    @staticmethod
    def handle_empty_content(context: ErrorContext) -> HTTPException:
        return ErrorHandler.create_http_exception(ErrorType.EMPTY_CONTENT, context=context)

    @staticmethod
    def handle_no_user_context(context: ErrorContext) -> HTTPException:
        return ErrorHandler.create_http_exception(ErrorType.NO_USER_CONTEXT, context=context)

    @staticmethod
    def handle_invalid_request(error_details: str, context: ErrorContext) -> HTTPException:
        return ErrorHandler.create_http_exception(
            ErrorType.INVALID_REQUEST_FORMAT,
            context=context,
            error_details=error_details
        )

    @staticmethod
    def handle_provider_not_found(provider_name: str, context: ErrorContext) -> HTTPException:
        context.provider_name = provider_name
        return ErrorHandler.create_http_exception(ErrorType.PROVIDER_NOT_FOUND, context=context)

    @staticmethod
    def handle_provider_config_error(
        error_details: str,
        context: ErrorContext,
        original_exception: Optional[Exception] = None
    ) -> HTTPException:
        """Provider entry exists but cannot be built."""
        return ErrorHandler.create_http_exception(
            error_type=ErrorType.PROVIDER_CONFIG_ERROR,
            context=context,
            original_exception=original_exception,
            error_details=error_details
        )

    @staticmethod
    def handle_model_discovery_error(
        provider_name: str,
        original_exception: Exception,
        context: ErrorContext
    ) -> HTTPException:
        """Upstream model listing failed; reported as 502 to the caller."""
        context.provider_name = provider_name
        ErrorLogger.log_provider_error(
            provider_name=provider_name,
            error_details=str(original_exception),
            status_code=getattr(original_exception, "status_code", None),
            context=context,
            original_exception=original_exception
        )
        return ErrorHandler.create_http_exception(
            error_type=ErrorType.MODEL_DISCOVERY_ERROR,
            context=context,
            original_exception=original_exception,
            log_error=False,
            error_details=str(original_exception)
        )

    @staticmethod
    def handle_internal_server_error(
        error_details: str,
        context: ErrorContext,
        original_exception: Optional[Exception] = None
    ) -> HTTPException:
        """Unexpected failure, reported as 500."""
        return ErrorHandler.create_http_exception(
            error_type=ErrorType.INTERNAL_SERVER_ERROR,
            context=context,
            original_exception=original_exception,
            error_details=error_details
        )
