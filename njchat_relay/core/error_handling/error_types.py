"""
Relay error catalogue.

Each ErrorType carries its wire code, HTTP status and message template; the
detail body is always {"error": {"message", "code"}}.
"""

from enum import Enum
from typing import Dict, Any, Optional
from fastapi import status


class ErrorType(Enum):
    """(code, HTTP status, message template) triples."""

    # Validation Errors (400)
    EMPTY_CONTENT = ("empty_content", status.HTTP_400_BAD_REQUEST, "No content")
    INVALID_REQUEST_FORMAT = ("invalid_request_format", status.HTTP_400_BAD_REQUEST, "Invalid request format: {error_details}")
    NO_USER_CONTEXT = ("no_user_context", status.HTTP_400_BAD_REQUEST, "No user message context found")

    # Not Found Errors (404)
    CHAT_NOT_FOUND = ("chat_not_found", status.HTTP_404_NOT_FOUND, "Chat '{chat_id}' not found")
    MESSAGE_NOT_FOUND = ("message_not_found", status.HTTP_404_NOT_FOUND, "Message '{message_id}' not found")
    PROVIDER_NOT_FOUND = ("provider_not_found", status.HTTP_404_NOT_FOUND, "Provider '{provider_name}' is not configured")

    # Server Errors (500)
    PROVIDER_CONFIG_ERROR = ("provider_config_error", status.HTTP_500_INTERNAL_SERVER_ERROR, "Provider configuration error: {error_details}")
    INTERNAL_SERVER_ERROR = ("internal_server_error", status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error: {error_details}")

    # Bad Gateway (502)
    MODEL_DISCOVERY_ERROR = ("model_discovery_error", status.HTTP_502_BAD_GATEWAY, "Failed to fetch models from '{provider_name}': {error_details}")

    def __init__(self, code: str, status_code: int, message_template: str):
        self.code = code
        self.status_code = status_code
        self.message_template = message_template

    def format_message(self, **kwargs) -> str:
        """Template with the given fields; the raw template if any are missing."""
        try:
            return self.message_template.format(**kwargs)
        except KeyError:
            return self.message_template

    def create_error_detail(self, **kwargs) -> Dict[str, Any]:
        """Body used as HTTPException.detail."""
        return {
            "error": {
                "message": self.format_message(**kwargs),
                "code": self.code
            }
        }


class ErrorContext:
    """Identifiers of the request a relay error belongs to."""

    FIELDS = ("request_id", "user_id", "chat_id", "message_id", "provider_name")

    def __init__(
        self,
        request_id: Optional[str] = None,
        user_id: Optional[str] = None,
        chat_id: Optional[str] = None,
        message_id: Optional[str] = None,
        provider_name: Optional[str] = None,
        **additional_context
    ):
        self.request_id = request_id
        self.user_id = user_id
        self.chat_id = chat_id
        self.message_id = message_id
        self.provider_name = provider_name
        self.additional_context = additional_context

    def to_log_extra(self) -> Dict[str, Any]:
        extra: Dict[str, Any] = {"log_type": "error"}
        for field in self.FIELDS:
            value = getattr(self, field)
            if value:
                extra[field] = value
        extra.update(self.additional_context)
        return extra
