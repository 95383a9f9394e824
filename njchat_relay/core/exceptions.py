from typing import Optional


class RelayError(Exception):
    """Base class for errors raised inside the streaming relay."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UpstreamHTTPError(RelayError):
    """Non-2xx response from a provider. Fatal to the session, never retried."""

    def __init__(self, status_code: int, body: str, provider_name: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        self.provider_name = provider_name
        super().__init__(f"Upstream error {status_code}: {body}")


class UpstreamParseError(RelayError):
    """One malformed record in the upstream stream. Skipped by the adapters."""

    def __init__(self, message: str, record: str = ""):
        self.record = record
        super().__init__(message)


class NetworkError(RelayError):
    """Connection failure or drop while talking to a provider."""

    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        self.original_exception = original_exception
        super().__init__(message)


class ChatNotFoundError(RelayError):
    """The target chat does not exist (or vanished before the append)."""

    def __init__(self, user_id: str, chat_id: str):
        self.user_id = user_id
        self.chat_id = chat_id
        super().__init__(f"Chat '{chat_id}' not found")


class MessageNotFoundError(RelayError):
    """The referenced message does not exist in the chat."""

    def __init__(self, chat_id: str, message_id: str):
        self.chat_id = chat_id
        self.message_id = message_id
        super().__init__(f"Message '{message_id}' not found in chat '{chat_id}'")
