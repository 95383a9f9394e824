import httpx
from typing import Any, Dict, List, Optional, Tuple

from ...core.config_manager import ConfigManager
from ...core.error_handling import ErrorHandler, ErrorContext
from ...core.logging import logger
from ...core.models import ChatTurnRequest
from ...providers import resolve_provider
from ...providers.base import BaseProvider
from ...storage.conversation_store import ConversationStore
from ..title_service import TitleService
from .relay_session import RelaySession

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 512


class ChatRelayService:
    """
    Prepares one user turn and hands back the RelaySession that streams it.

    Everything that can be rejected up front (unknown chat or message, empty
    content, unknown provider) is raised here as HTTPException, before the
    event stream starts.
    """

    def __init__(self, config_manager: ConfigManager, httpx_client: httpx.AsyncClient,
                 store: ConversationStore, title_service: Optional[TitleService] = None):
        self.config_manager = config_manager
        self.httpx_client = httpx_client
        self.store = store
        self.title_service = title_service

    def _resolve(self, user_id: str, context: ErrorContext) -> Tuple[Dict[str, Any], BaseProvider]:
        """Effective settings for the user and the provider they select."""
        user_settings = self.store.get_user_settings(user_id)
        settings = self.config_manager.merged_settings(user_settings)
        provider_name, overrides = self.config_manager.provider_choice(user_settings)
        provider = resolve_provider(
            self.config_manager, self.httpx_client, provider_name,
            context=context, overrides=overrides
        )
        return settings, provider

    @staticmethod
    def _system_prompt(chat: Dict[str, Any], settings: Dict[str, Any]) -> str:
        return (chat.get("system") or settings.get("system") or "").strip()

    def _assemble(self, chat: Dict[str, Any], settings: Dict[str, Any],
                  history: List[Dict[str, str]]) -> List[Dict[str, str]]:
        system = self._system_prompt(chat, settings)
        messages = [{"role": "system", "content": system}] if system else []
        messages.extend(history)
        return messages

    @staticmethod
    def _pick(*values, default=None):
        """First value that is not None (explicit zeros are kept)."""
        for value in values:
            if value is not None:
                return value
        return default

    def _load_chat(self, user_id: str, chat_id: str, context: ErrorContext) -> Dict[str, Any]:
        chat = self.store.get_chat(user_id, chat_id)
        if chat is None:
            raise ErrorHandler.handle_chat_not_found(chat_id, context)
        return chat

    def _completion_hook(self, user_id: str, chat_id: str, provider: BaseProvider, model: str):
        if self.title_service is None:
            return None
        return lambda _message: self.title_service.schedule(user_id, chat_id, provider, model)

    def _build_session(self, user_id: str, chat_id: str, provider: BaseProvider,
                       request: ChatTurnRequest, user_message_id: Optional[str],
                       request_id: Optional[str]) -> RelaySession:
        return RelaySession(
            store=self.store,
            provider=provider,
            user_id=user_id,
            chat_id=chat_id,
            request=request,
            user_message_id=user_message_id,
            on_completed=self._completion_hook(user_id, chat_id, provider, request.model),
            session_id=request_id,
        )

    def send_message(self, user_id: str, chat_id: str, content: Optional[str],
                     model: Optional[str] = None, temperature: Optional[float] = None,
                     max_tokens: Optional[int] = None, request_id: Optional[str] = None) -> RelaySession:
        """
        Persist the user message and return a session that streams the reply.

        Raises:
            HTTPException: 404 unknown chat, 400 empty content, 404/500 provider problems
        """
        context = ErrorContext(request_id=request_id, user_id=user_id, chat_id=chat_id)
        chat = self._load_chat(user_id, chat_id, context)
        if not content or not isinstance(content, str):
            raise ErrorHandler.handle_empty_content(context)

        settings, provider = self._resolve(user_id, context)

        resolved_model = model or chat.get("model") or settings.get("model") or ""
        request = ChatTurnRequest(
            model=resolved_model,
            messages=self._assemble(
                chat, settings,
                self.store.read_messages(user_id, chat_id) + [{"role": "user", "content": content}]
            ),
            temperature=self._pick(temperature, settings.get("temperature"), default=DEFAULT_TEMPERATURE),
            max_tokens=self._pick(max_tokens, settings.get("max_tokens"), default=DEFAULT_MAX_TOKENS),
        )

        user_message = self.store.append_message(user_id, chat_id, {"role": "user", "content": content})
        logger.info(
            f"User turn accepted | provider={provider.name} | model={resolved_model}",
            request_id=request_id, user_id=user_id, chat_id=chat_id,
            message_id=user_message.id, history_length=len(request.messages)
        )
        return self._build_session(user_id, chat_id, provider, request, user_message.id, request_id)

    def regenerate(self, user_id: str, chat_id: str, message_id: str,
                   request_id: Optional[str] = None) -> RelaySession:
        """
        Stream a fresh assistant reply for the user turn at or before message_id.

        Raises:
            HTTPException: 404 unknown chat/message, 400 when no user turn precedes it
        """
        context = ErrorContext(request_id=request_id, user_id=user_id, chat_id=chat_id)
        chat = self._load_chat(user_id, chat_id, context)
        messages = chat["messages"]

        index = next((i for i, m in enumerate(messages) if m.get("id") == message_id), None)
        if index is None:
            raise ErrorHandler.handle_message_not_found(message_id, context)

        user_index = next((i for i in range(index, -1, -1) if messages[i].get("role") == "user"), None)
        if user_index is None:
            context.message_id = message_id
            raise ErrorHandler.handle_no_user_context(context)

        settings, provider = self._resolve(user_id, context)

        history = [{"role": m["role"], "content": m["content"]} for m in messages[:user_index + 1]]
        request = ChatTurnRequest(
            model=chat.get("model") or settings.get("model") or "",
            messages=self._assemble(chat, settings, history),
            temperature=self._pick(settings.get("temperature"), default=DEFAULT_TEMPERATURE),
            max_tokens=self._pick(settings.get("max_tokens"), default=DEFAULT_MAX_TOKENS),
        )
        logger.info(
            f"Regenerating reply | provider={provider.name} | model={request.model}",
            request_id=request_id, user_id=user_id, chat_id=chat_id,
            message_id=messages[user_index].get("id")
        )
        return self._build_session(user_id, chat_id, provider, request, None, request_id)
