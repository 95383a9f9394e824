from .conversation_store import ConversationStore, PersistedMessage, DEFAULT_CHAT_TITLE

__all__ = ["ConversationStore", "PersistedMessage", "DEFAULT_CHAT_TITLE"]
