"""
JSON-file conversation store.

Layout under data_dir:
    chats/<user_id>/index.json      chat metadata list
    chats/<user_id>/<chat_id>.json  full chat with its message log
    chats/<user_id>/settings.json   the user's saved provider and generation defaults

Every write goes to a temp file that is then renamed over the target, so a
reader never sees a half-written snapshot. There is no locking: two writers
appending to the same chat at once can lose one of the appends.
"""

import json
import os
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.exceptions import ChatNotFoundError, MessageNotFoundError
from ..core.logging import logger

DEFAULT_CHAT_TITLE = "New Chat"
FALLBACK_TITLE_LENGTH = 50
USER_SETTING_KEYS = ("provider", "baseUrl", "apiKey", "model", "temperature", "max_tokens", "system")

_SAFE_ID = re.compile(r"^[\w-]+$")
# file names inside a user directory that are not chats
_RESERVED_NAMES = {"index", "settings"}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return secrets.token_hex(12)


@dataclass
class PersistedMessage:
    id: str
    role: str
    content: str
    ts: str
    model: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id, "role": self.role, "content": self.content, "ts": self.ts}
        if self.model:
            data["model"] = self.model
        if self.usage:
            data["usage"] = self.usage
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedMessage":
        return cls(
            id=data["id"],
            role=data["role"],
            content=data.get("content", ""),
            ts=data.get("ts", ""),
            model=data.get("model"),
            usage=data.get("usage"),
        )


class ConversationStore:
    def __init__(self, data_dir: str):
        self.data_dir = data_dir

    # -- file helpers -------------------------------------------------

    def _chats_dir(self, user_id: str) -> str:
        if not _SAFE_ID.match(user_id):
            raise ValueError(f"Invalid user id: {user_id!r}")
        return os.path.join(self.data_dir, "chats", user_id)

    def _chat_file(self, user_id: str, chat_id: str) -> Optional[str]:
        if not _SAFE_ID.match(chat_id or "") or chat_id in _RESERVED_NAMES:
            return None
        return os.path.join(self._chats_dir(user_id), f"{chat_id}.json")

    def _index_file(self, user_id: str) -> str:
        return os.path.join(self._chats_dir(user_id), "index.json")

    @staticmethod
    def _read_json(path: str, fallback: Any) -> Any:
        try:
            with open(path, "r", encoding="utf-8") as f:
                content = f.read()
        except FileNotFoundError:
            return fallback
        if not content:
            return fallback
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            logger.warning(f"Corrupted store file ignored: {path}")
            return fallback

    @staticmethod
    def _write_json_atomic(path: str, data: Any):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = f"{path}.{secrets.token_hex(6)}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)

    def _load_index(self, user_id: str) -> Dict[str, Any]:
        index = self._read_json(self._index_file(user_id), {"chats": []})
        index.setdefault("chats", [])
        return index

    def _save_chat(self, user_id: str, chat: Dict[str, Any]):
        """Write the chat snapshot and mirror its metadata into the index."""
        chat["updatedAt"] = _now_iso()
        self._write_json_atomic(self._chat_file(user_id, chat["id"]), chat)

        index = self._load_index(user_id)
        for entry in index["chats"]:
            if entry.get("id") == chat["id"]:
                entry["title"] = chat.get("title", DEFAULT_CHAT_TITLE)
                entry["model"] = chat.get("model", "")
                entry["folder"] = chat.get("folder", "")
                entry["pinned"] = bool(chat.get("pinned"))
                entry["updatedAt"] = chat["updatedAt"]
        self._write_json_atomic(self._index_file(user_id), index)

    def _require_chat(self, user_id: str, chat_id: str) -> Dict[str, Any]:
        chat = self.get_chat(user_id, chat_id)
        if chat is None:
            raise ChatNotFoundError(user_id, chat_id)
        return chat

    # -- chats ----------------------------------------------------------

    def create_chat(self, user_id: str, title: str = DEFAULT_CHAT_TITLE, model: str = "",
                    system: str = "", folder: str = "", pinned: bool = False) -> Dict[str, Any]:
        chat_id = _new_id()
        now = _now_iso()
        meta = {
            "id": chat_id,
            "title": title or DEFAULT_CHAT_TITLE,
            "model": model or "",
            "createdAt": now,
            "updatedAt": now,
            "folder": folder or "",
            "pinned": bool(pinned),
        }
        index = self._load_index(user_id)
        index["chats"].append(meta)
        self._write_json_atomic(self._index_file(user_id), index)
        self._write_json_atomic(
            self._chat_file(user_id, chat_id),
            {**meta, "system": system or "", "messages": []}
        )
        logger.info("Chat created", user_id=user_id, chat_id=chat_id)
        return meta

    def list_chats(self, user_id: str) -> List[Dict[str, Any]]:
        chats = self._load_index(user_id)["chats"]
        return sorted(chats, key=lambda c: c.get("updatedAt") or "", reverse=True)

    def get_chat(self, user_id: str, chat_id: str) -> Optional[Dict[str, Any]]:
        path = self._chat_file(user_id, chat_id)
        if path is None:
            return None
        chat = self._read_json(path, None)
        if chat is not None:
            chat.setdefault("messages", [])
        return chat

    def update_chat_meta(self, user_id: str, chat_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        chat = self._require_chat(user_id, chat_id)
        for key in ("title", "model", "system", "folder"):
            if isinstance(patch.get(key), str):
                chat[key] = patch[key]
        if isinstance(patch.get("pinned"), bool):
            chat["pinned"] = patch["pinned"]
        self._save_chat(user_id, chat)
        return chat

    def delete_chat(self, user_id: str, chat_id: str) -> bool:
        index = self._load_index(user_id)
        remaining = [c for c in index["chats"] if c.get("id") != chat_id]
        if len(remaining) == len(index["chats"]):
            return False
        self._write_json_atomic(self._index_file(user_id), {"chats": remaining})
        path = self._chat_file(user_id, chat_id)
        if path and os.path.exists(path):
            os.remove(path)
        logger.info("Chat deleted", user_id=user_id, chat_id=chat_id)
        return True

    def ensure_chat_title(self, user_id: str, chat_id: str) -> Optional[str]:
        """Fallback title from the first user message when none was set."""
        chat = self.get_chat(user_id, chat_id)
        if chat is None:
            return None
        if chat.get("title") and chat["title"] != DEFAULT_CHAT_TITLE:
            return chat["title"]
        first_user = next((m for m in chat["messages"] if m.get("role") == "user"), None)
        if first_user is None:
            return chat.get("title")
        title = re.sub(r"\s+", " ", first_user.get("content", ""))[:FALLBACK_TITLE_LENGTH]
        chat["title"] = title or DEFAULT_CHAT_TITLE
        self._save_chat(user_id, chat)
        return chat["title"]

    # -- user settings --------------------------------------------------

    def _settings_file(self, user_id: str) -> str:
        return os.path.join(self._chats_dir(user_id), "settings.json")

    def get_user_settings(self, user_id: str) -> Dict[str, Any]:
        settings = self._read_json(self._settings_file(user_id), {})
        return settings if isinstance(settings, dict) else {}

    def update_user_settings(self, user_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Merge known keys into the saved settings; a None value removes the key."""
        settings = self.get_user_settings(user_id)
        changed = [key for key in USER_SETTING_KEYS if key in partial]
        for key in changed:
            if partial[key] is None:
                settings.pop(key, None)
            else:
                settings[key] = partial[key]
        self._write_json_atomic(self._settings_file(user_id), settings)
        logger.info("User settings updated", user_id=user_id, keys=changed)
        return settings

    # -- messages -------------------------------------------------------

    def read_messages(self, user_id: str, chat_id: str) -> List[Dict[str, str]]:
        """Prior messages as [{role, content}]; empty when the chat does not exist."""
        chat = self.get_chat(user_id, chat_id)
        if chat is None:
            return []
        return [{"role": m["role"], "content": m["content"]} for m in chat["messages"]]

    def append_message(self, user_id: str, chat_id: str, message: Dict[str, Any]) -> PersistedMessage:
        """
        Append one message to the chat log.

        Raises:
            ChatNotFoundError: the chat does not exist
        """
        chat = self._require_chat(user_id, chat_id)
        persisted = PersistedMessage(
            id=_new_id(),
            role=message["role"],
            content=message.get("content", ""),
            ts=_now_iso(),
            model=message.get("model") or None,
            usage=message.get("usage") or None,
        )
        chat["messages"].append(persisted.to_dict())
        self._save_chat(user_id, chat)
        logger.debug(
            f"Message appended | role={persisted.role}",
            user_id=user_id, chat_id=chat_id, message_id=persisted.id
        )
        return persisted

    def update_message(self, user_id: str, chat_id: str, message_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        chat = self._require_chat(user_id, chat_id)
        message = next((m for m in chat["messages"] if m.get("id") == message_id), None)
        if message is None:
            raise MessageNotFoundError(chat_id, message_id)
        if isinstance(patch.get("content"), str):
            message["content"] = patch["content"]
        for key in ("usage", "model"):
            if key in patch:
                message[key] = patch[key]
        self._save_chat(user_id, chat)
        return message

    def delete_message(self, user_id: str, chat_id: str, message_id: str) -> bool:
        chat = self._require_chat(user_id, chat_id)
        before = len(chat["messages"])
        chat["messages"] = [m for m in chat["messages"] if m.get("id") != message_id]
        changed = len(chat["messages"]) != before
        if changed:
            self._save_chat(user_id, chat)
        return changed
