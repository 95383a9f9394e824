"""
Background chat title generation.

After a turn completes, a short title is requested from the same provider and
model. Jobs are deduplicated per (user, chat) and never fail the caller.
"""

import asyncio
import re
from typing import Any, Dict, List, Optional, Set, Tuple

from ..core.exceptions import NetworkError, UpstreamHTTPError, UpstreamParseError
from ..core.logging import logger
from ..providers.base import BaseProvider
from ..storage.conversation_store import ConversationStore, DEFAULT_CHAT_TITLE

MAX_TITLE_LENGTH = 60
MAX_CONVERSATION_CHARS = 2400
TAIL_MESSAGES = 6
TITLE_TEMPERATURE = 0.2

TITLE_SYSTEM_PROMPT = (
    "You write concise, informative chat titles in Title Case. Use at most 6 words, "
    "no punctuation at the end, and no numbering."
)


def trim_conversation(messages: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """First user turn plus the most recent few, deduplicated and capped in size."""
    filtered = [
        m for m in messages or []
        if isinstance(m, dict) and isinstance(m.get("content"), str) and m["content"].strip()
    ]
    if not filtered:
        return []

    first_user = next((i for i, m in enumerate(filtered) if m.get("role") == "user"), None)
    head = filtered[:first_user + 1] if first_user is not None else []
    combined = head + filtered[-TAIL_MESSAGES:]

    seen: Set[Tuple[str, str]] = set()
    unique = []
    for message in combined:
        key = (message.get("role"), message["content"])
        if key in seen:
            continue
        seen.add(key)
        unique.append({"role": message.get("role"), "content": message["content"].strip()})

    used = 0
    bounded = []
    for message in unique:
        if used >= MAX_CONVERSATION_CHARS:
            break
        content = message["content"][:MAX_CONVERSATION_CHARS - used]
        bounded.append({"role": message["role"], "content": content})
        used += len(content)
    return bounded


def build_prompt(conversation: List[Dict[str, str]]) -> Optional[str]:
    if not conversation:
        return None
    return "\n".join(
        f"{'Assistant' if m['role'] == 'assistant' else 'User'}: {m['content']}"
        for m in conversation
    )


def clean_title(raw: Optional[str]) -> Optional[str]:
    """Normalize a model reply into a single-line title, or None if nothing is left."""
    if not raw:
        return None
    title = re.split(r"\r?\n", str(raw))[0]
    title = re.sub(r"[\"'“”`]", "", title).strip()
    title = re.sub(r"^Title:?\s*", "", title, flags=re.IGNORECASE)
    title = re.sub(r"[:;.,!?]+$", "", title)
    title = re.sub(r"\s+", " ", title)
    if len(title) > MAX_TITLE_LENGTH:
        title = title[:MAX_TITLE_LENGTH].strip()
    return title or None


class TitleJobRegistry:
    """In-flight title jobs keyed by (user_id, chat_id)."""

    def __init__(self):
        self._active: Set[Tuple[str, str]] = set()

    def try_acquire(self, key: Tuple[str, str]) -> bool:
        if key in self._active:
            return False
        self._active.add(key)
        return True

    def release(self, key: Tuple[str, str]):
        self._active.discard(key)

    def __contains__(self, key) -> bool:
        return key in self._active

    def __len__(self) -> int:
        return len(self._active)


class TitleService:
    def __init__(self, store: ConversationStore, registry: Optional[TitleJobRegistry] = None):
        self.store = store
        self.registry = registry or TitleJobRegistry()
        # strong refs so pending jobs are not garbage collected
        self._tasks: Set[asyncio.Task] = set()

    async def generate_title(self, provider: BaseProvider, model: str,
                             messages: List[Dict[str, Any]]) -> Optional[str]:
        if not model:
            return None
        conversation = trim_conversation(messages)
        if not conversation:
            return None

        first_assistant = next((i for i, m in enumerate(conversation) if m["role"] == "assistant"), None)
        focus = conversation[:first_assistant + 1] if first_assistant is not None else conversation[:2]
        prompt = build_prompt(focus)
        if not prompt:
            return None

        llm_messages = [
            {"role": "system", "content": TITLE_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    "Use the assistant's first reply to craft a short title.\n\n"
                    f"Conversation snippet:\n{prompt}\n\nRespond with the title only."
                ),
            },
        ]
        try:
            raw = await provider.complete(
                model, llm_messages,
                temperature=TITLE_TEMPERATURE,
                max_tokens=provider.title_max_tokens,
            )
        except (UpstreamHTTPError, NetworkError, UpstreamParseError) as e:
            logger.warning(f"Title generation failed: {e.message}", provider_name=provider.name, model_id=model)
            return None
        return clean_title(raw)

    def schedule(self, user_id: str, chat_id: str, provider: BaseProvider,
                 model: str) -> Optional[asyncio.Task]:
        """Start a title job unless one is already running for this chat."""
        if not user_id or not chat_id:
            return None
        key = (user_id, chat_id)
        if not self.registry.try_acquire(key):
            logger.debug("Title job already running", user_id=user_id, chat_id=chat_id)
            return None

        task = asyncio.create_task(self._run_job(key, provider, model))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_job(self, key: Tuple[str, str], provider: BaseProvider, model: str):
        user_id, chat_id = key
        try:
            chat = self.store.get_chat(user_id, chat_id)
            if chat is None:
                return
            current = chat.get("title") or ""
            if current and current != DEFAULT_CHAT_TITLE:
                return

            title = await self.generate_title(provider, model or chat.get("model", ""), chat["messages"])
            if title and title != current:
                self.store.update_chat_meta(user_id, chat_id, {"title": title})
                logger.info(f"Chat title generated: {title}", user_id=user_id, chat_id=chat_id)
            else:
                self.store.ensure_chat_title(user_id, chat_id)
        except Exception as e:
            logger.warning(f"Title job failed: {e}", user_id=user_id, chat_id=chat_id)
        finally:
            self.registry.release(key)

    async def wait_idle(self):
        """Wait for all scheduled jobs; used on shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
