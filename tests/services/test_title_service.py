import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from njchat_relay.core.exceptions import NetworkError
from njchat_relay.services.title_service import (
    MAX_CONVERSATION_CHARS,
    TitleJobRegistry,
    TitleService,
    clean_title,
    trim_conversation,
)
from njchat_relay.storage import DEFAULT_CHAT_TITLE


def _provider(reply="Weekend Trip Planning", max_tokens=32):
    provider = MagicMock()
    provider.name = "test"
    provider.title_max_tokens = max_tokens
    provider.complete = AsyncMock(return_value=reply)
    return provider


class TestTrimConversation:

    def test_first_user_turn_and_recent_tail(self):
        messages = [{"role": "user" if i % 2 == 0 else "assistant", "content": f"m{i}"} for i in range(12)]

        trimmed = trim_conversation(messages)

        assert [m["content"] for m in trimmed] == ["m0", "m6", "m7", "m8", "m9", "m10", "m11"]

    def test_duplicates_and_blank_messages_dropped(self):
        messages = [
            {"role": "user", "content": "  hello  "},
            {"role": "assistant", "content": "   "},
            {"role": "assistant", "content": "hi"},
        ]

        assert trim_conversation(messages) == [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi"},
        ]

    def test_character_cap(self):
        messages = [
            {"role": "user", "content": "a" * 2000},
            {"role": "assistant", "content": "b" * 2000},
        ]

        trimmed = trim_conversation(messages)

        assert sum(len(m["content"]) for m in trimmed) == MAX_CONVERSATION_CHARS
        assert trimmed[1]["content"] == "b" * 400

    def test_empty(self):
        assert trim_conversation([]) == []
        assert trim_conversation(None) == []


class TestCleanTitle:

    @pytest.mark.parametrize("raw,expected", [
        ('"Title: Hello World!"\nsecond line', "Hello World"),
        ("  Python   Async   Tips...", "Python Async Tips"),
        ("Lisbon: A Weekend", "Lisbon: A Weekend"),
        ("“Quoted”", "Quoted"),
        ('""', None),
        ("", None),
        (None, None),
    ])
    def test_cleanup(self, raw, expected):
        assert clean_title(raw) == expected

    def test_length_cap(self):
        assert len(clean_title("word " * 30)) <= 60


class TestTitleJobRegistry:

    def test_acquire_once(self):
        registry = TitleJobRegistry()
        assert registry.try_acquire(("u", "c"))
        assert not registry.try_acquire(("u", "c"))
        assert ("u", "c") in registry

        registry.release(("u", "c"))
        assert len(registry) == 0
        assert registry.try_acquire(("u", "c"))


class TestTitleService:

    @pytest.fixture
    def chat_id(self, store):
        chat_id = store.create_chat("u1")["id"]
        store.append_message("u1", chat_id, {"role": "user", "content": "Plan a weekend in Lisbon"})
        store.append_message("u1", chat_id, {"role": "assistant", "content": "Sure, here is a plan"})
        return chat_id

    @pytest.mark.asyncio
    async def test_generate_title_request(self):
        provider = _provider(reply='"Lisbon Weekend"', max_tokens=64)
        service = TitleService(MagicMock())

        title = await service.generate_title(provider, "llama3", [
            {"role": "user", "content": "Plan a weekend in Lisbon"},
            {"role": "assistant", "content": "Sure"},
        ])

        assert title == "Lisbon Weekend"
        args, kwargs = provider.complete.call_args
        assert args[0] == "llama3"
        assert args[1][0]["role"] == "system"
        assert "User: Plan a weekend in Lisbon\nAssistant: Sure" in args[1][1]["content"]
        assert kwargs == {"temperature": 0.2, "max_tokens": 64}

    @pytest.mark.asyncio
    async def test_generate_title_needs_model(self):
        provider = _provider()
        assert await TitleService(MagicMock()).generate_title(provider, "", [{"role": "user", "content": "x"}]) is None
        provider.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_job_sets_title(self, store, chat_id):
        service = TitleService(store)

        task = service.schedule("u1", chat_id, _provider(), "llama3")
        await task

        assert store.get_chat("u1", chat_id)["title"] == "Weekend Trip Planning"
        assert len(service.registry) == 0

    @pytest.mark.asyncio
    async def test_duplicate_schedule_is_noop(self, store, chat_id):
        service = TitleService(store)
        provider = _provider()

        first = service.schedule("u1", chat_id, provider, "llama3")
        second = service.schedule("u1", chat_id, provider, "llama3")
        await first

        assert second is None
        provider.complete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_existing_title_is_kept(self, store, chat_id):
        store.update_chat_meta("u1", chat_id, {"title": "My own title"})
        provider = _provider()

        await TitleService(store).schedule("u1", chat_id, provider, "llama3")

        provider.complete.assert_not_called()
        assert store.get_chat("u1", chat_id)["title"] == "My own title"

    @pytest.mark.asyncio
    async def test_failure_falls_back_to_first_message(self, store, chat_id):
        provider = _provider()
        provider.complete = AsyncMock(side_effect=NetworkError("connection refused"))

        await TitleService(store).schedule("u1", chat_id, provider, "llama3")

        assert store.get_chat("u1", chat_id)["title"] == "Plan a weekend in Lisbon"

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_swallowed(self, store, chat_id):
        provider = _provider()
        provider.complete = AsyncMock(side_effect=RuntimeError("bug"))
        service = TitleService(store)

        await service.schedule("u1", chat_id, provider, "llama3")

        assert len(service.registry) == 0
        assert store.get_chat("u1", chat_id)["title"] == DEFAULT_CHAT_TITLE

    @pytest.mark.asyncio
    async def test_wait_idle(self, store, chat_id):
        service = TitleService(store)
        gate = asyncio.Event()

        async def slow_complete(*args, **kwargs):
            await gate.wait()
            return "Slow Title"

        provider = _provider()
        provider.complete = slow_complete
        service.schedule("u1", chat_id, provider, "llama3")

        gate.set()
        await service.wait_idle()

        assert store.get_chat("u1", chat_id)["title"] == "Slow Title"
