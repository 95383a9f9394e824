"""
Pytest configuration and fixtures for the NJ-Chat relay test suite.

Upstream backends are simulated with httpx.MockTransport; no network access
is needed.
"""

import pytest
import yaml

from njchat_relay.core.config_manager import ConfigManager
from njchat_relay.storage.conversation_store import ConversationStore
from tests.test_utils import FakeClock


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> ConversationStore:
    return ConversationStore(str(tmp_path / "data"))


@pytest.fixture
def config_dir(tmp_path):
    """Config directory with one backend of each protocol plus a misconfigured one."""
    directory = tmp_path / "config"
    directory.mkdir()
    (directory / "providers.yaml").write_text(yaml.safe_dump({
        "providers": {
            "ollama": {"type": "ollama", "base_url": "http://ollama.test"},
            "openai": {"type": "openai", "base_url": "http://openai.test", "api_key": "sk-test"},
            "broken": {"type": "anthropic", "base_url": "http://broken.test"},
        }
    }))
    (directory / "settings.yaml").write_text(yaml.safe_dump({
        "settings": {
            "provider": "ollama",
            "model": "llama3",
            "temperature": 0.5,
            "max_tokens": 256,
            "system": "Be brief.",
            "data_dir": str(tmp_path / "data"),
        }
    }))
    return directory


@pytest.fixture
def config_manager(config_dir, monkeypatch) -> ConfigManager:
    monkeypatch.delenv("DATA_DIR", raising=False)
    return ConfigManager(str(config_dir))
