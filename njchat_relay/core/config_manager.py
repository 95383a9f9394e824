import yaml
import os
import asyncio
from typing import Dict, Any, Optional, Tuple
from .logging import logger


DEFAULT_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "ollama": {
        "type": "ollama",
        "base_url": "http://localhost:11434",
    },
    # LM Studio listens here by default
    "openai": {
        "type": "openai",
        "base_url": "http://localhost:1234",
        "api_key": "lm-studio",
    },
}

# settings a user may override for their own requests
USER_LAYERED_SETTINGS = ("provider", "model", "temperature", "max_tokens", "system")

DEFAULT_SETTINGS: Dict[str, Any] = {
    "provider": "openai",
    "model": "",
    "temperature": 0.7,
    "max_tokens": 512,
    "system": "",
    "data_dir": "data",
}


class ConfigManager:
    def __init__(self, config_dir: Optional[str] = None):
        self.config_dir = config_dir or os.getenv("CONFIG_DIR", "config")
        self.providers_path = os.path.join(self.config_dir, "providers.yaml")
        self.settings_path = os.path.join(self.config_dir, "settings.yaml")
        self.config = self._load_config()
        self.last_mtimes = {}
        self._initialize_mtimes()
        self._reloader_task: Optional[asyncio.Task] = None

        logger.info("Configuration manager initialized", config={
            "config_dir": self.config_dir,
            "providers_config_exists": os.path.exists(self.providers_path),
            "settings_config_exists": os.path.exists(self.settings_path),
            "providers": sorted(self.config["providers"]),
        })

    def _read_section(self, path: str, section: str) -> Dict[str, Any]:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        value = data.get(section) or {}
        if not isinstance(value, dict):
            raise ValueError(f"Top-level '{section}' in {path} must be a mapping")
        return value

    def _load_config(self) -> Dict[str, Any]:
        providers = {name: dict(cfg) for name, cfg in DEFAULT_PROVIDERS.items()}
        settings = dict(DEFAULT_SETTINGS)

        for path, section, target in (
            (self.providers_path, "providers", providers),
            (self.settings_path, "settings", settings),
        ):
            try:
                target.update(self._read_section(path, section))
            except FileNotFoundError:
                logger.debug(f"Configuration file not found, using defaults: {path}")
            except (yaml.YAMLError, ValueError) as e:
                logger.error(f"Error parsing YAML file {path}: {e}", config={
                    "error_type": "yaml_parse_error",
                    "file_path": path,
                })

        data_dir = os.getenv("DATA_DIR")
        if data_dir:
            settings["data_dir"] = data_dir

        return {"providers": providers, "settings": settings}

    @property
    def settings(self) -> Dict[str, Any]:
        return self.config["settings"]

    @property
    def data_dir(self) -> str:
        return self.settings.get("data_dir") or "data"

    @property
    def default_provider(self) -> str:
        return (self.settings.get("provider") or "openai").lower()

    def get_provider_config(self, provider_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Provider config by name; None when the provider is not configured."""
        name = provider_name or self.default_provider
        providers = self.config["providers"]
        if name not in providers:
            name = name.lower()
        provider_config = providers.get(name)
        if provider_config is None:
            return None
        return {"name": name, **provider_config}

    def merged_settings(self, user_settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Global settings with a user's saved values on top; empty values fall through."""
        merged = dict(self.settings)
        for key in USER_LAYERED_SETTINGS:
            value = (user_settings or {}).get(key)
            if value is not None and value != "":
                merged[key] = value
        return merged

    @staticmethod
    def provider_choice(user_settings: Optional[Dict[str, Any]] = None,
                        provider_name: Optional[str] = None) -> Tuple[Optional[str], Dict[str, Any]]:
        """
        Provider name and connection overrides for one request.

        A user's saved baseUrl/apiKey only apply to the provider saved next to
        them (or to the default one when none was saved); an explicitly
        requested other provider keeps its configured connection.
        """
        user_settings = user_settings or {}
        saved_provider = user_settings.get("provider") or None
        if provider_name and provider_name != saved_provider:
            return provider_name, {}
        return provider_name or saved_provider, {
            "base_url": user_settings.get("baseUrl"),
            "api_key": user_settings.get("apiKey"),
        }

    def reload_config(self):
        logger.info("Reloading configuration", config={"config_dir": self.config_dir})
        self.config = self._load_config()
        logger.info("Configuration reloaded", config={
            "providers_count": len(self.config["providers"]),
            "default_provider": self.default_provider,
        })

    def _config_files(self):
        return [self.providers_path, self.settings_path]

    def _initialize_mtimes(self):
        for fpath in self._config_files():
            try:
                self.last_mtimes[fpath] = os.path.getmtime(fpath)
            except FileNotFoundError:
                pass

    def check_for_changes(self) -> bool:
        """Reload when any config file mtime moved forward. Returns True on reload."""
        changed = False
        for fpath in self._config_files():
            try:
                mtime = os.path.getmtime(fpath)
            except FileNotFoundError:
                continue
            if fpath not in self.last_mtimes or self.last_mtimes[fpath] < mtime:
                self.last_mtimes[fpath] = mtime
                changed = True

        if changed:
            logger.debug("Configuration files changed, triggering reload")
            self.reload_config()
        return changed

    async def _reload_config_task(self, interval: float):
        while True:
            self.check_for_changes()
            await asyncio.sleep(interval)

    def start_reloader_task(self, interval: float = 5.0):
        if self._reloader_task is None or self._reloader_task.done():
            self._reloader_task = asyncio.create_task(self._reload_config_task(interval))

    async def stop_reloader_task(self):
        if self._reloader_task is not None:
            self._reloader_task.cancel()
            try:
                await self._reloader_task
            except asyncio.CancelledError:
                pass
            self._reloader_task = None
