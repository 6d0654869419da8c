"""
Configuration management for clipkeep stores.

The configuration is stored as a TOML file in the store directory.
It holds capacity and paging limits plus the embedding provider settings.
Embedding settings are process-wide and observable: components subscribe
to a SettingsManager and see changes on their next call.
"""

import logging
import os
import threading
import tomllib
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import tomli_w

logger = logging.getLogger(__name__)


CONFIG_FILENAME = "clipkeep.toml"
DATABASE_FILENAME = "clipkeep.db"
CONFIG_VERSION = 1

DEFAULT_MAX_ITEMS = 10_000_000
DEFAULT_PAGE_SIZE = 10
DEFAULT_POLL_INTERVAL = 2.0

# Provider id -> display name. The id also names the provider's embedding table.
PROVIDER_NAMES = {
    "local": "Local",
    "google": "Google",
    "openai": "OpenAI",
}

# Environment fallbacks for API keys left empty in the config file
_API_KEY_ENV = {
    "google": ("CLIPKEEP_GOOGLE_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "openai": ("CLIPKEEP_OPENAI_API_KEY", "OPENAI_API_KEY"),
}


def validate_provider(name: str) -> str:
    """Return the provider id, raising ValueError if it is unknown."""
    if name not in PROVIDER_NAMES:
        available = ", ".join(PROVIDER_NAMES)
        raise ValueError(f"Unknown embedding provider: '{name}'. Available providers: {available}.")
    return name


def _env_api_key(provider: str) -> str:
    for var in _API_KEY_ENV.get(provider, ()):
        value = os.environ.get(var)
        if value:
            return value
    return ""


@dataclass(frozen=True)
class EmbeddingSettings:
    """Provider choice plus per-provider connection fields."""
    provider: str = "local"
    local_base_url: str = "http://localhost:8080/embedding"
    google_api_key: str = ""
    google_model: str = "models/text-embedding-004"
    openai_api_key: str = ""
    openai_model: str = "text-embedding-3-small"

    def __post_init__(self):
        validate_provider(self.provider)

    @property
    def provider_display_name(self) -> str:
        return PROVIDER_NAMES[self.provider]

    def provider_params(self, provider: str | None = None) -> dict:
        """Constructor parameters for the given (default: active) provider."""
        provider = validate_provider(provider or self.provider)
        if provider == "local":
            return {"base_url": self.local_base_url}
        if provider == "google":
            return {
                "api_key": self.google_api_key or _env_api_key("google"),
                "model": self.google_model,
            }
        return {
            "api_key": self.openai_api_key or _env_api_key("openai"),
            "model": self.openai_model,
        }


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    max_items: int = DEFAULT_MAX_ITEMS
    page_size: int = DEFAULT_PAGE_SIZE
    poll_interval: float = DEFAULT_POLL_INTERVAL
    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        """Path to the SQLite database."""
        return self.path / DATABASE_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_config_dir() -> Path:
    """Store directory: CLIPKEEP_STORE_PATH, else ~/.clipkeep."""
    env = os.environ.get("CLIPKEEP_STORE_PATH")
    if env:
        return Path(env).expanduser().resolve()
    return Path.home() / ".clipkeep"


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid config {config_path}: {e}") from e

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    emb = data.get("embedding", {})
    defaults = EmbeddingSettings()
    local = emb.get("local", {})
    google = emb.get("google", {})
    openai = emb.get("openai", {})
    embedding = EmbeddingSettings(
        provider=emb.get("provider", defaults.provider),
        local_base_url=local.get("base_url", defaults.local_base_url),
        google_api_key=google.get("api_key", defaults.google_api_key),
        google_model=google.get("model", defaults.google_model),
        openai_api_key=openai.get("api_key", defaults.openai_api_key),
        openai_model=openai.get("model", defaults.openai_model),
    )

    return StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        max_items=int(store.get("max_items", DEFAULT_MAX_ITEMS)),
        page_size=int(store.get("page_size", DEFAULT_PAGE_SIZE)),
        poll_interval=float(store.get("poll_interval", DEFAULT_POLL_INTERVAL)),
        embedding=embedding,
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist. The file may hold API keys,
    so it is written owner-readable only.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    emb = config.embedding
    data = {
        "store": {
            "version": config.version,
            "created": config.created,
            "max_items": config.max_items,
            "page_size": config.page_size,
            "poll_interval": config.poll_interval,
        },
        "embedding": {
            "provider": emb.provider,
            "local": {"base_url": emb.local_base_url},
            "google": {"api_key": emb.google_api_key, "model": emb.google_model},
            "openai": {"api_key": emb.openai_api_key, "model": emb.openai_model},
        },
    }

    fd = os.open(config.config_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config


SettingsObserver = Callable[[EmbeddingSettings], None]


class SettingsManager:
    """
    Owner of the process-wide embedding settings.

    Publish-subscribe: subscribers are called with the current settings
    when they subscribe and again after every change. Changes are
    persisted to the store config when a config is attached.
    """

    def __init__(self, config: StoreConfig | None = None, *, persist: bool = True):
        self._config = config
        self._persist = persist and config is not None
        self._current = config.embedding if config is not None else EmbeddingSettings()
        self._observers: list[SettingsObserver] = []
        self._lock = threading.Lock()

    @property
    def current(self) -> EmbeddingSettings:
        with self._lock:
            return self._current

    @property
    def provider(self) -> str:
        """Active provider id."""
        return self.current.provider

    def replace(self, settings: EmbeddingSettings) -> EmbeddingSettings:
        """
        Persist new settings, install them and notify subscribers.

        If the config file cannot be written the error propagates and the
        previous settings stay in effect.
        """
        if self._persist:
            save_config(replace(self._config, embedding=settings))
        with self._lock:
            self._current = settings
            if self._config is not None:
                self._config.embedding = settings
            observers = list(self._observers)
        logger.info("Embedding settings changed: provider=%s", settings.provider)
        for observer in observers:
            try:
                observer(settings)
            except Exception as e:
                logger.warning("Settings observer failed: %s", e)
        return settings

    def update(self, **changes) -> EmbeddingSettings:
        """Change individual fields, e.g. update(provider="openai")."""
        return self.replace(replace(self.current, **changes))

    def subscribe(self, observer: SettingsObserver) -> Callable[[], None]:
        """Register an observer. Returns a function that unsubscribes it."""
        with self._lock:
            self._observers.append(observer)
            current = self._current
        observer(current)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe
