"""Configuration loading for nephsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Largest page the replication endpoint ever returns
MAX_PAGE_SIZE = 1000


@dataclass
class DeviceConfig:
    name: str = "nephsync-device"


@dataclass
class StoreConfig:
    """Configuration for the local record store."""

    db_path: str = "~/.nephsync/records.db"
    state_path: str = "~/.nephsync/state.json"
    fallback_max_entries: int = 500


@dataclass
class SyncConfig:
    """Configuration for the client sync engine."""

    enabled: bool = True
    server_url: str = ""
    interval_seconds: int = 300
    debounce_seconds: float = 2.0
    batch_size: int = 50
    page_size: int = 500
    request_timeout_seconds: float = 15.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 10.0


@dataclass
class CryptoConfig:
    # Empty means the shared static salt, which keeps old blobs readable
    salt: str = ""


@dataclass
class ServerConfig:
    """Configuration for the replication endpoint."""

    host: str = "0.0.0.0"
    port: int = 8080
    db_path: str = "~/.nephsync/server.db"
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    default_page_size: int = 500
    max_page_size: int = MAX_PAGE_SIZE


@dataclass
class Config:
    device: DeviceConfig = field(default_factory=DeviceConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    crypto: CryptoConfig = field(default_factory=CryptoConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with NEPHSYNC_ prefix."""
    return os.environ.get(f"NEPHSYNC_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if name := _get_env("DEVICE_NAME"):
        config.device.name = name

    # Store overrides
    if db_path := _get_env("STORE_DB_PATH"):
        config.store.db_path = db_path
    if state_path := _get_env("STORE_STATE_PATH"):
        config.store.state_path = state_path

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = sync_enabled.lower() in ("true", "1", "yes")
    if server_url := _get_env("SYNC_SERVER_URL"):
        config.sync.server_url = server_url
    if sync_interval := _get_env("SYNC_INTERVAL"):
        config.sync.interval_seconds = int(sync_interval)

    if salt := _get_env("CRYPTO_SALT"):
        config.crypto.salt = salt

    # Server overrides
    if server_db := _get_env("SERVER_DB_PATH"):
        config.server.db_path = server_db
    if secret := _get_env("SERVER_JWT_SECRET"):
        config.server.jwt_secret = secret
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)

    return config


def _parse_section(cls: type, data: dict, current: Any) -> Any:
    """Build a config section, keeping current values for missing keys."""
    data = data or {}
    known = {
        key: data.get(key, getattr(current, key))
        for key in current.__dataclass_fields__
    }
    return cls(**known)


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "device" in data:
                config.device = _parse_section(DeviceConfig, data["device"], config.device)

            if "store" in data:
                config.store = _parse_section(StoreConfig, data["store"], config.store)

            if "sync" in data:
                config.sync = _parse_section(SyncConfig, data["sync"], config.sync)

            if "crypto" in data:
                config.crypto = _parse_section(CryptoConfig, data["crypto"], config.crypto)

            if "server" in data:
                config.server = _parse_section(ServerConfig, data["server"], config.server)

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    # Clamp the server default page size into the hard maximum
    config.server.default_page_size = min(
        config.server.default_page_size, config.server.max_page_size
    )
    # A client page larger than the server cap would look like a short last page
    config.sync.page_size = max(1, min(config.sync.page_size, MAX_PAGE_SIZE))

    return config
