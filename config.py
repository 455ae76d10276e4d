from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SystemConfig(BaseSettings):
    version: str = Field(default="1.0")
    base_dir: Path = Field(default_factory=lambda: Path(__file__).parent)
    log_dir: Path = Field(default_factory=lambda: Path(__file__).parent / "logs")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        value = (v or "INFO").upper()
        if value not in valid_levels:
            raise ValueError(f"log_level must be one of: {sorted(valid_levels)}")
        return value


class AuthConfig(BaseSettings):
    secret_key: str = Field(default="change-me-in-env")
    algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60 * 24 * 7, ge=1)

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        value = (v or "HS256").upper()
        if not value.startswith(("HS", "RS", "ES")):
            raise ValueError("algorithm must be an HS*, RS* or ES* JWT algorithm")
        return value


class StorageConfig(BaseSettings):
    backend: str = Field(default="memory")
    mongo_uri: str = Field(default="mongodb://localhost:27017")
    database: str = Field(default="marketplace")
    server_selection_timeout_ms: int = Field(default=3000, ge=100)

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        value = (v or "memory").lower()
        if value not in {"memory", "mongo"}:
            raise ValueError("backend must be 'memory' or 'mongo'")
        return value


class GatewayConfig(BaseSettings):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    websocket_path: str = Field(default="/ws")
    cors_origins: List[str] = Field(
        default_factory=lambda: ["http://127.0.0.1:3000", "http://localhost:3000"]
    )
    event_history_size: int = Field(default=1000, ge=10)

    @field_validator("websocket_path")
    @classmethod
    def validate_websocket_path(cls, v: str) -> str:
        if not v.startswith("/"):
            return f"/{v}"
        return v


class MarketChatConfig(BaseSettings):
    system: SystemConfig = Field(default_factory=SystemConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.system.log_dir.mkdir(exist_ok=True)


def _deep_merge(target: dict, source: dict) -> dict:
    for k, v in source.items():
        if isinstance(v, dict) and isinstance(target.get(k), dict):
            _deep_merge(target[k], v)
        else:
            target[k] = v
    return target


def load_config(config_path: Optional[Path] = None) -> MarketChatConfig:
    base_from_env = MarketChatConfig()
    merged_data = base_from_env.model_dump()

    if config_path is None:
        default_path = Path("config/default.json")
        config_path = default_path if default_path.exists() else None

    if config_path and config_path.exists():
        try:
            with config_path.open("r", encoding="utf-8") as f:
                file_data = json.load(f)
            _deep_merge(merged_data, file_data)
        except Exception as e:
            print(f"Warning: failed to load {config_path}: {e}")

    # Secrets stay sourced from env/.env.
    merged_data.setdefault("auth", {})["secret_key"] = base_from_env.auth.secret_key
    merged_data.setdefault("storage", {})["mongo_uri"] = base_from_env.storage.mongo_uri

    cfg = MarketChatConfig(**merged_data)

    if cfg.auth.secret_key == "change-me-in-env":
        print("Warning: AUTH__SECRET_KEY is not configured")
        print("Set AUTH__SECRET_KEY in .env before accepting real clients")

    return cfg


config = load_config()
