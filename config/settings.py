"""
Configuration loader for the call-session core.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./callsession.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                   # "sql" | "memory"


@dataclass
class WebhookConfig:
    dedup_bucket_seconds: int = 5       # events inside one bucket share a signature
    dedup_ttl_seconds: int = 300        # how long a signature is remembered
    dedup_max_size: int = 10000


@dataclass
class InputConfig:
    default_max_retries: int = 3
    mask_char: str = "•"


@dataclass
class NotificationConfig:
    drain_interval_seconds: float = 10.0
    retry_interval_seconds: float = 300.0
    batch_size: int = 20
    retry_batch_size: int = 10
    inter_message_delay_seconds: float = 0.2
    retry_delay_seconds: float = 1.0
    max_retries: int = 3
    retry_spacing_minutes: int = 10     # eligible at created_at + retry_count * spacing


@dataclass
class Settings:
    app_name: str = "CallSession"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    input: InputConfig = field(default_factory=InputConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    delivery_channel: str = "log"       # "telegram" | "log"
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None

_ENV_REF = re.compile(r"\$\{(\w+)\}")

# YAML section name → section dataclass (same name on Settings)
_SECTIONS = {
    "database": DatabaseConfig,
    "webhooks": WebhookConfig,
    "input": InputConfig,
    "notifications": NotificationConfig,
}


def _expand_env(node: Any) -> Any:
    """${VAR} → os.environ["VAR"] in every string; unset references stay as written."""
    if isinstance(node, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), node)
    if isinstance(node, dict):
        return {key: _expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand_env(value) for value in node]
    return node


def _build_section(cls, raw: dict[str, Any]):
    """Dataclass section from YAML; unknown keys are dropped, missing keys keep defaults."""
    known = {name: value for name, value in (raw or {}).items() if name in cls.__dataclass_fields__}
    return cls(**known)


def _default_config_path() -> Path:
    return Path(os.environ.get("CALLSESSION_CONFIG") or Path(__file__).parent / "settings.yaml")


def load_settings(config_path: str = None) -> Settings:
    """Read settings from YAML (CALLSESSION_CONFIG or the bundled settings.yaml) and cache them."""
    global _settings

    path = Path(config_path) if config_path else _default_config_path()
    raw: dict[str, Any] = {}
    if path.exists():
        with path.open() as f:
            raw = _expand_env(yaml.safe_load(f) or {})

    settings = Settings()
    for name in ("app_name", "debug", "delivery_channel"):
        if name in raw:
            setattr(settings, name, raw[name])
    for name, cls in _SECTIONS.items():
        if name in raw:
            setattr(settings, name, _build_section(cls, raw[name]))
    for name, entry in (raw.get("channels") or {}).items():
        entry = entry or {}
        settings.channels[name] = ChannelConfig(
            enabled=bool(entry.get("enabled", False)),
            credentials=dict(entry.get("credentials") or {}),
        )

    _settings = settings
    return settings


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Forget cached settings; the next get_settings() reloads."""
    global _settings
    _settings = None
