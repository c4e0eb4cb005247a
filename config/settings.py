"""
Configuration loader for the FlowBot engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import yaml


@dataclass
class TelegramConfig:
    bot_token: str = ""
    api_base_url: str = "https://api.telegram.org"
    admin_chat_id: Optional[int] = None               # forum chat hosting the per-actor topics
    timeout_seconds: float = 30.0
    parse_mode: str = "HTML"


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./flowbot.db"                # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class FlowConfig:
    definitions_path: str = str(Path(__file__).parent / "flows.yaml")
    step_chain_limit: int = 50                         # max auto-advancing steps per inbound event


@dataclass
class Settings:
    app_name: str = "FlowBot"
    debug: bool = False
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    flows: FlowConfig = field(default_factory=FlowConfig)


_settings: Optional[Settings] = None

# ${VAR} or ${VAR:-fallback}; an unset VAR without fallback is left as written
_ENV_REF = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def _expand(value: Any) -> Any:
    """Expand env references in every string of a parsed YAML tree."""
    if isinstance(value, str):
        return _ENV_REF.sub(
            lambda m: os.environ.get(m.group(1), m.group(2) if m.group(2) is not None else m.group(0)),
            value,
        )
    if isinstance(value, dict):
        return {key: _expand(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_expand(item) for item in value]
    return value


def _optional_int(value: Any) -> Optional[int]:
    """Chat ids arrive as strings after env substitution; unresolved ${VAR} means unset."""
    if value is None or value == "":
        return None
    if isinstance(value, str) and value.startswith("${"):
        return None
    return int(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


# section → {key: coercion}; keys not listed keep the dataclass default
_SECTIONS: dict[str, tuple[type, dict[str, Callable[[Any], Any]]]] = {
    "telegram": (TelegramConfig, {
        "bot_token": str,
        "api_base_url": str,
        "admin_chat_id": _optional_int,
        "timeout_seconds": float,
        "parse_mode": str,
    }),
    "database": (DatabaseConfig, {
        "url": str,
        "store_backend": str,
        "store_file_dir": str,
    }),
    "flows": (FlowConfig, {
        "definitions_path": str,
        "step_chain_limit": int,
    }),
}


def _section(name: str, raw: dict) -> Any:
    cls, coercions = _SECTIONS[name]
    values = raw or {}
    return cls(**{key: coerce(values[key]) for key, coerce in coercions.items() if key in values})


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings from YAML (FLOWBOT_CONFIG, else config/settings.yaml); a missing file gives defaults."""
    global _settings

    if config_path is None:
        config_path = os.environ.get("FLOWBOT_CONFIG", str(Path(__file__).parent / "settings.yaml"))

    settings = Settings()
    path = Path(config_path)
    if path.exists():
        raw = _expand(yaml.safe_load(path.read_text()) or {})
        settings.app_name = str(raw.get("app_name", settings.app_name))
        settings.debug = _as_bool(raw.get("debug", settings.debug))
        for name in _SECTIONS:
            if name in raw:
                setattr(settings, name, _section(name, raw[name]))

        # Flow definitions are looked up next to the settings file
        definitions = Path(settings.flows.definitions_path)
        if not definitions.is_absolute():
            settings.flows.definitions_path = str(path.parent / definitions)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
