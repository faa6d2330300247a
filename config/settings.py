"""
Configuration loader for the FlowDesk engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class EngineConfig:
    cancel_keyword: str = "0"                      # returns to the main flow from anywhere
    max_invalid_attempts: int = 3                  # wrong menu replies before escalation
    invalid_option_fallback: str = "main_flow"     # "main_flow" | "agent"
    default_flow_id: str = ""                      # main flow when no trigger matches
    default_flows: dict[str, str] = field(default_factory=dict)   # connection_id → flow_id
    default_timeout_seconds: int = 0               # for wait_for_input nodes without their own
    max_steps_per_turn: int = 50


@dataclass
class TimeoutConfig:
    fallback: str = "main_flow"                    # "main_flow" | "agent" | "end"


@dataclass
class CacheConfig:
    flow_ttl_seconds: float = 300.0


@dataclass
class MessagesConfig:
    invalid_option: str = "⚠️ Invalid option. Please reply with one of: {{valid_options}}"
    form_invalid: str = "⚠️ {{reason}}."
    action_failure: str = "Sorry, something went wrong on our side. Please try again in a moment."
    flow_not_found: str = "Sorry, we could not understand your message. Please try again later."
    timeout_notice: str = "We did not hear back from you, so we took you back to the main menu."
    goodbye: str = "Thank you for contacting us. Goodbye! 👋"
    handoff: str = "An agent will be with you shortly."


@dataclass
class FlowSourceConfig:
    source: str = "yaml"                           # "yaml" | "sql" | "rest"
    path: str = "./flows"                          # yaml file or directory


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./flowdesk.db"            # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                  # "sql" | "memory" | "file"
    store_file_dir: str = "./data"


@dataclass
class BackendConfig:
    base_url: str = ""
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 30.0


@dataclass
class Settings:
    app_name: str = "FlowDesk"
    debug: bool = False
    engine: EngineConfig = field(default_factory=EngineConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    messages: MessagesConfig = field(default_factory=MessagesConfig)
    flows: FlowSourceConfig = field(default_factory=FlowSourceConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: Optional[dict[str, Any]]):
    """Build a config dataclass from a raw mapping, ignoring unknown keys."""
    raw = raw or {}
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in raw.items() if k in known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWDESK_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "engine" in raw:
            engine = dict(raw["engine"])
            engine["default_flows"] = {str(k): str(v) for k, v in (engine.get("default_flows") or {}).items()}
            settings.engine = _section(EngineConfig, engine)
        if "timeouts" in raw:
            settings.timeouts = _section(TimeoutConfig, raw["timeouts"])
        if "cache" in raw:
            settings.cache = _section(CacheConfig, raw["cache"])
        if "messages" in raw:
            settings.messages = _section(MessagesConfig, raw["messages"])
        if "flows" in raw:
            settings.flows = _section(FlowSourceConfig, raw["flows"])
        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"])
        if "backend" in raw:
            settings.backend = _section(BackendConfig, raw["backend"])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
