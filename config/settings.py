"""
Configuration loader for the converse-flows engine.
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
class LLMConfig:
    provider: str = "mock"              # "anthropic" | "openai" | "mock"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 1024
    api_key: str = ""
    default_system_message: str = ""


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./converse_flows.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class HttpConfig:
    timeout_s: float = 30.0
    max_attempts: int = 1               # transport-error retries for api-call nodes
    user_agent: str = "converse-flows/1.0"


@dataclass
class EngineConfig:
    max_action_hops: int = 50           # action nodes per inbound message
    reprompt_on_no_match: bool = True
    default_button_prompt: str = "Choose an option:"
    default_text: str = "..."
    flow_cache_ttl_s: float = 30.0


@dataclass
class Settings:
    app_name: str = "ConverseFlows"
    debug: bool = False
    json_logs: bool = True
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


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


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CONVERSE_FLOWS_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.json_logs = raw.get("json_logs", settings.json_logs)

        if "llm" in raw:
            llm = raw["llm"]
            settings.llm = LLMConfig(
                provider=llm.get("provider", settings.llm.provider),
                model=llm.get("model", settings.llm.model),
                temperature=llm.get("temperature", 0.7),
                max_tokens=llm.get("max_tokens", 1024),
                api_key=llm.get("api_key", ""),
                default_system_message=llm.get("default_system_message", ""),
            )

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            )

        if "http" in raw:
            h = raw["http"]
            settings.http = HttpConfig(
                timeout_s=float(h.get("timeout_s", settings.http.timeout_s)),
                max_attempts=max(1, int(h.get("max_attempts", settings.http.max_attempts))),
                user_agent=h.get("user_agent", settings.http.user_agent),
            )

        if "engine" in raw:
            e = raw["engine"]
            settings.engine = EngineConfig(
                max_action_hops=int(e.get("max_action_hops", settings.engine.max_action_hops)),
                reprompt_on_no_match=e.get("reprompt_on_no_match", settings.engine.reprompt_on_no_match),
                default_button_prompt=e.get("default_button_prompt", settings.engine.default_button_prompt),
                default_text=e.get("default_text", settings.engine.default_text),
                flow_cache_ttl_s=float(e.get("flow_cache_ttl_s", settings.engine.flow_cache_ttl_s)),
            )

        if "channels" in raw:
            for ch_name, ch_data in (raw["channels"] or {}).items():
                settings.channels[ch_name] = ChannelConfig(
                    enabled=ch_data.get("enabled", False),
                    credentials=ch_data.get("credentials", {}),
                )

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
