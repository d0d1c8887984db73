"""
InboxAgent settings: one dataclass per YAML section.

Only process wiring lives here. The agent policy (response limits, lead
scoring, feature switches) lives in the store and is seeded once from
``agent_defaults``.
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
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 1024
    api_key: str = ""
    system_prompt_template: str = ""


@dataclass
class GenerationConfig:
    timeout_seconds: float = 30.0
    transcript_limit: int = 20          # most recent messages passed to the model


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./inbox_agent.db"          # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                     # "sql" | "memory"
    pool_size: int = 10
    max_overflow: int = 20
    echo: bool = False


@dataclass
class IngestionConfig:
    duplicate_window_seconds: float = 10.0    # same text + same sender inside this window is a redelivery
    max_text_length: int = 4000


@dataclass
class BatchingConfig:
    window_seconds: float = 5.0               # fixed window, measured from the first message
    sweep_interval_seconds: float = 30.0
    stale_after_seconds: Optional[float] = None   # None -> window_seconds

    @property
    def effective_stale_after(self) -> float:
        if self.stale_after_seconds is None:
            return self.window_seconds
        return self.stale_after_seconds


@dataclass
class QueueConfig:
    base_delay_ms: int = 1000
    backoff_multiplier: int = 2
    max_attempts: int = 3
    processing_timeout_seconds: float = 300.0   # claimed items older than this go back to pending
    default_ttl_seconds: Optional[float] = None  # expiresAt for new items; None = never expires


@dataclass
class SenderConfig:
    interval_seconds: float = 30.0
    batch_size: int = 10
    account_rate_per_second: float = 3.0
    account_burst: int = 3
    contact_cooldown_seconds: float = 1.0
    send_timeout_seconds: float = 15.0


@dataclass
class ChannelAccountConfig:
    channel: str = "instagram"          # "instagram" | "gmail"
    name: str = ""                      # business name shown to the model
    enabled: bool = True
    credentials: dict[str, Any] = field(default_factory=dict)
    milestone: dict[str, Any] = field(default_factory=dict)   # default for new conversations


@dataclass
class Settings:
    business_name: str = "Our business"
    llm: LLMConfig = field(default_factory=LLMConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    batching: BatchingConfig = field(default_factory=BatchingConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    sender: SenderConfig = field(default_factory=SenderConfig)
    channel_accounts: dict[str, ChannelAccountConfig] = field(default_factory=dict)
    agent_defaults: dict[str, Any] = field(default_factory=dict)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} and ${VAR_NAME:default} patterns with environment values."""
    pattern = re.compile(r'\$\{(\w+)(?::([^}]*))?\}')
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        if var_name in os.environ:
            return os.environ[var_name]
        return default if default is not None else match.group(0)
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


def _section(cls, data: Optional[dict[str, Any]]):
    """Build a config dataclass from a YAML mapping, ignoring unknown keys."""
    if not data:
        return cls()
    return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


_SECTIONS = {
    "llm": LLMConfig,
    "generation": GenerationConfig,
    "database": DatabaseConfig,
    "ingestion": IngestionConfig,
    "batching": BatchingConfig,
    "queue": QueueConfig,
    "sender": SenderConfig,
}


def settings_from_dict(raw: dict[str, Any]) -> Settings:
    """Build Settings from an already env-substituted mapping."""
    sections = {name: _section(cls, raw.get(name)) for name, cls in _SECTIONS.items()}
    accounts = {
        account_id: _section(ChannelAccountConfig, acct)
        for account_id, acct in (raw.get("channel_accounts") or {}).items()
    }
    return Settings(
        business_name=raw.get("business_name") or Settings.business_name,
        channel_accounts=accounts,
        agent_defaults=raw.get("agent_defaults") or {},
        **sections,
    )


def load_settings(config_path: str = None) -> Settings:
    """
    Load settings from YAML, substituting ${VAR} / ${VAR:default} from the
    environment. The path defaults to $INBOX_AGENT_CONFIG, then
    config/settings.yaml; a missing file yields the built-in defaults.
    """
    global _settings

    path = Path(config_path or os.environ.get("INBOX_AGENT_CONFIG")
                or Path(__file__).parent / "settings.yaml")
    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = _process_values(yaml.safe_load(f) or {})

    _settings = settings_from_dict(raw)
    return _settings


def get_settings() -> Settings:
    if _settings is None:
        return load_settings()
    return _settings
