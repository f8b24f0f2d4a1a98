import os
from typing import Any, Dict, NamedTuple, Optional, Tuple

import yaml

from .errors import ConfigurationError

DEFAULT_SAFE_SYMBOLS = "∂∫∑∏ΔΩαβγδεθλμπρστφψω†‡§¶◊♦≈∴∵"

DEFAULT_SEARCH_TOPICS = (
    "artificial intelligence research",
    "machine learning breakthroughs",
    "quantum computing advances",
    "climate change scientific findings",
    "medical research discoveries",
    "software engineering innovations",
    "space exploration missions",
    "renewable energy developments",
    "biotechnology progress",
    "robotics automation trends",
    "cybersecurity threat analysis",
    "data science methodologies",
    "cloud computing architecture",
)

DEFAULT_SEARCH_DOMAINS = (
    "site:arxiv.org",
    "site:nature.com",
    "site:techcrunch.com",
    "site:wired.com",
    "site:mit.edu",
    "site:stanford.edu",
)


class Settings(NamedTuple):
    # discovery
    top_k: int = 10
    min_word_length: int = 3
    min_tokens: int = 2
    # generation
    max_candidates_per_word: int = 5
    baseline_pattern_weight: float = 0.5
    # validation / learning
    batch_size: int = 5
    best_examples_cap: int = 5
    safe_symbols: str = DEFAULT_SAFE_SYMBOLS
    pattern_store_path: str = ""
    # scheduler
    cycle_interval_s: float = 30.0
    ceremony_minute: int = 55
    max_pending: int = 100
    autostart: bool = True
    # resilience
    retry_max_attempts: int = 3
    retry_base_delay_s: float = 1.0
    retry_max_delay_s: float = 30.0
    breaker_threshold: int = 5
    breaker_cooldown_s: float = 300.0
    call_timeout_s: float = 20.0
    # collaborators
    tokenizer: str = "tiktoken"
    tokenizer_encoding: str = "cl100k_base"
    analytic_provider: str = "mock"
    analytic_url: str = ""
    analytic_api_key: str = ""
    analytic_model: str = "deepseek-chat"
    creative_provider: str = "mock"
    creative_url: str = ""
    creative_api_key: str = ""
    creative_model: str = "llama-3.1-8b-instant"
    text_source: str = "builtin"
    search_url: str = "https://api.search.brave.com/res/v1/web/search"
    search_api_key: str = ""
    search_topics: Tuple[str, ...] = DEFAULT_SEARCH_TOPICS
    search_domains: Tuple[str, ...] = DEFAULT_SEARCH_DOMAINS
    datastore: str = "memory"
    database_url: str = "sqlite+aiosqlite:///./compressor.db"
    broadcast_url: str = ""
    log_level: str = "INFO"


ENV_PREFIX = "COMPRESSOR_"


def _coerce(name: str, raw: Any, default: Any) -> Any:
    try:
        if isinstance(default, bool):
            if isinstance(raw, bool):
                return raw
            return str(raw).strip().lower() in ("1", "true", "yes", "on")
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if isinstance(default, tuple):
            if isinstance(raw, (list, tuple)):
                return tuple(str(v) for v in raw)
            return tuple(p.strip() for p in str(raw).split(",") if p.strip())
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from e
    return str(raw)


def load_config_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Config file is not valid YAML: {path}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file must contain a mapping: {path}")
    return data


def get_settings(config_path: Optional[str] = None) -> Settings:
    """
    Reads the optional YAML config file, then COMPRESSOR_* environment
    variables on top of it, and validates the result.
    """
    defaults = Settings()
    values: Dict[str, Any] = {}

    path = config_path or os.getenv(ENV_PREFIX + "CONFIG")
    if path:
        for key, raw in load_config_file(path).items():
            if key not in Settings._fields:
                raise ConfigurationError(f"Unknown config key: {key}")
            values[key] = _coerce(key, raw, getattr(defaults, key))

    for key in Settings._fields:
        raw = os.getenv(ENV_PREFIX + key.upper())
        if raw is not None:
            values[key] = _coerce(key, raw, getattr(defaults, key))

    settings = defaults._replace(**values)
    validate_settings(settings)
    return settings


def validate_settings(settings: Settings) -> None:
    errors = []
    if not 1 <= settings.ceremony_minute <= 59:
        errors.append("ceremony_minute must be within 1..59")
    for name in ("top_k", "batch_size", "max_candidates_per_word", "retry_max_attempts",
                 "breaker_threshold", "best_examples_cap", "max_pending"):
        if getattr(settings, name) < 1:
            errors.append(f"{name} must be positive")
    if settings.cycle_interval_s <= 0:
        errors.append("cycle_interval_s must be positive")
    if not settings.safe_symbols:
        errors.append("safe_symbols allow-list is empty")
    if settings.tokenizer not in ("tiktoken", "heuristic"):
        errors.append(f"unknown tokenizer: {settings.tokenizer}")
    if settings.datastore not in ("memory", "sql"):
        errors.append(f"unknown datastore: {settings.datastore}")
    if settings.text_source not in ("builtin", "brave"):
        errors.append(f"unknown text_source: {settings.text_source}")
    if settings.text_source == "brave" and not settings.search_api_key:
        errors.append("text_source 'brave' requires search_api_key")
    if not settings.search_topics:
        errors.append("search_topics is empty")
    for role in ("analytic", "creative"):
        kind = getattr(settings, f"{role}_provider")
        if kind not in ("mock", "openai_compat"):
            errors.append(f"unknown {role}_provider: {kind}")
        elif kind == "openai_compat":
            if not getattr(settings, f"{role}_url"):
                errors.append(f"{role}_provider 'openai_compat' requires {role}_url")
            if not getattr(settings, f"{role}_api_key"):
                errors.append(f"{role}_provider 'openai_compat' requires {role}_api_key")
    if errors:
        raise ConfigurationError("; ".join(errors))
