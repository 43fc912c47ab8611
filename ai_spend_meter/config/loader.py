"""
Configuration management and loading.

Handles application settings, the YAML config file and environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from ai_spend_meter.core.pricing_resolver import DEFAULT_CACHE_PATH, DEFAULT_PRICING_URL, CostMode
from ai_spend_meter.storage.db import DEFAULT_DB_PATH

CONFIG_PATH_ENV = "AI_SPEND_METER_CONFIG"
ROOTS_ENV = "CLAUDE_CONFIG_DIR"

DEFAULT_ROOTS = ("~/.claude", "~/.config/claude")
PROJECTS_SUBDIR = "projects"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class StoreConfig:
    """Location of the usage store."""
    path: str = str(DEFAULT_DB_PATH)

    def __post_init__(self):
        """Validate path is set."""
        if not self.path:
            raise ValueError("store path cannot be empty")


@dataclass(frozen=True)
class WatcherConfig:
    """File watcher tuning."""
    debounce_ms: int = 500
    max_delay_seconds: float = 5.0

    def __post_init__(self):
        """Validate debounce settings."""
        if self.debounce_ms <= 0:
            raise ValueError("debounce_ms must be > 0")
        if self.max_delay_seconds * 1000 < self.debounce_ms:
            raise ValueError("max_delay_seconds must not be shorter than debounce_ms")


@dataclass(frozen=True)
class IngestionConfig:
    """Ingestion pass scheduling and cost handling."""
    poll_interval_seconds: float = 20.0
    tail_grace_seconds: float = 30.0
    cost_mode: CostMode = CostMode.AUTO

    def __post_init__(self):
        """Validate poll interval lies in the supported range."""
        if not 10 <= self.poll_interval_seconds <= 30:
            raise ValueError("poll_interval_seconds must be between 10 and 30")
        if self.tail_grace_seconds < 0:
            raise ValueError("tail_grace_seconds cannot be negative")


@dataclass(frozen=True)
class PricingConfig:
    """Pricing source, cache and refresh schedule."""
    url: str = DEFAULT_PRICING_URL
    timeout_seconds: float = 10.0
    cache_path: str = str(DEFAULT_CACHE_PATH)
    cache_expiry_hours: float = 4.0
    refresh_interval_hours: float = 4.0
    unknown_model_retry_seconds: float = 60.0

    def __post_init__(self):
        """Validate pricing values are positive."""
        if not self.url.startswith(("https://", "http://")):
            raise ValueError("pricing url must be an http(s) URL")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.cache_expiry_hours <= 0:
            raise ValueError("cache_expiry_hours must be > 0")
        if self.refresh_interval_hours <= 0:
            raise ValueError("refresh_interval_hours must be > 0")
        if self.unknown_model_retry_seconds <= 0:
            raise ValueError("unknown_model_retry_seconds must be > 0")


@dataclass(frozen=True)
class SessionConfig:
    """Session token limit and the alert thresholds applied to it."""
    token_limit: int = 1_000_000
    window_hours: float = 5.0
    warning_threshold: float = 0.7
    critical_threshold: float = 0.9

    def __post_init__(self):
        """Validate limit, window and threshold ordering."""
        if self.token_limit <= 0:
            raise ValueError("token_limit must be > 0")
        if self.window_hours <= 0:
            raise ValueError("window_hours must be > 0")
        if not 0 < self.warning_threshold < self.critical_threshold <= 1:
            raise ValueError("session thresholds must satisfy 0 < warning_threshold < critical_threshold <= 1")


@dataclass(frozen=True)
class LoggingConfig:
    """Log verbosity."""
    level: str = "INFO"

    def __post_init__(self):
        """Validate level name."""
        if self.level not in LOG_LEVELS:
            raise ValueError(f"logging level must be one of: {list(LOG_LEVELS)}")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    roots: Tuple[str, ...] = DEFAULT_ROOTS
    store: StoreConfig = field(default_factory=StoreConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        """Validate at least one root is configured."""
        if not self.roots:
            raise ValueError("at least one root directory is required")

    @property
    def root_paths(self) -> List[Path]:
        return [Path(os.path.expanduser(root)) for root in self.roots]

    @property
    def log_directories(self) -> List[str]:
        """Directories holding session logs, one per root."""
        return [str(root / PROJECTS_SUBDIR) for root in self.root_paths]

    @property
    def db_path(self) -> str:
        return os.path.expanduser(self.store.path)


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Load and validate application configuration.

    The file is taken from ``path``, then from the AI_SPEND_METER_CONFIG
    environment variable; with neither, built-in defaults apply. A non-empty
    CLAUDE_CONFIG_DIR (comma-separated) replaces the configured roots.

    Args:
        path: Path to YAML configuration file
        environ: Environment mapping, os.environ by default

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If the named config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get(CONFIG_PATH_ENV) or None

    raw_config: Dict[str, Any] = {}
    if path is not None:
        raw_config = _read_yaml(path)

    allowed_top_keys = {'roots', 'store', 'watcher', 'ingestion', 'pricing', 'session', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    roots = _parse_roots(raw_config.get('roots', list(DEFAULT_ROOTS)))
    env_roots = [r.strip() for r in environ.get(ROOTS_ENV, "").split(",") if r.strip()]
    if env_roots:
        roots = tuple(env_roots)

    store_data = _section(raw_config, 'store', {'path'})
    watcher_data = _section(raw_config, 'watcher', {'debounce_ms', 'max_delay_seconds'})
    ingestion_data = _section(raw_config, 'ingestion', {'poll_interval_seconds', 'tail_grace_seconds', 'cost_mode'})
    pricing_data = _section(raw_config, 'pricing', {
        'url', 'timeout_seconds', 'cache_path', 'cache_expiry_hours',
        'refresh_interval_hours', 'unknown_model_retry_seconds',
    })
    session_data = _section(raw_config, 'session', {
        'token_limit', 'window_hours', 'warning_threshold', 'critical_threshold',
    })
    logging_data = _section(raw_config, 'logging', {'level'})

    if 'cost_mode' in ingestion_data:
        ingestion_data['cost_mode'] = _parse_cost_mode(ingestion_data['cost_mode'])
    if 'level' in logging_data:
        if not isinstance(logging_data['level'], str):
            raise ValueError("'level' in logging must be a string")
        logging_data['level'] = logging_data['level'].upper()

    _require_str(store_data, 'path', 'store')
    for key in ('url', 'cache_path'):
        _require_str(pricing_data, key, 'pricing')
    _require_number(watcher_data, 'watcher')
    _require_number(ingestion_data, 'ingestion', skip={'cost_mode'})
    _require_number(pricing_data, 'pricing', skip={'url', 'cache_path'})
    _require_number(session_data, 'session')
    if 'token_limit' in session_data and not isinstance(session_data['token_limit'], int):
        raise ValueError("'token_limit' in session must be an integer")

    return AppConfig(
        roots=roots,
        store=StoreConfig(**store_data),
        watcher=WatcherConfig(**watcher_data),
        ingestion=IngestionConfig(**ingestion_data),
        pricing=PricingConfig(**pricing_data),
        session=SessionConfig(**session_data),
        logging=LoggingConfig(**logging_data),
    )


def default_config_yaml() -> str:
    """Render the built-in defaults as a YAML document."""
    defaults = AppConfig()
    document = {
        'roots': list(defaults.roots),
        'store': {'path': defaults.store.path},
        'watcher': {
            'debounce_ms': defaults.watcher.debounce_ms,
            'max_delay_seconds': defaults.watcher.max_delay_seconds,
        },
        'ingestion': {
            'poll_interval_seconds': defaults.ingestion.poll_interval_seconds,
            'tail_grace_seconds': defaults.ingestion.tail_grace_seconds,
            'cost_mode': defaults.ingestion.cost_mode.value,
        },
        'pricing': {
            'url': defaults.pricing.url,
            'timeout_seconds': defaults.pricing.timeout_seconds,
            'cache_path': defaults.pricing.cache_path,
            'cache_expiry_hours': defaults.pricing.cache_expiry_hours,
            'refresh_interval_hours': defaults.pricing.refresh_interval_hours,
            'unknown_model_retry_seconds': defaults.pricing.unknown_model_retry_seconds,
        },
        'session': {
            'token_limit': defaults.session.token_limit,
            'window_hours': defaults.session.window_hours,
            'warning_threshold': defaults.session.warning_threshold,
            'critical_threshold': defaults.session.critical_threshold,
        },
        'logging': {'level': defaults.logging.level},
    }
    return yaml.safe_dump(document, sort_keys=False)


def _read_yaml(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")
    return raw_config


def _section(raw_config: Dict[str, Any], name: str, allowed_keys: set) -> Dict[str, Any]:
    """Return a copy of a config section after rejecting unknown keys."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return dict(data)


def _parse_roots(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(r, str) and r for r in value):
        raise ValueError("'roots' must be a list of directory paths")
    return tuple(value)


def _parse_cost_mode(value: Any) -> CostMode:
    if not isinstance(value, str):
        raise ValueError("'cost_mode' in ingestion must be a string")
    try:
        return CostMode(value.lower())
    except ValueError:
        valid_modes = [mode.value for mode in CostMode]
        raise ValueError(f"'cost_mode' in ingestion must be one of: {valid_modes}")


def _require_str(data: Dict[str, Any], key: str, section: str) -> None:
    if key in data and not isinstance(data[key], str):
        raise ValueError(f"'{key}' in {section} must be a string")


def _require_number(data: Dict[str, Any], section: str, skip: Optional[set] = None) -> None:
    for key, value in data.items():
        if skip and key in skip:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{key}' in {section} must be a number")
