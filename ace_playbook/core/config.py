"""Configuration loader for the playbook store.

Loads from configs/default.toml (built-in defaults when the file is absent)
and overrides with environment variables.
"""

import os
import tomllib
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

T = TypeVar("T")

DEFAULTS: dict[str, dict[str, Any]] = {
    "storage": {"base_dir": "~/.ace-playbook", "max_bullets": 500, "keep_ratio": 0.7},
    "index": {"hot_cache_size": 100, "half_life_days": 14.0, "default_limit": 10},
    "refine": {
        "dedup_threshold": 0.85,
        "stale_days": 30,
        "max_failure_rate": 0.7,
        "protect_recent_days": 7,
        "protect_success_rate": 0.8,
        "protect_importance": 0.8,
        "lsh_min_bucket": 200,
        "minhash_num_perm": 128,
        "lsh_threshold": 0.5,
    },
    "optimizer": {"enabled": True, "interval_secs": 300, "trigger_every_n_calls": 100},
    "logging": {"level": "INFO", "format": "json"},
    "mcp": {"transport": "stdio", "port": 8000},
}


@dataclass
class StorageConfig:
    base_dir: str
    max_bullets: int
    keep_ratio: float


@dataclass
class IndexConfig:
    hot_cache_size: int
    half_life_days: float
    default_limit: int


@dataclass
class RefineConfig:
    dedup_threshold: float
    stale_days: int
    max_failure_rate: float
    protect_recent_days: int
    protect_success_rate: float
    protect_importance: float
    lsh_min_bucket: int
    minhash_num_perm: int
    lsh_threshold: float


@dataclass
class OptimizerConfig:
    enabled: bool
    interval_secs: float
    trigger_every_n_calls: int


@dataclass
class LoggingConfig:
    level: str
    format: str


@dataclass
class MCPConfig:
    transport: str
    port: int


@dataclass
class PlaybookConfig:
    storage: StorageConfig
    index: IndexConfig
    refine: RefineConfig
    optimizer: OptimizerConfig
    logging: LoggingConfig
    mcp: MCPConfig


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("true", "1", "yes")


def _validate_config(config: PlaybookConfig) -> None:
    """Validate configuration values.

    Args:
        config: PlaybookConfig to validate

    Raises:
        ValueError: If validation fails
    """
    if config.storage.max_bullets < 1:
        raise ValueError(f"storage.max_bullets must be >= 1, got {config.storage.max_bullets}")
    if not 0.0 < config.storage.keep_ratio <= 1.0:
        val = config.storage.keep_ratio
        raise ValueError(f"storage.keep_ratio must be in (0.0, 1.0], got {val}")

    if config.index.hot_cache_size < 1:
        raise ValueError(f"index.hot_cache_size must be >= 1, got {config.index.hot_cache_size}")
    if config.index.half_life_days <= 0:
        raise ValueError(f"index.half_life_days must be > 0, got {config.index.half_life_days}")
    if config.index.default_limit < 1:
        raise ValueError(f"index.default_limit must be >= 1, got {config.index.default_limit}")

    # Ratios and thresholds
    for name in (
        "dedup_threshold",
        "max_failure_rate",
        "protect_success_rate",
        "protect_importance",
        "lsh_threshold",
    ):
        val = getattr(config.refine, name)
        if not 0.0 <= val <= 1.0:
            raise ValueError(f"refine.{name} must be in [0.0, 1.0], got {val}")
    if config.refine.stale_days < 0 or config.refine.protect_recent_days < 0:
        raise ValueError("refine.stale_days and refine.protect_recent_days must be >= 0")
    if config.refine.minhash_num_perm < 16:
        val = config.refine.minhash_num_perm
        raise ValueError(f"refine.minhash_num_perm must be >= 16, got {val}")

    if config.optimizer.interval_secs <= 0:
        val = config.optimizer.interval_secs
        raise ValueError(f"optimizer.interval_secs must be > 0, got {val}")
    if config.optimizer.trigger_every_n_calls < 0:
        val = config.optimizer.trigger_every_n_calls
        raise ValueError(f"optimizer.trigger_every_n_calls must be >= 0, got {val}")

    valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if config.logging.level.upper() not in valid_levels:
        raise ValueError(f"logging.level must be one of {valid_levels}, got {config.logging.level}")
    if config.logging.format not in {"json", "text"}:
        raise ValueError(f"logging.format must be 'json' or 'text', got {config.logging.format}")

    valid_transports = {"stdio", "http", "sse"}
    if config.mcp.transport not in valid_transports:
        msg = f"mcp.transport must be one of {valid_transports}, got {config.mcp.transport}"
        raise ValueError(msg)
    if config.mcp.port < 1 or config.mcp.port > 65535:
        raise ValueError(f"mcp.port must be in [1, 65535], got {config.mcp.port}")


def load_config(config_path: Path | None = None) -> PlaybookConfig:
    """Load configuration from TOML file and override with env vars.

    Args:
        config_path: Path to TOML config file. Defaults to configs/default.toml

    Returns:
        PlaybookConfig instance with merged configuration

    Raises:
        ValueError: If configuration validation fails
    """
    if config_path is None:
        # Default to configs/default.toml relative to project root
        config_path = Path(__file__).parent.parent.parent / "configs" / "default.toml"

    file_dict: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "rb") as f:
            file_dict = tomllib.load(f)

    def value(section: str, key: str, env: str, cast: Callable[[Any], T]) -> T:
        default = file_dict.get(section, {}).get(key, DEFAULTS[section][key])
        return cast(os.getenv(env, default))

    config = PlaybookConfig(
        storage=StorageConfig(
            base_dir=value("storage", "base_dir", "ACE_BASE_DIR", str),
            max_bullets=value("storage", "max_bullets", "ACE_MAX_BULLETS", int),
            keep_ratio=value("storage", "keep_ratio", "ACE_KEEP_RATIO", float),
        ),
        index=IndexConfig(
            hot_cache_size=value("index", "hot_cache_size", "ACE_HOT_CACHE_SIZE", int),
            half_life_days=value("index", "half_life_days", "ACE_HALF_LIFE_DAYS", float),
            default_limit=value("index", "default_limit", "ACE_DEFAULT_LIMIT", int),
        ),
        refine=RefineConfig(
            dedup_threshold=value("refine", "dedup_threshold", "ACE_DEDUP_THRESHOLD", float),
            stale_days=value("refine", "stale_days", "ACE_STALE_DAYS", int),
            max_failure_rate=value("refine", "max_failure_rate", "ACE_MAX_FAILURE_RATE", float),
            protect_recent_days=value(
                "refine", "protect_recent_days", "ACE_PROTECT_RECENT_DAYS", int
            ),
            protect_success_rate=value(
                "refine", "protect_success_rate", "ACE_PROTECT_SUCCESS_RATE", float
            ),
            protect_importance=value(
                "refine", "protect_importance", "ACE_PROTECT_IMPORTANCE", float
            ),
            lsh_min_bucket=value("refine", "lsh_min_bucket", "ACE_LSH_MIN_BUCKET", int),
            minhash_num_perm=value("refine", "minhash_num_perm", "ACE_MINHASH_NUM_PERM", int),
            lsh_threshold=value("refine", "lsh_threshold", "ACE_LSH_THRESHOLD", float),
        ),
        optimizer=OptimizerConfig(
            enabled=value("optimizer", "enabled", "ACE_OPTIMIZER_ENABLED", _parse_bool),
            interval_secs=value(
                "optimizer", "interval_secs", "ACE_OPTIMIZER_INTERVAL_SECS", float
            ),
            trigger_every_n_calls=value(
                "optimizer", "trigger_every_n_calls", "ACE_OPTIMIZER_TRIGGER_CALLS", int
            ),
        ),
        logging=LoggingConfig(
            level=value("logging", "level", "ACE_LOG_LEVEL", str),
            format=value("logging", "format", "ACE_LOG_FORMAT", str),
        ),
        mcp=MCPConfig(
            transport=value("mcp", "transport", "MCP_TRANSPORT", str),
            port=value("mcp", "port", "MCP_PORT", int),
        ),
    )

    # Validate before returning
    _validate_config(config)

    return config


# Global config instance
_config: PlaybookConfig | None = None


def get_config() -> PlaybookConfig:
    """Get the global config instance, loading it if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config
