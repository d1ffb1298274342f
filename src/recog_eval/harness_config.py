"""
Evaluation Harness Configuration

Manages loading runtime settings from environment variables and default values.
Per-dataset settings live in the evaluation config file (see eval_setting).
"""

import os
from dataclasses import dataclass, field, asdict

from recog_eval.domain.constants import (
    DEFAULT_FLUSH_INTERVAL,
    DEFAULT_LOCAL_RETRIES,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_SUMMARY_LOCK_TIMEOUT_SECONDS,
    SATURATION_MARKER,
)


def _env_int(key: str, default: int) -> int:
    """Convert an environment variable to int"""
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"The value '{val}' of environment variable '{key}' cannot be converted to an integer.")


def _env_float(key: str, default: float) -> float:
    """Convert an environment variable to float"""
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"The value '{val}' of environment variable '{key}' cannot be converted to a number.")


def _env_str(key: str, default: str) -> str:
    """Get an environment variable as a string"""
    return os.environ.get(key, default)


@dataclass
class ClientConfig:
    """Recognition gateway configuration"""
    base_url: str = "http://localhost:8080"
    timeout_seconds: float = 30.0
    saturation_marker: str = SATURATION_MARKER


@dataclass
class DispatchConfig:
    """Per-run dispatch configuration"""
    max_local_retries: int = DEFAULT_LOCAL_RETRIES
    flush_interval: int = DEFAULT_FLUSH_INTERVAL
    summary_lock_timeout_seconds: float = DEFAULT_SUMMARY_LOCK_TIMEOUT_SECONDS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"


@dataclass
class HarnessConfig:
    """Overall evaluation harness configuration"""
    client: ClientConfig = field(default_factory=ClientConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> dict:
        """Convert to dictionary format"""
        return {"harness_config": asdict(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "HarnessConfig":
        """Create from dictionary (handles presence/absence of harness_config key)"""
        config_data = data.get("harness_config", data)
        return cls(
            client=ClientConfig(**config_data.get("client", {})),
            dispatch=DispatchConfig(**config_data.get("dispatch", {})),
            logging=LoggingConfig(**config_data.get("logging", {})),
        )


def load_config() -> HarnessConfig:
    """
    Load configuration from environment variables

    Uses default values when environment variables are not set.

    Returns:
        HarnessConfig
    """
    client = ClientConfig(
        base_url=_env_str("RECOG_EVAL_BASE_URL", "http://localhost:8080"),
        timeout_seconds=_env_float("RECOG_EVAL_TIMEOUT_SECONDS", 30.0),
        saturation_marker=_env_str("RECOG_EVAL_SATURATION_MARKER", SATURATION_MARKER),
    )
    dispatch = DispatchConfig(
        max_local_retries=_env_int("RECOG_EVAL_LOCAL_RETRIES", DEFAULT_LOCAL_RETRIES),
        flush_interval=_env_int("RECOG_EVAL_FLUSH_INTERVAL", DEFAULT_FLUSH_INTERVAL),
        summary_lock_timeout_seconds=_env_float(
            "RECOG_EVAL_LOCK_TIMEOUT_SECONDS", DEFAULT_SUMMARY_LOCK_TIMEOUT_SECONDS
        ),
        max_concurrency=_env_int("RECOG_EVAL_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
    )
    logging_config = LoggingConfig(
        level=_env_str("RECOG_EVAL_LOG_LEVEL", "INFO"),
    )
    return HarnessConfig(
        client=client,
        dispatch=dispatch,
        logging=logging_config,
    )
