"""
Configuration loader for the distributed dispatch system.
Reads settings from YAML file with environment variable substitution,
and resolves ${...} property placeholders used by delays, destinations
and schedules.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from core.exceptions import ConfigurationError


MAX_SENDER_POOL_SIZE = 32


@dataclass
class DispatchConfig:
    enabled: bool = True                   # false → every dispatch runs inline (tests)
    scheduler_enabled: bool = True         # only one replica per deployment should be true
    queue: str = "${distributed.default.queue:distributed-default}"
    deadletter: str = "${distributed.default.deadletter:distributed-default-deadletter}"
    max_random_delay: int = 900            # upper bound for delay="random" and backoff
    sender_pool_size: int = 32             # TRANSIENT send workers (1–32)
    sender_queue_size: int = 10000         # pending TRANSIENT sends before dropping
    consumer_concurrency: int = 1          # concurrent deliveries per destination
    dead_letter_backoff_min: float = 30.0  # poison-pill throttle range, seconds
    dead_letter_backoff_max: float = 60.0
    handler_modules: list[str] = field(default_factory=list)  # modules exposing register_handlers()


@dataclass
class TransportConfig:
    backend: str = "memory"                # "memory" for dev/tests, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "dispatch-workers"
    stream_prefix: str = "dispatch"
    visibility_timeout: int = 900          # seconds before an unacked message is redelivered
    max_receive_count: int = 5             # primary receives before redrive to dead-letter
    delayed_promote_interval: float = 1.0  # seconds between delayed-set scans
    reclaim_interval: float = 30.0         # seconds between scans for stalled pending entries
    large_payload_threshold: int = 256 * 1024
    blob_ttl_seconds: int = 14 * 24 * 3600


@dataclass
class Settings:
    app_name: str = "DistributedDispatch"
    debug: bool = False
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    properties: dict[str, str] = field(default_factory=dict)

    def resolve(self, value: str) -> str:
        """Resolve ${name} / ${name:default} placeholders against properties."""
        return resolve_placeholders(value, self.properties)


_settings: Optional[Settings] = None

_ENV_PATTERN = re.compile(r'\$\{(\w+)\}')
_PLACEHOLDER_PATTERN = re.compile(r'\$\{([^}:]+)(?::([^}]*))?\}')


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return _ENV_PATTERN.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def flatten_properties(obj: dict[str, Any], prefix: str = "") -> dict[str, str]:
    """Flatten a nested mapping into dotted keys: {"a": {"b": 1}} → {"a.b": "1"}."""
    flat: dict[str, str] = {}
    for key, value in obj.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(flatten_properties(value, name))
        elif value is not None:
            flat[name] = str(value)
    return flat


def resolve_placeholders(value: str, properties: dict[str, str]) -> str:
    """
    Resolve ${name} and ${name:default} placeholders.

    Lookup order: properties, then the environment (dots and dashes mapped
    to underscores, upper-cased), then the inline default. A placeholder
    with none of these raises ConfigurationError.
    """
    if not isinstance(value, str) or "${" not in value:
        return value

    def replacer(match):
        name, default = match.group(1).strip(), match.group(2)
        if name in properties:
            return properties[name]
        env_name = re.sub(r'[.\-]', '_', name).upper()
        if env_name in os.environ:
            return os.environ[env_name]
        if default is not None:
            return default
        raise ConfigurationError(f"Could not resolve placeholder '{name}' in value \"{value}\"")

    return _PLACEHOLDER_PATTERN.sub(replacer, value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "DISPATCH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "dispatch" in raw:
            d = raw["dispatch"]
            defaults = DispatchConfig()
            settings.dispatch = DispatchConfig(
                enabled=_as_bool(d.get("enabled", defaults.enabled)),
                scheduler_enabled=_as_bool(d.get("scheduler_enabled", defaults.scheduler_enabled)),
                queue=d.get("queue", defaults.queue),
                deadletter=d.get("deadletter", defaults.deadletter),
                max_random_delay=int(d.get("max_random_delay", defaults.max_random_delay)),
                sender_pool_size=int(d.get("sender_pool_size", defaults.sender_pool_size)),
                sender_queue_size=int(d.get("sender_queue_size", defaults.sender_queue_size)),
                consumer_concurrency=int(d.get("consumer_concurrency", defaults.consumer_concurrency)),
                dead_letter_backoff_min=float(d.get("dead_letter_backoff_min",
                                                    defaults.dead_letter_backoff_min)),
                dead_letter_backoff_max=float(d.get("dead_letter_backoff_max",
                                                    defaults.dead_letter_backoff_max)),
                handler_modules=list(d.get("handler_modules", []) or []),
            )

        if "transport" in raw:
            t = raw["transport"]
            defaults = TransportConfig()
            settings.transport = TransportConfig(
                backend=t.get("backend", defaults.backend),
                redis_url=t.get("redis_url", defaults.redis_url),
                consumer_group=t.get("consumer_group", defaults.consumer_group),
                stream_prefix=t.get("stream_prefix", defaults.stream_prefix),
                visibility_timeout=int(t.get("visibility_timeout", defaults.visibility_timeout)),
                max_receive_count=int(t.get("max_receive_count", defaults.max_receive_count)),
                delayed_promote_interval=float(t.get("delayed_promote_interval",
                                                     defaults.delayed_promote_interval)),
                large_payload_threshold=int(t.get("large_payload_threshold",
                                                  defaults.large_payload_threshold)),
                blob_ttl_seconds=int(t.get("blob_ttl_seconds", defaults.blob_ttl_seconds)),
                reclaim_interval=float(t.get("reclaim_interval", defaults.reclaim_interval)),
            )

        settings.properties = flatten_properties(raw.get("properties", {}) or {})

    validate_settings(settings)
    _settings = settings
    return settings


def validate_settings(settings: Settings) -> None:
    """Reject values the runtime cannot honour."""
    d = settings.dispatch
    if d.max_random_delay < 1:
        raise ConfigurationError("dispatch.max_random_delay must be >= 1")
    if d.dead_letter_backoff_min < 0 or d.dead_letter_backoff_max < d.dead_letter_backoff_min:
        raise ConfigurationError("dispatch.dead_letter_backoff_min/max must form a valid range")
    if d.consumer_concurrency < 1:
        raise ConfigurationError("dispatch.consumer_concurrency must be >= 1")
    d.sender_pool_size = max(1, min(d.sender_pool_size, MAX_SENDER_POOL_SIZE))

    t = settings.transport
    if t.backend not in ("memory", "redis"):
        raise ConfigurationError(f"Unknown transport backend '{t.backend}'")
    if t.max_receive_count < 1:
        raise ConfigurationError("transport.max_receive_count must be >= 1")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
