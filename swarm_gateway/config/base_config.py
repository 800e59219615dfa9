"""
Configuration system for the Swarm Gateway.

Features:
- Dataclass-based configuration with type hints
- YAML file loading with environment variable interpolation
- Per-field environment defaults (SWARM_GATEWAY_*)
- Validation and defaults
"""

from __future__ import annotations

import logging
import os
import re
import threading
import typing
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from swarm_gateway.cache.units import parse_interval, parse_size

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="BaseConfig")

# Process-wide config cache used by load_config()
_config_instance: Optional["SwarmGatewayConfig"] = None
_config_lock = threading.Lock()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes", "on")


def _interpolate_env_vars(value: Any) -> Any:
    """
    Recursively interpolate environment variables in config values.

    Supports formats:
    - ${VAR_NAME} - Required, raises if not set
    - ${VAR_NAME:-default} - Optional with default
    - ${VAR_NAME:?error message} - Required with custom error
    """
    if isinstance(value, str):
        pattern = r"\$\{([A-Z_][A-Z0-9_]*)(?:(:-)([^}]*))?(?:(:\?)([^}]*))?\}"

        def replace_var(match: re.Match) -> str:
            var_name = match.group(1)
            has_default = match.group(2) is not None
            default_value = match.group(3) or ""
            has_error = match.group(4) is not None
            error_msg = match.group(5) or f"Required environment variable {var_name} is not set"

            env_value = os.environ.get(var_name)

            if env_value is not None:
                return env_value
            elif has_default:
                return default_value
            elif has_error:
                raise ValueError(error_msg)
            else:
                if match.group(0) == value:
                    raise ValueError(f"Environment variable {var_name} is not set")
                return match.group(0)

        result = re.sub(pattern, replace_var, value)

        if result.startswith("~"):
            result = str(Path(result).expanduser())

        return result

    elif isinstance(value, dict):
        return {k: _interpolate_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [_interpolate_env_vars(item) for item in value]

    return value


def _coerce_type(value: Any, target_type: Any) -> Any:
    """Coerce a value to the target type."""
    if value is None:
        return None

    origin = typing.get_origin(target_type)

    # Optional[X]
    if origin is Union:
        non_none_types = [t for t in typing.get_args(target_type) if t is not type(None)]
        if len(non_none_types) == 1:
            return _coerce_type(value, non_none_types[0])
        return value

    if target_type is Path:
        return Path(value).expanduser() if value else None

    if origin is list:
        args = typing.get_args(target_type)
        item_type = args[0] if args else str
        if isinstance(value, list):
            return [_coerce_type(item, item_type) for item in value]
        if isinstance(value, str):
            return [_coerce_type(item.strip(), item_type) for item in value.split(",") if item.strip()]
        return [_coerce_type(value, item_type)]

    if origin is dict:
        return dict(value)

    # bool("false") is True, so handle strings explicitly
    if target_type is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    if target_type is int:
        return int(float(value)) if value != "" else 0
    if target_type is float:
        return float(value) if value != "" else 0.0
    if target_type is str:
        return str(value)

    try:
        return target_type(value)
    except (TypeError, ValueError):
        return value


@dataclass
class BaseConfig:
    """
    Base configuration class with YAML loading and env var interpolation.
    """

    @classmethod
    def _field_types(cls) -> Dict[str, Any]:
        hints = typing.get_type_hints(cls)
        return {name: hints[name] for name in cls.__dataclass_fields__}

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        """Create config from dictionary with env var interpolation."""
        interpolated = _interpolate_env_vars(data)
        field_types = cls._field_types()

        # Unknown keys are ignored
        filtered = {}
        for key, value in interpolated.items():
            if key in field_types:
                filtered[key] = _coerce_type(value, field_types[key])

        return cls(**filtered)

    @classmethod
    def from_yaml(cls: Type[T], path: Union[str, Path]) -> T:
        """Load config from YAML file with env var interpolation."""
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_env(cls: Type[T], prefix: str = "") -> T:
        """Create config entirely from environment variables."""
        data = {}

        for field_info in cls.__dataclass_fields__.values():
            env_key = f"{prefix}{field_info.name}".upper()
            env_value = os.environ.get(env_key)

            if env_value is not None:
                data[field_info.name] = env_value

        return cls.from_dict(data) if data else cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        result = {}
        for key, value in asdict(self).items():
            if isinstance(value, Path):
                result[key] = str(value)
            elif isinstance(value, datetime):
                result[key] = value.isoformat()
            else:
                result[key] = value
        return result

    def merge(self: T, other: Dict[str, Any]) -> T:
        """Create new config with overrides merged in."""
        current = self.to_dict()
        interpolated = _interpolate_env_vars(other)
        current.update(interpolated)
        return self.__class__.from_dict(current)


@dataclass
class GatewayConfig(BaseConfig):
    """HTTP surface, routing and readiness settings."""

    host: str = field(
        default_factory=lambda: os.getenv("SWARM_GATEWAY_HOST", "0.0.0.0")
    )
    port: int = field(
        default_factory=lambda: int(os.getenv("SWARM_GATEWAY_PORT", "8083"))
    )
    cors_origins: List[str] = field(
        default_factory=lambda: [
            o.strip() for o in os.getenv("SWARM_GATEWAY_CORS_ORIGINS", "*").split(",") if o.strip()
        ]
    )

    # Backend addressing: <scheme>://<service name>:<backend_port>
    backend_scheme: str = field(
        default_factory=lambda: os.getenv("SWARM_GATEWAY_BACKEND_SCHEME", "http")
    )
    backend_port: int = field(
        default_factory=lambda: int(os.getenv("SWARM_GATEWAY_BACKEND_PORT", "8000"))
    )
    request_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("SWARM_GATEWAY_REQUEST_TIMEOUT", "120.0"))
    )

    # Readiness polling (bounded, capped exponential)
    readiness_attempts: int = field(
        default_factory=lambda: int(os.getenv("SWARM_GATEWAY_READINESS_ATTEMPTS", "10"))
    )
    readiness_delay_seconds: float = field(
        default_factory=lambda: float(os.getenv("SWARM_GATEWAY_READINESS_DELAY", "0.5"))
    )
    readiness_max_delay_seconds: float = field(
        default_factory=lambda: float(os.getenv("SWARM_GATEWAY_READINESS_MAX_DELAY", "5.0"))
    )
    health_timeout_seconds: float = 2.0

    # Model registry source (YAML list); built-in models when unset
    models_file: Optional[Path] = field(
        default_factory=lambda: Path(os.getenv("SWARM_GATEWAY_MODELS_FILE", "")).expanduser()
        if os.getenv("SWARM_GATEWAY_MODELS_FILE") else None
    )

    # Shutdown
    shutdown_delay_seconds: float = 0.1
    exit_on_shutdown: bool = field(
        default_factory=lambda: _env_bool("SWARM_GATEWAY_STANDALONE", "true")
    )


@dataclass
class ClusterConfig(BaseConfig):
    """Container cluster (Docker Swarm) settings."""

    swarm_name: str = field(
        default_factory=lambda: os.getenv("SWARM_GATEWAY_SWARM_NAME", "transformers-swarm")
    )
    task_history_retention_limit: int = 5
    autolock_managers: bool = True
    listen_addr: str = field(
        default_factory=lambda: os.getenv("SWARM_GATEWAY_LISTEN_ADDR", "0.0.0.0:2377")
    )
    advertise_addr: Optional[str] = field(
        default_factory=lambda: os.getenv("SWARM_GATEWAY_ADVERTISE_ADDR")
    )

    # Service discovery
    network_name: str = field(
        default_factory=lambda: os.getenv("SWARM_GATEWAY_NETWORK", "transformers-net")
    )
    managed_label: str = "com.transformers.js.managed"

    # Model services
    image_prefix: str = field(
        default_factory=lambda: os.getenv("SWARM_GATEWAY_IMAGE_PREFIX", "transformersjs")
    )
    cache_volume: str = "transformers-cache"
    cache_mount_target: str = "/cache"
    default_replicas: int = 1
    service_env: List[str] = field(
        default_factory=lambda: [
            "NODE_ENV=production",
            "HF_CACHE_DIR=/cache",
            "HF_USE_CACHE=true",
        ]
    )

    # Engine call policy: one retry after the first failure
    retry_attempts: int = 2
    retry_delay_seconds: float = 1.0

    leave_on_shutdown: bool = field(
        default_factory=lambda: _env_bool("SWARM_GATEWAY_LEAVE_ON_SHUTDOWN", "false")
    )


@dataclass
class CacheConfig(BaseConfig):
    """Tiered on-disk cache policy."""

    enabled: bool = field(
        default_factory=lambda: _env_bool("SWARM_GATEWAY_CACHE_ENABLED", "true")
    )
    root_dir: Path = field(
        default_factory=lambda: Path(
            os.getenv("CACHE_DIR", "~/.transformers-docker/cache")
        ).expanduser()
    )
    max_size: str = field(
        default_factory=lambda: os.getenv("CACHE_SIZE", "10GB")
    )
    ttl: str = field(
        default_factory=lambda: os.getenv("CACHE_TTL", "7d")
    )
    prune_interval: str = field(
        default_factory=lambda: os.getenv("PRUNE_INTERVAL", "24h")
    )
    strategy: str = "lru"
    compression_enabled: bool = True
    prune_on_start: bool = True

    # Every project directory under this root gets a .model-cache link
    consumers_root: Optional[Path] = field(
        default_factory=lambda: Path(os.getenv("CACHE_CONSUMERS_DIR", "")).expanduser()
        if os.getenv("CACHE_CONSUMERS_DIR") else None
    )

    @property
    def max_size_bytes(self) -> int:
        return parse_size(self.max_size)

    @property
    def ttl_seconds(self) -> float:
        return parse_interval(self.ttl)

    @property
    def prune_interval_seconds(self) -> float:
        return parse_interval(self.prune_interval)


_SECTIONS = ("gateway", "cluster", "cache")


@dataclass
class SwarmGatewayConfig(BaseConfig):
    """
    Master configuration combining all gateway components.
    """

    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    verbose: bool = field(
        default_factory=lambda: _env_bool("SWARM_GATEWAY_VERBOSE", "false")
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwarmGatewayConfig":
        global_settings = {k: v for k, v in data.items() if k not in _SECTIONS}
        global_settings = _interpolate_env_vars(global_settings)

        return cls(
            gateway=GatewayConfig.from_dict(data.get("gateway") or {}),
            cluster=ClusterConfig.from_dict(data.get("cluster") or {}),
            cache=CacheConfig.from_dict(data.get("cache") or {}),
            verbose=_coerce_type(global_settings.get("verbose", False), bool),
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "SwarmGatewayConfig":
        """Load full config from YAML file."""
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gateway": self.gateway.to_dict(),
            "cluster": self.cluster.to_dict(),
            "cache": self.cache.to_dict(),
            "verbose": self.verbose,
        }


def load_config(
    path: Optional[Union[str, Path]] = None,
    reload: bool = False,
) -> SwarmGatewayConfig:
    """
    Load or get cached configuration.

    Args:
        path: Path to a YAML config file. If None, uses defaults plus env.
        reload: Force reload even if cached.

    Returns:
        SwarmGatewayConfig instance.
    """
    global _config_instance

    if _config_instance is not None and not reload:
        return _config_instance

    with _config_lock:
        if _config_instance is not None and not reload:
            return _config_instance

        if path is None:
            _config_instance = SwarmGatewayConfig()
        else:
            _config_instance = SwarmGatewayConfig.from_yaml(path)

        logger.info(
            f"Configuration loaded: port={_config_instance.gateway.port}, "
            f"cache_root={_config_instance.cache.root_dir}"
        )
        return _config_instance


def get_config() -> Optional[SwarmGatewayConfig]:
    """Get cached config. Returns None if not loaded."""
    return _config_instance
