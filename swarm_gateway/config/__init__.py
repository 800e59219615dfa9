"""
Configuration module for the Swarm Gateway.

Provides dataclass-based configuration with:
- YAML file loading
- Environment variable interpolation
- Type coercion
- Sensible defaults
"""

from swarm_gateway.config.base_config import (
    BaseConfig,
    GatewayConfig,
    ClusterConfig,
    CacheConfig,
    SwarmGatewayConfig,
    load_config,
    get_config,
)

__all__ = [
    "BaseConfig",
    "GatewayConfig",
    "ClusterConfig",
    "CacheConfig",
    "SwarmGatewayConfig",
    "load_config",
    "get_config",
]
