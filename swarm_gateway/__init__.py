"""
Swarm Gateway - OpenAI-style gateway for models served from a container cluster

Provides:
- OpenAI-compatible model listing and completion endpoints
- Lazy, single-flight provisioning of one cluster service per model
- Idempotent Docker Swarm activation, overlay networking and teardown
- Shared on-disk model and image-layer caches with TTL / size eviction
- Structured logging with request correlation
"""

__version__ = "1.0.0"

# Errors
from swarm_gateway.errors import (
    GatewayError,
    ValidationError,
    NotFoundError,
    ModelNotFoundError,
    BackendUnavailableError,
    ClusterError,
    ClusterAlreadyActiveError,
    CacheError,
)

# Configuration
from swarm_gateway.config import (
    SwarmGatewayConfig,
    GatewayConfig,
    ClusterConfig,
    CacheConfig,
    load_config,
)

# Cache
from swarm_gateway.cache import (
    CacheEngine,
    CacheKind,
    PruneScheduler,
)

# Cluster
from swarm_gateway.cluster import (
    ClusterClient,
    ClusterLifecycleManager,
    DockerSwarmClient,
    ServiceSpec,
)

# Gateway
from swarm_gateway.api import (
    Gateway,
    GatewayContext,
    ModelRegistry,
    create_app,
    derive_service_name,
)

__all__ = [
    "__version__",
    # Errors
    "GatewayError",
    "ValidationError",
    "NotFoundError",
    "ModelNotFoundError",
    "BackendUnavailableError",
    "ClusterError",
    "ClusterAlreadyActiveError",
    "CacheError",
    # Configuration
    "SwarmGatewayConfig",
    "GatewayConfig",
    "ClusterConfig",
    "CacheConfig",
    "load_config",
    # Cache
    "CacheEngine",
    "CacheKind",
    "PruneScheduler",
    # Cluster
    "ClusterClient",
    "ClusterLifecycleManager",
    "DockerSwarmClient",
    "ServiceSpec",
    # Gateway
    "Gateway",
    "GatewayContext",
    "ModelRegistry",
    "create_app",
    "derive_service_name",
]
