"""
Cluster lifecycle management for the Swarm Gateway.

Provides:
- ClusterClient contract and the Docker Swarm binding
- ClusterLifecycleManager: idempotent activation and service CRUD
"""

from swarm_gateway.cluster.client import (
    ClusterClient,
    ClusterInfo,
    DockerSwarmClient,
    MountSpec,
    ServiceInfo,
    ServiceSpec,
    SwarmSpec,
)

from swarm_gateway.cluster.manager import (
    ClusterLifecycleManager,
    ServiceState,
)

__all__ = [
    # Engine binding
    "ClusterClient",
    "ClusterInfo",
    "DockerSwarmClient",
    "MountSpec",
    "ServiceInfo",
    "ServiceSpec",
    "SwarmSpec",
    # Manager
    "ClusterLifecycleManager",
    "ServiceState",
]
