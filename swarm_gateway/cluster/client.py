"""
Container-engine binding for the Cluster Lifecycle Manager.

``ClusterClient`` is the contract the manager consumes; ``DockerSwarmClient``
implements it over the Docker Engine SDK. Every method is blocking I/O, the
manager moves calls off the event loop.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.types import Mount, ServiceMode

from swarm_gateway.errors import ClusterAlreadyActiveError, ClusterError

logger = logging.getLogger(__name__)


# =============================================================================
# DATA TYPES
# =============================================================================

@dataclass
class MountSpec:
    """A named volume mounted into every task of a service."""
    source: str
    target: str
    type: str = "volume"
    read_only: bool = False


@dataclass
class ServiceSpec:
    """Desired state for one backend service."""
    name: str
    image: str
    replicas: int = 1
    networks: List[str] = field(default_factory=list)
    env: List[str] = field(default_factory=list)
    mounts: List[MountSpec] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class ServiceInfo:
    """A service as reported by the engine."""
    name: str
    image: str = ""
    replicas: Optional[int] = None
    id: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SwarmSpec:
    """Cluster-wide settings applied at init and reconciled afterwards."""
    name: str = "transformers-swarm"
    task_history_retention_limit: int = 5
    autolock_managers: bool = True

    def needs_update(self, current: Dict[str, Any]) -> bool:
        """Compare against the engine's live spec (Docker ``Spec`` layout)."""
        orchestration = current.get("Orchestration") or {}
        encryption = current.get("EncryptionConfig") or {}
        return (
            current.get("Name") != self.name
            or orchestration.get("TaskHistoryRetentionLimit") != self.task_history_retention_limit
            or bool(encryption.get("AutoLockManagers")) != self.autolock_managers
        )


@dataclass
class ClusterInfo:
    """Cluster membership of the local engine."""
    active: bool
    id: Optional[str] = None
    node_id: Optional[str] = None
    managers: int = 0
    nodes: int = 0
    spec: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        if not self.active:
            return {"active": False}
        return {
            "active": True,
            "id": self.id,
            "node_id": self.node_id,
            "managers": self.managers,
            "nodes": self.nodes,
        }


# =============================================================================
# CONTRACT
# =============================================================================

class ClusterClient(ABC):
    """Blocking container-engine operations used by the lifecycle manager."""

    @abstractmethod
    def get_cluster_info(self) -> ClusterInfo:
        pass

    @abstractmethod
    def init_cluster(self, spec: SwarmSpec, listen_addr: str, advertise_addr: Optional[str] = None) -> str:
        """Initialise a cluster with this node as manager. Returns the node id."""
        pass

    @abstractmethod
    def update_cluster(self, spec: SwarmSpec) -> None:
        pass

    @abstractmethod
    def leave_cluster(self) -> None:
        pass

    @abstractmethod
    def create_network(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        """Create an attachable overlay network. Returns False if it already existed."""
        pass

    @abstractmethod
    def list_services(self, label: Optional[str] = None) -> List[ServiceInfo]:
        pass

    @abstractmethod
    def create_service(self, spec: ServiceSpec) -> str:
        """Submit a service. Returns the engine's service id."""
        pass

    @abstractmethod
    def remove_service(self, name: str) -> bool:
        """Remove a service. Returns False if it did not exist."""
        pass


# =============================================================================
# DOCKER SWARM BINDING
# =============================================================================

class DockerSwarmClient(ClusterClient):
    """
    ClusterClient over the Docker Engine SDK (``docker.from_env``).

    The Docker client is created on first use so that constructing the
    gateway does not require a reachable engine.
    """

    def __init__(self, docker_client: Optional[docker.DockerClient] = None):
        self._client = docker_client
        self._client_lock = threading.Lock()

    def _get_client(self) -> docker.DockerClient:
        with self._client_lock:
            if self._client is None:
                try:
                    self._client = docker.from_env()
                except DockerException as e:
                    raise ClusterError(f"Cannot connect to container engine: {e}")
            return self._client

    def get_cluster_info(self) -> ClusterInfo:
        try:
            info = self._get_client().info()
        except DockerException as e:
            raise ClusterError(f"Failed to query cluster state: {e}")

        swarm = info.get("Swarm") or {}
        if swarm.get("LocalNodeState") != "active":
            return ClusterInfo(active=False)

        cluster = swarm.get("Cluster") or {}
        return ClusterInfo(
            active=True,
            id=cluster.get("ID"),
            node_id=swarm.get("NodeID"),
            managers=swarm.get("Managers") or 0,
            nodes=swarm.get("Nodes") or 0,
            spec=cluster.get("Spec") or {},
        )

    def init_cluster(self, spec: SwarmSpec, listen_addr: str, advertise_addr: Optional[str] = None) -> str:
        try:
            return self._get_client().swarm.init(
                advertise_addr=advertise_addr,
                listen_addr=listen_addr,
                name=spec.name,
                task_history_retention_limit=spec.task_history_retention_limit,
                autolock_managers=spec.autolock_managers,
            )
        except APIError as e:
            if "already part of a swarm" in str(e):
                raise ClusterAlreadyActiveError(str(e))
            raise ClusterError(f"Failed to initialize cluster: {e}")
        except DockerException as e:
            raise ClusterError(f"Failed to initialize cluster: {e}")

    def update_cluster(self, spec: SwarmSpec) -> None:
        try:
            swarm = self._get_client().swarm
            swarm.reload()
            swarm.update(
                name=spec.name,
                task_history_retention_limit=spec.task_history_retention_limit,
                autolock_managers=spec.autolock_managers,
            )
        except DockerException as e:
            raise ClusterError(f"Failed to update cluster: {e}")

    def leave_cluster(self) -> None:
        try:
            self._get_client().swarm.leave(force=True)
        except DockerException as e:
            raise ClusterError(f"Failed to leave cluster: {e}")

    def create_network(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        try:
            client = self._get_client()
            if client.networks.list(names=[name]):
                return False
            client.networks.create(name, driver="overlay", attachable=True, labels=labels or {})
            return True
        except DockerException as e:
            raise ClusterError(f"Failed to create network {name}: {e}")

    def list_services(self, label: Optional[str] = None) -> List[ServiceInfo]:
        filters = {"label": label} if label else None
        try:
            services = self._get_client().services.list(filters=filters)
        except DockerException as e:
            raise ClusterError(f"Failed to list services: {e}")
        return [self._to_service_info(s) for s in services]

    @staticmethod
    def _to_service_info(service: Any) -> ServiceInfo:
        spec = service.attrs.get("Spec") or {}
        container = (spec.get("TaskTemplate") or {}).get("ContainerSpec") or {}
        replicated = (spec.get("Mode") or {}).get("Replicated") or {}
        return ServiceInfo(
            name=service.name,
            image=container.get("Image", ""),
            replicas=replicated.get("Replicas"),
            id=service.id,
            labels=spec.get("Labels") or {},
        )

    def create_service(self, spec: ServiceSpec) -> str:
        mounts = [
            Mount(target=m.target, source=m.source, type=m.type, read_only=m.read_only)
            for m in spec.mounts
        ]
        try:
            service = self._get_client().services.create(
                spec.image,
                name=spec.name,
                env=spec.env,
                mounts=mounts,
                networks=spec.networks,
                mode=ServiceMode("replicated", replicas=spec.replicas),
                labels=spec.labels,
            )
        except DockerException as e:
            raise ClusterError(f"Failed to create service {spec.name}: {e}")
        return service.id

    def remove_service(self, name: str) -> bool:
        try:
            self._get_client().services.get(name).remove()
            return True
        except NotFound:
            return False
        except DockerException as e:
            raise ClusterError(f"Failed to remove service {name}: {e}")
