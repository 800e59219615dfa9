"""Shared fixtures: an in-memory cluster engine, a scripted backend and temp cache roots."""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional

import pytest

from swarm_gateway.api.gateway import GatewayContext
from swarm_gateway.api.registry import ModelRegistry
from swarm_gateway.cache import CacheEngine
from swarm_gateway.cluster import (
    ClusterClient,
    ClusterInfo,
    ClusterLifecycleManager,
    ServiceInfo,
    ServiceSpec,
    SwarmSpec,
)
from swarm_gateway.config import CacheConfig, ClusterConfig, GatewayConfig, SwarmGatewayConfig
from swarm_gateway.errors import BackendUnavailableError, ClusterAlreadyActiveError, ClusterError


class FakeClock:
    """Settable replacement for time.time."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClusterClient(ClusterClient):
    """In-memory engine that counts every call made against it."""

    def __init__(self, active: bool = False, spec: Optional[Dict[str, Any]] = None):
        self.active = active
        self.spec = spec or {}
        self.services: Dict[str, ServiceSpec] = {}
        self.networks: List[str] = []

        self.fail_info_times = 0
        self.fail_create_times = 0
        self.init_already_active = False
        self.create_delay = 0.0

        self.calls: Dict[str, int] = {
            "info": 0, "init": 0, "update": 0, "leave": 0,
            "network": 0, "list": 0, "create": 0, "remove": 0,
        }
        self._lock = threading.Lock()

    def _count(self, name: str) -> None:
        with self._lock:
            self.calls[name] += 1

    def get_cluster_info(self) -> ClusterInfo:
        self._count("info")
        if self.fail_info_times > 0:
            self.fail_info_times -= 1
            raise ClusterError("engine unreachable")
        if not self.active:
            return ClusterInfo(active=False)
        return ClusterInfo(active=True, id="cluster-1", node_id="node-1", managers=1, nodes=1, spec=self.spec)

    def init_cluster(self, spec: SwarmSpec, listen_addr: str, advertise_addr: Optional[str] = None) -> str:
        self._count("init")
        if self.init_already_active:
            self.active = True
            raise ClusterAlreadyActiveError("This node is already part of a swarm")
        self.active = True
        self.spec = {
            "Name": spec.name,
            "Orchestration": {"TaskHistoryRetentionLimit": spec.task_history_retention_limit},
            "EncryptionConfig": {"AutoLockManagers": spec.autolock_managers},
        }
        return "node-1"

    def update_cluster(self, spec: SwarmSpec) -> None:
        self._count("update")

    def leave_cluster(self) -> None:
        self._count("leave")
        self.active = False

    def create_network(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        self._count("network")
        if name in self.networks:
            return False
        self.networks.append(name)
        return True

    def list_services(self, label: Optional[str] = None) -> List[ServiceInfo]:
        self._count("list")
        result = []
        for spec in list(self.services.values()):
            if label:
                key, _, value = label.partition("=")
                if spec.labels.get(key) != value:
                    continue
            result.append(ServiceInfo(name=spec.name, image=spec.image, replicas=spec.replicas, labels=spec.labels))
        return result

    def create_service(self, spec: ServiceSpec) -> str:
        self._count("create")
        if self.create_delay:
            time.sleep(self.create_delay)
        if self.fail_create_times > 0:
            self.fail_create_times -= 1
            raise ClusterError(f"create {spec.name} failed")
        self.services[spec.name] = spec
        return f"id-{spec.name}"

    def remove_service(self, name: str) -> bool:
        self._count("remove")
        return self.services.pop(name, None) is not None


class FakeBackend:
    """Backend stand-in: becomes ready after ``ready_after`` failed health checks."""

    def __init__(self, ready_after: int = 0):
        self.ready_after = ready_after
        self.health_checks: Dict[str, int] = {}
        self.requests: List[Dict[str, Any]] = []
        self.completion: Dict[str, Any] = {
            "choices": [{"text": "Hello there", "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 3, "completion_tokens": 2},
        }
        self.chat_completion: Dict[str, Any] = {
            "choices": [{"message": {"role": "assistant", "content": "Hi!"}}],
        }
        self.fail_requests = False
        self.closed = False

    async def check_health(self, service_name: str) -> bool:
        count = self.health_checks.get(service_name, 0) + 1
        self.health_checks[service_name] = count
        return count > self.ready_after

    async def complete(self, service_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._respond(service_name, "completions", payload, self.completion)

    async def chat_complete(self, service_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._respond(service_name, "chat", payload, self.chat_completion)

    def _respond(self, service_name, kind, payload, response):
        if self.fail_requests:
            raise BackendUnavailableError(f"Backend {service_name} request failed")
        self.requests.append({"service": service_name, "kind": kind, "payload": payload})
        return response

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def cache_root(tmp_path):
    return tmp_path / "cache"


@pytest.fixture()
def engine(cache_root, clock) -> CacheEngine:
    cache = CacheEngine(cache_root, max_size_bytes=1000, ttl_seconds=3600, clock=clock)
    cache.initialize()
    return cache


@pytest.fixture()
def fake_client() -> FakeClusterClient:
    return FakeClusterClient()


@pytest.fixture()
def cluster_config() -> ClusterConfig:
    return ClusterConfig(retry_delay_seconds=0.0, leave_on_shutdown=False)


@pytest.fixture()
def manager(fake_client, cluster_config) -> ClusterLifecycleManager:
    return ClusterLifecycleManager(fake_client, cluster_config)


@pytest.fixture()
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def gateway_config(cache_root, cluster_config) -> SwarmGatewayConfig:
    return SwarmGatewayConfig(
        gateway=GatewayConfig(
            readiness_attempts=3,
            readiness_delay_seconds=0.0,
            readiness_max_delay_seconds=0.0,
            shutdown_delay_seconds=0.0,
            models_file=None,
        ),
        cluster=cluster_config,
        cache=CacheConfig(root_dir=cache_root, prune_on_start=False, prune_interval="1h"),
    )


@pytest.fixture()
def context(gateway_config, fake_client, fake_backend) -> GatewayContext:
    return GatewayContext(
        config=gateway_config,
        registry=ModelRegistry.default(),
        cluster=ClusterLifecycleManager(fake_client, gateway_config.cluster),
        backend=fake_backend,
        cache=CacheEngine(gateway_config.cache.root_dir),
    )


@pytest.fixture()
def cluster_client_factory():
    return FakeClusterClient
