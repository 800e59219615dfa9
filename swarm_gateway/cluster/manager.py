"""
Cluster Lifecycle Manager.

Wraps a ClusterClient with:
- Idempotent, mutex-guarded cluster activation
- Live (uncached) service enumeration
- Single-flight service creation per service name
- Idempotent removal and teardown

Every engine call is blocking and runs in a worker thread. Failed engine
calls (ClusterError) are retried once before being surfaced.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from swarm_gateway.cluster.client import (
    ClusterClient,
    ClusterInfo,
    MountSpec,
    ServiceInfo,
    ServiceSpec,
    SwarmSpec,
)
from swarm_gateway.config import ClusterConfig
from swarm_gateway.errors import ClusterAlreadyActiveError, ClusterError
from swarm_gateway.utils import SingleFlight, async_retry

logger = logging.getLogger(__name__)


class ServiceState(Enum):
    """
    Lifecycle of a backend service as seen by this process.

    CREATING covers every service the engine has accepted whose readiness
    has not been confirmed yet, including services provisioned before the
    gateway started.
    """
    ABSENT = "absent"
    CREATING = "creating"
    READY = "ready"
    REMOVED = "removed"


class ClusterLifecycleManager:
    """
    Sole writer of service records in the cluster.

    Example:
        manager = ClusterLifecycleManager(DockerSwarmClient(), config.cluster)
        if await manager.ensure_active():
            spec = manager.build_service_spec("transformers-js-phi-3-5", image)
            await manager.ensure_service(spec.name, spec)
    """

    def __init__(self, client: ClusterClient, config: Optional[ClusterConfig] = None):
        self.client = client
        self.config = config or ClusterConfig()
        self.swarm_spec = SwarmSpec(
            name=self.config.swarm_name,
            task_history_retention_limit=self.config.task_history_retention_limit,
            autolock_managers=self.config.autolock_managers,
        )

        self._active = False
        self._activation_lock = asyncio.Lock()
        self._creations: SingleFlight[bool] = SingleFlight()
        self._states: Dict[str, ServiceState] = {}

        self._retry = async_retry(
            attempts=max(1, self.config.retry_attempts),
            delay=self.config.retry_delay_seconds,
            backoff=1.0,
            exceptions=(ClusterError,),
            giveup=(ClusterAlreadyActiveError,),
        )

    @property
    def managed_label_filter(self) -> str:
        return f"{self.config.managed_label}=true"

    async def _blocking(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(fn, *args)

    # =========================================================================
    # CLUSTER
    # =========================================================================

    def is_active(self) -> bool:
        """Last known activation state. Does not query the engine."""
        return self._active

    async def ensure_active(self) -> bool:
        """
        Make sure this node belongs to an active cluster.

        Concurrent callers collapse into one activation attempt. A failure is
        not remembered: the next call tries again.

        Returns:
            True if the cluster is active now.
        """
        if self._active:
            return True

        async with self._activation_lock:
            if self._active:
                return True
            try:
                await self._retry(self._activate)()
            except ClusterError as e:
                logger.error(f"[Cluster] Activation failed: {e}")
                return False
            self._active = True
            return True

    async def _activate(self) -> None:
        info: ClusterInfo = await self._blocking(self.client.get_cluster_info)

        if info.active:
            logger.debug(f"[Cluster] Cluster {info.id} already active")
            await self._reconcile(info)
        else:
            logger.info(f"[Cluster] Initializing cluster {self.swarm_spec.name}")
            try:
                node_id = await self._blocking(
                    self.client.init_cluster,
                    self.swarm_spec,
                    self.config.listen_addr,
                    self.config.advertise_addr,
                )
                logger.info(f"[Cluster] Cluster initialized, manager node {node_id}")
            except ClusterAlreadyActiveError:
                logger.info("[Cluster] Node joined a cluster concurrently, treating as active")

        created = await self._blocking(
            self.client.create_network,
            self.config.network_name,
            {self.config.managed_label: "true"},
        )
        if created:
            logger.info(f"[Cluster] Created overlay network {self.config.network_name}")

    async def _reconcile(self, info: ClusterInfo) -> None:
        if not info.spec or not self.swarm_spec.needs_update(info.spec):
            return
        logger.info("[Cluster] Cluster configuration drifted, updating")
        try:
            await self._blocking(self.client.update_cluster, self.swarm_spec)
        except ClusterError as e:
            logger.warning(f"[Cluster] Could not update cluster configuration: {e}")

    async def cluster_info(self) -> ClusterInfo:
        """
        Query membership without activating anything.

        Only ever clears the cached activation state: an engine that reports
        an active cluster still has to pass through ``ensure_active`` so the
        overlay network gets created.
        """
        info = await self._retry(self._blocking)(self.client.get_cluster_info)
        if not info.active:
            self._active = False
        return info

    async def tear_down(self) -> int:
        """
        Remove every managed service and leave the cluster.

        Returns:
            Number of services removed.
        """
        services = await self._retry(self._blocking)(
            self.client.list_services, self.managed_label_filter
        )
        removed = 0
        for service in services:
            if await self.remove_service(service.name):
                removed += 1

        await self._retry(self._blocking)(self.client.leave_cluster)
        self._active = False
        logger.info(f"[Cluster] Left cluster after removing {removed} managed services")
        return removed

    # =========================================================================
    # SERVICES
    # =========================================================================

    async def list_services(self) -> List[ServiceInfo]:
        """Live enumeration of services. Never cached."""
        return await self._retry(self._blocking)(self.client.list_services)

    def build_service_spec(
        self,
        name: str,
        image: str,
        labels: Optional[Dict[str, str]] = None,
    ) -> ServiceSpec:
        """Service spec for a model backend with the shared cache mounted."""
        all_labels = {self.config.managed_label: "true"}
        all_labels.update(labels or {})
        return ServiceSpec(
            name=name,
            image=image,
            replicas=self.config.default_replicas,
            networks=[self.config.network_name],
            env=list(self.config.service_env),
            mounts=[MountSpec(source=self.config.cache_volume, target=self.config.cache_mount_target)],
            labels=all_labels,
        )

    async def ensure_service(self, service_name: str, spec: ServiceSpec) -> bool:
        """
        Create ``service_name`` unless the engine already has it.

        Returns once the engine accepted the create call, not once the
        service is ready. Concurrent calls for the same name share a single
        engine call.

        Returns:
            True if this call created the service.
        """
        return await self._creations.do(
            service_name,
            lambda: self._retry(self._ensure_service)(service_name, spec),
        )

    async def _ensure_service(self, service_name: str, spec: ServiceSpec) -> bool:
        services = await self._blocking(self.client.list_services)
        if any(s.name == service_name for s in services):
            if self._states.get(service_name) is not ServiceState.READY:
                self._states[service_name] = ServiceState.CREATING
            return False

        logger.info(f"[Cluster] Creating service {service_name} from {spec.image}")
        self._states[service_name] = ServiceState.CREATING
        try:
            service_id = await self._blocking(self.client.create_service, spec)
        except ClusterError:
            self._states[service_name] = ServiceState.ABSENT
            raise
        logger.info(f"[Cluster] Service {service_name} accepted ({service_id})")
        return True

    async def remove_service(self, service_name: str) -> bool:
        """
        Remove a service. Removing an absent service succeeds.

        Returns:
            True if a service was removed, False if there was none.
        """
        removed = await self._retry(self._blocking)(self.client.remove_service, service_name)
        self._states[service_name] = ServiceState.REMOVED
        if removed:
            logger.info(f"[Cluster] Removed service {service_name}")
        return removed

    def mark_ready(self, service_name: str) -> None:
        self._states[service_name] = ServiceState.READY

    def mark_unconfirmed(self, service_name: str) -> None:
        """Drop a READY mark so the next request checks backend health again."""
        if self._states.get(service_name) is ServiceState.READY:
            self._states[service_name] = ServiceState.CREATING

    def service_state(self, service_name: str) -> ServiceState:
        return self._states.get(service_name, ServiceState.ABSENT)

    def is_ready(self, service_name: str) -> bool:
        return self._states.get(service_name) is ServiceState.READY
