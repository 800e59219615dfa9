"""
Gateway - routes protocol requests to lazily provisioned model services.

Request path for a completion:

    registry lookup -> ensure cluster active -> ensure service
        -> bounded readiness poll -> forward -> reshape envelope

All collaborators are held by an explicit GatewayContext; the gateway keeps
no module-level state.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from swarm_gateway.api.backend import BackendClient
from swarm_gateway.api.registry import ModelDescriptor, ModelRegistry, derive_service_name
from swarm_gateway.api.schemas import (
    ChatChoice,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    CompletionChoice,
    CompletionRequest,
    CompletionResponse,
    ObjectList,
    ServiceCreateRequest,
    ShutdownResponse,
    SwarmInitResponse,
    SwarmStatus,
    Usage,
)
from swarm_gateway.cache import CacheEngine, CacheKind, CacheStatus, CacheHealth, PruneScheduler
from swarm_gateway.cluster import ClusterLifecycleManager, DockerSwarmClient
from swarm_gateway.config import SwarmGatewayConfig, load_config
from swarm_gateway.errors import (
    BackendUnavailableError,
    CacheError,
    ClusterError,
    ModelNotFoundError,
    ValidationError,
)
from swarm_gateway.utils import LogContext, poll_until, set_model_id

logger = logging.getLogger(__name__)


# =============================================================================
# CONTEXT
# =============================================================================

@dataclass
class GatewayContext:
    """Everything a Gateway needs, built once per process."""
    config: SwarmGatewayConfig
    registry: ModelRegistry
    cluster: ClusterLifecycleManager
    backend: BackendClient
    cache: Optional[CacheEngine] = None
    scheduler: Optional[PruneScheduler] = None
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: float = field(default_factory=time.time)
    shutdown_hook: Optional[Callable[[], Any]] = None

    @classmethod
    def from_config(cls, config: Optional[SwarmGatewayConfig] = None) -> "GatewayContext":
        """Wire the production collaborators (Docker Swarm, aiohttp, on-disk cache)."""
        config = config or load_config()

        cache = None
        scheduler = None
        if config.cache.enabled:
            cache = CacheEngine(
                config.cache.root_dir,
                max_size_bytes=config.cache.max_size_bytes,
                ttl_seconds=config.cache.ttl_seconds,
                strategy=config.cache.strategy,
                compression_enabled=config.cache.compression_enabled,
            )
            scheduler = PruneScheduler(
                cache,
                interval_seconds=config.cache.prune_interval_seconds,
                prune_on_start=config.cache.prune_on_start,
            )

        return cls(
            config=config,
            registry=ModelRegistry.load(config.gateway.models_file),
            cluster=ClusterLifecycleManager(DockerSwarmClient(), config.cluster),
            backend=BackendClient(
                scheme=config.gateway.backend_scheme,
                port=config.gateway.backend_port,
                request_timeout=config.gateway.request_timeout_seconds,
                health_timeout=config.gateway.health_timeout_seconds,
            ),
            cache=cache,
            scheduler=scheduler,
        )


# =============================================================================
# RESPONSE SHAPING
# =============================================================================

def _usage_from(payload: Dict[str, Any]) -> Usage:
    raw = payload.get("usage") or {}
    prompt = int(raw.get("prompt_tokens") or 0)
    completion = int(raw.get("completion_tokens") or 0)
    total = int(raw.get("total_tokens") or prompt + completion)
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _bare_text(payload: Dict[str, Any]) -> str:
    for key in ("text", "content", "generated_text"):
        value = payload.get(key)
        if isinstance(value, str):
            return value
    return ""


def shape_completion(model_id: str, payload: Dict[str, Any]) -> CompletionResponse:
    """Build a text_completion envelope from whatever the backend returned."""
    choices: List[CompletionChoice] = []
    for i, choice in enumerate(payload.get("choices") or []):
        text = choice.get("text")
        if text is None:
            text = (choice.get("message") or {}).get("content") or ""
        choices.append(CompletionChoice(
            index=choice.get("index", i),
            text=text,
            logprobs=choice.get("logprobs"),
            finish_reason=choice.get("finish_reason", "stop"),
        ))
    if not choices:
        choices.append(CompletionChoice(index=0, text=_bare_text(payload)))

    return CompletionResponse(
        id=f"cmpl-{uuid.uuid4().hex}",
        created=int(time.time()),
        model=model_id,
        choices=choices,
        usage=_usage_from(payload),
    )


def shape_chat_completion(model_id: str, payload: Dict[str, Any]) -> ChatCompletionResponse:
    """Build a chat.completion envelope from whatever the backend returned."""
    choices: List[ChatChoice] = []
    for i, choice in enumerate(payload.get("choices") or []):
        message = choice.get("message") or {"role": "assistant", "content": choice.get("text", "")}
        choices.append(ChatChoice(
            index=choice.get("index", i),
            message=ChatMessage(**message),
            finish_reason=choice.get("finish_reason", "stop"),
        ))
    if not choices:
        choices.append(ChatChoice(
            index=0,
            message=ChatMessage(role="assistant", content=_bare_text(payload)),
        ))

    return ChatCompletionResponse(
        id=f"chatcmpl-{uuid.uuid4().hex}",
        created=int(time.time()),
        model=model_id,
        choices=choices,
        usage=_usage_from(payload),
    )


# =============================================================================
# GATEWAY
# =============================================================================

class Gateway:
    """
    Protocol operations of the Swarm Gateway.

    Example:
        gateway = Gateway(GatewayContext.from_config())
        await gateway.start()
        models = gateway.list_models()
        result = await gateway.complete(CompletionRequest(model="transformers.js/phi-3.5", prompt="Hi"))
        await gateway.stop()
    """

    def __init__(self, context: GatewayContext):
        self.context = context

    @property
    def config(self) -> SwarmGatewayConfig:
        return self.context.config

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Initialise the cache and try to activate the cluster. Neither is fatal."""
        ctx = self.context

        if ctx.cache is not None:
            try:
                await asyncio.to_thread(ctx.cache.initialize)
            except OSError as e:
                logger.warning(f"[Gateway] Cache unavailable, serving without caching: {e}")
                ctx.cache = None
                ctx.scheduler = None

        consumers_root = self.config.cache.consumers_root
        if ctx.cache is not None and consumers_root is not None:
            try:
                await asyncio.to_thread(ctx.cache.link_consumers, consumers_root)
            except OSError as e:
                logger.warning(f"[Gateway] Could not link consumer projects: {e}")

        if ctx.scheduler is not None:
            await ctx.scheduler.start()

        if not await ctx.cluster.ensure_active():
            logger.warning("[Gateway] Cluster not active yet, activation will be retried per request")

        logger.info(
            f"[Gateway] Session {ctx.session_id} ready with {len(ctx.registry)} models"
        )

    async def stop(self) -> None:
        ctx = self.context

        if ctx.scheduler is not None:
            await ctx.scheduler.stop()

        if self.config.cluster.leave_on_shutdown:
            try:
                await ctx.cluster.tear_down()
            except ClusterError as e:
                logger.error(f"[Gateway] Cluster teardown failed: {e}")

        await ctx.backend.close()
        logger.info(f"[Gateway] Session {ctx.session_id} stopped")

    # -------------------------------------------------------------------------
    # Models and completions
    # -------------------------------------------------------------------------

    def list_models(self) -> ObjectList:
        return ObjectList(data=[m.to_card() for m in self.context.registry])

    def _resolve(self, model_id: str) -> ModelDescriptor:
        descriptor = self.context.registry.get(model_id)
        if descriptor is None:
            raise ModelNotFoundError(model_id)
        return descriptor

    async def _provision(self, descriptor: ModelDescriptor, replicas: Optional[int] = None,
                         image: Optional[str] = None) -> bool:
        """Ensure the cluster is active and the model's service exists."""
        cluster = self.context.cluster
        if not await cluster.ensure_active():
            raise ClusterError("Cluster is not active")

        service_name = descriptor.service_name
        spec = cluster.build_service_spec(
            service_name,
            image or descriptor.resolve_image(self.config.cluster.image_prefix),
            labels={"com.transformers.js.model": descriptor.id},
        )
        if replicas is not None:
            spec.replicas = replicas

        with LogContext(service=service_name):
            return await cluster.ensure_service(service_name, spec)

    async def _wait_ready(self, service_name: str) -> None:
        cluster = self.context.cluster
        if cluster.is_ready(service_name):
            return

        gw = self.config.gateway
        ready = await poll_until(
            lambda: self.context.backend.check_health(service_name),
            attempts=gw.readiness_attempts,
            delay=gw.readiness_delay_seconds,
            max_delay=gw.readiness_max_delay_seconds,
        )
        if not ready:
            raise BackendUnavailableError(
                f"Service {service_name} did not become ready",
                details={"attempts": gw.readiness_attempts},
            )
        cluster.mark_ready(service_name)
        logger.info(f"[Gateway] Service {service_name} is ready")

    def model_cache_key(self, descriptor: ModelDescriptor) -> str:
        return CacheEngine.compute_key(descriptor.id, {"image": descriptor.image})

    async def _touch_cache(self, descriptor: ModelDescriptor) -> None:
        """Record a model access, sized from the artifacts under ``models/<key>``."""
        cache = self.context.cache
        if cache is None:
            return
        key = self.model_cache_key(descriptor)
        try:
            await asyncio.to_thread(cache.record_access, CacheKind.MODEL, key)
        except CacheError as e:
            logger.warning(f"[Gateway] Cache access not recorded: {e}")

    async def _route(self, model_id: str, stream: bool) -> str:
        set_model_id(model_id)
        if stream:
            raise ValidationError("Streaming responses are not supported")

        descriptor = self._resolve(model_id)
        await self._provision(descriptor)
        await self._wait_ready(descriptor.service_name)
        await self._touch_cache(descriptor)
        return descriptor.service_name

    async def _forward(self, service_name: str, call: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        try:
            return await call()
        except BackendUnavailableError:
            self.context.cluster.mark_unconfirmed(service_name)
            raise

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        service_name = await self._route(request.model, request.stream)
        payload = await self._forward(
            service_name,
            lambda: self.context.backend.complete(service_name, request.params()),
        )
        return shape_completion(request.model, payload)

    async def chat_complete(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        service_name = await self._route(request.model, request.stream)
        payload = await self._forward(
            service_name,
            lambda: self.context.backend.chat_complete(service_name, request.params()),
        )
        return shape_chat_completion(request.model, payload)

    # -------------------------------------------------------------------------
    # Cluster
    # -------------------------------------------------------------------------

    async def swarm_status(self) -> SwarmStatus:
        info = await self.context.cluster.cluster_info()
        if not info.active:
            return SwarmStatus(active=False)
        return SwarmStatus(
            active=True,
            id=info.id,
            node_id=info.node_id,
            managers=info.managers,
            nodes=info.nodes,
        )

    async def swarm_init(self) -> SwarmInitResponse:
        if not await self.context.cluster.ensure_active():
            raise ClusterError("Failed to initialize cluster")
        return SwarmInitResponse(success=True)

    async def list_services(self) -> ObjectList:
        services = await self.context.cluster.list_services()
        return ObjectList(data=[s.to_dict() for s in services])

    async def create_service(self, request: ServiceCreateRequest) -> Dict[str, Any]:
        descriptor = self._resolve(request.model)
        created = await self._provision(descriptor, replicas=request.replicas, image=request.image)
        return {
            "success": True,
            "name": descriptor.service_name,
            "model": descriptor.id,
            "created": created,
        }

    async def remove_service(self, service_name: str) -> Dict[str, Any]:
        removed = await self.context.cluster.remove_service(service_name)
        return {"success": True, "name": service_name, "removed": removed}

    # -------------------------------------------------------------------------
    # Cache and status
    # -------------------------------------------------------------------------

    async def cache_health(self) -> CacheHealth:
        cache = self.context.cache
        if cache is None:
            return CacheHealth(status=CacheStatus.NOT_INITIALIZED, message="Cache unavailable")
        return await asyncio.to_thread(cache.health)

    async def prune_cache(self) -> Dict[str, Any]:
        ctx = self.context
        if ctx.scheduler is not None:
            result = await ctx.scheduler.run_once()
        elif ctx.cache is not None:
            result = await asyncio.to_thread(ctx.cache.prune)
        else:
            return {"status": "unavailable"}
        return result.to_dict()

    async def status(self) -> Dict[str, Any]:
        ctx = self.context

        try:
            cluster = (await ctx.cluster.cluster_info()).to_dict()
        except ClusterError as e:
            cluster = {"active": False, "error": str(e)}

        return {
            "session_id": ctx.session_id,
            "timestamp": datetime.now().isoformat(),
            "uptime_seconds": round(time.time() - ctx.started_at, 3),
            "models": len(ctx.registry),
            "cluster": cluster,
            "cache": (await self.cache_health()).to_dict(),
            "prune_scheduler": ctx.scheduler.to_dict() if ctx.scheduler else None,
        }

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def shutdown(self) -> ShutdownResponse:
        """First phase of shutdown: the response. ``finish_shutdown`` runs after it is sent."""
        logger.info("[Gateway] Shutdown requested")
        return ShutdownResponse(
            success=True,
            message="Shutdown initiated",
            timestamp=datetime.now().isoformat(),
        )

    async def finish_shutdown(self) -> None:
        await asyncio.sleep(self.config.gateway.shutdown_delay_seconds)
        hook = self.context.shutdown_hook
        if hook is None:
            logger.warning("[Gateway] No shutdown hook installed")
            return
        result = hook()
        if asyncio.iscoroutine(result):
            await result


__all__ = [
    "Gateway",
    "GatewayContext",
    "derive_service_name",
    "shape_completion",
    "shape_chat_completion",
]
