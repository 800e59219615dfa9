"""
Gateway API for the Swarm Gateway.

Provides:
- Model registry and deterministic service naming
- Protocol envelopes (pydantic)
- Backend client for health checks and forwarding
- Gateway operations and the FastAPI application
"""

from swarm_gateway.api.registry import (
    ModelCapability,
    ModelDescriptor,
    ModelRegistry,
    default_models,
    derive_service_name,
)

from swarm_gateway.api.backend import BackendClient

from swarm_gateway.api.gateway import (
    Gateway,
    GatewayContext,
    shape_chat_completion,
    shape_completion,
)

from swarm_gateway.api.server import create_app, main

__all__ = [
    # Registry
    "ModelCapability",
    "ModelDescriptor",
    "ModelRegistry",
    "default_models",
    "derive_service_name",
    # Backend
    "BackendClient",
    # Gateway
    "Gateway",
    "GatewayContext",
    "shape_chat_completion",
    "shape_completion",
    # Server
    "create_app",
    "main",
]
