"""
Error taxonomy for the Swarm Gateway.

Every failure that can reach an HTTP caller is a GatewayError carrying the
status code and error type used to build the error envelope:

    {"error": "<human readable message>", "type": "<error_type>"}

CacheError is the exception: caching is best-effort, so it is logged and
treated as a cache miss instead of being surfaced.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for client-visible gateway failures."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "type": self.error_type}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(GatewayError):
    """Malformed request body or parameters."""

    status_code = 400
    error_type = "invalid_request_error"


class NotFoundError(GatewayError):
    """Unknown model or service."""

    status_code = 404
    error_type = "not_found_error"


class ModelNotFoundError(NotFoundError):
    """Requested model id is not in the registry."""

    def __init__(self, model_id: str):
        super().__init__(f"Model {model_id} not found")
        self.model_id = model_id


class BackendUnavailableError(GatewayError):
    """Backend service never became ready, or failed while serving a call."""

    status_code = 500
    error_type = "backend_unavailable"


class ClusterError(GatewayError):
    """A call to the container engine failed."""

    status_code = 500
    error_type = "cluster_error"


class ClusterAlreadyActiveError(ClusterError):
    """The engine rejected an init because this node already belongs to a cluster."""


class CacheError(Exception):
    """Non-fatal cache failure. Never aborts a request."""


__all__ = [
    "GatewayError",
    "ValidationError",
    "NotFoundError",
    "ModelNotFoundError",
    "BackendUnavailableError",
    "ClusterError",
    "ClusterAlreadyActiveError",
    "CacheError",
]
