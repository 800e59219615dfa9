"""
Utilities module for the Swarm Gateway.

Provides:
- Async helpers (retry, single-flight, bounded polling)
- Structured logging configuration
"""

from swarm_gateway.utils.async_helpers import (
    async_retry,
    SingleFlight,
    poll_until,
)

from swarm_gateway.utils.logging_config import (
    setup_logging,
    LoggingConfig,
    LogContext,
    set_request_id,
    get_request_id,
    set_model_id,
    set_context,
    clear_context,
    log_duration,
)

__all__ = [
    # Async helpers
    "async_retry",
    "SingleFlight",
    "poll_until",
    # Logging
    "setup_logging",
    "LoggingConfig",
    "LogContext",
    "set_request_id",
    "get_request_id",
    "set_model_id",
    "set_context",
    "clear_context",
    "log_duration",
]
