"""
Cache Engine for the Swarm Gateway.

Provides:
- CacheEngine: model-artifact and image-layer stores with metadata
- Two-phase TTL / size-cap eviction
- Consumer sharing through symlinks or pointer files
- PruneScheduler: background eviction
"""

from swarm_gateway.cache.units import (
    parse_size,
    parse_interval,
    format_size,
)

from swarm_gateway.cache.metadata import (
    CacheKind,
    CacheEntry,
    CacheMetadata,
)

from swarm_gateway.cache.engine import (
    CacheEngine,
    CacheHealth,
    CacheStatus,
    LinkMode,
    PruneResult,
)

from swarm_gateway.cache.scheduler import PruneScheduler

__all__ = [
    # Units
    "parse_size",
    "parse_interval",
    "format_size",
    # Metadata
    "CacheKind",
    "CacheEntry",
    "CacheMetadata",
    # Engine
    "CacheEngine",
    "CacheHealth",
    "CacheStatus",
    "LinkMode",
    "PruneResult",
    # Scheduling
    "PruneScheduler",
]
