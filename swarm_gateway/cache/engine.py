"""
Cache Engine - directory-scoped model and image-layer caches.

Layout under the cache root:

    <root>/
        metadata.json        entry accounting (see cache.metadata)
        cache-config.json    size / TTL policy
        models/<key>         model artifacts, plus per-consumer namespaces
        layers/<key>         image layers

Accounting is advisory: ``health()`` may observe counts that are briefly
stale while a prune runs, and readers treat a just-evicted entry as a
cache miss.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import psutil

from swarm_gateway.cache.metadata import (
    CacheEntry,
    CacheKind,
    CacheMetadata,
    sorted_by_access,
    write_json_atomic,
)
from swarm_gateway.cache.units import format_size
from swarm_gateway.errors import CacheError

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
POLICY_FILE = "cache-config.json"
CONSUMER_LINK_NAME = ".model-cache"
POINTER_SUFFIX = ".cache-path"

DEFAULT_MAX_SIZE_BYTES = 10 * 1024 ** 3
DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60


class CacheStatus(Enum):
    HEALTHY = "healthy"
    NOT_INITIALIZED = "not-initialized"
    ERROR = "error"


class LinkMode(Enum):
    """How a consumer directory was attached to the shared cache."""
    SYMLINK = "symlink"
    POINTER = "pointer"
    PRIVATE = "private"


@dataclass
class PruneResult:
    """Outcome of one prune pass."""
    removed_count: int = 0
    freed_bytes: int = 0
    expired_count: int = 0
    evicted_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "removed_count": self.removed_count,
            "freed_bytes": self.freed_bytes,
            "freed": format_size(self.freed_bytes),
            "expired_count": self.expired_count,
            "evicted_count": self.evicted_count,
        }


@dataclass
class CacheHealth:
    """Snapshot of cache health for status endpoints."""
    status: CacheStatus
    model_count: int = 0
    layer_count: int = 0
    model_bytes: int = 0
    layer_bytes: int = 0
    message: Optional[str] = None
    version: Optional[str] = None
    created_at: Optional[str] = None
    last_accessed_at: Optional[str] = None
    disk_free_bytes: Optional[int] = None

    @property
    def total_bytes(self) -> int:
        return self.model_bytes + self.layer_bytes

    def to_dict(self) -> Dict[str, Any]:
        if self.status is not CacheStatus.HEALTHY:
            return {"status": self.status.value, "message": self.message}
        return {
            "status": self.status.value,
            "version": self.version,
            "created_at": self.created_at,
            "last_accessed_at": self.last_accessed_at,
            "model_count": self.model_count,
            "layer_count": self.layer_count,
            "model_bytes": self.model_bytes,
            "layer_bytes": self.layer_bytes,
            "total_bytes": self.total_bytes,
            "model_cache_size": format_size(self.model_bytes),
            "layer_cache_size": format_size(self.layer_bytes),
            "total_cache_size": format_size(self.total_bytes),
            "disk_free_bytes": self.disk_free_bytes,
        }


def directory_size(path: Path) -> int:
    """Total size of regular files under ``path``; vanished files are skipped."""
    total = 0
    if not path.exists():
        return 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except FileNotFoundError:
                continue
    return total


class CacheEngine:
    """
    Manages the model-artifact and image-layer stores under one root.

    One engine instance owns one root directory; metadata writes are
    serialised by an in-process lock. Filesystem work is blocking, so async
    callers run it through ``asyncio.to_thread``.

    Example:
        engine = CacheEngine("~/.transformers-docker/cache")
        engine.initialize()
        key = engine.compute_key("transformers.js/phi-3.5", {"quantized": True})
        engine.record_access(CacheKind.MODEL, key, size_bytes=2_000_000)
        engine.prune(max_size_bytes=10 * 1024 ** 3, ttl_seconds=7 * 86400)
    """

    def __init__(
        self,
        root_dir: Union[str, Path],
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        strategy: str = "lru",
        compression_enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.root_dir = Path(root_dir).expanduser()
        self.max_size_bytes = max_size_bytes
        self.ttl_seconds = ttl_seconds
        self.strategy = strategy
        self.compression_enabled = compression_enabled
        self._clock = clock

        self._lock = threading.RLock()
        self._metadata: Optional[CacheMetadata] = None
        self._dirty = False

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def models_dir(self) -> Path:
        return self.root_dir / CacheKind.MODEL.directory

    @property
    def layers_dir(self) -> Path:
        return self.root_dir / CacheKind.LAYER.directory

    @property
    def metadata_path(self) -> Path:
        return self.root_dir / METADATA_FILE

    @property
    def policy_path(self) -> Path:
        return self.root_dir / POLICY_FILE

    @property
    def initialized(self) -> bool:
        return self._metadata is not None

    def entry_path(self, kind: CacheKind, key: str) -> Path:
        return self.root_dir / kind.directory / key

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """
        Create the stores, load or create metadata and write the policy file.

        Idempotent. Filesystem errors propagate to the caller.
        """
        logger.info(f"[Cache] Initializing cache at {self.root_dir}")

        with self._lock:
            self.models_dir.mkdir(parents=True, exist_ok=True)
            self.layers_dir.mkdir(parents=True, exist_ok=True)

            metadata = CacheMetadata()
            if self.metadata_path.exists():
                try:
                    metadata = CacheMetadata.load(self.metadata_path)
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"[Cache] Could not read cache metadata, starting fresh: {e}")

            metadata.touch()
            metadata.save(self.metadata_path)
            self._metadata = metadata
            self._dirty = False

            write_json_atomic(self.policy_path, self._policy_dict())

        logger.info(
            f"[Cache] Cache initialized: {len(metadata.model_entries)} models, "
            f"{len(metadata.layer_entries)} layers"
        )

    def flush(self) -> None:
        """Persist pending metadata changes."""
        with self._lock:
            if self._metadata is None or not self._dirty:
                return
            self._metadata.save(self.metadata_path)
            self._dirty = False

    def _require_metadata(self) -> CacheMetadata:
        if self._metadata is None:
            raise CacheError(f"Cache at {self.root_dir} is not initialized")
        return self._metadata

    # ------------------------------------------------------------------
    # Keys and entries
    # ------------------------------------------------------------------

    @staticmethod
    def compute_key(name: str, params: Optional[Dict[str, Any]] = None) -> str:
        """Deterministic content key over ``name`` and canonical ``params``."""
        canonical = json.dumps(
            params or {},
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(f"{name}:{canonical}".encode("utf-8")).hexdigest()

    def record_access(self, kind: CacheKind, key: str, size_bytes: Optional[int] = None) -> CacheEntry:
        """
        Upsert an entry, refreshing its size and last access time.

        When ``size_bytes`` is omitted the artifacts stored at
        ``entry_path(kind, key)`` are measured.
        """
        if size_bytes is None:
            size_bytes = directory_size(self.entry_path(kind, key))
        now = self._clock()
        with self._lock:
            entries = self._require_metadata().entries(kind)
            entry = entries.get(key)
            if entry is None:
                entry = CacheEntry(
                    key=key,
                    kind=kind,
                    size_bytes=size_bytes,
                    created_at=now,
                    last_accessed_at=now,
                )
                entries[key] = entry
            else:
                entry.size_bytes = size_bytes
                entry.last_accessed_at = now
            self._dirty = True
            return copy.copy(entry)

    def get_entry(self, kind: CacheKind, key: str) -> Optional[CacheEntry]:
        """Return a copy of the entry, or None on a miss."""
        with self._lock:
            if self._metadata is None:
                return None
            entry = self._metadata.entries(kind).get(key)
            return copy.copy(entry) if entry else None

    def entries(self, kind: Optional[CacheKind] = None) -> List[CacheEntry]:
        with self._lock:
            if self._metadata is None:
                return []
            if kind is None:
                return [copy.copy(e) for e in self._metadata.all_entries()]
            return [copy.copy(e) for e in self._metadata.entries(kind).values()]

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def prune(
        self,
        max_size_bytes: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
    ) -> PruneResult:
        """
        Two-phase eviction.

        Phase 1 drops every entry idle longer than ``ttl_seconds``. Phase 2,
        if the remaining total still exceeds ``max_size_bytes``, drops entries
        oldest-access first until the total fits.
        """
        max_size = self.max_size_bytes if max_size_bytes is None else max_size_bytes
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        now = self._clock()
        result = PruneResult()
        victims: List[CacheEntry] = []

        with self._lock:
            metadata = self._require_metadata()

            for entry in list(metadata.all_entries()):
                if entry.idle_seconds(now) > ttl:
                    del metadata.entries(entry.kind)[entry.key]
                    victims.append(entry)
                    result.expired_count += 1

            total = metadata.total_bytes()
            if total > max_size:
                for entry in sorted_by_access(list(metadata.all_entries())):
                    if total <= max_size:
                        break
                    del metadata.entries(entry.kind)[entry.key]
                    victims.append(entry)
                    total -= entry.size_bytes
                    result.evicted_count += 1

            if victims:
                self._dirty = True

        for entry in victims:
            result.removed_count += 1
            result.freed_bytes += entry.size_bytes
            self._remove_artifact(entry)

        self.flush()

        if victims:
            logger.info(
                f"[Cache] Pruned {result.removed_count} entries "
                f"({result.expired_count} expired, {result.evicted_count} evicted), "
                f"freed {format_size(result.freed_bytes)}"
            )
        return result

    def _remove_artifact(self, entry: CacheEntry) -> None:
        path = self.entry_path(entry.kind, entry.key)
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            elif path.exists() or path.is_symlink():
                path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[Cache] Could not remove {path}: {e}")

    # ------------------------------------------------------------------
    # Health and policy
    # ------------------------------------------------------------------

    def health(self) -> CacheHealth:
        """Walk both stores and summarise. Never raises."""
        try:
            if not self.metadata_path.exists():
                return CacheHealth(
                    status=CacheStatus.NOT_INITIALIZED,
                    message="Cache metadata not found",
                )

            metadata = self._metadata
            if metadata is None:
                metadata = CacheMetadata.load(self.metadata_path)

            with self._lock:
                model_count = len(metadata.model_entries)
                layer_count = len(metadata.layer_entries)

            return CacheHealth(
                status=CacheStatus.HEALTHY,
                model_count=model_count,
                layer_count=layer_count,
                model_bytes=directory_size(self.models_dir),
                layer_bytes=directory_size(self.layers_dir),
                version=metadata.version,
                created_at=metadata.created_at,
                last_accessed_at=metadata.last_accessed_at,
                disk_free_bytes=psutil.disk_usage(str(self.root_dir)).free,
            )
        except Exception as e:
            return CacheHealth(
                status=CacheStatus.ERROR,
                message=f"Error getting cache health: {e}",
            )

    def _policy_dict(self) -> Dict[str, Any]:
        return {
            "version": "1.0.0",
            "modelCacheDir": str(self.models_dir),
            "layerCacheDir": str(self.layers_dir),
            "maxCacheSize": self.max_size_bytes,
            "cacheStrategy": self.strategy,
            "ttl": self.ttl_seconds,
            "compressionEnabled": self.compression_enabled,
        }

    def policy(self) -> Dict[str, Any]:
        """The persisted policy, or the in-memory one if none was written."""
        try:
            with open(self.policy_path, "r") as f:
                return json.load(f)
        except (OSError, ValueError):
            return self._policy_dict()

    # ------------------------------------------------------------------
    # Consumer sharing
    # ------------------------------------------------------------------

    def link_consumer(self, consumer_dir: Union[str, Path], namespace: str) -> LinkMode:
        """
        Point ``<consumer_dir>/.model-cache`` at ``models/<namespace>``.

        Falls back to a ``.model-cache.cache-path`` pointer file when symlinks
        are not permitted. Any failure is logged and reported as
        ``LinkMode.PRIVATE``: the consumer keeps its own cache.

        Raises:
            ValueError: If ``namespace`` is not a single path component.
        """
        if not namespace or namespace in (".", "..") or "/" in namespace or os.sep in namespace:
            raise ValueError(f"Invalid cache namespace: {namespace!r}")

        consumer_dir = Path(consumer_dir)
        target = self.models_dir / namespace
        link = consumer_dir / CONSUMER_LINK_NAME

        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"[Cache] Could not create shared cache for {namespace}: {e}")
            return LinkMode.PRIVATE

        if link.is_symlink() and os.path.realpath(link) == os.path.realpath(target):
            return LinkMode.SYMLINK

        try:
            self._adopt_existing(link, target)
        except OSError as e:
            logger.warning(f"[Cache] Could not process existing model cache at {link}: {e}")

        try:
            os.symlink(target, link, target_is_directory=True)
            logger.debug(f"[Cache] Linked {link} -> {target}")
            return LinkMode.SYMLINK
        except (OSError, NotImplementedError) as e:
            logger.warning(f"[Cache] Could not create symlink for {consumer_dir}: {e}")

        pointer = link.with_name(link.name + POINTER_SUFFIX)
        try:
            pointer.write_text(str(target))
            logger.info(f"[Cache] Wrote cache pointer {pointer}")
            return LinkMode.POINTER
        except OSError as e:
            logger.warning(
                f"[Cache] Could not link {consumer_dir} to shared cache, "
                f"falling back to a private cache: {e}"
            )
            return LinkMode.PRIVATE

    def link_consumers(self, consumers_root: Union[str, Path]) -> Dict[str, LinkMode]:
        """
        Link every project directory under ``consumers_root``.

        Hidden directories and the cache root itself are skipped. Each
        project is namespaced by its directory name.
        """
        consumers_root = Path(consumers_root).expanduser()
        if not consumers_root.is_dir():
            logger.warning(f"[Cache] Consumers root {consumers_root} is not a directory")
            return {}

        cache_root = self.root_dir.resolve()
        results: Dict[str, LinkMode] = {}
        for child in sorted(consumers_root.iterdir()):
            if child.name.startswith(".") or not child.is_dir() or child.is_symlink():
                continue
            if child.resolve() == cache_root:
                continue
            results[child.name] = self.link_consumer(child, child.name)

        logger.info(f"[Cache] Linked {len(results)} consumer projects under {consumers_root}")
        return results

    @staticmethod
    def _adopt_existing(link: Path, target: Path) -> None:
        """Clear the link path, moving a private cache's files into the shared one."""
        if link.is_symlink():
            link.unlink()
        elif link.is_dir():
            for child in link.iterdir():
                destination = target / child.name
                if destination.exists():
                    continue
                shutil.move(str(child), str(destination))
            shutil.rmtree(link)
