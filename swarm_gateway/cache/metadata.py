"""
Cache entry and metadata records, persisted as ``metadata.json``.

Schema:
    {
        "version": "1.0.0",
        "createdAt": "2025-03-02T10:15:30.123456",
        "lastAccessedAt": "2025-03-02T11:00:00.000000",
        "modelEntries": {"<key>": {"key": ..., "sizeBytes": ..., ...}},
        "layerEntries": {"<key>": {...}}
    }
"""

from __future__ import annotations

import json
import os
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

METADATA_VERSION = "1.0.0"


class CacheKind(Enum):
    """The two disjoint content stores."""
    MODEL = "model"
    LAYER = "layer"

    @property
    def directory(self) -> str:
        return "models" if self is CacheKind.MODEL else "layers"


@dataclass
class CacheEntry:
    """A cached model artifact or image layer."""
    key: str
    kind: CacheKind
    size_bytes: int = 0
    created_at: float = field(default_factory=time.time)
    last_accessed_at: float = field(default_factory=time.time)

    def idle_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.last_accessed_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "kind": self.kind.value,
            "sizeBytes": self.size_bytes,
            "createdAt": self.created_at,
            "lastAccessedAt": self.last_accessed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], kind: CacheKind) -> "CacheEntry":
        return cls(
            key=data["key"],
            kind=kind,
            size_bytes=int(data.get("sizeBytes", 0)),
            created_at=float(data.get("createdAt", time.time())),
            last_accessed_at=float(data.get("lastAccessedAt", time.time())),
        )


@dataclass
class CacheMetadata:
    """Process-wide cache summary for one cache root."""
    version: str = METADATA_VERSION
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    last_accessed_at: str = field(default_factory=lambda: datetime.now().isoformat())
    model_entries: Dict[str, CacheEntry] = field(default_factory=dict)
    layer_entries: Dict[str, CacheEntry] = field(default_factory=dict)

    def entries(self, kind: CacheKind) -> Dict[str, CacheEntry]:
        return self.model_entries if kind is CacheKind.MODEL else self.layer_entries

    def all_entries(self) -> Iterator[CacheEntry]:
        yield from self.model_entries.values()
        yield from self.layer_entries.values()

    def total_bytes(self) -> int:
        return sum(entry.size_bytes for entry in self.all_entries())

    def touch(self) -> None:
        self.last_accessed_at = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "createdAt": self.created_at,
            "lastAccessedAt": self.last_accessed_at,
            "modelEntries": {k: e.to_dict() for k, e in self.model_entries.items()},
            "layerEntries": {k: e.to_dict() for k, e in self.layer_entries.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheMetadata":
        now = datetime.now().isoformat()
        return cls(
            version=data.get("version", METADATA_VERSION),
            created_at=data.get("createdAt", now),
            last_accessed_at=data.get("lastAccessedAt", now),
            model_entries={
                k: CacheEntry.from_dict(v, CacheKind.MODEL)
                for k, v in (data.get("modelEntries") or {}).items()
            },
            layer_entries={
                k: CacheEntry.from_dict(v, CacheKind.LAYER)
                for k, v in (data.get("layerEntries") or {}).items()
            },
        )

    @classmethod
    def load(cls, path: Path) -> "CacheMetadata":
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))

    def save(self, path: Path) -> None:
        """Write atomically so readers never see a half-written file."""
        write_json_atomic(path, self.to_dict())


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def sorted_by_access(entries: List[CacheEntry]) -> List[CacheEntry]:
    """Oldest access first, key as tie-breaker for determinism."""
    return sorted(entries, key=lambda e: (e.last_accessed_at, e.key))
