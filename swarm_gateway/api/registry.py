"""
Model registry for the Swarm Gateway.

The registry is loaded once at startup (built-in defaults or a YAML models
file) and is read-only afterwards. Models file format:

    models:
      - id: transformers.js/phi-3.5
        owned_by: transformers.js
        capabilities: [sampling, logprobs, view]
        image: phi-3.5-webgpu
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Union

import yaml

logger = logging.getLogger(__name__)


class ModelCapability(Enum):
    SAMPLING = "sampling"
    LOGPROBS = "logprobs"
    SEARCH = "search"
    FINE_TUNING = "fine-tuning"
    VIEW = "view"


DEFAULT_CAPABILITIES = frozenset({
    ModelCapability.SAMPLING,
    ModelCapability.LOGPROBS,
    ModelCapability.VIEW,
})


def derive_service_name(model_id: str) -> str:
    """Service name for a model: every ``/`` and ``.`` becomes ``-``."""
    return model_id.replace("/", "-").replace(".", "-")


@dataclass(frozen=True)
class ModelDescriptor:
    """An invokable model and what callers may do with it."""
    id: str
    created: int = field(default_factory=lambda: int(time.time()))
    owned_by: str = "transformers.js"
    capabilities: FrozenSet[ModelCapability] = DEFAULT_CAPABILITIES
    root: Optional[str] = None
    parent: Optional[str] = None
    image: Optional[str] = None

    @property
    def service_name(self) -> str:
        return derive_service_name(self.id)

    def resolve_image(self, image_prefix: str) -> str:
        """
        Backend image reference.

        A full reference (with a registry path or tag) is used as-is, a bare
        name is placed under ``image_prefix``, and a model without an image
        gets ``<image_prefix>/<service name>:latest``.
        """
        if not self.image:
            return f"{image_prefix}/{self.service_name}:latest"
        if "/" in self.image or ":" in self.image:
            return self.image
        return f"{image_prefix}/{self.image}:latest"

    def allows(self, capability: ModelCapability) -> bool:
        return capability in self.capabilities

    def to_card(self) -> Dict[str, Any]:
        """OpenAI-style model card."""
        return {
            "id": self.id,
            "object": "model",
            "created": self.created,
            "owned_by": self.owned_by,
            "permission": [{
                "id": f"modelperm-{self.service_name}",
                "object": "model_permission",
                "created": self.created,
                "allow_create_engine": False,
                "allow_sampling": self.allows(ModelCapability.SAMPLING),
                "allow_logprobs": self.allows(ModelCapability.LOGPROBS),
                "allow_search_indices": self.allows(ModelCapability.SEARCH),
                "allow_view": self.allows(ModelCapability.VIEW),
                "allow_fine_tuning": self.allows(ModelCapability.FINE_TUNING),
                "organization": "*",
                "group": None,
                "is_blocking": False,
            }],
            "root": self.root or self.id,
            "parent": self.parent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelDescriptor":
        if not data.get("id"):
            raise ValueError(f"Model entry without an id: {data}")

        capabilities = DEFAULT_CAPABILITIES
        if "capabilities" in data:
            capabilities = frozenset(ModelCapability(c) for c in data["capabilities"] or [])

        kwargs: Dict[str, Any] = {
            "id": str(data["id"]),
            "owned_by": data.get("owned_by", "transformers.js"),
            "capabilities": capabilities,
            "root": data.get("root"),
            "parent": data.get("parent"),
            "image": data.get("image"),
        }
        if data.get("created") is not None:
            kwargs["created"] = int(data["created"])
        return cls(**kwargs)


def default_models() -> List[ModelDescriptor]:
    """Models served when no models file is configured."""
    return [
        ModelDescriptor(id="transformers.js/gemma-2-2b", image="gemma-2-2b-jpn-webgpu"),
        ModelDescriptor(id="transformers.js/phi-3.5", image="phi-3.5-webgpu"),
        ModelDescriptor(id="transformers.js/llama-3.2-8b", image="llama-3.2-webgpu"),
    ]


class ModelRegistry:
    """
    Read-only mapping of model id to ModelDescriptor.

    Example:
        registry = ModelRegistry.from_yaml("models.yaml")
        descriptor = registry.get("transformers.js/phi-3.5")
    """

    def __init__(self, models: Iterable[ModelDescriptor]):
        self._models: Dict[str, ModelDescriptor] = {}
        for model in models:
            if model.id in self._models:
                raise ValueError(f"Duplicate model id: {model.id}")
            self._models[model.id] = model

    @classmethod
    def default(cls) -> "ModelRegistry":
        return cls(default_models())

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ModelRegistry":
        path = Path(path)
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        entries = data.get("models", []) if isinstance(data, dict) else data
        registry = cls(ModelDescriptor.from_dict(entry) for entry in entries)
        logger.info(f"[Gateway] Loaded {len(registry)} models from {path}")
        return registry

    @classmethod
    def load(cls, models_file: Optional[Union[str, Path]] = None) -> "ModelRegistry":
        """Registry from ``models_file`` if given, else the built-in defaults."""
        if models_file:
            return cls.from_yaml(models_file)
        registry = cls.default()
        logger.info(f"[Gateway] Registered {len(registry)} default models")
        return registry

    def get(self, model_id: str) -> Optional[ModelDescriptor]:
        return self._models.get(model_id)

    def list(self) -> List[ModelDescriptor]:
        return list(self._models.values())

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(self._models.values())

    def __len__(self) -> int:
        return len(self._models)
