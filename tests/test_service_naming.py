from __future__ import annotations

import random
import string

import pytest

from swarm_gateway.api.registry import ModelDescriptor, derive_service_name


@pytest.mark.parametrize(
    "model_id, expected",
    [
        ("transformers.js/phi-3.5", "transformers-js-phi-3-5"),
        ("transformers.js/llama-3.2-8b", "transformers-js-llama-3-2-8b"),
        ("vendor/x", "vendor-x"),
        ("plain", "plain"),
        ("a/b/c.d.e", "a-b-c-d-e"),
        ("", ""),
    ],
)
def test_derive_service_name_examples(model_id: str, expected: str) -> None:
    assert derive_service_name(model_id) == expected


def test_derive_service_name_never_emits_separators() -> None:
    rng = random.Random(1234)
    alphabet = string.ascii_letters + string.digits + "/.-_"
    for _ in range(500):
        model_id = "".join(rng.choice(alphabet) for _ in range(rng.randint(0, 40)))
        name = derive_service_name(model_id)
        assert "/" not in name
        assert "." not in name
        assert len(name) == len(model_id)
        assert derive_service_name(model_id) == name


def test_descriptor_service_name_matches_rule() -> None:
    descriptor = ModelDescriptor(id="transformers.js/gemma-2-2b")
    assert descriptor.service_name == "transformers-js-gemma-2-2b"
