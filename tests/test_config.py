from __future__ import annotations

from pathlib import Path

import pytest

from swarm_gateway.config import (
    CacheConfig,
    ClusterConfig,
    GatewayConfig,
    SwarmGatewayConfig,
    get_config,
    load_config,
)


def test_defaults() -> None:
    config = SwarmGatewayConfig()

    assert config.gateway.port == 8083
    assert config.gateway.backend_port == 8000
    assert config.cluster.swarm_name == "transformers-swarm"
    assert config.cluster.network_name == "transformers-net"
    assert config.cluster.retry_attempts == 2
    assert config.cache.max_size_bytes == 10 * 1024 ** 3
    assert config.cache.ttl_seconds == 7 * 86400
    assert config.cache.prune_interval_seconds == 86400


def test_env_defaults(monkeypatch) -> None:
    monkeypatch.setenv("SWARM_GATEWAY_PORT", "9090")
    monkeypatch.setenv("CACHE_SIZE", "512MB")
    monkeypatch.setenv("SWARM_GATEWAY_LEAVE_ON_SHUTDOWN", "yes")

    assert GatewayConfig().port == 9090
    assert CacheConfig().max_size_bytes == 512 * 1024 ** 2
    assert ClusterConfig().leave_on_shutdown is True


def test_from_yaml_with_sections_and_interpolation(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("GW_PORT", "7000")
    monkeypatch.delenv("GW_ADVERTISE", raising=False)
    path = tmp_path / "gateway.yaml"
    path.write_text(
        "verbose: true\n"
        "gateway:\n"
        "  port: ${GW_PORT}\n"
        "  readiness_attempts: '4'\n"
        f"  models_file: {tmp_path / 'models.yaml'}\n"
        "cluster:\n"
        "  advertise_addr: ${GW_ADVERTISE:-10.0.0.5}\n"
        "  service_env: A=1, B=2\n"
        "  autolock_managers: 'false'\n"
        "cache:\n"
        f"  root_dir: {tmp_path / 'cache'}\n"
        "  ttl: 30d\n"
        "  unknown_key: ignored\n"
    )

    config = SwarmGatewayConfig.from_yaml(path)

    assert config.verbose is True
    assert config.gateway.port == 7000
    assert config.gateway.readiness_attempts == 4
    assert config.gateway.models_file == tmp_path / "models.yaml"
    assert config.cluster.advertise_addr == "10.0.0.5"
    assert config.cluster.service_env == ["A=1", "B=2"]
    assert config.cluster.autolock_managers is False
    assert isinstance(config.cache.root_dir, Path)
    assert config.cache.ttl_seconds == 30 * 86400


def test_required_env_var_missing(monkeypatch) -> None:
    monkeypatch.delenv("GW_SECRET", raising=False)
    with pytest.raises(ValueError, match="need a secret"):
        GatewayConfig.from_dict({"host": "${GW_SECRET:?need a secret}"})


def test_missing_file() -> None:
    with pytest.raises(FileNotFoundError):
        SwarmGatewayConfig.from_yaml("/nonexistent/gateway.yaml")


def test_merge_and_to_dict() -> None:
    config = CacheConfig(max_size="1GB")
    merged = config.merge({"max_size": "2GB"})

    assert merged.max_size_bytes == 2 * 1024 ** 3
    assert config.max_size_bytes == 1024 ** 3
    assert isinstance(merged.to_dict()["root_dir"], str)


def test_load_config_caches_instance(tmp_path) -> None:
    path = tmp_path / "gateway.yaml"
    path.write_text("gateway:\n  port: 8111\n")

    first = load_config(path, reload=True)
    assert load_config() is first
    assert get_config() is first
    assert first.gateway.port == 8111

    second = load_config(reload=True)
    assert second is not first


def test_from_env_with_prefix(monkeypatch) -> None:
    monkeypatch.setenv("GW_PORT", "8200")
    monkeypatch.setenv("GW_READINESS_ATTEMPTS", "7")

    config = GatewayConfig.from_env(prefix="GW_")

    assert config.port == 8200
    assert config.readiness_attempts == 7
