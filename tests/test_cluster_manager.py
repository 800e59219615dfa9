from __future__ import annotations

import asyncio

import pytest

from swarm_gateway.cluster import ClusterLifecycleManager, ServiceState
from swarm_gateway.errors import ClusterError


def _spec(manager: ClusterLifecycleManager, name: str = "transformers-js-phi-3-5"):
    return manager.build_service_spec(name, f"transformersjs/{name}:latest")


def test_ensure_active_initializes_once(manager, fake_client) -> None:
    async def scenario():
        return [await manager.ensure_active(), await manager.ensure_active()]

    assert asyncio.run(scenario()) == [True, True]
    assert fake_client.calls["init"] == 1
    assert fake_client.networks == ["transformers-net"]
    assert manager.is_active()


def test_concurrent_activation_collapses(manager, fake_client) -> None:
    async def scenario():
        return await asyncio.gather(*(manager.ensure_active() for _ in range(8)))

    assert all(asyncio.run(scenario()))
    assert fake_client.calls["init"] == 1
    assert fake_client.calls["info"] == 1


def test_already_active_cluster_is_not_reinitialized(cluster_config, cluster_client_factory) -> None:
    client = cluster_client_factory(active=True, spec={
        "Name": "transformers-swarm",
        "Orchestration": {"TaskHistoryRetentionLimit": 5},
        "EncryptionConfig": {"AutoLockManagers": True},
    })
    manager = ClusterLifecycleManager(client, cluster_config)

    assert asyncio.run(manager.ensure_active())
    assert client.calls["init"] == 0
    assert client.calls["update"] == 0


def test_drifted_cluster_configuration_is_updated(cluster_config, cluster_client_factory) -> None:
    client = cluster_client_factory(active=True, spec={
        "Name": "default",
        "Orchestration": {"TaskHistoryRetentionLimit": 5},
        "EncryptionConfig": {"AutoLockManagers": False},
    })
    manager = ClusterLifecycleManager(client, cluster_config)

    assert asyncio.run(manager.ensure_active())
    assert client.calls["update"] == 1


def test_engine_rejecting_second_init_counts_as_success(manager, fake_client) -> None:
    fake_client.init_already_active = True
    assert asyncio.run(manager.ensure_active())
    assert manager.is_active()


def test_transient_failure_is_retried_once(manager, fake_client) -> None:
    fake_client.fail_info_times = 1
    assert asyncio.run(manager.ensure_active())
    assert fake_client.calls["info"] == 2


def test_activation_failure_is_not_cached(manager, fake_client) -> None:
    fake_client.fail_info_times = 2
    assert asyncio.run(manager.ensure_active()) is False
    assert not manager.is_active()

    assert asyncio.run(manager.ensure_active()) is True
    assert fake_client.calls["info"] == 3


def test_ensure_service_creates_exactly_once_under_concurrency(manager, fake_client) -> None:
    fake_client.create_delay = 0.05
    spec = _spec(manager)

    async def scenario():
        return await asyncio.gather(*(manager.ensure_service(spec.name, spec) for _ in range(10)))

    results = asyncio.run(scenario())

    assert fake_client.calls["create"] == 1
    assert all(r is True for r in results)
    assert manager.service_state(spec.name) is ServiceState.CREATING


def test_ensure_service_is_noop_for_existing_service(manager, fake_client) -> None:
    spec = _spec(manager)

    async def scenario():
        return [await manager.ensure_service(spec.name, spec), await manager.ensure_service(spec.name, spec)]

    assert asyncio.run(scenario()) == [True, False]
    assert fake_client.calls["create"] == 1


def test_ensure_service_surfaces_second_failure(manager, fake_client) -> None:
    fake_client.fail_create_times = 2
    spec = _spec(manager)

    with pytest.raises(ClusterError):
        asyncio.run(manager.ensure_service(spec.name, spec))
    assert fake_client.calls["create"] == 2
    assert manager.service_state(spec.name) is ServiceState.ABSENT


def test_ensure_service_recovers_after_one_failure(manager, fake_client) -> None:
    fake_client.fail_create_times = 1
    spec = _spec(manager)

    assert asyncio.run(manager.ensure_service(spec.name, spec)) is True
    assert spec.name in fake_client.services


def test_remove_service_is_idempotent(manager, fake_client) -> None:
    spec = _spec(manager)

    async def scenario():
        await manager.ensure_service(spec.name, spec)
        return [await manager.remove_service(spec.name), await manager.remove_service(spec.name)]

    assert asyncio.run(scenario()) == [True, False]
    assert manager.service_state(spec.name) is ServiceState.REMOVED


def test_list_services_reflects_live_state(manager, fake_client) -> None:
    spec = _spec(manager)

    async def scenario():
        before = await manager.list_services()
        fake_client.services[spec.name] = spec
        after = await manager.list_services()
        return before, after

    before, after = asyncio.run(scenario())
    assert before == []
    assert [s.name for s in after] == [spec.name]


def test_build_service_spec_carries_model_defaults(manager) -> None:
    spec = manager.build_service_spec("svc", "img:latest", labels={"extra": "1"})

    assert spec.replicas == 1
    assert spec.networks == ["transformers-net"]
    assert "HF_CACHE_DIR=/cache" in spec.env
    assert spec.mounts[0].source == "transformers-cache"
    assert spec.mounts[0].target == "/cache"
    assert spec.labels == {"com.transformers.js.managed": "true", "extra": "1"}


def test_tear_down_removes_managed_services_and_leaves(manager, fake_client) -> None:
    managed = _spec(manager, "managed-svc")
    fake_client.services["foreign"] = manager.build_service_spec("foreign", "img")
    fake_client.services["foreign"].labels = {}

    async def scenario():
        await manager.ensure_active()
        await manager.ensure_service(managed.name, managed)
        return await manager.tear_down()

    assert asyncio.run(scenario()) == 1
    assert list(fake_client.services) == ["foreign"]
    assert fake_client.calls["leave"] == 1
    assert not manager.is_active()


def test_cluster_info_does_not_activate(manager, fake_client) -> None:
    info = asyncio.run(manager.cluster_info())
    assert info.active is False
    assert fake_client.calls["init"] == 0


def test_status_query_on_existing_cluster_still_creates_network(cluster_config, cluster_client_factory) -> None:
    client = cluster_client_factory(active=True)
    manager = ClusterLifecycleManager(client, cluster_config)

    async def scenario():
        info = await manager.cluster_info()
        return info, await manager.ensure_active()

    info, active = asyncio.run(scenario())

    assert info.active is True
    assert active is True
    assert client.networks == ["transformers-net"]
    assert client.calls["info"] == 2


def test_status_query_notices_lost_cluster(manager, fake_client) -> None:
    async def scenario():
        await manager.ensure_active()
        fake_client.active = False
        await manager.cluster_info()
        return manager.is_active(), await manager.ensure_active()

    was_active, reactivated = asyncio.run(scenario())

    assert was_active is False
    assert reactivated is True
    assert fake_client.calls["init"] == 2


def test_readiness_marks(manager) -> None:
    manager.mark_ready("svc")
    assert manager.is_ready("svc")
    manager.mark_unconfirmed("svc")
    assert manager.service_state("svc") is ServiceState.CREATING
