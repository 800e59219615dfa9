from __future__ import annotations

import asyncio

from swarm_gateway.cache import CacheKind, CacheMetadata, PruneScheduler


def test_run_once_prunes_and_records_result(engine, clock) -> None:
    engine.record_access(CacheKind.MODEL, "stale", 100)
    clock.advance(7200)
    scheduler = PruneScheduler(engine, interval_seconds=3600)

    result = asyncio.run(scheduler.run_once())

    assert result.removed_count == 1
    assert scheduler.runs == 1
    assert scheduler.to_dict()["last_result"]["freed_bytes"] == 100


def test_scheduler_prunes_on_start_and_flushes_on_stop(engine, cache_root, clock) -> None:
    engine.record_access(CacheKind.LAYER, "stale", 10)
    engine.record_access(CacheKind.LAYER, "kept", 10)
    clock.advance(7200)
    engine.record_access(CacheKind.LAYER, "kept", 10)

    async def scenario() -> PruneScheduler:
        scheduler = PruneScheduler(engine, interval_seconds=3600, prune_on_start=True)
        await scheduler.start()
        for _ in range(200):
            if scheduler.runs:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()
        return scheduler

    scheduler = asyncio.run(scenario())

    assert scheduler.runs == 1
    assert not scheduler.running
    metadata = CacheMetadata.load(cache_root / "metadata.json")
    assert list(metadata.layer_entries) == ["kept"]


def test_scheduler_waits_when_not_pruning_on_start(engine) -> None:
    async def scenario() -> PruneScheduler:
        scheduler = PruneScheduler(engine, interval_seconds=3600, prune_on_start=False)
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()
        return scheduler

    assert asyncio.run(scenario()).runs == 0


def test_scheduler_survives_unexpected_prune_errors(engine, monkeypatch) -> None:
    real_prune = engine.prune
    attempts = []

    def flaky_prune(*args, **kwargs):
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("walk interrupted")
        return real_prune(*args, **kwargs)

    monkeypatch.setattr(engine, "prune", flaky_prune)

    async def scenario() -> PruneScheduler:
        scheduler = PruneScheduler(engine, interval_seconds=3600, error_backoff_seconds=0.01)
        await scheduler.start()
        for _ in range(200):
            if scheduler.runs:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()
        return scheduler

    scheduler = asyncio.run(scenario())

    assert scheduler.failures == 1
    assert scheduler.runs == 1
    assert scheduler.to_dict()["failures"] == 1
