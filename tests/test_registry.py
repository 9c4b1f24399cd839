import asyncio

import pytest

from orchestrator.common.models import WorkerState
from orchestrator.serve.registry import WorkerRegistry

from conftest import BASE_PORT


def test_ports_strictly_increase(registry):
    ports = [registry.allocate_port() for _ in range(5)]
    assert ports[0] == BASE_PORT
    assert ports == sorted(set(ports))
    assert all(b == a + 1 for a, b in zip(ports, ports[1:]))


@pytest.mark.asyncio
async def test_ports_not_reclaimed_after_removal(registry):
    port = registry.allocate_port()
    await registry.add_worker("llama", port)
    await registry.remove_worker("llama", port)
    assert registry.allocate_port() == port + 1


@pytest.mark.asyncio
async def test_add_and_list_in_insertion_order(registry):
    for port in (11500, 11501, 11502):
        await registry.add_worker("llama", port)
    await registry.add_worker("mistral", 11503)

    assert await registry.list_models() == ["llama", "mistral"]
    assert [w.port for w in await registry.list_workers("llama")] == [11500, 11501, 11502]
    assert await registry.worker_count("llama") == 3
    assert await registry.worker_count("unknown") == 0


@pytest.mark.asyncio
async def test_duplicate_port_rejected(registry):
    await registry.add_worker("llama", 11500)
    with pytest.raises(ValueError):
        await registry.add_worker("mistral", 11500)


@pytest.mark.asyncio
async def test_remove_is_idempotent(registry):
    await registry.add_worker("llama", 11500)
    assert (await registry.remove_worker("llama", 11500)).port == 11500
    assert await registry.remove_worker("llama", 11500) is None
    assert await registry.remove_worker("never-seen", 1) is None
    assert await registry.list_models() == []


@pytest.mark.asyncio
async def test_pick_worker_round_robin(registry):
    for port in (11500, 11501, 11502):
        await registry.add_worker("llama", port)
    picks = [(await registry.pick_worker("llama")).port for _ in range(6)]
    assert picks == [11500, 11501, 11502, 11500, 11501, 11502]


@pytest.mark.asyncio
async def test_pick_worker_skips_draining(registry):
    await registry.add_worker("llama", 11500)
    await registry.add_worker("llama", 11501)
    assert await registry.mark_draining("llama", 11501)

    picks = {(await registry.pick_worker("llama")).port for _ in range(4)}
    assert picks == {11500}

    await registry.mark_running("llama", 11501)
    workers = await registry.list_workers("llama")
    assert all(w.state == WorkerState.RUNNING for w in workers)


@pytest.mark.asyncio
async def test_pick_worker_empty_pool(registry):
    assert await registry.pick_worker("llama") is None


@pytest.mark.asyncio
async def test_worker_endpoint_uses_host():
    registry = WorkerRegistry(base_port=20000, worker_host="gpu-box")
    worker = await registry.add_worker("llama", registry.allocate_port())
    assert worker.endpoint == "gpu-box:20000"
    assert worker.base_url == "http://gpu-box:20000"
    snapshot = await registry.snapshot()
    assert snapshot["llama"][0]["endpoint"] == "gpu-box:20000"
    assert snapshot["llama"][0]["state"] == "running"


@pytest.mark.asyncio
async def test_model_lock_is_per_model(registry):
    async with registry.model_lock("llama"):
        held = registry._model_locks["llama"][0]
        assert held.locked()
        assert "mistral" not in registry._model_locks
        async with registry.model_lock("mistral"):
            assert registry._model_locks["mistral"][0] is not held


@pytest.mark.asyncio
async def test_model_lock_released_for_models_without_workers(registry):
    async with registry.model_lock("ghost"):
        pass
    assert "ghost" not in registry._model_locks

    async with registry.model_lock("llama"):
        await registry.add_worker("llama", BASE_PORT)
    assert "llama" in registry._model_locks

    async with registry.model_lock("llama"):
        await registry.remove_worker("llama", BASE_PORT)
    assert registry._model_locks == {}


@pytest.mark.asyncio
async def test_model_lock_kept_while_waiters_queued(registry):
    order = []

    async def holder(tag, delay):
        async with registry.model_lock("llama"):
            order.append(tag)
            await asyncio.sleep(delay)

    first = asyncio.create_task(holder("first", 0.02))
    await asyncio.sleep(0)
    second = asyncio.create_task(holder("second", 0))
    await asyncio.sleep(0.005)
    assert registry._model_locks["llama"][1] == 2
    await asyncio.gather(first, second)

    assert order == ["first", "second"]
    assert registry._model_locks == {}


@pytest.mark.asyncio
async def test_running_count_ignores_draining(registry):
    await registry.add_worker("llama", 11500)
    await registry.add_worker("llama", 11501)
    await registry.mark_draining("llama", 11501)
    assert await registry.worker_count("llama") == 2
    assert await registry.running_count("llama") == 1
