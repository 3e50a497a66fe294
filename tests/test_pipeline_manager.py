"""Tests for the pipeline lifecycle manager."""

import asyncio

import pytest

from scribed.device_policy import EngineOptions, ModelDescriptor
from scribed.ipc_models import Device
from scribed.pipeline_manager import ModelLoadError, PipelineManager

SMALL_CPU = ModelDescriptor("small.en", False, Device.CPU)
SMALL_CPU_Q = ModelDescriptor("small.en", True, Device.CPU)
SMALL_GPU = ModelDescriptor("small", False, Device.ACCELERATED)


@pytest.fixture
def options():
    """Create CPU engine options."""
    return EngineOptions(device=Device.CPU, quantized=False)


@pytest.fixture
def manager(fake_engine):
    """Create a pipeline manager over the fake engine."""
    return PipelineManager(fake_engine)


@pytest.mark.asyncio
async def test_first_resolve_loads(manager, fake_engine, options):
    pipeline = await manager.resolve(SMALL_CPU, options)

    assert pipeline is fake_engine.instances[0]
    assert fake_engine.loads == [("small.en", options)]
    assert manager.descriptor == SMALL_CPU
    assert manager.has_instance


@pytest.mark.asyncio
async def test_same_descriptor_reuses_instance(manager, fake_engine, options):
    """Test an unchanged descriptor never reloads or disposes."""
    first = await manager.resolve(SMALL_CPU, options)
    second = await manager.resolve(ModelDescriptor("small.en", False, Device.CPU), options)

    assert first is second
    assert len(fake_engine.loads) == 1
    assert first.disposed is False


@pytest.mark.parametrize("changed", [SMALL_CPU_Q, SMALL_GPU])
@pytest.mark.asyncio
async def test_changed_descriptor_disposes_before_loading(
    manager, fake_engine, options, changed
):
    """Test the old instance is disposed before the new one is loaded."""
    first = await manager.resolve(SMALL_CPU, options)
    second = await manager.resolve(changed, options)

    assert first is not second
    assert first.disposed is True
    assert second.disposed is False
    assert fake_engine.resident_at_load == [0, 0]
    assert fake_engine.resident == 1
    assert manager.descriptor == changed


@pytest.mark.asyncio
async def test_concurrent_resolves_share_pending_load(manager, fake_engine, options):
    """Test callers arriving mid-load await the same load."""
    fake_engine.gate = asyncio.Event()

    first = asyncio.create_task(manager.resolve(SMALL_CPU, options))
    second = asyncio.create_task(manager.resolve(SMALL_CPU, options))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    # The pending load is published before it settles
    assert manager.has_instance
    assert manager.descriptor == SMALL_CPU

    fake_engine.gate.set()
    results = await asyncio.gather(first, second)

    assert results[0] is results[1]
    assert len(fake_engine.loads) == 1


@pytest.mark.asyncio
async def test_progress_callback_forwarded(manager, options):
    events = []
    await manager.resolve(SMALL_CPU, options, events.append)

    assert events == [{"status": "progress", "stage": "initiate", "name": "small.en"}]


@pytest.mark.asyncio
async def test_load_failure_propagates_and_clears_slot(manager, fake_engine, options):
    """Test a failed load raises and leaves no stale descriptor behind."""
    fake_engine.fail_with = RuntimeError("out of memory")

    with pytest.raises(ModelLoadError, match="out of memory") as exc_info:
        await manager.resolve(SMALL_CPU, options)

    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert manager.descriptor is None
    assert not manager.has_instance

    # A retry with the same descriptor loads again
    fake_engine.fail_with = None
    pipeline = await manager.resolve(SMALL_CPU, options)
    assert pipeline is fake_engine.instances[0]
    assert len(fake_engine.loads) == 2


@pytest.mark.asyncio
async def test_concurrent_waiters_all_see_load_failure(manager, fake_engine, options):
    fake_engine.gate = asyncio.Event()
    fake_engine.fail_with = RuntimeError("bad checkpoint")

    tasks = [
        asyncio.create_task(manager.resolve(SMALL_CPU, options)) for _ in range(2)
    ]
    await asyncio.sleep(0)
    fake_engine.gate.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert all(isinstance(r, ModelLoadError) for r in results)
    assert len(fake_engine.loads) == 1
    assert manager.descriptor is None


@pytest.mark.asyncio
async def test_change_after_failed_load_skips_disposal(manager, fake_engine, options):
    fake_engine.fail_with = RuntimeError("boom")
    with pytest.raises(ModelLoadError):
        await manager.resolve(SMALL_CPU, options)

    fake_engine.fail_with = None
    pipeline = await manager.resolve(SMALL_GPU, options)
    assert pipeline.disposed is False
    assert fake_engine.resident == 1


@pytest.mark.asyncio
async def test_close_disposes_instance(manager, fake_engine, options):
    pipeline = await manager.resolve(SMALL_CPU, options)

    await manager.close()

    assert pipeline.disposed is True
    assert manager.descriptor is None
    assert not manager.has_instance


@pytest.mark.asyncio
async def test_close_without_instance(manager):
    await manager.close()
    assert not manager.has_instance
