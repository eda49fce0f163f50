import time

import anyio
import pytest

from audioflow.configs import Policy
from audioflow.transcoder.admission import AdmissionController
from audioflow.transcoder.errors import AdmissionTimeout

MB = 1024 * 1024


def _controller(max_concurrent: int = 1, memory: int = 0, **policy_kwargs) -> AdmissionController:
    policy_kwargs.setdefault("poll_interval", 0.01)
    policy_kwargs.setdefault("wait_timeout", 5.0)
    policy = Policy(max_concurrent=max_concurrent, **policy_kwargs)
    return AdmissionController(policy, memory_probe=lambda: memory)


@pytest.mark.asyncio
async def test_acquire_then_release_restores_held():
    controller = _controller(max_concurrent=2)
    assert controller.held == 0

    slot = await controller.acquire()
    assert controller.held == 1
    assert controller.has_capacity()

    controller.release(slot)
    assert controller.held == 0


@pytest.mark.asyncio
async def test_double_release_is_a_no_op():
    controller = _controller(max_concurrent=2)
    first = await controller.acquire()
    await controller.acquire()
    assert controller.held == 2

    controller.release(first)
    controller.release(first)
    assert controller.held == 1


@pytest.mark.asyncio
async def test_slot_context_releases_on_error():
    controller = _controller()

    with pytest.raises(RuntimeError):
        async with controller.slot():
            assert controller.held == 1
            raise RuntimeError("job failed")

    assert controller.held == 0


@pytest.mark.asyncio
async def test_memory_above_ceiling_times_out_without_holding_a_slot():
    controller = _controller(memory=600 * MB, memory_ceiling=450 * MB, wait_timeout=0.05)

    started = time.monotonic()
    with pytest.raises(AdmissionTimeout) as exc_info:
        await controller.acquire()

    assert time.monotonic() - started >= 0.05
    assert exc_info.value.timeout == 0.05
    assert exc_info.value.elapsed > 0.05
    assert controller.held == 0


@pytest.mark.asyncio
async def test_full_controller_times_out():
    controller = _controller(max_concurrent=1, wait_timeout=0.05)
    await controller.acquire()

    with pytest.raises(AdmissionTimeout) as exc_info:
        await controller.acquire()

    assert exc_info.value.held == 1
    assert exc_info.value.max_concurrent == 1
    assert controller.held == 1


@pytest.mark.asyncio
async def test_waits_for_memory_to_drop():
    readings = iter([900 * MB, 900 * MB, 100 * MB])
    policy = Policy(max_concurrent=1, memory_ceiling=450 * MB, poll_interval=0.01, wait_timeout=5.0)
    controller = AdmissionController(policy, memory_probe=lambda: next(readings, 100 * MB))

    slot = await controller.acquire()

    assert controller.held == 1
    controller.release(slot)


@pytest.mark.asyncio
async def test_unlimited_memory_ceiling_never_blocks():
    controller = _controller(memory=10_000 * MB)
    slot = await controller.acquire()
    assert controller.held == 1
    controller.release(slot)


@pytest.mark.asyncio
async def test_concurrent_acquirers_share_two_slots():
    controller = _controller(max_concurrent=2)
    acquired_order = []
    peak = 0

    async def worker(index: int):
        nonlocal peak
        async with controller.slot():
            acquired_order.append(index)
            peak = max(peak, controller.held)
            await anyio.sleep(0.1)

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            for index in range(5):
                tg.start_soon(worker, index)

            await anyio.sleep(0.03)
            assert len(acquired_order) == 2
            assert controller.held == 2

    assert sorted(acquired_order) == [0, 1, 2, 3, 4]
    assert peak == 2
    assert controller.held == 0
