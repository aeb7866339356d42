from __future__ import annotations

import asyncio

import allure
import pytest

from agent_dispatch.orchestrator.errors import SemaphoreTimeoutError
from agent_dispatch.orchestrator.semaphore import BackendSemaphore

pytestmark = [
    allure.epic("Backend Guards"),
    allure.feature("Backend Semaphore"),
]


def test_rejects_non_positive_cap() -> None:
    with pytest.raises(ValueError, match="positive"):
        BackendSemaphore("echo", 0)


@pytest.mark.asyncio
async def test_grants_up_to_cap_then_queues() -> None:
    semaphore = BackendSemaphore("echo", 2)
    first = await semaphore.acquire()
    second = await semaphore.acquire()
    third = asyncio.create_task(semaphore.acquire())
    await asyncio.sleep(0)

    assert semaphore.active == 2
    assert semaphore.waiting == 1
    assert not third.done()

    first.release()
    permit = await asyncio.wait_for(third, timeout=1)

    assert semaphore.active == 2
    assert semaphore.waiting == 0
    second.release()
    permit.release()
    assert semaphore.active == 0


@pytest.mark.asyncio
async def test_waiters_are_served_in_arrival_order() -> None:
    semaphore = BackendSemaphore("echo", 1)
    holder = await semaphore.acquire()
    order: list[int] = []

    async def _wait(index: int) -> None:
        permit = await semaphore.acquire()
        order.append(index)
        permit.release()

    waiters = [asyncio.create_task(_wait(index)) for index in range(3)]
    await asyncio.sleep(0)
    holder.release()
    await asyncio.gather(*waiters)

    assert order == [0, 1, 2]
    assert semaphore.active == 0


@pytest.mark.asyncio
async def test_acquire_timeout_removes_waiter() -> None:
    semaphore = BackendSemaphore("echo", 1)
    holder = await semaphore.acquire()

    with pytest.raises(SemaphoreTimeoutError) as error:
        await semaphore.acquire(timeout_seconds=0.05)

    assert error.value.backend_id == "echo"
    assert semaphore.waiting == 0
    holder.release()
    assert semaphore.active == 0


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_slot() -> None:
    semaphore = BackendSemaphore("echo", 1)
    holder = await semaphore.acquire()
    waiter = asyncio.create_task(semaphore.acquire())
    await asyncio.sleep(0)

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    holder.release()

    assert semaphore.active == 0
    again = await semaphore.acquire(timeout_seconds=0.1)
    again.release()


@pytest.mark.asyncio
async def test_double_release_raises() -> None:
    semaphore = BackendSemaphore("echo", 1)
    permit = await semaphore.acquire()
    permit.release()

    with pytest.raises(RuntimeError, match="already released"):
        permit.release()
    assert semaphore.active == 0


@pytest.mark.asyncio
async def test_permit_context_manager_releases_on_error() -> None:
    semaphore = BackendSemaphore("echo", 1)

    with pytest.raises(KeyError):
        async with await semaphore.acquire():
            raise KeyError("boom")

    assert semaphore.active == 0
