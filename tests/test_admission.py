from __future__ import annotations

import asyncio

import pytest

from audioharvest.admission import AdmissionController
from audioharvest.models import Tier


def _limits(standard=1, premium=2, business=3, enterprise=3):
    return {
        "standard": standard,
        "premium": premium,
        "business": business,
        "enterprise": enterprise,
    }


def test_acquire_suspends_at_ceiling_and_resumes_on_release() -> None:
    async def scenario():
        controller = AdmissionController(_limits(standard=2, premium=3))
        first = await controller.acquire(Tier.STANDARD)
        second = await controller.acquire(Tier.STANDARD)
        waiter = asyncio.ensure_future(controller.acquire(Tier.STANDARD))
        await asyncio.sleep(0)
        assert not waiter.done()
        assert controller.active == 2
        assert controller.waiting == 1

        controller.release(first)
        third = await asyncio.wait_for(waiter, timeout=1)
        assert controller.active == 2
        controller.release(second)
        controller.release(third)
        return controller.active

    assert asyncio.run(scenario()) == 0


def test_saturated_pool_never_exceeds_tier_ceiling() -> None:
    async def scenario():
        controller = AdmissionController(_limits(standard=1, premium=3, business=4, enterprise=4))
        running = 0
        peak = 0

        async def job():
            nonlocal running, peak
            async with controller.slot(Tier.PREMIUM):
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.01)
                running -= 1

        await asyncio.gather(*(job() for _ in range(10)))
        return peak, controller.active

    peak, active = asyncio.run(scenario())
    assert peak == 3
    assert active == 0


def test_higher_tier_skips_ahead_of_earlier_lower_tier_waiter() -> None:
    async def scenario():
        controller = AdmissionController(_limits(standard=1, premium=2))
        held = [await controller.acquire(Tier.PREMIUM), await controller.acquire(Tier.PREMIUM)]
        standard = asyncio.ensure_future(controller.acquire(Tier.STANDARD))
        await asyncio.sleep(0)
        premium = asyncio.ensure_future(controller.acquire(Tier.PREMIUM))
        await asyncio.sleep(0)

        controller.release(held.pop())
        await asyncio.sleep(0)
        assert premium.done()
        assert not standard.done()

        controller.release(held.pop())
        controller.release(premium.result())
        granted = await asyncio.wait_for(standard, timeout=1)
        controller.release(granted)
        return controller.active

    assert asyncio.run(scenario()) == 0


def test_fifo_order_within_one_tier() -> None:
    async def scenario():
        controller = AdmissionController(_limits())
        holder = await controller.acquire(Tier.STANDARD)
        first = asyncio.ensure_future(controller.acquire(Tier.STANDARD))
        await asyncio.sleep(0)
        second = asyncio.ensure_future(controller.acquire(Tier.STANDARD))
        await asyncio.sleep(0)

        controller.release(holder)
        await asyncio.sleep(0)
        order = (first.done(), second.done())
        controller.release(first.result())
        controller.release(await asyncio.wait_for(second, timeout=1))
        return order

    assert asyncio.run(scenario()) == (True, False)


def test_high_priority_queue_drains_first() -> None:
    async def scenario():
        controller = AdmissionController(_limits())
        holder = await controller.acquire(Tier.STANDARD)
        normal = asyncio.ensure_future(controller.acquire(Tier.STANDARD))
        await asyncio.sleep(0)
        urgent = asyncio.ensure_future(controller.acquire(Tier.STANDARD, high_priority=True))
        await asyncio.sleep(0)

        controller.release(holder)
        await asyncio.sleep(0)
        order = (urgent.done(), normal.done())
        controller.release(urgent.result())
        controller.release(await asyncio.wait_for(normal, timeout=1))
        return order

    assert asyncio.run(scenario()) == (True, False)


def test_cancelled_waiter_does_not_leak_a_slot() -> None:
    async def scenario():
        controller = AdmissionController(_limits())
        holder = await controller.acquire(Tier.STANDARD)
        waiter = asyncio.ensure_future(controller.acquire(Tier.STANDARD))
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert controller.waiting == 0

        controller.release(holder)
        assert controller.active == 0
        again = await asyncio.wait_for(controller.acquire(Tier.STANDARD), timeout=1)
        controller.release(again)
        return controller.active

    assert asyncio.run(scenario()) == 0


def test_slot_is_released_when_body_raises() -> None:
    async def scenario():
        controller = AdmissionController(_limits())
        with pytest.raises(RuntimeError, match="boom"):
            async with controller.slot(Tier.STANDARD):
                raise RuntimeError("boom")
        return controller.active

    assert asyncio.run(scenario()) == 0


def test_double_release_is_rejected() -> None:
    async def scenario():
        controller = AdmissionController(_limits())
        slot = await controller.acquire(Tier.STANDARD)
        controller.release(slot)
        with pytest.raises(RuntimeError):
            controller.release(slot)
        return controller.active

    assert asyncio.run(scenario()) == 0


def test_invalid_ceilings_are_rejected() -> None:
    with pytest.raises(ValueError):
        AdmissionController(_limits(standard=4, premium=2))
    with pytest.raises(ValueError):
        AdmissionController(_limits(standard=0))
    with pytest.raises(ValueError):
        AdmissionController({"standard": 1, "premium": 2})
