"""
Tiered admission control for expensive conversions.

A single active counter is shared by every tier; each tier only differs in
the ceiling it is allowed to push that counter to. Waiters queue in arrival
order and a freed slot goes to the first waiter whose ceiling is still above
the active count, so a higher tier can be granted ahead of an earlier
lower-tier waiter while FIFO order holds inside one tier.
"""

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Deque, Dict, Mapping, Union

from .models import TIER_ORDER, AdmissionSlot, Tier

logger = logging.getLogger(__name__)


@dataclass
class _Waiter:
    tier: Tier
    future: "asyncio.Future[AdmissionSlot]"


class AdmissionController:
    def __init__(self, limits: Mapping[Union[Tier, str], int]) -> None:
        ceilings: Dict[Tier, int] = {Tier(key): int(value) for key, value in limits.items()}
        missing = [tier.value for tier in TIER_ORDER if tier not in ceilings]
        if missing:
            raise ValueError(f"Missing admission ceiling for: {', '.join(missing)}")
        previous = 0
        for tier in TIER_ORDER:
            if ceilings[tier] < 1:
                raise ValueError(f"Admission ceiling for {tier.value} must be at least 1")
            if ceilings[tier] < previous:
                raise ValueError(
                    f"Admission ceiling for {tier.value} ({ceilings[tier]}) is lower than a lower tier's ({previous})"
                )
            previous = ceilings[tier]
        self._ceilings = ceilings
        self._active = 0
        self._high: Deque[_Waiter] = deque()
        self._normal: Deque[_Waiter] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in (*self._high, *self._normal) if not waiter.future.done())

    def ceiling(self, tier: Tier) -> int:
        return self._ceilings[Tier(tier)]

    async def acquire(self, tier: Tier, *, high_priority: bool = False) -> AdmissionSlot:
        """Suspend until the tier may run. Never fails except by cancellation."""
        tier = Tier(tier)
        if self._active < self._ceilings[tier]:
            self._active += 1
            return AdmissionSlot(tier=tier)

        future: "asyncio.Future[AdmissionSlot]" = asyncio.get_running_loop().create_future()
        waiter = _Waiter(tier=tier, future=future)
        queue = self._high if high_priority else self._normal
        queue.append(waiter)
        logger.debug(
            "Queued %s request (active=%d, waiting=%d)", tier.value, self._active, self.waiting
        )
        try:
            return await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                # Granted in the same tick the caller gave up: hand it back.
                self.release(future.result())
            else:
                try:
                    queue.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self, slot: AdmissionSlot) -> None:
        if slot.released:
            raise RuntimeError("Admission slot released twice")
        slot.released = True
        self._active -= 1
        self._grant_next()

    def _grant_next(self) -> None:
        for queue in (self._high, self._normal):
            for waiter in list(queue):
                if waiter.future.done():
                    queue.remove(waiter)
                    continue
                if self._active < self._ceilings[waiter.tier]:
                    queue.remove(waiter)
                    self._active += 1
                    waiter.future.set_result(AdmissionSlot(tier=waiter.tier))
                    return

    @asynccontextmanager
    async def slot(self, tier: Tier, *, high_priority: bool = False) -> AsyncIterator[AdmissionSlot]:
        acquired = await self.acquire(tier, high_priority=high_priority)
        try:
            yield acquired
        finally:
            self.release(acquired)
