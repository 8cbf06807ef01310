"""
Polling Scheduler

Keeps exactly one polling timer per demanded key. apply_demand() is the
only place timers are created or torn down. Each timer fires the refresh
callback every `interval` seconds; a fire that would overlap the previous
one for the same key is skipped. Immediate refreshes requested on demand
changes go through a per-key leading-edge debounce.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Optional, Set

from subscription_registry import DemandSnapshot, PollKey
from utils import ACTIVE_POLLERS, POLL_FIRES, logger

RefreshCallback = Callable[[PollKey], Awaitable[None]]


class RefreshCoalescer:
    """Leading-edge debounce per key

    The first request outside the window fires at once. Requests inside the
    window are deferred to the window boundary and fire there exactly once.
    """

    def __init__(self, window: float, fire: Callable[[PollKey], None]):
        self.window = window
        self.fire = fire
        self._last_fired: Dict[PollKey, float] = {}
        self._deferred: Dict[PollKey, asyncio.TimerHandle] = {}

    def request(self, key: PollKey):
        if key in self._deferred:
            return
        loop = asyncio.get_running_loop()
        now = loop.time()
        last = self._last_fired.get(key)
        if last is None or now - last >= self.window:
            self._fire(key)
            return
        self._deferred[key] = loop.call_later(last + self.window - now, self._fire_deferred, key)

    def pending(self, key: PollKey) -> bool:
        return key in self._deferred

    def cancel(self, key: PollKey):
        handle = self._deferred.pop(key, None)
        if handle:
            handle.cancel()
        self._last_fired.pop(key, None)

    def close(self):
        for key in list(self._deferred):
            self.cancel(key)
        self._last_fired.clear()

    def _fire_deferred(self, key: PollKey):
        self._deferred.pop(key, None)
        self._fire(key)

    def _fire(self, key: PollKey):
        self._last_fired[key] = asyncio.get_running_loop().time()
        self.fire(key)


class PollingScheduler:
    """One recurring refresh per demanded topic or watched container"""

    def __init__(self, refresh: RefreshCallback, interval: float = 10.0, debounce: float = 1.0):
        self.refresh = refresh
        self.interval = interval
        self.coalescer = RefreshCoalescer(debounce, self.fire)
        self._timers: Dict[PollKey, asyncio.Task] = {}
        self._in_flight: Set[PollKey] = set()
        self._fires: Set[asyncio.Task] = set()

    @property
    def keys(self) -> Set[PollKey]:
        return set(self._timers)

    def is_armed(self, key: PollKey) -> bool:
        return key in self._timers

    def in_flight(self, key: PollKey) -> bool:
        return key in self._in_flight

    def apply_demand(self, snapshot: DemandSnapshot, changed: Optional[PollKey] = None):
        """Bring the set of timers in line with the demand snapshot"""
        wanted = snapshot.keys()

        for key in set(self._timers) - wanted:
            self._disarm(key)

        new_keys = wanted - set(self._timers)
        for key in new_keys:
            self._arm(key)
            self.request_refresh(key)

        if changed is not None and changed in wanted and changed not in new_keys:
            self.request_refresh(changed)

        ACTIVE_POLLERS.set(len(self._timers))

    def request_refresh(self, key: PollKey):
        """Refresh a key soon, coalesced with other requests for it"""
        if key in self._timers:
            self.coalescer.request(key)

    def fire(self, key: PollKey) -> Optional[asyncio.Task]:
        """Start one refresh for key unless one is still running"""
        if key in self._in_flight:
            logger.debug("Skipping poll, previous one still running", key=str(key))
            POLL_FIRES.labels(topic=key.topic.value, outcome="skipped").inc()
            return None
        self._in_flight.add(key)
        task = asyncio.create_task(self._run_fire(key))
        self._fires.add(task)
        task.add_done_callback(self._fires.discard)
        return task

    async def stop(self):
        """Tear everything down, including refreshes still running"""
        for key in list(self._timers):
            self._disarm(key)
        self.coalescer.close()
        fires = list(self._fires)
        for task in fires:
            task.cancel()
        if fires:
            await asyncio.gather(*fires, return_exceptions=True)
        ACTIVE_POLLERS.set(0)

    def _arm(self, key: PollKey):
        logger.info("Polling started", key=str(key), interval=self.interval)
        self._timers[key] = asyncio.create_task(self._tick(key))

    def _disarm(self, key: PollKey):
        logger.info("Polling stopped", key=str(key))
        self._timers.pop(key).cancel()
        self.coalescer.cancel(key)

    async def _tick(self, key: PollKey):
        while True:
            await asyncio.sleep(self.interval)
            self.fire(key)

    async def _run_fire(self, key: PollKey):
        try:
            await self.refresh(key)
            POLL_FIRES.labels(topic=key.topic.value, outcome="ok").inc()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Poll failed", key=str(key), error=str(e), exc_info=True)
            POLL_FIRES.labels(topic=key.topic.value, outcome="error").inc()
        finally:
            self._in_flight.discard(key)
