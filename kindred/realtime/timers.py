"""
Timer registry

Every timer (round, countdown, reveal-advance, typing auto-stop, disconnect grace,
presence grace) is an owned handle keyed by (owner, kind). Scheduling a key
cancels the previous handle first. A firing timer removes itself from the registry
before running its callback, so the callback may freely reschedule or cancel its
own key.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Tuple

from kindred.core.logging import get_logger

logger = get_logger(__name__)

TimerKey = Tuple[str, str]
TimerCallback = Callable[[], Awaitable[None]]


class TimerRegistry:
    def __init__(self):
        self._timers: Dict[TimerKey, asyncio.Task] = {}

    def schedule(self, owner: str, kind: str, delay: float, callback: TimerCallback) -> None:
        key = (owner, kind)
        self.cancel(owner, kind)
        task = asyncio.get_running_loop().create_task(
            self._run(key, max(0.0, delay), callback),
            name=f"timer:{owner}:{kind}",
        )
        self._timers[key] = task

    async def _run(self, key: TimerKey, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Timer {key[0]}/{key[1]} callback failed")

    def cancel(self, owner: str, kind: str) -> bool:
        task = self._timers.pop((owner, kind), None)
        if task is None:
            return False
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        return True

    def cancel_owner(self, owner: str) -> int:
        keys = [key for key in self._timers if key[0] == owner]
        for key in keys:
            self.cancel(*key)
        return len(keys)

    def active(self, owner: str, kind: str) -> bool:
        task = self._timers.get((owner, kind))
        return task is not None and not task.done()

    def kinds(self, owner: str) -> List[str]:
        return [kind for (o, kind), task in self._timers.items() if o == owner and not task.done()]

    def __len__(self) -> int:
        return len(self._timers)

    async def shutdown(self) -> None:
        """Cancel every pending timer (process shutdown)"""
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
