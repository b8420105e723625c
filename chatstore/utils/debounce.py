from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict

from chatstore.utils.logging import get_logger

log = get_logger(__name__)

Action = Callable[[], Awaitable[None]]


class Debouncer:
    """One cancellable delayed task per key.

    Scheduling a key again cancels the pending task and restarts the quiet
    period. ``flush`` runs the latest pending action immediately.
    """

    def __init__(self, delay_seconds: float) -> None:
        self.delay_seconds = delay_seconds
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._actions: Dict[str, Action] = {}

    def pending(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    async def schedule(self, key: str, action: Action) -> None:
        if self.delay_seconds <= 0:
            self._cancel(key)
            await action()
            return
        self._cancel(key)
        self._actions[key] = action
        self._tasks[key] = asyncio.create_task(self._run_later(key, action), name=f"debounce:{key}")
        log.debug("debounce_scheduled", key=key, delay_seconds=self.delay_seconds)

    async def _run_later(self, key: str, action: Action) -> None:
        await asyncio.sleep(self.delay_seconds)
        # Detach before running so a flush issued mid-action does not cancel it.
        if self._tasks.get(key) is asyncio.current_task():
            self._tasks.pop(key, None)
            self._actions.pop(key, None)
        try:
            await action()
        except Exception as exc:
            # Nobody awaits this task; the owner retries on the next schedule or flush.
            log.error("debounced_action_failed", key=key, error=str(exc))

    def _cancel(self, key: str) -> None:
        task = self._tasks.pop(key, None)
        self._actions.pop(key, None)
        if task is not None and not task.done():
            task.cancel()

    async def flush(self, key: str) -> None:
        action = self._actions.get(key)
        if action is None:
            return
        self._cancel(key)
        await action()

    async def flush_all(self) -> None:
        for key in list(self._actions):
            await self.flush(key)

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self._cancel(key)
