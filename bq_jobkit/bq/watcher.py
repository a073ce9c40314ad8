from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from .jobs import DEFAULT_POLL_INTERVAL, Job

logger = logging.getLogger(__name__)

EVENTS = ("complete", "error")


class JobWatcher:
    """Listener surface over ``Job.wait``.

    Polling starts when the first "complete" listener is added and stops as
    soon as none are left. Exactly one of "complete" or "error" fires.
    """

    def __init__(self, job: Job, poll_interval: float = DEFAULT_POLL_INTERVAL) -> None:
        self.job = job
        self.poll_interval = poll_interval
        self._listeners: Dict[str, List[Callable[[Any], None]]] = {event: [] for event in EVENTS}
        self._task: Optional[asyncio.Task] = None
        self.finished = False

    @property
    def polling(self) -> bool:
        return self._task is not None and not self._task.done()

    def on(self, event: str, callback: Callable[[Any], None]) -> "JobWatcher":
        if event not in self._listeners:
            raise ValueError(f"Unknown event {event!r}; expected one of {EVENTS}.")
        start = event == "complete" and not self.finished and not self.polling
        loop = asyncio.get_running_loop() if start else None
        self._listeners[event].append(callback)
        if loop is not None:
            self._task = loop.create_task(self._run())
        return self

    def remove_listener(self, event: str, callback: Callable[[Any], None]) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)
        self._stop_if_idle()

    def remove_all_listeners(self, event: Optional[str] = None) -> None:
        for name in [event] if event else list(self._listeners):
            self._listeners[name] = []
        self._stop_if_idle()

    def _stop_if_idle(self) -> None:
        if self._listeners["complete"] or self._task is None:
            return
        if not self._task.done():
            logger.debug("[job][%s] no complete listeners left, stopping poll", self.job.id)
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        try:
            metadata = await self.job.wait(poll_interval=self.poll_interval)
        except Exception as exc:
            self._emit("error", exc)
            return
        self._emit("complete", metadata)

    def _emit(self, event: str, payload: Any) -> None:
        if self.finished:
            return
        self.finished = True
        logger.info("[job][%s] %s", self.job.id, event)
        listeners = list(self._listeners[event])
        if event == "error" and not listeners:
            logger.error("[job][%s] unhandled job error: %s", self.job.id, payload)
        for callback in listeners:
            callback(payload)

    async def wait_finished(self) -> None:
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
