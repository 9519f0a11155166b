"""
Cancellable, re-armable one-shot timer on the running asyncio loop.

Each ConversationState owns two of these (inactivity and upsell). The engine
never schedules a raw loop callback itself.

Every arm() and cancel() bumps the timer's token. A firing passes the token it
was armed with to its callback; the callback checks is_current(token) once it
holds the chat's exclusive section, so a firing that lost a race with a
cancel or re-arm becomes a no-op.
"""
import asyncio
import time
from typing import Awaitable, Callable, Optional

from core.error_boundary import run_guarded_async
from core.logging import get_logger

logger = get_logger(__name__)

TimerCallback = Callable[[int], Awaitable[None]]


class Timer:

    def __init__(self, name: str):
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._token = 0
        self.deadline: Optional[float] = None

    @property
    def armed(self) -> bool:
        return self._task is not None

    def is_current(self, token: int) -> bool:
        return token == self._token

    def arm(self, delay_seconds: float, callback: TimerCallback) -> int:
        """Cancel any pending firing and schedule callback(token) after delay_seconds."""
        self.cancel()
        token = self._token
        self.deadline = time.time() + delay_seconds
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(delay_seconds, callback, token))
        return token

    def cancel(self) -> None:
        """Cancel the pending firing, if any. Safe on fired or cancelled timers."""
        self._token += 1
        self.deadline = None
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def _run(self, delay_seconds: float, callback: TimerCallback, token: int) -> None:
        await asyncio.sleep(delay_seconds)
        if not self.is_current(token):
            return
        # Cleared before the callback runs so it may re-arm or cancel this timer.
        self._task = None
        self.deadline = None
        await run_guarded_async(
            lambda: callback(token),
            context={'timer': self.name},
            reraise_in_dev=False,
            exit_on_error=False,
        )

    def __repr__(self) -> str:
        return f"Timer(name={self.name!r}, armed={self.armed})"
