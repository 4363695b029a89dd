"""
Turn silence timer.

Marks a user turn complete after a quiet period. At most one countdown is
pending: arming again discards the previous schedule, so a callback fires
at most once per arm.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class SilenceTimer:
    """
    Single delayed callback with re-arm and cancel.

    Key Features:
    - Configurable duration (3000ms default)
    - Re-arming cancels the pending countdown (no queued duplicates)
    - Arm token passed to the callback so late deliveries can be detected
    - Sync or async callback
    """

    def __init__(
        self,
        on_silence_complete: Callable[[int], Any],
        duration_ms: int = 3000,
        min_duration_ms: int = 10,
        max_duration_ms: int = 10000,
    ):
        """
        Initialize silence timer.

        Args:
            on_silence_complete: Called with the arm token when the period completes
            duration_ms: Default quiet period
            min_duration_ms: Lower clamp for set_duration_ms
            max_duration_ms: Upper clamp for set_duration_ms
        """
        self.on_silence_complete = on_silence_complete
        self.min_duration_ms = min_duration_ms
        self.max_duration_ms = max_duration_ms
        self.duration_ms = max(min_duration_ms, min(duration_ms, max_duration_ms))

        self._timer_task: Optional[asyncio.Task] = None
        self._is_running = False
        self._token = 0

    @property
    def token(self) -> int:
        """Token of the most recent arm; bumped by every arm and cancel."""
        return self._token

    def arm(self, duration_ms: Optional[int] = None) -> int:
        """
        Start the countdown, replacing any pending one.

        Args:
            duration_ms: If provided, use this duration instead of the default

        Returns:
            Token identifying this arm
        """
        self._cancel_task()

        self._token += 1
        self._is_running = True
        duration = duration_ms if duration_ms is not None else self.duration_ms
        self._timer_task = asyncio.create_task(self._run_timer(self._token, duration))
        logger.debug(f"Silence timer armed: {duration}ms (token={self._token})")
        return self._token

    def cancel(self):
        """
        Cancel the pending countdown if any.

        Used when the turn ends by other means or the session stops.
        """
        if not self._is_running:
            return

        self._is_running = False
        self._token += 1
        self._cancel_task()
        logger.debug("Silence timer cancelled")

    def is_running(self) -> bool:
        """Check if a countdown is pending."""
        return self._is_running

    def is_current(self, token: int) -> bool:
        """True if no arm or cancel happened after the one that issued token."""
        return token == self._token

    def set_duration_ms(self, duration_ms: int):
        """
        Change the default duration (clamped to min/max).

        Args:
            duration_ms: New quiet period
        """
        old_value = self.duration_ms
        self.duration_ms = max(
            self.min_duration_ms,
            min(duration_ms, self.max_duration_ms)
        )
        logger.info(f"Silence duration set: {old_value}ms -> {self.duration_ms}ms")

    def _cancel_task(self):
        task = self._timer_task
        self._timer_task = None
        # The callback may re-arm or cancel from inside the timer task itself
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run_timer(self, token: int, duration_ms: int):
        """
        Internal timer coroutine.

        Waits for the period, then invokes the callback if still current.
        """
        try:
            await asyncio.sleep(duration_ms / 1000.0)
        except asyncio.CancelledError:
            logger.debug(f"Timer task cancelled (token={token})")
            return

        if not self._is_running or token != self._token:
            return

        logger.debug("Silence period complete - triggering callback")
        self._is_running = False
        self._timer_task = None
        try:
            result = self.on_silence_complete(token)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error in silence callback: {e}", exc_info=True)

    def __repr__(self) -> str:
        status = "running" if self._is_running else "idle"
        return f"SilenceTimer(duration={self.duration_ms}ms, status={status})"
