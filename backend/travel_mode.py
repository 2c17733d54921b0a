"""
Travel mode auto-continuation.

While travel mode is on, every completed travel narration chains into the
next one after a short delay, as long as the user has been quiet for the
grace period. A slow backup poll re-triggers narration if the chain ever
breaks (e.g. a narration was interrupted or failed).
"""

import asyncio
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class TravelModeScheduler:
    """
    Owns the auto-continue timer and the backup poll.

    on_trigger() is called to issue the next travel narration; is_ready()
    tells whether the coordinator is free to start one (nothing in flight,
    nobody speaking, stop not asserted).
    """

    def __init__(
        self,
        on_trigger: Callable[[], None],
        is_ready: Callable[[], bool],
        grace_period: float = 2.0,
        continue_delay: float = 1.5,
        backup_interval: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.on_trigger = on_trigger
        self.is_ready = is_ready
        self.grace_period = grace_period
        self.continue_delay = continue_delay
        self.backup_interval = backup_interval
        self.clock = clock

        self.enabled = False
        self.last_user_input = 0.0
        self.last_trigger = 0.0
        self.triggers = 0
        self._pending: Optional[asyncio.TimerHandle] = None
        self._backup_task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        """An auto-continuation is scheduled but hasn't fired yet."""
        return self._pending is not None

    def enable(self):
        if self.enabled:
            return
        self.enabled = True
        self.last_trigger = self.clock()
        self._backup_task = asyncio.get_running_loop().create_task(self._backup_poll())
        logger.info("🧭 Travel mode enabled")

    def disable(self):
        if not self.enabled:
            return
        self.enabled = False
        self.cancel_pending()
        if self._backup_task is not None:
            self._backup_task.cancel()
            self._backup_task = None
        logger.info("🧭 Travel mode disabled")

    def note_user_input(self):
        """The user started talking; any scheduled continuation is dropped."""
        self.last_user_input = self.clock()
        if self.pending:
            logger.info("🧭 User spoke, cancelling auto-continue")
        self.cancel_pending()

    def note_triggered(self):
        """A travel narration was issued (by the chain, the poll, or the start command)."""
        self.last_trigger = self.clock()

    def cancel_pending(self):
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def sequence_finished(self):
        """
        Called once the last item of a travel narration has been spoken.

        Schedules the next narration after continue_delay, pushed back so it
        never fires inside the grace period after the user's last input.
        """
        if not self.enabled:
            return

        since_input = self.clock() - self.last_user_input
        delay = self.continue_delay + max(0.0, self.grace_period - since_input)

        self.cancel_pending()
        self._pending = asyncio.get_running_loop().call_later(delay, self._fire)
        logger.info(f"🧭 Auto-continue in {delay:.1f}s")

    def _fire(self):
        self._pending = None
        if not self.enabled:
            return
        if self.clock() - self.last_user_input < self.grace_period:
            logger.info("🧭 User spoke recently, skipping auto-continue")
            return
        if not self.is_ready():
            logger.info("🧭 Coordinator busy, skipping auto-continue")
            return
        self._trigger("auto-continue")

    def _trigger(self, source: str):
        self.triggers += 1
        self.note_triggered()
        logger.info(f"🧭 Travel narration #{self.triggers} ({source})")
        self.on_trigger()

    async def _backup_poll(self):
        while self.enabled:
            await asyncio.sleep(self.backup_interval)
            if not self.enabled:
                return
            if self.pending:
                continue
            if self.clock() - self.last_trigger < self.backup_interval:
                continue
            if not self.is_ready():
                continue
            try:
                self._trigger("backup poll")
            except Exception as e:
                logger.error(f"❌ Travel backup trigger failed: {e}", exc_info=True)
