from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional

from guardbot.models import ShieldState

logger = logging.getLogger(__name__)


class FloodShield:
    """
    Join-flood detector, one inactive/active state machine per group.

    More than `threshold` joins inside `window` seconds switches the group's
    shield on. It switches off once no join has arrived for `idle_reset`
    seconds; every join batch postpones that reset.
    """

    def __init__(self, threshold: int, window: float, idle_reset: float):
        self.threshold = threshold
        self.window = window
        self.idle_reset = idle_reset
        self._states: Dict[int, ShieldState] = {}
        self._idle_timers: Dict[int, asyncio.TimerHandle] = {}

    def get_state(self, group_id: int) -> ShieldState:
        state = self._states.get(group_id)
        if state is None:
            state = ShieldState()
            self._states[group_id] = state
        return state

    def is_active(self, group_id: int) -> bool:
        state = self._states.get(group_id)
        return bool(state and state.active)

    def record_joins(self, group_id: int, join_count: int, now: Optional[float] = None) -> bool:
        """Register a batch of joins. Returns True when new joiners must be rejected."""
        if join_count <= 0:
            return self.is_active(group_id)

        now = time.time() if now is None else now
        state = self.get_state(group_id)
        # A timer that never fired (no loop) must not leave the shield on forever
        self.reset_if_idle(group_id, now)

        state.join_timestamps = [ts for ts in state.join_timestamps if now - ts <= self.window]
        state.join_timestamps.extend([now] * join_count)
        state.last_join_at = now

        if not state.active and len(state.join_timestamps) > self.threshold:
            state.active = True
            logger.warning(
                f"Shield mode ON for chat {group_id} ({len(state.join_timestamps)} joins in {self.window:g}s)"
            )

        self._arm_idle_timer(group_id)
        return state.active

    def reset_if_idle(self, group_id: int, now: Optional[float] = None) -> bool:
        """Switch the shield off and forget joins if the group has been quiet long enough."""
        state = self._states.get(group_id)
        if state is None or (not state.join_timestamps and not state.active):
            return False

        now = time.time() if now is None else now
        if now - state.last_join_at < self.idle_reset:
            return False

        if state.active:
            logger.info(f"Shield mode OFF (idle) for chat {group_id}")
        state.active = False
        state.join_timestamps = []
        return True

    def sweep(self, now: float) -> int:
        reset = 0
        for group_id in list(self._states.keys()):
            if self.reset_if_idle(group_id, now):
                reset += 1
            state = self._states[group_id]
            if not state.active and not state.join_timestamps:
                del self._states[group_id]
        return reset

    def _arm_idle_timer(self, group_id: int, delay: Optional[float] = None) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        handle = self._idle_timers.pop(group_id, None)
        if handle is not None:
            handle.cancel()
        delay = self.idle_reset if delay is None else max(delay, 0.0)
        self._idle_timers[group_id] = loop.call_later(delay, self._on_idle_timer, group_id)

    def _on_idle_timer(self, group_id: int) -> None:
        self._idle_timers.pop(group_id, None)
        if self.reset_if_idle(group_id):
            return
        state = self._states.get(group_id)
        if state is not None and (state.active or state.join_timestamps):
            # Loop clock and wall clock can disagree slightly, wait out the remainder
            self._arm_idle_timer(group_id, self.idle_reset - (time.time() - state.last_join_at))
