"""
ResusFlow: Timer Engine
=======================
Countdowns are derived from absolute session timestamps, never decremented,
so a late or skipped tick cannot drift them. The single accumulated quantity
is `total_active_time` (hands-on CPR time), which needs the previous tick.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from constants import ArrestPhase, ProtocolConfig, SHOCKABLE_EPI_SHOCK_THRESHOLD
from models import ArrestSession, TimerState

logger = logging.getLogger("resusflow.timer")

TICKING_PHASES = (ArrestPhase.CPR_PENDING_RHYTHM, ArrestPhase.SHOCKABLE,
                  ArrestPhase.NON_SHOCKABLE, ArrestPhase.RHYTHM_CHECK)

def wall_clock_ms() -> int:
    return int(time.time() * 1000)

class TimerEngine:

    @staticmethod
    def initial(config: ProtocolConfig, now: Optional[int] = None) -> TimerState:
        return TimerState(
            cycle_remaining=config.rhythm_check_interval_ms,
            medication_interval_remaining=config.medication_interval_ms,
            last_tick=now,
        )

    @staticmethod
    def _medication_remaining(session: ArrestSession, now: int,
                              config: ProtocolConfig) -> int:
        if session.last_epinephrine_time is not None:
            return max(0, config.medication_interval_ms - (now - session.last_epinephrine_time))
        # No dose yet: zero means the first dose is due now
        if session.phase == ArrestPhase.NON_SHOCKABLE:
            return 0
        if session.shock_count >= SHOCKABLE_EPI_SHOCK_THRESHOLD:
            return 0
        return config.medication_interval_ms

    @staticmethod
    def tick(session: ArrestSession, now: int, previous: TimerState,
             config: ProtocolConfig) -> TimerState:
        """
        Pure recomputation of the timer view for `now`.

        - pathway selection: everything at rest
        - cpr pending: countdowns held at their full values
        - rhythm check: countdowns held at their previous values
        - shockable / non-shockable: live countdowns, active time accumulates
        - terminal: totals frozen at end_time
        """
        phase = session.phase

        if phase == ArrestPhase.PATHWAY_SELECTION:
            return TimerEngine.initial(config, now)

        if session.is_terminal:
            end = session.end_time if session.end_time is not None else now
            return TimerState(
                cycle_remaining=previous.cycle_remaining,
                medication_interval_remaining=previous.medication_interval_remaining,
                total_elapsed=max(0, end - session.start_time),
                total_active_time=previous.total_active_time,
                last_tick=now,
            )

        total_elapsed = max(0, now - session.start_time)

        if phase == ArrestPhase.CPR_PENDING_RHYTHM:
            return TimerState(
                cycle_remaining=config.rhythm_check_interval_ms,
                medication_interval_remaining=config.medication_interval_ms,
                total_elapsed=total_elapsed,
                total_active_time=previous.total_active_time,
                last_tick=now,
            )

        if phase == ArrestPhase.RHYTHM_CHECK:
            return TimerState(
                cycle_remaining=previous.cycle_remaining,
                medication_interval_remaining=previous.medication_interval_remaining,
                total_elapsed=total_elapsed,
                total_active_time=previous.total_active_time,
                last_tick=now,
            )

        # SHOCKABLE / NON_SHOCKABLE
        if session.cpr_cycle_start_time is not None:
            cycle_remaining = max(0, config.rhythm_check_interval_ms - (now - session.cpr_cycle_start_time))
        else:
            cycle_remaining = config.rhythm_check_interval_ms

        active = previous.total_active_time
        if previous.last_tick is not None and now > previous.last_tick:
            active += now - previous.last_tick

        return TimerState(
            cycle_remaining=cycle_remaining,
            medication_interval_remaining=TimerEngine._medication_remaining(session, now, config),
            total_elapsed=total_elapsed,
            total_active_time=active,
            pre_alert_due=0 < cycle_remaining <= config.pre_alert_lead_ms,
            check_due=cycle_remaining == 0,
            last_tick=now,
        )

    @staticmethod
    def cpr_fraction(timer: TimerState) -> float:
        """Percent of elapsed time spent in active CPR."""
        if timer.total_elapsed <= 0:
            return 0.0
        return (timer.total_active_time / timer.total_elapsed) * 100

class TickScheduler:
    """
    Runs `callback` every `interval_s` on the running event loop until stopped.
    A failing callback is logged and the loop keeps going.
    """

    def __init__(self, callback: Callable[[], None], interval_s: float):
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self._callback = callback
        self._interval_s = interval_s
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self):
        while True:
            try:
                self._callback()
            except Exception:
                logger.error("Tick callback failed", exc_info=True)
            await asyncio.sleep(self._interval_s)

    def start(self):
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug("Tick scheduler started")

    def stop(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.debug("Tick scheduler stopped")
