from datetime import date, datetime, time as dtime
from typing import Dict, List, Optional
import asyncio
import logging

import config

logger = logging.getLogger(__name__)

WRAPUP_NOTICE = "Results coming up..."


def parse_hhmm(value: str) -> dtime:
    hours, minutes = value.strip().split(":")
    return dtime(hour=int(hours), minute=int(minutes))


class DailyScheduler:
    """Wall-clock ticker: daily wrap-up of the running round, then a fresh one.

    A transition fires when a tick lands in its minute, at most once per day.
    A day whose minute was missed entirely (process paused) is skipped.
    """

    def __init__(self, coordinator, wrapup_time: str = config.WRAPUP_TIME,
                 start_time: str = config.ROUND_START_TIME,
                 tick_seconds: int = config.SCHEDULER_TICK_SEC):
        self.coordinator = coordinator
        self.wrapup_at = parse_hhmm(wrapup_time)
        self.start_at = parse_hhmm(start_time)
        self.tick_seconds = tick_seconds
        self._fired: Dict[str, date] = {}
        self._task: Optional[asyncio.Task] = None

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self.run())
            logger.info("Scheduler started (wrap-up %s, new round %s)",
                        self.wrapup_at.strftime("%H:%M"), self.start_at.strftime("%H:%M"))

    def stop(self):
        if self._task:
            self._task.cancel()
            self._task = None

    async def run(self):
        while True:
            try:
                await asyncio.sleep(self.tick_seconds)
                await self.check(datetime.now())
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in scheduler loop")

    async def check(self, now: datetime) -> List[str]:
        """Run whichever transitions are due at ``now``; returns their names."""
        fired = []
        if self._due("wrapup", self.wrapup_at, now):
            logger.info("Daily wrap-up at %s", now.strftime("%H:%M"))
            await self.coordinator.broadcast_notice(WRAPUP_NOTICE)
            await self.coordinator.end()
            fired.append("wrapup")
        if self._due("start", self.start_at, now):
            logger.info("Daily round start at %s", now.strftime("%H:%M"))
            await self.coordinator.start()
            fired.append("start")
        return fired

    def _due(self, name: str, at: dtime, now: datetime) -> bool:
        if (now.hour, now.minute) != (at.hour, at.minute):
            return False
        if self._fired.get(name) == now.date():
            return False
        self._fired[name] = now.date()
        return True
