"""
Secret Santa Scheduler Module - Date-Driven Game Lifecycle

Every few seconds:
- RECRUITING games whose start date is today are started
- IN_PROGRESS games whose end date is today are finished

Both paths reuse the flow controller's start/finish logic, so the game
locks and notifications are identical to a manual start.
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from .secret_santa_flow import SantaFlow
from .secret_santa_models import GameStatus

DEFAULT_INTERVAL = 5


class LifecycleScheduler:
    def __init__(self, flow: SantaFlow, interval: float = DEFAULT_INTERVAL, logger: Optional[logging.Logger] = None):
        self.flow = flow
        self.interval = interval
        self.logger = logger or logging.getLogger("bot.santa.scheduler")
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> Tuple[List[str], List[str]]:
        """Run one pass. Returns (started game ids, finished game ids)."""
        today = self.flow.context.today()
        started, finished = [], []

        for game in self.flow.store.all_games():
            if game.status == GameStatus.RECRUITING and game.start_date == today:
                if await self.flow.start_game(game.game_id) is not None:
                    started.append(game.game_id)
            elif game.status == GameStatus.IN_PROGRESS and game.end_date == today:
                if await self.flow.finish_game(game.game_id) is not None:
                    finished.append(game.game_id)

        if started or finished:
            self.logger.info(f"Sweep {today.isoformat()}: started {len(started)}, finished {len(finished)}")
        return started, finished

    async def _loop(self):
        try:
            while True:
                try:
                    await self.sweep()
                except Exception as e:
                    self.logger.error(f"Scheduler sweep failed: {e}", exc_info=True)
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            pass

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        self.logger.info(f"Lifecycle scheduler started (every {self.interval}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.logger.info("Lifecycle scheduler stopped")
