"""
BackgroundTasksManager - periodic position management.

Runs the position-management cycle on a fixed interval, independent of the
subscriber's own discovery timers. Each round first retries any confirmed
entry whose insert failed, then reprices open positions.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from sniper_bot.execution.position_manager import PositionManager

    from .evaluator import SnipeEvaluator

logger = logging.getLogger(__name__)


@dataclass
class BackgroundTaskConfig:
    """Configuration for background tasks."""

    position_check_interval_seconds: float = 300  # 5 minutes
    position_check_enabled: bool = True
    error_pause_seconds: float = 5


class BackgroundTasksManager:
    """
    Manages background async tasks for the sniper.

    Loops survive errors: a failed round is logged and the next one runs on
    schedule.

    Usage:
        manager = BackgroundTasksManager(
            position_manager=position_manager,
            evaluator=evaluator,
            config=BackgroundTaskConfig(),
        )
        await manager.start()
        # ... bot runs ...
        await manager.stop()
    """

    def __init__(
        self,
        position_manager: Optional["PositionManager"] = None,
        evaluator: Optional["SnipeEvaluator"] = None,
        config: Optional[BackgroundTaskConfig] = None,
    ) -> None:
        self._position_manager = position_manager
        self._evaluator = evaluator
        self._config = config or BackgroundTaskConfig()

        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._stop_event = asyncio.Event()
        self._cycles_completed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cycles_completed(self) -> int:
        return self._cycles_completed

    async def start(self) -> None:
        if self._running:
            logger.warning("BackgroundTasksManager already running")
            return

        logger.info("Starting background tasks...")
        self._running = True
        self._stop_event.clear()

        if self._config.position_check_enabled and self._position_manager:
            task = asyncio.create_task(
                self._position_check_loop(),
                name="position_check",
            )
            self._tasks.append(task)
            logger.info(
                f"Started position check task "
                f"(interval={self._config.position_check_interval_seconds}s)"
            )

        logger.info(f"Background tasks started: {len(self._tasks)} tasks")

    async def stop(self) -> None:
        if not self._running:
            return

        logger.info("Stopping background tasks...")
        self._running = False
        self._stop_event.set()

        for task in self._tasks:
            if not task.done():
                task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        logger.info("Background tasks stopped")

    async def run_once(self) -> None:
        """One management round: retry unsaved entries, then reprice."""
        if self._evaluator is not None:
            saved = await self._evaluator.retry_unsaved()
            if saved:
                logger.info(f"Recovered {saved} unsaved positions")

        if self._position_manager is not None:
            await self._position_manager.run_cycle()

        self._cycles_completed += 1

    async def _position_check_loop(self) -> None:
        interval = self._config.position_check_interval_seconds

        while self._running:
            try:
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=interval,
                    )
                    break  # Stop requested
                except asyncio.TimeoutError:
                    pass

                if not self._running:
                    break

                await self.run_once()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in position check: {e}")
                await asyncio.sleep(self._config.error_pause_seconds)
