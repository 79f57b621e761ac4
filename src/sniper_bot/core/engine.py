"""
Snipe Engine - dispatches discovered pairs to the evaluator.

Pair-creation events can arrive faster than evaluations finish (each entry
waits on two confirmations), so evaluations never run inline in the event
callback. Candidates go into a bounded queue in arrival order and a fixed
pool of workers drains it. When the queue is full, ``submit`` waits, which
applies backpressure to the subscriber instead of dropping pairs that have
already been marked as seen.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from sniper_bot.ingestion.models import PairCandidate

    from .evaluator import EvaluationResult, SnipeEvaluator

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Worker pool sizing."""

    workers: int = 4
    queue_size: int = 100


@dataclass
class EngineStats:
    """Runtime statistics for the engine."""

    candidates_received: int = 0
    evaluated: int = 0
    sniped: int = 0
    errors: int = 0
    skip_reasons: Counter = field(default_factory=Counter)

    @property
    def skipped(self) -> int:
        return sum(self.skip_reasons.values())


class SnipeEngine:
    """
    Bounded worker pool in front of the snipe evaluator.

    Usage:
        engine = SnipeEngine(evaluator, EngineConfig(workers=4))
        await engine.start()

        subscriber = ChainEventSubscriber(chain, on_candidate=engine.submit)
        ...
        await engine.stop()
    """

    def __init__(
        self,
        evaluator: "SnipeEvaluator",
        config: Optional[EngineConfig] = None,
    ) -> None:
        self._evaluator = evaluator
        self._config = config or EngineConfig()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self._config.queue_size)
        self._workers: list[asyncio.Task] = []
        self._stats = EngineStats()

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def stats(self) -> EngineStats:
        return self._stats

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._workers:
            logger.warning("Engine already running")
            return

        self._workers = [
            asyncio.create_task(self._worker(i), name=f"snipe_worker_{i}")
            for i in range(self._config.workers)
        ]
        logger.info(
            f"Snipe engine started ({self._config.workers} workers, "
            f"queue={self._config.queue_size})"
        )

    async def stop(self) -> None:
        if not self._workers:
            return

        logger.info("Stopping snipe engine...")
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        if not self._queue.empty():
            logger.warning(f"Snipe engine stopped with {self._queue.qsize()} candidates queued")
        logger.info("Snipe engine stopped")

    async def submit(self, candidate: "PairCandidate") -> None:
        """Queue a candidate for evaluation (waits while the queue is full)."""
        self._stats.candidates_received += 1
        if self._queue.full():
            logger.warning(
                f"Evaluation queue full ({self._queue.qsize()}), "
                f"waiting to enqueue {candidate.pair_address}"
            )
        await self._queue.put(candidate)

    async def join(self) -> None:
        """Wait until every queued candidate has been evaluated."""
        await self._queue.join()

    async def _worker(self, worker_id: int) -> None:
        while True:
            candidate = await self._queue.get()
            try:
                result = await self._evaluator.evaluate(candidate)
                self._record(result)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats.errors += 1
                logger.exception(
                    f"Worker {worker_id}: error evaluating {candidate.pair_address}: {e}"
                )
            finally:
                self._queue.task_done()

    def _record(self, result: "EvaluationResult") -> None:
        self._stats.evaluated += 1
        if result.sniped:
            self._stats.sniped += 1
        elif result.skip_reason is not None:
            self._stats.skip_reasons[result.skip_reason.value] += 1
