"""
Chain event subscriber - resilient feed of newly created pairs.

State machine:
    DISCONNECTED -> SUBSCRIBING -> LIVE -> (fault) -> DISCONNECTED -> ...

Coverage is protected three ways:
    - Heartbeat (while LIVE): probes the node height; failure faults the
      connection.
    - Watchdog (always): probes the node height independently, catching a
      node that stops answering while the stream raises nothing.
    - Backfill (always): rescans the last N blocks of PairCreated logs so
      events missed during a reconnect gap are still delivered.

Both probes go through ``get_height``, which ``Web3ChainInterface`` serves
over HTTP while the live feed has its own websocket. A websocket that dies
silently while HTTP stays healthy is caught by the socket's keepalive pings
(``ping_interval``/``ping_timeout`` in ``Web3ChainInterface.subscribe``),
which make the stream raise ``ConnectionClosed``.

Probe results are tagged with the connection they started under, so a slow
probe from a previous connection cannot fault its replacement.

Every pair address is delivered to the candidate callback at most once per
process, whichever path (live or backfill) saw it first.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from .chain import PAIR_CREATED_SIGNATURE
from .models import ChainEvent, DiscoverySource, PairCandidate

if TYPE_CHECKING:
    from .chain import ChainInterface, EventStream

logger = logging.getLogger(__name__)


class SubscriberState(str, Enum):
    """Live subscription state."""
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    STOPPING = "stopping"


CandidateCallback = Callable[[PairCandidate], Awaitable[None]]
StateCallback = Callable[[SubscriberState], Awaitable[None]]


@dataclass
class SubscriberConfig:
    """Timers and reconnection policy for the subscriber."""

    event_signature: str = PAIR_CREATED_SIGNATURE

    heartbeat_interval: float = 60.0
    watchdog_interval: float = 30.0
    probe_timeout: float = 15.0

    backfill_interval: float = 300.0
    backfill_window: int = 10_000

    # Reconnection. Disabling backoff reconnects immediately on every fault.
    reconnect_backoff_enabled: bool = True
    initial_reconnect_delay: float = 1.0
    max_reconnect_delay: float = 60.0
    reconnect_multiplier: float = 2.0


class ChainEventSubscriber:
    """
    Owns the live pair-creation subscription and its recovery timers.

    Usage:
        async def handle(candidate: PairCandidate):
            ...

        subscriber = ChainEventSubscriber(chain, on_candidate=handle)
        await subscriber.start()
        ...
        await subscriber.stop()
    """

    def __init__(
        self,
        chain: "ChainInterface",
        on_candidate: CandidateCallback,
        config: Optional[SubscriberConfig] = None,
        on_state_change: Optional[StateCallback] = None,
    ):
        self._chain = chain
        self._on_candidate = on_candidate
        self._on_state_change = on_state_change
        self._config = config or SubscriberConfig()

        self._state = SubscriberState.DISCONNECTED
        self._stream: Optional["EventStream"] = None
        self._fault = asyncio.Event()
        self._stop_event = asyncio.Event()

        self._seen_pairs: set[str] = set()
        self._reconnect_count = 0
        self._generation = 0
        self._current_reconnect_delay = self._config.initial_reconnect_delay

        self._tasks: list[asyncio.Task] = []

    @property
    def state(self) -> SubscriberState:
        return self._state

    @property
    def is_live(self) -> bool:
        return self._state == SubscriberState.LIVE

    @property
    def reconnect_count(self) -> int:
        """Number of times the live subscription has been re-established."""
        return self._reconnect_count

    @property
    def seen_count(self) -> int:
        return len(self._seen_pairs)

    async def _set_state(self, state: SubscriberState) -> None:
        if self._state == state:
            return
        old_state = self._state
        self._state = state
        logger.info(f"Subscriber state: {old_state.value} -> {state.value}")

        if self._on_state_change:
            try:
                await self._on_state_change(state)
            except Exception as e:
                logger.error(f"Error in state change callback: {e}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self._tasks:
            logger.warning("Subscriber already started")
            return

        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(self._connection_loop(), name="subscriber_connection"),
            asyncio.create_task(self._watchdog_loop(), name="subscriber_watchdog"),
            asyncio.create_task(self._backfill_loop(), name="subscriber_backfill"),
        ]
        logger.info(
            f"Subscriber started (heartbeat={self._config.heartbeat_interval}s, "
            f"watchdog={self._config.watchdog_interval}s, "
            f"backfill={self._config.backfill_interval}s/{self._config.backfill_window} blocks)"
        )

    async def stop(self) -> None:
        if not self._tasks:
            return

        logger.info("Stopping subscriber...")
        await self._set_state(SubscriberState.STOPPING)
        self._stop_event.set()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self._close_stream()
        await self._set_state(SubscriberState.DISCONNECTED)
        logger.info("Subscriber stopped")

    # =========================================================================
    # Connection state machine
    # =========================================================================

    async def _connection_loop(self) -> None:
        while not self._stop_event.is_set():
            await self._set_state(SubscriberState.SUBSCRIBING)
            try:
                stream = await self._chain.subscribe(self._config.event_signature)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Subscription failed: {e}")
                await self._set_state(SubscriberState.DISCONNECTED)
                await self._wait_before_reconnect()
                continue

            await self._run_live(stream)

            if not self._stop_event.is_set():
                self._reconnect_count += 1
                await self._wait_before_reconnect()

    async def _run_live(self, stream: "EventStream") -> None:
        """Consume ``stream`` until it errors, ends, or a probe faults it."""
        self._stream = stream
        self._generation += 1
        self._fault.clear()
        self._current_reconnect_delay = self._config.initial_reconnect_delay
        await self._set_state(SubscriberState.LIVE)

        consume = asyncio.create_task(self._consume(stream), name="subscriber_consume")
        heartbeat = asyncio.create_task(self._heartbeat_loop(), name="subscriber_heartbeat")
        fault = asyncio.create_task(self._fault.wait(), name="subscriber_fault")

        try:
            await asyncio.wait({consume, fault}, return_when=asyncio.FIRST_COMPLETED)

            if consume.done():
                error = consume.exception()
                if error is not None:
                    logger.error(f"Event stream error: {error}")
                else:
                    logger.warning("Event stream ended")
        finally:
            for task in (consume, heartbeat, fault):
                task.cancel()
            await asyncio.gather(consume, heartbeat, fault, return_exceptions=True)
            await self._close_stream()
            if not self._stop_event.is_set():
                await self._set_state(SubscriberState.DISCONNECTED)

    async def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                await stream.close()
            except Exception as e:
                logger.debug(f"Error closing event stream: {e}")

    def _fault_connection(self, reason: str, generation: Optional[int] = None) -> None:
        """
        Force the live connection down. No-op unless LIVE.

        ``generation`` is the connection a probe started under; a result for
        an earlier connection is ignored.
        """
        if self._state != SubscriberState.LIVE:
            return
        if generation is not None and generation != self._generation:
            logger.debug(f"Ignoring late probe failure from connection #{generation}: {reason}")
            return
        logger.warning(f"Faulting live subscription: {reason}")
        self._fault.set()

    async def _wait_before_reconnect(self) -> None:
        if not self._config.reconnect_backoff_enabled:
            await asyncio.sleep(0)
            return

        delay = self._current_reconnect_delay
        logger.info(f"Reconnecting in {delay:.1f}s (reconnect #{self._reconnect_count + 1})...")
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

        self._current_reconnect_delay = min(
            delay * self._config.reconnect_multiplier,
            self._config.max_reconnect_delay,
        )

    # =========================================================================
    # Probes
    # =========================================================================

    async def _probe_height(self) -> Optional[int]:
        """Current height, or None when the node does not answer."""
        try:
            return await asyncio.wait_for(
                self._chain.get_height(), timeout=self._config.probe_timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Height probe failed: {e!r}")
            return None

    async def _heartbeat_loop(self) -> None:
        generation = self._generation
        while True:
            await asyncio.sleep(self._config.heartbeat_interval)
            height = await self._probe_height()
            if height is None:
                self._fault_connection("heartbeat probe failed", generation)
                return
            logger.info(f"Current block height: {height}")

    async def _watchdog_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._config.watchdog_interval
                )
                break
            except asyncio.TimeoutError:
                pass

            generation = self._generation
            if await self._probe_height() is None:
                self._fault_connection("watchdog probe failed", generation)

    # =========================================================================
    # Backfill
    # =========================================================================

    async def _backfill_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._config.backfill_interval
                )
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.backfill()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Backfill scan failed: {e}")

    async def scan_recent(self) -> list[ChainEvent]:
        """Historical PairCreated events over the backfill window ending now."""
        current = await self._chain.get_height()
        from_height = max(0, current - self._config.backfill_window)
        logger.info(f"Checking for pairs from block {from_height} to {current}")

        events = await self._chain.query_historical(
            self._config.event_signature, from_height, current
        )
        logger.info(
            f"Found {len(events)} pair creation events in the last "
            f"{current - from_height} blocks"
        )
        return events

    async def backfill(self) -> int:
        """Run one backfill scan. Returns the number of new pairs delivered."""
        delivered = 0
        for event in await self.scan_recent():
            if await self._handle_event(event, DiscoverySource.BACKFILL):
                delivered += 1
        if delivered:
            logger.info(f"Backfill recovered {delivered} unseen pairs")
        return delivered

    # =========================================================================
    # Event handling
    # =========================================================================

    async def _consume(self, stream: "EventStream") -> None:
        async for event in stream:
            await self._handle_event(event, DiscoverySource.LIVE)

    async def _handle_event(self, event: ChainEvent, source: DiscoverySource) -> bool:
        """Normalize, dedup and deliver. Returns True if the pair was new."""
        try:
            candidate = PairCandidate.from_event(event, source)
        except ValueError as e:
            logger.warning(f"Dropping malformed event {event.tx_hash}: {e}")
            return False

        # check-and-add with no await in between
        if candidate.key in self._seen_pairs:
            logger.debug(f"Already seen pair {candidate.pair_address} ({source.value})")
            return False
        self._seen_pairs.add(candidate.key)

        logger.info(
            f"New pair {candidate.pair_address} "
            f"(token0={candidate.token_a}, token1={candidate.token_b}, "
            f"block={candidate.discovery_height}, tx={event.tx_hash}, source={source.value})"
        )

        try:
            await self._on_candidate(candidate)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error delivering candidate {candidate.pair_address}: {e}")
        return True
