"""
Position Manager - periodic stop-loss / take-profit evaluation.

Every cycle each stored position is repriced and closed when it crosses an
exit threshold:

    stop_loss   = amount_in * (100 - stop_loss_pct) / 100
    take_profit = amount_in * (100 + take_profit_pct) / 100
    exit when quote <= stop_loss or quote >= take_profit

Exit basis:
    - "value" (default): the quote is what the whole position would sell for
      in base-asset units, so the thresholds compare like with like (an
      entry-price comparison).
    - "amount": the quote is the base-asset value of one whole token
      (10**18 units), compared against the amount-based thresholds. This
      reproduces the legacy behaviour and is kept for reproducibility.

Positions are evaluated concurrently. A position with a sell in flight is
skipped by any overlapping cycle. A quote or sell failure only affects that
position, which is retried next cycle. There is no permanent failure state.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional, Tuple

from sniper_bot.storage.models import Position

if TYPE_CHECKING:
    from sniper_bot.ingestion.chain import ChainInterface
    from sniper_bot.storage.repositories import PositionRepository

    from .trade_executor import TradeExecutor

logger = logging.getLogger(__name__)


class ExitBasis(str, Enum):
    VALUE = "value"
    AMOUNT = "amount"


class CycleOutcome(str, Enum):
    HELD = "held"
    CLOSED = "closed"
    QUOTE_FAILED = "quote_failed"
    SELL_FAILED = "sell_failed"
    DELETE_FAILED = "delete_failed"
    IN_FLIGHT = "in_flight"


@dataclass
class PositionManagerConfig:
    """Exit thresholds and pricing basis."""

    base_asset_address: str = ""
    stop_loss_pct: Decimal = Decimal("10")
    take_profit_pct: Decimal = Decimal("20")
    exit_basis: ExitBasis = ExitBasis.VALUE
    quote_unit: int = 10**18


@dataclass
class CycleResult:
    """Per-cycle tally, keyed by outcome."""

    outcomes: dict[int, CycleOutcome] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def count(self, outcome: CycleOutcome) -> int:
        return sum(1 for o in self.outcomes.values() if o == outcome)

    @property
    def closed(self) -> int:
        return self.count(CycleOutcome.CLOSED)


class PositionManager:
    """
    Reprices open positions and executes exits.

    Usage:
        manager = PositionManager(chain, position_repo, executor, config)
        result = await manager.run_cycle()
    """

    def __init__(
        self,
        chain: "ChainInterface",
        position_repo: "PositionRepository",
        executor: "TradeExecutor",
        config: Optional[PositionManagerConfig] = None,
    ) -> None:
        self._chain = chain
        self._repo = position_repo
        self._executor = executor
        self._config = config or PositionManagerConfig()

        # Position ids with a sell between submission and resolution
        self._in_flight: set[int] = set()
        # Sold on chain but the row could not be deleted yet
        self._pending_deletes: set[int] = set()

    @property
    def in_flight(self) -> frozenset[int]:
        return frozenset(self._in_flight)

    @property
    def pending_deletes(self) -> frozenset[int]:
        return frozenset(self._pending_deletes)

    def thresholds(self, position: Position) -> Tuple[Decimal, Decimal]:
        """(stop_loss, take_profit) in base-asset units."""
        basis = Decimal(position.amount_in_units)
        hundred = Decimal(100)
        stop_loss = basis * (hundred - self._config.stop_loss_pct) / hundred
        take_profit = basis * (hundred + self._config.take_profit_pct) / hundred
        return stop_loss, take_profit

    def evaluate_exit(self, position: Position, quote: int) -> Tuple[bool, str]:
        """
        Decide whether ``position`` should be closed at ``quote``.

        Returns:
            (should_exit, reason) with reason "stop_loss" or "take_profit"
        """
        stop_loss, take_profit = self.thresholds(position)

        if quote <= stop_loss:
            return True, "stop_loss"
        if quote >= take_profit:
            return True, "take_profit"
        return False, ""

    async def run_cycle(self) -> CycleResult:
        """Evaluate every stored position once."""
        result = CycleResult()

        await self._retry_pending_deletes(result)

        try:
            positions = await self._repo.list()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error reading positions from database: {e}")
            result.errors.append(str(e))
            return result

        candidates = [
            p for p in positions
            if p.id not in self._in_flight and p.id not in self._pending_deletes
        ]
        logger.info(
            f"Managing {len(candidates)} positions "
            f"({len(positions) - len(candidates)} in flight)"
        )

        outcomes = await asyncio.gather(
            *(self._manage(p) for p in candidates), return_exceptions=True
        )
        for position, outcome in zip(candidates, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Position {position.id}: unexpected error: {outcome}")
                result.errors.append(f"{position.id}: {outcome}")
                continue
            result.outcomes[position.id] = outcome

        if result.closed:
            logger.info(f"Closed {result.closed} positions this cycle")
        return result

    async def _manage(self, position: Position) -> CycleOutcome:
        quote = await self._quote(position)
        if quote is None:
            return CycleOutcome.QUOTE_FAILED

        should_exit, reason = self.evaluate_exit(position, quote)
        stop_loss, take_profit = self.thresholds(position)
        logger.info(
            f"Position {position.id} ({position.token_address}): quote={quote}, "
            f"stop_loss={stop_loss:.0f}, take_profit={take_profit:.0f}"
        )
        if not should_exit:
            return CycleOutcome.HELD

        # check-and-add with no await in between
        if position.id in self._in_flight:
            return CycleOutcome.IN_FLIGHT
        self._in_flight.add(position.id)

        try:
            return await self._close(position, reason)
        finally:
            self._in_flight.discard(position.id)

    async def _quote(self, position: Position) -> Optional[int]:
        path = [position.token_address, self._config.base_asset_address]
        try:
            if self._config.exit_basis == ExitBasis.AMOUNT:
                amount = self._config.quote_unit
            else:
                amount = position.token_amount_units
                if amount is None:
                    amount = await self._chain.get_balance(position.token_address)
                if amount <= 0:
                    logger.warning(f"Position {position.id}: no token balance to price")
                    return None
            return await self._chain.get_quote(amount, path)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Position {position.id}: quote failed, retrying next cycle: {e}")
            return None

    async def _close(self, position: Position, reason: str) -> CycleOutcome:
        try:
            amount = await self._chain.get_balance(position.token_address)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Position {position.id}: balance read failed: {e}")
            amount = position.token_amount_units

        if not amount:
            logger.error(f"Position {position.id}: nothing to sell for {position.token_address}")
            return CycleOutcome.SELL_FAILED

        logger.info(f"Position {position.id}: {reason} hit, selling {amount} units")
        trade = await self._executor.sell(position.token_address, amount)
        if not trade.success:
            logger.warning(
                f"Exit for position {position.id} not completed "
                f"({trade.error or 'dry run'}); retrying next cycle"
            )
            return CycleOutcome.SELL_FAILED

        logger.info(f"Position closed for {position.token_address}. Tx: {trade.tx_hash}")
        if await self._delete(position.id):
            return CycleOutcome.CLOSED

        self._pending_deletes.add(position.id)
        return CycleOutcome.DELETE_FAILED

    async def _delete(self, position_id: int) -> bool:
        try:
            await self._repo.delete(position_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error removing position {position_id} from database: {e}")
            return False
        logger.info(f"Position {position_id} removed from database")
        return True

    async def _retry_pending_deletes(self, result: CycleResult) -> None:
        for position_id in list(self._pending_deletes):
            if await self._delete(position_id):
                self._pending_deletes.discard(position_id)
                result.outcomes[position_id] = CycleOutcome.CLOSED
