"""
Trade executor - approve + swap against the venue router.

Both entries (base -> token) and exits (token -> base) take the same path:

    1. Gas price = network suggestion x premium (default 120%)
    2. Approve the router for the input amount, wait for confirmation
    3. Swap exact input with ``amount_out_min`` and a deadline of now + 20 min,
       wait for confirmation

A failure at any step aborts the trade. An approval without a following
swap is left in place; it is re-usable by a later attempt.

``amount_out_min`` defaults to 0 (no slippage protection) and is exposed as
configuration so the risk is explicit.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from sniper_bot.ingestion.chain import ChainError, ConfirmationTimeoutError

if TYPE_CHECKING:
    from sniper_bot.ingestion.chain import ChainInterface
    from sniper_bot.ingestion.models import TxReceipt

logger = logging.getLogger(__name__)

GWEI = 10**9


@dataclass
class ExecutionConfig:
    """Configuration for trade submission."""

    router_address: str = ""
    base_asset_address: str = ""
    gas_price_premium_percent: int = 120
    deadline_seconds: int = 20 * 60
    amount_out_min: int = 0
    dry_run: bool = True


@dataclass
class TradeResult:
    """Outcome of a buy or sell attempt."""

    success: bool
    token_in: str
    token_out: str
    amount_in: int
    tx_hash: Optional[str] = None
    approval_tx_hash: Optional[str] = None
    receipt: Optional["TxReceipt"] = None
    error: Optional[str] = None
    dry_run: bool = False


class TradeExecutor:
    """
    Submits approve/swap pairs through the chain interface.

    Usage:
        executor = TradeExecutor(chain, ExecutionConfig(router_address=..., ...))
        result = await executor.buy(token, amount_in)
        if result.success:
            ...
    """

    def __init__(self, chain: "ChainInterface", config: ExecutionConfig) -> None:
        self._chain = chain
        self._config = config

    @property
    def config(self) -> ExecutionConfig:
        return self._config

    async def gas_price(self) -> int:
        """Network gas price plus the configured premium."""
        suggested = await self._chain.get_gas_price()
        adjusted = suggested * self._config.gas_price_premium_percent // 100
        logger.info(
            f"Current gas price: {suggested / GWEI:.2f} gwei, "
            f"Adjusted: {adjusted / GWEI:.2f} gwei"
        )
        return adjusted

    def deadline(self) -> int:
        return int(time.time()) + self._config.deadline_seconds

    async def buy(self, token_address: str, amount_in: int) -> TradeResult:
        """Swap ``amount_in`` of the base asset into ``token_address``."""
        return await self._approve_and_swap(
            self._config.base_asset_address, token_address, amount_in
        )

    async def sell(self, token_address: str, amount: int) -> TradeResult:
        """Swap ``amount`` of ``token_address`` back into the base asset."""
        return await self._approve_and_swap(
            token_address, self._config.base_asset_address, amount
        )

    async def _approve_and_swap(
        self, token_in: str, token_out: str, amount_in: int
    ) -> TradeResult:
        result = TradeResult(
            success=False,
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
        )

        if self._config.dry_run:
            logger.info(
                f"DRY RUN: would approve and swap {amount_in} {token_in} -> {token_out}"
            )
            result.dry_run = True
            return result

        logger.info(f"Attempting to execute trade: {amount_in} {token_in} for {token_out}")

        try:
            gas_price = await self.gas_price()

            result.approval_tx_hash = await self._chain.submit_approval(
                token_in, self._config.router_address, amount_in, gas_price
            )
            await self._chain.confirm(result.approval_tx_hash)
            logger.info(
                f"Approved {token_in} for trading. Transaction hash: {result.approval_tx_hash}"
            )

            result.tx_hash = await self._chain.submit_swap(
                [token_in, token_out],
                amount_in,
                self._config.amount_out_min,
                self.deadline(),
                gas_price,
            )
            result.receipt = await self._chain.confirm(result.tx_hash)

        except asyncio.CancelledError:
            raise
        except ConfirmationTimeoutError as e:
            result.error = f"confirmation timeout: {e}"
            logger.error(f"Trade failed ({token_in} -> {token_out}): {result.error}")
            return result
        except ChainError as e:
            result.error = str(e)
            logger.error(f"Trade failed ({token_in} -> {token_out}): {e}")
            return result
        except Exception as e:
            result.error = f"unexpected error: {e}"
            logger.exception(f"Trade failed ({token_in} -> {token_out}): {e}")
            return result

        result.success = True
        logger.info(f"Trade executed: {result.receipt.tx_hash}")
        return result
