"""
Snipe Evaluator - decides whether to buy into a newly created pair.

Pipeline (short-circuits on the first failing step):
    0. Target selection: the token that is not the base asset. Pairs
       without exactly one base-asset side are skipped, as are tokens that
       already have an open position or an evaluation in progress.
    1. Verification gate: contract source must be verified (cached).
    2. Liquidity gate: base reserve >= eth threshold and token reserve >=
       token threshold, both inclusive.
    3. Entry: approve + swap of the configured snipe amount.
    4. Record: a Position is stored only after the swap is confirmed.

Gating failures are expected outcomes, logged at INFO, never raised.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional, Tuple

from sniper_bot.storage.models import Position

if TYPE_CHECKING:
    from sniper_bot.execution.trade_executor import TradeExecutor
    from sniper_bot.ingestion.chain import ChainInterface
    from sniper_bot.ingestion.models import PairCandidate
    from sniper_bot.storage.repositories import PositionRepository

    from .verification_cache import VerificationCache

logger = logging.getLogger(__name__)

WEI = 10**18


class SkipReason(str, Enum):
    NO_BASE_SIDE = "no_base_side"
    BOTH_BASE = "both_base"
    OPEN_POSITION = "open_position"
    IN_PROGRESS = "in_progress"
    STORE_UNAVAILABLE = "store_unavailable"
    UNVERIFIED = "unverified"
    RESERVES_UNAVAILABLE = "reserves_unavailable"
    INSUFFICIENT_LIQUIDITY = "insufficient_liquidity"
    DRY_RUN = "dry_run"
    ENTRY_FAILED = "entry_failed"


@dataclass
class EvaluatorConfig:
    """Gate thresholds and sizing, all in smallest-denomination units."""

    base_asset_address: str = ""
    snipe_amount: int = 10**15  # 0.001 of an 18-decimal base asset
    eth_liquidity_threshold: int = 1 * WEI
    token_liquidity_threshold: int = 1000 * WEI


@dataclass
class EvaluationResult:
    """What happened to one candidate."""

    pair_address: str
    token_address: Optional[str]
    sniped: bool = False
    skip_reason: Optional[SkipReason] = None
    position: Optional[Position] = None
    detail: str = ""


class SnipeEvaluator:
    """
    Runs the gating pipeline and entry for one candidate at a time.

    Safe to call concurrently from several workers: evaluations of the same
    target token are serialized by an in-progress set.
    """

    def __init__(
        self,
        chain: "ChainInterface",
        verification_cache: "VerificationCache",
        position_repo: "PositionRepository",
        executor: "TradeExecutor",
        config: EvaluatorConfig,
    ) -> None:
        self._chain = chain
        self._verification = verification_cache
        self._repo = position_repo
        self._executor = executor
        self._config = config

        self._in_progress: set[str] = set()
        # Confirmed entries whose insert failed; retried by retry_unsaved()
        self._unsaved: list[Position] = []

    @property
    def config(self) -> EvaluatorConfig:
        return self._config

    @property
    def unsaved_positions(self) -> list[Position]:
        return list(self._unsaved)

    def target_token(self, candidate: "PairCandidate") -> Tuple[Optional[str], Optional[SkipReason]]:
        """The non-base token of the pair, or the reason there is none."""
        base = self._config.base_asset_address.lower()
        a_is_base = candidate.token_a.lower() == base
        b_is_base = candidate.token_b.lower() == base

        if a_is_base and b_is_base:
            return None, SkipReason.BOTH_BASE
        if a_is_base:
            return candidate.token_b, None
        if b_is_base:
            return candidate.token_a, None
        return None, SkipReason.NO_BASE_SIDE

    def orient_reserves(self, reserve0: int, reserve1: int, token0: str) -> Tuple[int, int]:
        """(base_reserve, token_reserve) for a pair's raw reserves."""
        if token0.lower() == self._config.base_asset_address.lower():
            return reserve0, reserve1
        return reserve1, reserve0

    def passes_liquidity(self, base_reserve: int, token_reserve: int) -> bool:
        return (
            base_reserve >= self._config.eth_liquidity_threshold
            and token_reserve >= self._config.token_liquidity_threshold
        )

    async def evaluate(self, candidate: "PairCandidate") -> EvaluationResult:
        token, reason = self.target_token(candidate)
        if token is None:
            logger.info(f"Skipping pair {candidate.pair_address}: {reason.value}")
            return EvaluationResult(candidate.pair_address, None, skip_reason=reason)

        key = token.lower()
        if key in self._in_progress:
            logger.info(f"Skipping {token}: evaluation already in progress")
            return EvaluationResult(
                candidate.pair_address, token, skip_reason=SkipReason.IN_PROGRESS
            )
        self._in_progress.add(key)

        try:
            return await self._evaluate(candidate, token)
        finally:
            self._in_progress.discard(key)

    def _skip(
        self, candidate: "PairCandidate", token: str, reason: SkipReason, detail: str = ""
    ) -> EvaluationResult:
        return EvaluationResult(
            candidate.pair_address, token, skip_reason=reason, detail=detail
        )

    async def _evaluate(self, candidate: "PairCandidate", token: str) -> EvaluationResult:
        logger.info(f"Attempting to snipe {token} (pair {candidate.pair_address})")

        try:
            has_position = await self._repo.has_open_position(token) or any(
                p.token_address.lower() == token.lower() for p in self._unsaved
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Cannot check open positions for {token}, skipping: {e}")
            return self._skip(candidate, token, SkipReason.STORE_UNAVAILABLE, str(e))

        if has_position:
            logger.info(f"Skipping {token}: position already open")
            return self._skip(candidate, token, SkipReason.OPEN_POSITION)

        # Gate 1: verification
        if not await self._verification.is_verified(token):
            logger.info(f"Skipping unverified token: {token}")
            return self._skip(candidate, token, SkipReason.UNVERIFIED)

        # Gate 2: liquidity
        logger.info(f"Monitoring {candidate.pair_address} for liquidity...")
        try:
            reserve0, reserve1, token0 = await self._chain.get_reserves(candidate.pair_address)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Could not read reserves for {candidate.pair_address}: {e}")
            return self._skip(candidate, token, SkipReason.RESERVES_UNAVAILABLE, str(e))

        base_reserve, token_reserve = self.orient_reserves(reserve0, reserve1, token0)
        logger.info(
            f"Liquidity check for pair {candidate.pair_address}: "
            f"base reserve: {base_reserve / WEI:.6f}, token reserve: {token_reserve / WEI:.6f}"
        )
        if not self.passes_liquidity(base_reserve, token_reserve):
            logger.info(
                f"Insufficient liquidity for {token}. "
                f"base: {base_reserve}, token: {token_reserve}"
            )
            return self._skip(candidate, token, SkipReason.INSUFFICIENT_LIQUIDITY)

        # Entry
        trade = await self._executor.buy(token, self._config.snipe_amount)
        if trade.dry_run:
            return self._skip(candidate, token, SkipReason.DRY_RUN)
        if not trade.success:
            return self._skip(candidate, token, SkipReason.ENTRY_FAILED, trade.error or "")

        position = Position(
            token_address=token,
            amount_in=str(self._config.snipe_amount),
            token_amount=await self._read_balance(token),
            entry_tx_hash=trade.receipt.tx_hash,
            opened_at=datetime.now(timezone.utc),
        )
        saved = await self._save(position)

        return EvaluationResult(
            candidate.pair_address,
            token,
            sniped=True,
            position=saved or position,
        )

    async def _read_balance(self, token: str) -> Optional[str]:
        try:
            return str(await self._chain.get_balance(token))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Could not read balance of {token} after entry: {e}")
            return None

    async def _save(self, position: Position) -> Optional[Position]:
        try:
            saved = await self._repo.insert(position)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Error saving position for {position.token_address} "
                f"(tx {position.entry_tx_hash}), will retry: {e}"
            )
            self._unsaved.append(position)
            return None

        logger.info(
            f"Position saved to database: id={saved.id} token={saved.token_address} "
            f"amount={saved.amount_in} tx={saved.entry_tx_hash}"
        )
        return saved

    async def retry_unsaved(self) -> int:
        """Re-attempt inserts of confirmed entries. Returns how many were saved."""
        pending, self._unsaved = self._unsaved, []
        saved = 0
        for position in pending:
            if await self._save(position) is not None:
                saved += 1
        return saved
