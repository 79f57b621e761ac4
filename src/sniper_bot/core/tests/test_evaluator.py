"""
Tests for SnipeEvaluator.

These tests verify:
- Target selection against the base asset
- Gate order: open position, verification, liquidity, then entry
- Approval is confirmed before the swap is submitted
- A Position exists only after a confirmed swap, sized at the snipe amount
- One position per token, even under concurrent evaluations
- Failed inserts are kept and retried
"""

import asyncio
from dataclasses import replace

from sniper_bot.core.evaluator import WEI, SkipReason
from sniper_bot.ingestion.chain import ConfirmationTimeoutError, TransactionFailedError
from sniper_bot.ingestion.tests.fakes import BASE

from .conftest import OTHER_TOKEN, PAIR, ROUTER, SNIPE_AMOUNT, TOKEN, make_candidate

TRADE_METHODS = ("submit_approval", "submit_swap")


class TestTargetSelection:

    def test_token_a_is_target_when_b_is_base(self, evaluator):
        token, reason = evaluator.target_token(make_candidate(token_first=True))
        assert token == TOKEN
        assert reason is None

    def test_token_b_is_target_when_a_is_base(self, evaluator):
        token, reason = evaluator.target_token(make_candidate(token_first=False))
        assert token == TOKEN
        assert reason is None

    def test_base_match_is_case_insensitive(self, evaluator):
        candidate = replace(make_candidate(), token_b=BASE.upper().replace("0X", "0x"))
        token, _ = evaluator.target_token(candidate)
        assert token == TOKEN

    async def test_pair_without_base_side_skipped(self, evaluator, chain, oracle):
        candidate = replace(make_candidate(), token_b=OTHER_TOKEN)

        result = await evaluator.evaluate(candidate)

        assert result.skip_reason == SkipReason.NO_BASE_SIDE
        oracle.is_verified.assert_not_called()
        assert chain.method_order(*TRADE_METHODS) == []


class TestLiquidityGate:

    def test_orients_reserves_by_token0(self, evaluator):
        assert evaluator.orient_reserves(7, 3, BASE) == (7, 3)
        assert evaluator.orient_reserves(7, 3, TOKEN) == (3, 7)

    def test_thresholds_are_inclusive(self, evaluator):
        assert evaluator.passes_liquidity(1 * WEI, 1_000 * WEI)
        assert not evaluator.passes_liquidity(1 * WEI - 1, 1_000 * WEI)
        assert not evaluator.passes_liquidity(1 * WEI, 1_000 * WEI - 1)

    async def test_insufficient_base_liquidity_skipped(self, evaluator, chain):
        chain.reserves[PAIR] = (5_000 * WEI, WEI // 2, TOKEN)

        result = await evaluator.evaluate(make_candidate())

        assert result.skip_reason == SkipReason.INSUFFICIENT_LIQUIDITY
        assert chain.method_order(*TRADE_METHODS) == []

    async def test_insufficient_token_liquidity_skipped(self, evaluator, chain):
        chain.reserves[PAIR] = (999 * WEI, 10 * WEI, TOKEN)

        result = await evaluator.evaluate(make_candidate())

        assert result.skip_reason == SkipReason.INSUFFICIENT_LIQUIDITY

    async def test_reserve_read_failure_skipped(self, evaluator, chain):
        chain.reserves_error = ConnectionError("call reverted")

        result = await evaluator.evaluate(make_candidate())

        assert result.skip_reason == SkipReason.RESERVES_UNAVAILABLE
        assert chain.method_order(*TRADE_METHODS) == []


class TestVerificationGate:

    async def test_unverified_token_never_traded(self, evaluator, chain, oracle):
        oracle.is_verified.return_value = False

        result = await evaluator.evaluate(make_candidate())

        assert result.skip_reason == SkipReason.UNVERIFIED
        assert chain.called("get_reserves") == []
        assert chain.method_order(*TRADE_METHODS) == []

    async def test_verification_checked_once_per_token(self, evaluator, oracle, chain):
        oracle.is_verified.return_value = False
        second_pair = "0x" + "cd" * 20
        chain.reserves[second_pair] = chain.reserves[PAIR]

        await evaluator.evaluate(make_candidate())
        await evaluator.evaluate(make_candidate(pair=second_pair))

        assert oracle.is_verified.await_count == 1

    async def test_verification_runs_before_liquidity(self, evaluator, chain, oracle):
        await evaluator.evaluate(make_candidate())

        oracle.is_verified.assert_awaited_once()
        assert chain.called("get_reserves") == [(PAIR,)]


class TestEntry:

    async def test_successful_snipe_records_position(self, evaluator, chain, repo):
        result = await evaluator.evaluate(make_candidate())

        assert result.sniped
        assert result.skip_reason is None

        positions = await repo.list()
        assert len(positions) == 1
        position = positions[0]
        assert position.token_address == TOKEN
        assert position.amount_in_units == SNIPE_AMOUNT
        assert position.token_amount_units == 4_000 * WEI
        assert position.entry_tx_hash == "0xswap2"
        assert result.position == position

    async def test_approval_confirmed_before_swap(self, evaluator, chain):
        await evaluator.evaluate(make_candidate())

        order = chain.method_order("submit_approval", "submit_swap", "confirm")
        assert order == ["submit_approval", "confirm", "submit_swap", "confirm"]
        assert chain.called("confirm") == [("0xapprove1",), ("0xswap2",)]

    async def test_swap_parameters(self, evaluator, chain):
        await evaluator.evaluate(make_candidate())

        (token, spender, amount, gas_price), = chain.called("submit_approval")
        assert token == BASE
        assert spender == ROUTER
        assert amount == SNIPE_AMOUNT
        assert gas_price == chain.gas_price * 120 // 100

        (path, amount_in, amount_out_min, deadline, swap_gas), = chain.called("submit_swap")
        assert path == (BASE, TOKEN)
        assert amount_in == SNIPE_AMOUNT
        assert amount_out_min == 0
        assert swap_gas == gas_price

    async def test_reverted_swap_creates_no_position(self, evaluator, chain, repo):
        chain.confirm_errors["0xswap2"] = TransactionFailedError("reverted", "0xswap2")

        result = await evaluator.evaluate(make_candidate())

        assert result.skip_reason == SkipReason.ENTRY_FAILED
        assert await repo.count() == 0

    async def test_unconfirmed_swap_creates_no_position(self, evaluator, chain, repo):
        chain.confirm_errors["0xswap2"] = ConfirmationTimeoutError("no receipt", "0xswap2")

        result = await evaluator.evaluate(make_candidate())

        assert result.skip_reason == SkipReason.ENTRY_FAILED
        assert await repo.count() == 0

    async def test_failed_approval_blocks_swap(self, evaluator, chain, repo):
        chain.approval_error = TransactionFailedError("insufficient funds for gas")

        result = await evaluator.evaluate(make_candidate())

        assert result.skip_reason == SkipReason.ENTRY_FAILED
        assert chain.called("submit_swap") == []
        assert await repo.count() == 0

    async def test_dry_run_submits_nothing(self, evaluator, chain, repo, execution_config):
        execution_config.dry_run = True

        result = await evaluator.evaluate(make_candidate())

        assert result.skip_reason == SkipReason.DRY_RUN
        assert chain.method_order(*TRADE_METHODS) == []
        assert await repo.count() == 0

    async def test_unreadable_balance_still_records_position(self, evaluator, chain, repo):
        chain.balance_error = ConnectionError("rpc timeout")

        result = await evaluator.evaluate(make_candidate())

        assert result.sniped
        position = (await repo.list())[0]
        assert position.token_amount is None
        assert position.amount_in_units == SNIPE_AMOUNT


class TestOnePositionPerToken:

    async def test_open_position_blocks_new_entry(self, evaluator, chain, repo, oracle):
        await evaluator.evaluate(make_candidate())
        second_pair = "0x" + "cd" * 20
        chain.reserves[second_pair] = chain.reserves[PAIR]

        result = await evaluator.evaluate(make_candidate(pair=second_pair))

        assert result.skip_reason == SkipReason.OPEN_POSITION
        assert len(chain.called("submit_swap")) == 1
        assert await repo.count() == 1

    async def test_concurrent_candidates_for_same_token(self, evaluator, chain, repo, oracle):
        release = asyncio.Event()

        async def slow_oracle(address):
            await release.wait()
            return True

        oracle.is_verified.side_effect = slow_oracle
        second_pair = "0x" + "cd" * 20
        chain.reserves[second_pair] = chain.reserves[PAIR]

        first = asyncio.create_task(evaluator.evaluate(make_candidate()))
        await asyncio.sleep(0.01)
        second = await evaluator.evaluate(make_candidate(pair=second_pair))
        release.set()
        first_result = await first

        assert first_result.sniped
        assert second.skip_reason == SkipReason.IN_PROGRESS
        assert len(chain.called("submit_swap")) == 1

    async def test_store_unavailable_skips_without_trading(self, evaluator, chain, repo):
        repo.lookup_error = ConnectionError("database unreachable")

        result = await evaluator.evaluate(make_candidate())

        assert result.skip_reason == SkipReason.STORE_UNAVAILABLE
        assert chain.method_order(*TRADE_METHODS) == []


class TestUnsavedPositions:

    async def test_failed_insert_kept_for_retry(self, evaluator, repo):
        repo.insert_error = ConnectionError("database unreachable")

        result = await evaluator.evaluate(make_candidate())

        assert result.sniped
        assert result.position.id is None
        assert len(evaluator.unsaved_positions) == 1
        assert await repo.count() == 0

    async def test_retry_unsaved_persists(self, evaluator, repo):
        repo.insert_error = ConnectionError("database unreachable")
        await evaluator.evaluate(make_candidate())

        repo.insert_error = None
        assert await evaluator.retry_unsaved() == 1

        assert evaluator.unsaved_positions == []
        positions = await repo.list()
        assert len(positions) == 1
        assert positions[0].entry_tx_hash == "0xswap2"

    async def test_retry_of_entry_already_stored_keeps_one_row(self, evaluator, repo):
        repo.insert_error = ConnectionError("connection reset after commit")
        await evaluator.evaluate(make_candidate())
        repo.insert_error = None
        # The failed attempt had in fact committed
        await repo.insert(evaluator.unsaved_positions[0])

        assert await evaluator.retry_unsaved() == 1

        assert await repo.count() == 1
        assert evaluator.unsaved_positions == []

    async def test_retry_while_store_down_keeps_position(self, evaluator, repo):
        repo.insert_error = ConnectionError("database unreachable")
        await evaluator.evaluate(make_candidate())

        assert await evaluator.retry_unsaved() == 0
        assert len(evaluator.unsaved_positions) == 1

    async def test_unsaved_position_blocks_new_entry(self, evaluator, chain, repo):
        repo.insert_error = ConnectionError("database unreachable")
        await evaluator.evaluate(make_candidate())
        second_pair = "0x" + "cd" * 20
        chain.reserves[second_pair] = chain.reserves[PAIR]

        result = await evaluator.evaluate(make_candidate(pair=second_pair))

        assert result.skip_reason == SkipReason.OPEN_POSITION
        assert len(chain.called("submit_swap")) == 1
