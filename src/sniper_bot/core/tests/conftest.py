"""
Test fixtures for the core layer.

The evaluator runs against the in-memory chain and position store with a
real TradeExecutor in live mode, so the tests see exactly which
transactions would have been submitted.
"""

from unittest.mock import AsyncMock

import pytest

from sniper_bot.core.evaluator import WEI, EvaluatorConfig, SnipeEvaluator
from sniper_bot.core.verification_cache import VerificationCache
from sniper_bot.execution.trade_executor import ExecutionConfig, TradeExecutor
from sniper_bot.ingestion.models import DiscoverySource, PairCandidate
from sniper_bot.ingestion.tests.fakes import BASE, FakeChain
from sniper_bot.storage.tests.fakes import InMemoryPositionRepository

TOKEN = "0x" + "11" * 20
OTHER_TOKEN = "0x" + "22" * 20
PAIR = "0x" + "ab" * 20
ROUTER = "0x" + "77" * 20
SNIPE_AMOUNT = 10**15


def make_candidate(token=TOKEN, pair=PAIR, token_first=True, height=900):
    token_a, token_b = (token, BASE) if token_first else (BASE, token)
    return PairCandidate(
        token_a=token_a,
        token_b=token_b,
        pair_address=pair,
        discovery_height=height,
        discovery_source=DiscoverySource.LIVE,
    )


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def chain():
    """Chain where PAIR has ample liquidity (token0 = TOKEN)."""
    chain = FakeChain()
    chain.reserves[PAIR] = (5_000 * WEI, 2 * WEI, TOKEN)
    chain.swap_credit = 4_000 * WEI
    return chain


@pytest.fixture
def repo():
    return InMemoryPositionRepository()


@pytest.fixture
def oracle():
    """Verification oracle that verifies everything."""
    oracle = AsyncMock()
    oracle.is_verified = AsyncMock(return_value=True)
    return oracle


@pytest.fixture
def cache(oracle):
    return VerificationCache(oracle)


@pytest.fixture
def execution_config():
    return ExecutionConfig(
        router_address=ROUTER,
        base_asset_address=BASE,
        dry_run=False,
    )


@pytest.fixture
def executor(chain, execution_config):
    return TradeExecutor(chain, execution_config)


@pytest.fixture
def evaluator_config():
    return EvaluatorConfig(
        base_asset_address=BASE,
        snipe_amount=SNIPE_AMOUNT,
        eth_liquidity_threshold=1 * WEI,
        token_liquidity_threshold=1_000 * WEI,
    )


@pytest.fixture
def evaluator(chain, cache, repo, executor, evaluator_config):
    return SnipeEvaluator(
        chain=chain,
        verification_cache=cache,
        position_repo=repo,
        executor=executor,
        config=evaluator_config,
    )
