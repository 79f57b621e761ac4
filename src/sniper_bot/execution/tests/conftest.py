"""
Test fixtures for the execution layer.

Trades run against the in-memory chain; positions live in the in-memory
repository unless a test needs the real database.
"""

from decimal import Decimal

import pytest

from sniper_bot.execution.position_manager import ExitBasis, PositionManager, PositionManagerConfig
from sniper_bot.execution.trade_executor import ExecutionConfig, TradeExecutor
from sniper_bot.ingestion.tests.fakes import BASE, FakeChain
from sniper_bot.storage.models import Position
from sniper_bot.storage.tests.fakes import InMemoryPositionRepository

WEI = 10**18
TOKEN = "0x" + "11" * 20
ROUTER = "0x" + "77" * 20
AMOUNT_IN = 10**15
TOKEN_AMOUNT = 4_000 * WEI


def set_value_quote(chain: FakeChain, value: int, token_amount: int = TOKEN_AMOUNT) -> None:
    """Make selling ``token_amount`` quote exactly ``value`` base units."""
    chain.quote_numerator = value
    chain.quote_denominator = token_amount


@pytest.fixture
def chain():
    chain = FakeChain()
    chain.balances[TOKEN] = TOKEN_AMOUNT
    set_value_quote(chain, AMOUNT_IN)
    return chain


@pytest.fixture
def repo():
    return InMemoryPositionRepository()


@pytest.fixture
def execution_config():
    return ExecutionConfig(router_address=ROUTER, base_asset_address=BASE, dry_run=False)


@pytest.fixture
def executor(chain, execution_config):
    return TradeExecutor(chain, execution_config)


@pytest.fixture
def manager_config():
    return PositionManagerConfig(
        base_asset_address=BASE,
        stop_loss_pct=Decimal("10"),
        take_profit_pct=Decimal("20"),
        exit_basis=ExitBasis.VALUE,
    )


@pytest.fixture
def manager(chain, repo, executor, manager_config):
    return PositionManager(chain, repo, executor, manager_config)


@pytest.fixture
async def position(repo):
    """One stored position: 0.001 base in, 4000 tokens held."""
    return await repo.insert(Position(
        token_address=TOKEN,
        amount_in=str(AMOUNT_IN),
        token_amount=str(TOKEN_AMOUNT),
        entry_tx_hash="0xentry",
    ))
