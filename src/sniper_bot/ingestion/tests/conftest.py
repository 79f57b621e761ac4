"""
Test fixtures for the ingestion layer.

IMPORTANT: No test talks to a real node or explorer. The chain is the
in-memory FakeChain and HTTP responses are mocked.
"""

import pytest

from sniper_bot.ingestion.subscriber import ChainEventSubscriber, SubscriberConfig

from .fakes import FakeChain


# =============================================================================
# Chain Fixtures
# =============================================================================


@pytest.fixture
def chain():
    """Fresh in-memory chain at height 1000."""
    return FakeChain(height=1_000)


# =============================================================================
# Subscriber Fixtures
# =============================================================================


@pytest.fixture
def fast_config():
    """Immediate reconnects and timers that stay out of the way unless a test lowers them."""
    return SubscriberConfig(
        heartbeat_interval=60,
        watchdog_interval=60,
        backfill_interval=60,
        backfill_window=100,
        probe_timeout=0.5,
        reconnect_backoff_enabled=False,
    )


@pytest.fixture
def delivered():
    """Candidates handed to the subscriber callback, in order."""
    return []


@pytest.fixture
def states():
    return []


@pytest.fixture
async def subscriber(chain, fast_config, delivered, states):
    async def on_candidate(candidate):
        delivered.append(candidate)

    async def on_state_change(state):
        states.append(state)

    sub = ChainEventSubscriber(
        chain,
        on_candidate=on_candidate,
        config=fast_config,
        on_state_change=on_state_change,
    )
    yield sub
    await sub.stop()
