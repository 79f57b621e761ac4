"""
Ingestion Layer - the chain boundary and external data sources.

This module provides:
    - ChainInterface protocol and its web3.py implementation
    - ExplorerVerificationClient: contract-verification lookups
    - ChainEventSubscriber: resilient PairCreated feed with watchdog,
      heartbeat, backfill and per-pair dedup

Usage:
    from sniper_bot.ingestion import ChainEventSubscriber, Web3ChainInterface

    chain = Web3ChainInterface(http_url=..., ws_url=..., ...)
    subscriber = ChainEventSubscriber(chain, on_candidate=engine.submit)
    await subscriber.start()
"""

from .models import (
    ChainEvent,
    DiscoverySource,
    PairCandidate,
    TxReceipt,
)

from .chain import (
    PAIR_CREATED_SIGNATURE,
    ChainError,
    ChainInterface,
    ConfirmationTimeoutError,
    EventStream,
    LogSubscription,
    TransactionFailedError,
    Web3ChainInterface,
    decode_pair_created,
)

from .client import (
    ExplorerVerificationClient,
    RateLimitError,
    VerificationAPIError,
)

from .subscriber import (
    ChainEventSubscriber,
    SubscriberConfig,
    SubscriberState,
)


__all__ = [
    # Models
    "ChainEvent",
    "DiscoverySource",
    "PairCandidate",
    "TxReceipt",
    # Chain
    "PAIR_CREATED_SIGNATURE",
    "ChainError",
    "ChainInterface",
    "ConfirmationTimeoutError",
    "EventStream",
    "LogSubscription",
    "TransactionFailedError",
    "Web3ChainInterface",
    "decode_pair_created",
    # Verification client
    "ExplorerVerificationClient",
    "RateLimitError",
    "VerificationAPIError",
    # Subscriber
    "ChainEventSubscriber",
    "SubscriberConfig",
    "SubscriberState",
]
