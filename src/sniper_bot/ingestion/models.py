"""
Data models for the ingestion layer.

These models represent:
- Raw pair-creation events as delivered by the chain (live or historical)
- Normalized pair candidates handed to the snipe evaluator
- Transaction receipts returned by confirmation waits
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class DiscoverySource(str, Enum):
    """Where a pair candidate was first seen."""
    LIVE = "live"
    BACKFILL = "backfill"


@dataclass(frozen=True)
class ChainEvent:
    """
    A decoded log entry.

    For PairCreated, ``args`` carries ``token0``, ``token1`` and ``pair``.
    """
    args: dict[str, Any]
    block_height: int
    tx_hash: str


@dataclass(frozen=True)
class PairCandidate:
    """
    A newly discovered pair, emitted once per pair address per process.

    Not persisted; consumed immediately by the evaluator.
    """
    token_a: str
    token_b: str
    pair_address: str
    discovery_height: int
    discovery_source: DiscoverySource

    @property
    def key(self) -> str:
        """Dedup key (addresses compare case-insensitively)."""
        return self.pair_address.lower()

    @classmethod
    def from_event(cls, event: ChainEvent, source: DiscoverySource) -> "PairCandidate":
        try:
            return cls(
                token_a=event.args["token0"],
                token_b=event.args["token1"],
                pair_address=event.args["pair"],
                discovery_height=event.block_height,
                discovery_source=source,
            )
        except KeyError as e:
            raise ValueError(f"PairCreated event missing field {e}") from e


@dataclass(frozen=True)
class TxReceipt:
    """Confirmation of a mined, successful transaction."""
    tx_hash: str
    block_height: Optional[int] = None
    status: int = 1
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
