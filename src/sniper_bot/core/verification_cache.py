"""
Process-lifetime memo of contract-verification results.

Each address is looked up at most once: the first caller takes a
per-address lock and asks the oracle, concurrent callers for the same
address wait on that lock and read the stored answer. Different addresses
never wait on each other.

Oracle errors count as "not verified" for the current candidate but are not
cached, so a transient outage does not blacklist a token for the rest of
the run. Entries never expire.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class VerificationOracle(Protocol):
    async def is_verified(self, address: str) -> bool: ...


@dataclass(frozen=True)
class VerificationRecord:
    address: str
    verified: bool
    cached_at: datetime


class VerificationCache:
    """
    Read-through cache in front of a verification oracle.

    Usage:
        cache = VerificationCache(ExplorerVerificationClient(api_key=...))
        if await cache.is_verified(token):
            ...
    """

    def __init__(self, oracle: VerificationOracle) -> None:
        self._oracle = oracle
        self._records: dict[str, VerificationRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._oracle_calls = 0

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, address: str) -> bool:
        return address.lower() in self._records

    @property
    def oracle_calls(self) -> int:
        return self._oracle_calls

    def get(self, address: str) -> Optional[VerificationRecord]:
        return self._records.get(address.lower())

    async def is_verified(self, address: str) -> bool:
        key = address.lower()

        record = self._records.get(key)
        if record is not None:
            return record.verified

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            record = self._records.get(key)
            if record is not None:
                return record.verified

            self._oracle_calls += 1
            try:
                verified = bool(await self._oracle.is_verified(address))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error checking contract verification for {address}: {e}")
                return False

            # write-once
            self._records.setdefault(
                key,
                VerificationRecord(
                    address=address,
                    verified=verified,
                    cached_at=datetime.now(timezone.utc),
                ),
            )
            self._locks.pop(key, None)
            logger.info(f"Contract {address} verification status: {verified}")
            return self._records[key].verified
