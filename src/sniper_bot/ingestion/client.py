"""
REST client for the contract-verification explorer API.

Etherscan-family explorers (polygonscan, etherscan, ...) return the ABI of a
contract only when its source has been verified, so
``module=contract&action=getabi`` with ``status == "1"`` is the verification
check.

The client raises on failure; deciding what an error *means* (the verification
cache treats it as "not verified") is left to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

import aiohttp

logger = logging.getLogger(__name__)


class VerificationAPIError(Exception):
    """Base exception for explorer API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(VerificationAPIError):
    """Rate limit exceeded."""
    pass


class ExplorerVerificationClient:
    """
    Async client answering "is this contract's source verified?".

    Features:
        - Rate limiting (free explorer keys allow ~5 requests/second)
        - Retries with exponential backoff on 429 / 5xx / timeouts
        - No retry on 4xx client errors

    Usage:
        async with ExplorerVerificationClient(api_key=...) as oracle:
            verified = await oracle.is_verified("0x...")
    """

    DEFAULT_URL = "https://api.polygonscan.com/api"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        rate_limit: float = 5.0,
        timeout: float = 15.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self._api_key = api_key
        self._base_url = base_url or self.DEFAULT_URL
        self._session = session
        self._owns_session = session is None
        self._rate_limit = rate_limit
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_retries = max_retries
        self._retry_delay = retry_delay

        self._request_times: list[float] = []
        self._rate_lock = asyncio.Lock()

    async def __aenter__(self) -> "ExplorerVerificationClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    async def _rate_limit_wait(self) -> None:
        async with self._rate_lock:
            now = time.time()
            self._request_times = [t for t in self._request_times if now - t < 1.0]

            if len(self._request_times) >= self._rate_limit:
                wait_time = 1.0 - (now - self._request_times[0])
                if wait_time > 0:
                    await asyncio.sleep(wait_time)

            self._request_times.append(time.time())

    async def _request(self, params: dict[str, Any]) -> Any:
        """
        GET the explorer API with rate limiting and retries.

        Raises:
            VerificationAPIError: On API errors or exhausted retries
            asyncio.CancelledError: When the task is cancelled
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

        if self._api_key:
            params = {**params, "apikey": self._api_key}

        last_error: Optional[Exception] = None

        for attempt in range(self._max_retries):
            try:
                await self._rate_limit_wait()

                async with self._session.get(self._base_url, params=params) as response:
                    if response.status == 429:
                        raise RateLimitError("Rate limit exceeded", status_code=429)

                    if 400 <= response.status < 500:
                        text = await response.text()
                        raise VerificationAPIError(
                            f"API error: {response.status} - {text}",
                            status_code=response.status,
                        )

                    if response.status >= 500:
                        text = await response.text()
                        raise VerificationAPIError(
                            f"Server error: {response.status} - {text}",
                            status_code=response.status,
                        )

                    return await response.json(content_type=None)

            except RateLimitError as e:
                delay = self._retry_delay * (2 ** attempt) * 2
                logger.warning(f"Explorer rate limited, waiting {delay}s before retry")
                await asyncio.sleep(delay)
                last_error = e

            except VerificationAPIError as e:
                if e.status_code and e.status_code >= 500:
                    delay = self._retry_delay * (2 ** attempt)
                    logger.warning(
                        f"Explorer error {e.status_code}, retry {attempt + 1}/{self._max_retries}"
                    )
                    await asyncio.sleep(delay)
                    last_error = e
                else:
                    raise

            except asyncio.TimeoutError:
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(f"Explorer timeout, retry {attempt + 1}/{self._max_retries}")
                await asyncio.sleep(delay)
                last_error = VerificationAPIError("Request timed out")

            except asyncio.CancelledError:
                raise

            except aiohttp.ClientError as e:
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(
                    f"Explorer request failed: {e}, retry {attempt + 1}/{self._max_retries}"
                )
                await asyncio.sleep(delay)
                last_error = VerificationAPIError(str(e))

        raise last_error or VerificationAPIError("Request failed after retries")

    async def is_verified(self, address: str) -> bool:
        """True when the explorer has verified source for ``address``."""
        data = await self._request({
            "module": "contract",
            "action": "getabi",
            "address": address,
        })
        if not isinstance(data, dict):
            raise VerificationAPIError(f"Unexpected response: {str(data)[:200]}")

        # The free tier reports throttling inside a 200 response
        result = str(data.get("result", ""))
        if data.get("status") != "1" and "rate limit" in result.lower():
            raise RateLimitError(result)

        return data.get("status") == "1"
