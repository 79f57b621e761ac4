"""
Chain interface - the boundary between the trading core and the node.

The core only depends on the ``ChainInterface`` protocol. ``Web3ChainInterface``
is the production implementation for a Uniswap-V2 style venue:

    - Calls and transactions go over an HTTP JSON-RPC endpoint via web3.py.
      web3's HTTP provider is blocking, so every call runs in the default
      executor and the event loop stays free.
    - The live PairCreated feed is an ``eth_subscribe("logs")`` over a
      websocket. The subscription object is owned by whoever called
      ``subscribe`` (the chain event subscriber) and closed by it.
    - Transactions are signed locally with the operator key. Submissions are
      serialized behind a lock so nonces never collide.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional, Protocol, Sequence

import websockets
from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted
from web3.middleware import ExtraDataToPOAMiddleware

from .models import ChainEvent, TxReceipt

logger = logging.getLogger(__name__)

PAIR_CREATED_SIGNATURE = "PairCreated(address,address,address,uint256)"
PAIR_CREATED_TOPIC = Web3.to_hex(Web3.keccak(text=PAIR_CREATED_SIGNATURE))

ROUTER_ABI = [
    {
        "name": "getAmountsOut",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "path", "type": "address[]"},
        ],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
    {
        "name": "swapExactTokensForTokens",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
]

PAIR_ABI = [
    {
        "name": "getReserves",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "reserve0", "type": "uint112"},
            {"name": "reserve1", "type": "uint112"},
            {"name": "blockTimestampLast", "type": "uint32"},
        ],
    },
    {
        "name": "token0",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
]

ERC20_ABI = [
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


class ChainError(Exception):
    """Base exception for node / transaction failures."""


class TransactionFailedError(ChainError):
    """Transaction was rejected by the node or reverted on chain."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class ConfirmationTimeoutError(ChainError):
    """No receipt arrived within the confirmation timeout."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class EventStream(Protocol):
    """Live event feed. Iteration raises when the underlying connection faults."""

    def __aiter__(self) -> AsyncIterator[ChainEvent]: ...

    async def close(self) -> None: ...


class ChainInterface(Protocol):
    """Operations the trading core needs from the node."""

    async def subscribe(self, event_signature: str) -> EventStream: ...

    async def query_historical(
        self, event_signature: str, from_height: int, to_height: int
    ) -> list[ChainEvent]: ...

    async def get_height(self) -> int: ...

    async def get_quote(self, amount_in: int, path: Sequence[str]) -> int: ...

    async def get_reserves(self, pair_address: str) -> tuple[int, int, str]: ...

    async def get_gas_price(self) -> int: ...

    async def get_balance(self, token_address: str) -> int: ...

    async def submit_approval(
        self, token_address: str, spender: str, amount: int, gas_price: Optional[int] = None
    ) -> str: ...

    async def submit_swap(
        self,
        path: Sequence[str],
        amount_in: int,
        amount_out_min: int,
        deadline: int,
        gas_price: int,
    ) -> str: ...

    async def confirm(self, tx_hash: str) -> TxReceipt: ...


def _topic_to_address(topic: Any) -> str:
    """Indexed address topics are left-padded to 32 bytes."""
    raw = topic.hex() if isinstance(topic, (bytes, bytearray)) else str(topic)
    raw = raw[2:] if raw.startswith("0x") else raw
    return Web3.to_checksum_address("0x" + raw[-40:])


def decode_pair_created(log: dict[str, Any]) -> ChainEvent:
    """
    Decode a PairCreated log (RPC JSON or web3 AttributeDict).

    token0/token1 are indexed topics; the pair address is the first word of
    the data field.
    """
    topics = log["topics"]
    data = log["data"]
    data_hex = data.hex() if isinstance(data, (bytes, bytearray)) else str(data)
    data_hex = data_hex[2:] if data_hex.startswith("0x") else data_hex

    block = log.get("blockNumber")
    if isinstance(block, str):
        block = int(block, 16)

    tx_hash = log.get("transactionHash")
    if isinstance(tx_hash, (bytes, bytearray)):
        tx_hash = Web3.to_hex(tx_hash)

    return ChainEvent(
        args={
            "token0": _topic_to_address(topics[1]),
            "token1": _topic_to_address(topics[2]),
            "pair": Web3.to_checksum_address("0x" + data_hex[24:64]),
        },
        block_height=int(block or 0),
        tx_hash=str(tx_hash or ""),
    )


class LogSubscription:
    """
    An ``eth_subscribe("logs")`` feed over one websocket connection.

    Iterating yields decoded events. Logs that do not decode are logged and
    skipped; any socket failure propagates out of the iterator so the owner
    can fault the connection.
    """

    def __init__(self, ws: Any, subscription_id: str):
        self._ws = ws
        self._subscription_id = subscription_id

    def __aiter__(self) -> "LogSubscription":
        return self

    async def __anext__(self) -> ChainEvent:
        while True:
            raw = await self._ws.recv()
            message = json.loads(raw)
            if message.get("method") != "eth_subscription":
                continue
            params = message.get("params", {})
            if params.get("subscription") != self._subscription_id:
                continue
            log = params.get("result") or {}
            if log.get("removed"):
                # chain reorg dropped the log
                continue
            try:
                return decode_pair_created(log)
            except (KeyError, IndexError, TypeError, ValueError) as e:
                logger.warning(
                    f"Skipping undecodable log {log.get('transactionHash')}: {e!r}"
                )

    async def close(self) -> None:
        try:
            await self._ws.close()
        except Exception as e:
            logger.debug(f"Error closing log subscription: {e}")


class Web3ChainInterface:
    """
    ChainInterface backed by web3.py (HTTP) and a raw websocket (logs).

    Usage:
        chain = Web3ChainInterface(
            http_url=..., ws_url=..., private_key=...,
            factory_address=..., router_address=...,
        )
        stream = await chain.subscribe(PAIR_CREATED_SIGNATURE)
        async for event in stream:
            ...
    """

    def __init__(
        self,
        http_url: str,
        ws_url: str,
        factory_address: str,
        router_address: Optional[str] = None,
        private_key: Optional[str] = None,
        request_timeout: float = 10.0,
        confirmation_timeout: float = 120.0,
        subscribe_timeout: float = 10.0,
        gas_limit: int = 300_000,
    ):
        self._w3 = Web3(Web3.HTTPProvider(http_url, request_kwargs={"timeout": request_timeout}))
        self._w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self._ws_url = ws_url
        self._factory = Web3.to_checksum_address(factory_address)
        self._router = None
        if router_address:
            self._router = self._w3.eth.contract(
                address=Web3.to_checksum_address(router_address), abi=ROUTER_ABI
            )
        self._account = Account.from_key(private_key) if private_key else None
        self._confirmation_timeout = confirmation_timeout
        self._subscribe_timeout = subscribe_timeout
        self._gas_limit = gas_limit
        self._tx_lock = asyncio.Lock()

    @property
    def wallet_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    def _require_account(self):
        if self._account is None:
            raise ChainError("No private key configured; cannot sign transactions")
        return self._account

    def _require_router(self):
        if self._router is None:
            raise ChainError("No router configured; cannot quote or swap")
        return self._router

    # =========================================================================
    # Events
    # =========================================================================

    async def subscribe(self, event_signature: str) -> LogSubscription:
        topic = Web3.to_hex(Web3.keccak(text=event_signature))
        ws = await websockets.connect(
            self._ws_url,
            ping_interval=20,
            ping_timeout=10,
            close_timeout=5,
        )
        try:
            await ws.send(json.dumps({
                "jsonrpc": "2.0",
                "id": 1,
                "method": "eth_subscribe",
                "params": ["logs", {"address": self._factory, "topics": [topic]}],
            }))
            response = json.loads(
                await asyncio.wait_for(ws.recv(), timeout=self._subscribe_timeout)
            )
            if "error" in response or "result" not in response:
                raise ChainError(f"Subscription rejected: {response}")
        except BaseException:
            await ws.close()
            raise

        logger.info(f"Subscribed to {event_signature} on {self._factory}")
        return LogSubscription(ws, response["result"])

    async def query_historical(
        self, event_signature: str, from_height: int, to_height: int
    ) -> list[ChainEvent]:
        topic = Web3.to_hex(Web3.keccak(text=event_signature))
        logs = await self._run(
            self._w3.eth.get_logs,
            {
                "address": self._factory,
                "topics": [topic],
                "fromBlock": from_height,
                "toBlock": to_height,
            },
        )
        events = [decode_pair_created(dict(log)) for log in logs]
        events.sort(key=lambda e: e.block_height)
        return events

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_height(self) -> int:
        return await self._run(lambda: self._w3.eth.block_number)

    async def get_gas_price(self) -> int:
        return await self._run(lambda: self._w3.eth.gas_price)

    async def get_quote(self, amount_in: int, path: Sequence[str]) -> int:
        checksummed = [Web3.to_checksum_address(a) for a in path]
        router = self._require_router()
        amounts = await self._run(
            router.functions.getAmountsOut(amount_in, checksummed).call
        )
        return int(amounts[-1])

    async def get_reserves(self, pair_address: str) -> tuple[int, int, str]:
        pair = self._w3.eth.contract(address=Web3.to_checksum_address(pair_address), abi=PAIR_ABI)
        reserves = await self._run(pair.functions.getReserves().call)
        token0 = await self._run(pair.functions.token0().call)
        return int(reserves[0]), int(reserves[1]), token0

    async def get_balance(self, token_address: str) -> int:
        account = self._require_account()
        token = self._w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)
        return int(await self._run(token.functions.balanceOf(account.address).call))

    # =========================================================================
    # Transactions
    # =========================================================================

    async def _send(self, function, gas_price: Optional[int]) -> str:
        account = self._require_account()
        async with self._tx_lock:
            try:
                nonce = await self._run(
                    self._w3.eth.get_transaction_count, account.address, "pending"
                )
                if gas_price is None:
                    gas_price = await self.get_gas_price()
                tx = function.build_transaction({
                    "from": account.address,
                    "nonce": nonce,
                    "gas": self._gas_limit,
                    "gasPrice": gas_price,
                    "chainId": await self._run(lambda: self._w3.eth.chain_id),
                })
                signed = account.sign_transaction(tx)
                tx_hash = await self._run(self._w3.eth.send_raw_transaction, signed.raw_transaction)
            except asyncio.CancelledError:
                raise
            except ChainError:
                raise
            except Exception as e:
                raise TransactionFailedError(f"Submission rejected: {e}") from e
        return Web3.to_hex(tx_hash)

    async def submit_approval(
        self, token_address: str, spender: str, amount: int, gas_price: Optional[int] = None
    ) -> str:
        token = self._w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)
        function = token.functions.approve(Web3.to_checksum_address(spender), amount)
        return await self._send(function, gas_price)

    async def submit_swap(
        self,
        path: Sequence[str],
        amount_in: int,
        amount_out_min: int,
        deadline: int,
        gas_price: int,
    ) -> str:
        account = self._require_account()
        router = self._require_router()
        function = router.functions.swapExactTokensForTokens(
            amount_in,
            amount_out_min,
            [Web3.to_checksum_address(a) for a in path],
            account.address,
            deadline,
        )
        return await self._send(function, gas_price)

    async def confirm(self, tx_hash: str) -> TxReceipt:
        try:
            receipt = await self._run(
                lambda: self._w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self._confirmation_timeout
                )
            )
        except TimeExhausted as e:
            raise ConfirmationTimeoutError(
                f"No receipt for {tx_hash} after {self._confirmation_timeout}s", tx_hash
            ) from e

        if receipt["status"] != 1:
            raise TransactionFailedError(f"Transaction {tx_hash} reverted", tx_hash)

        return TxReceipt(
            tx_hash=tx_hash,
            block_height=receipt.get("blockNumber"),
            status=receipt["status"],
            raw=dict(receipt),
        )
