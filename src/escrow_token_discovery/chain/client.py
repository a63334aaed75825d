"""EVM chain client with rate limiting, retries, failover and caching.

One `ChainClient` talks to one chain. It provides:
- `eth_getLogs` with provider range/size rejections surfaced as
  `LogRangeLimitError` (never retried here, the scanner splits instead)
- ERC-20 `balanceOf` / `decimals` reads
- Block lookups, including a timestamp -> block binary search
- Retry logic with exponential backoff and failover to a secondary RPC URL
- Optional Redis caching for immutable block data
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar, cast

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from escrow_token_discovery.ratelimit import RateLimiter
from escrow_token_discovery.scan.limits import RangeLimitClassifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CACHE_TTL_SECONDS = 3600
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0

ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
]

# Transport-level failures worth retrying. Anything else propagates untouched.
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    Web3Exception,
    aiohttp.ClientError,
    asyncio.TimeoutError,
)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails after all retries."""


class LogRangeLimitError(ChainClientError):
    """Raised when a provider refuses a log query because its range or result is too large."""


class ChainClient:
    """Rate-limited, retrying client for a single EVM chain.

    Example:
        ```python
        client = ChainClient(
            "ethereum",
            rpc_url="https://eth.llamarpc.com",
            fallback_rpc_url="https://ethereum-rpc.publicnode.com",
        )
        head = await client.get_block_number()
        logs = await client.get_logs({"topics": [...], "fromBlock": 1, "toBlock": head})
        ```
    """

    def __init__(
        self,
        chain: str,
        *,
        rpc_url: str,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        range_limit_classifier: RangeLimitClassifier | None = None,
    ) -> None:
        """Initialize the chain client.

        Args:
            chain: Chain name, used for logging and cache keys.
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching block data.
            cache_ttl_seconds: Cache TTL in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
            range_limit_classifier: Recognizes provider range/size rejections.
        """
        self.chain = chain
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._classifier = range_limit_classifier or RangeLimitClassifier()

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._cache_prefix = f"chain:{chain}:"

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _attempt(
        self,
        label: str,
        w3: AsyncWeb3[AsyncHTTPProvider],
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
        *,
        endpoint: str,
    ) -> tuple[bool, T | None, Exception | None]:
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            await self._rate_limiter.acquire()
            try:
                return True, await call(w3), None
            except RETRYABLE_ERRORS as e:
                if self._classifier.is_range_limit(e):
                    raise LogRangeLimitError(f"{label} rejected by provider: {e}") from e
                last_error = cast(Exception, e)
                logger.warning(
                    "%s RPC %s failed on %s (attempt %d/%d): %s",
                    endpoint,
                    label,
                    self.chain,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
        return False, None, last_error

    async def _call_with_retry(
        self,
        label: str,
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
    ) -> T:
        """Execute an RPC call with retry and failover logic.

        Raises:
            LogRangeLimitError: The provider rejected the request as too large.
            RPCError: If all retries and failover fail.
        """
        last_error: Exception | None = None

        if self._should_try_primary():
            ok, result, last_error = await self._attempt(label, self._w3, call, endpoint="Primary")
            if ok:
                self._primary_healthy = True
                return cast(T, result)
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback is not None:
            ok, result, error = await self._attempt(label, self._w3_fallback, call, endpoint="Fallback")
            if ok:
                logger.info("Fallback RPC succeeded for %s on %s", label, self.chain)
                return cast(T, result)
            last_error = error or last_error

        raise RPCError(f"RPC call {label} on {self.chain} failed after all retries: {last_error}")

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Call `w3.eth.<func_name>(*args)` with retry/failover semantics."""
        return await self._call_with_retry(
            func_name,
            lambda w3: getattr(w3.eth, func_name)(*args),
        )

    async def get_block_number(self) -> int:
        """Get the current chain head."""
        return int(await self._execute_with_retry("get_block_number"))

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch logs via `eth_getLogs`.

        Raises:
            LogRangeLimitError: The provider refused the range or the result size.
            RPCError: Any other failure after retries.
        """
        logs = await self._execute_with_retry("get_logs", filter_params)
        return [dict(log) for log in logs]

    async def get_token_balance(self, holder_address: str, token_address: str) -> int:
        """Get the latest ERC-20 balance of `holder_address`, in raw token units."""

        async def call(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
            contract = w3.eth.contract(address=AsyncWeb3.to_checksum_address(token_address), abi=ERC20_ABI)
            return int(
                await contract.functions.balanceOf(AsyncWeb3.to_checksum_address(holder_address)).call()
            )

        return await self._call_with_retry("balanceOf", call)

    async def get_token_decimals(self, token_address: str) -> int:
        """Get the ERC-20 `decimals()` of a token contract."""
        cache_key = f"{self._cache_prefix}decimals:{token_address.lower()}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)

        async def call(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
            contract = w3.eth.contract(address=AsyncWeb3.to_checksum_address(token_address), abi=ERC20_ABI)
            return int(await contract.functions.decimals().call())

        decimals = await self._call_with_retry("decimals", call)
        await self._set_cached(cache_key, str(decimals))
        return decimals

    async def get_block(self, block_number: int) -> dict[str, Any]:
        """Get block by number (number and timestamp only)."""
        cache_key = f"{self._cache_prefix}block:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cast(dict[str, Any], json.loads(cached))

        block = await self._execute_with_retry("get_block", block_number)
        block_dict = {"number": int(block["number"]), "timestamp": int(block["timestamp"])}

        # Blocks below the head are immutable for our purposes.
        await self._set_cached(cache_key, json.dumps(block_dict))
        return block_dict

    async def get_latest_block(self) -> dict[str, Any]:
        block = await self._execute_with_retry("get_block", "latest")
        return {"number": int(block["number"]), "timestamp": int(block["timestamp"])}

    async def get_block_number_at_or_before(self, ts: datetime) -> int:
        """Resolve a timestamp to the latest block at-or-before it (binary search)."""
        if ts.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")

        target = int(ts.timestamp())

        genesis = await self.get_block(0)
        if target <= int(genesis["timestamp"]):
            return 0

        latest = await self.get_latest_block()
        latest_number = int(latest["number"])
        if target >= int(latest["timestamp"]):
            return latest_number

        lo = 0
        hi = latest_number
        while lo + 1 < hi:
            mid = (lo + hi) // 2
            mid_block = await self.get_block(mid)
            if int(mid_block["timestamp"]) <= target:
                lo = mid
            else:
                hi = mid

        resolved = await self.get_block(lo)
        if int(resolved["timestamp"]) > target:
            raise RPCError("Block search invariant violated (resolved block after target)")
        return lo

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
