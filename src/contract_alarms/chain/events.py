"""Chain event source: fetches contract logs and decodes them with the ABI.

Provides:
- Chain head lookup
- Chunked eth_getLogs over a block range
- Decoding against every event in the contract ABI
- Retry with exponential backoff on RPC failures
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from eth_abi.exceptions import DecodingError
from web3 import AsyncWeb3
from web3.exceptions import LogTopicError, MismatchedABI, Web3Exception
from web3.providers import AsyncHTTPProvider

from contract_alarms.alarms.models import ChainEvent, ContractDescriptor

logger = logging.getLogger(__name__)

DEFAULT_MAX_BLOCK_RANGE = 2000
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 30


class ChainError(Exception):
    """Raised when the RPC endpoint cannot serve a request."""


def to_jsonable(value: Any) -> Any:
    """Convert decoded ABI values into JSON-serialisable data."""
    if isinstance(value, bytes | bytearray):
        return AsyncWeb3.to_hex(bytes(value))
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [to_jsonable(v) for v in value]
    if value is None or isinstance(value, str | int | float | bool):
        return value
    return str(value)


def event_names_of(abi: list[dict[str, Any]]) -> list[str]:
    """Names of the non-anonymous events declared in an ABI."""
    return list(
        dict.fromkeys(
            entry["name"]
            for entry in abi
            if entry.get("type") == "event" and entry.get("name") and not entry.get("anonymous")
        )
    )


class ChainEventSource:
    """Reads and decodes contract logs from a JSON-RPC endpoint.

    Example:
        ```python
        source = ChainEventSource.from_url("https://eth.llamarpc.com")
        head = await source.get_head()
        events = await source.fetch_events(descriptor, head - 100, head)
        ```
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        *,
        max_block_range: int = DEFAULT_MAX_BLOCK_RANGE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the event source.

        Args:
            w3: Connected async web3 instance.
            max_block_range: Largest block span per eth_getLogs call.
            max_retries: Maximum attempts per RPC call.
            retry_delay_seconds: Initial delay between retries.
        """
        self._w3 = w3
        self._max_block_range = max_block_range
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

    @classmethod
    def from_url(
        cls,
        rpc_url: str,
        *,
        request_timeout: int = DEFAULT_REQUEST_TIMEOUT,
        **kwargs: Any,
    ) -> ChainEventSource:
        """Create a source talking to ``rpc_url`` over HTTP."""
        provider = AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        return cls(AsyncWeb3(provider), **kwargs)

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Execute a web3.eth call with retry and exponential backoff.

        Raises:
            ChainError: If every attempt failed.
        """
        last_error: Exception | None = None
        delay = self._retry_delay

        for attempt in range(self._max_retries):
            try:
                method = getattr(self._w3.eth, func_name)
                return await method(*args)
            except (Web3Exception, OSError, TimeoutError) as e:
                last_error = e
                logger.warning(
                    "RPC %s failed (attempt %d/%d): %s",
                    func_name,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2

        raise ChainError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def get_head(self) -> int:
        """Current chain head height."""
        return int(await self._execute_with_retry("get_block_number"))

    async def fetch_events(
        self,
        contract: ContractDescriptor,
        from_block: int,
        to_block: int,
    ) -> list[ChainEvent]:
        """Fetch and decode the contract's logs in ``[from_block, to_block]``.

        Logs that match none of the ABI's events, and logs flagged as
        removed by a reorg, are skipped.
        """
        if from_block > to_block:
            return []

        checksum = AsyncWeb3.to_checksum_address(contract.address)
        w3_contract = self._w3.eth.contract(address=checksum, abi=contract.abi)
        names = event_names_of(contract.abi)

        events: list[ChainEvent] = []
        start = from_block
        while start <= to_block:
            end = min(start + self._max_block_range - 1, to_block)
            logs = await self._execute_with_retry(
                "get_logs",
                {"address": checksum, "fromBlock": start, "toBlock": end},
            )
            for log in logs:
                if log.get("removed"):
                    continue
                event = self._decode(w3_contract, names, log)
                if event is not None:
                    events.append(event)
            logger.debug(
                "Fetched %d logs for %s in blocks %d-%d", len(logs), contract.address, start, end
            )
            start = end + 1

        return events

    @staticmethod
    def _decode(w3_contract: Any, names: list[str], log: Any) -> ChainEvent | None:
        """Decode one raw log against each named event until one fits."""
        for name in names:
            try:
                decoded = getattr(w3_contract.events, name)().process_log(log)
            except (MismatchedABI, LogTopicError, DecodingError):
                continue
            return ChainEvent(
                tx_hash=AsyncWeb3.to_hex(decoded["transactionHash"]).lower(),
                address=str(decoded["address"]).lower(),
                event_name=decoded["event"],
                block_height=int(decoded["blockNumber"]),
                log_index=int(decoded["logIndex"]),
                payload=to_jsonable(dict(decoded["args"])),
            )
        return None
