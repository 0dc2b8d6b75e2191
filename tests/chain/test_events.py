"""Tests for the chain event source."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from factories import ADDRESS_A, ADDRESS_B, ERC20_ABI
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.providers import AsyncHTTPProvider

from contract_alarms.alarms.models import ContractDescriptor
from contract_alarms.chain.events import ChainError, ChainEventSource, event_names_of, to_jsonable

TRANSFER_TOPIC = bytes.fromhex("ddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef")
APPROVAL_TOPIC = bytes.fromhex("8c5be1e5ebec7d5bd14f71427d1e84f3dd0314c0f7b2291e5b200ac8c7c3b925")
UNKNOWN_TOPIC = b"\x01" * 32


def address_topic(address: str) -> bytes:
    return bytes(12) + bytes.fromhex(address[2:])


def raw_log(
    topic: bytes,
    *,
    tx_byte: int = 1,
    block_number: int = 100,
    log_index: int = 0,
    value: int = 1000,
    removed: bool = False,
) -> dict:
    """Build an undecoded ERC-20 style log as returned by eth_getLogs."""
    return {
        "address": AsyncWeb3.to_checksum_address(ADDRESS_A),
        "topics": [topic, address_topic(ADDRESS_B), address_topic(ADDRESS_A)],
        "data": value.to_bytes(32, "big"),
        "blockNumber": block_number,
        "blockHash": bytes([9]) * 32,
        "transactionHash": bytes([tx_byte]) * 32,
        "transactionIndex": 0,
        "logIndex": log_index,
        "removed": removed,
    }


@pytest.fixture
def w3() -> AsyncWeb3:
    """Web3 instance whose RPC calls are patched per test."""
    return AsyncWeb3(AsyncHTTPProvider("http://localhost:8545"))


@pytest.fixture
def contract() -> ContractDescriptor:
    return ContractDescriptor(address=ADDRESS_A, abi=ERC20_ABI)


def test_to_jsonable() -> None:
    """Bytes become hex strings, containers are walked."""
    assert to_jsonable({"data": b"\x01\x02", "items": (1, b"\xff")}) == {
        "data": "0x0102",
        "items": [1, "0xff"],
    }


def test_event_names_of_skips_anonymous() -> None:
    abi = ERC20_ABI + [{"type": "event", "name": "Anon", "anonymous": True, "inputs": []}]
    assert event_names_of(abi) == ["Transfer", "Approval"]


class TestChainEventSource:
    """Tests for ChainEventSource."""

    @pytest.mark.asyncio
    async def test_get_head(self, w3: AsyncWeb3) -> None:
        source = ChainEventSource(w3)
        with patch.object(w3.eth, "get_block_number", AsyncMock(return_value=1234)):
            assert await source.get_head() == 1234

    @pytest.mark.asyncio
    async def test_fetch_events_decodes_logs(
        self, w3: AsyncWeb3, contract: ContractDescriptor
    ) -> None:
        """Logs are decoded against every event in the ABI."""
        logs = [
            raw_log(TRANSFER_TOPIC, log_index=0),
            raw_log(APPROVAL_TOPIC, log_index=1, value=5),
            raw_log(UNKNOWN_TOPIC, log_index=2),
            raw_log(TRANSFER_TOPIC, tx_byte=2, removed=True),
        ]
        source = ChainEventSource(w3)

        with patch.object(w3.eth, "get_logs", AsyncMock(return_value=logs)):
            events = await source.fetch_events(contract, 90, 100)

        assert [e.event_name for e in events] == ["Transfer", "Approval"]
        transfer = events[0]
        assert transfer.tx_hash == "0x" + "01" * 32
        assert transfer.address == ADDRESS_A
        assert transfer.block_height == 100
        assert transfer.payload["from"].lower() == ADDRESS_B
        assert transfer.payload["to"].lower() == ADDRESS_A
        assert transfer.payload["value"] == 1000
        assert events[1].payload["value"] == 5

    @pytest.mark.asyncio
    async def test_fetch_events_chunks_range(
        self, w3: AsyncWeb3, contract: ContractDescriptor
    ) -> None:
        """Large ranges are split into max_block_range sized requests."""
        source = ChainEventSource(w3, max_block_range=10)
        get_logs = AsyncMock(return_value=[])

        with patch.object(w3.eth, "get_logs", get_logs):
            await source.fetch_events(contract, 0, 24)

        ranges = [
            (call.args[0]["fromBlock"], call.args[0]["toBlock"])
            for call in get_logs.await_args_list
        ]
        assert ranges == [(0, 9), (10, 19), (20, 24)]

    @pytest.mark.asyncio
    async def test_empty_range(self, w3: AsyncWeb3, contract: ContractDescriptor) -> None:
        source = ChainEventSource(w3)
        with patch.object(w3.eth, "get_logs", AsyncMock()) as get_logs:
            assert await source.fetch_events(contract, 11, 10) == []
        get_logs.assert_not_called()

    @pytest.mark.asyncio
    async def test_retry_then_succeed(self) -> None:
        """Transient RPC errors are retried."""
        w3 = MagicMock()
        w3.eth.get_block_number = AsyncMock(side_effect=[OSError("reset"), 77])
        source = ChainEventSource(w3, retry_delay_seconds=0.001)

        assert await source.get_head() == 77
        assert w3.eth.get_block_number.await_count == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self) -> None:
        """Persistent failures raise ChainError."""
        w3 = MagicMock()
        w3.eth.get_block_number = AsyncMock(side_effect=Web3Exception("down"))
        source = ChainEventSource(w3, max_retries=2, retry_delay_seconds=0.001)

        with pytest.raises(ChainError, match="get_block_number"):
            await source.get_head()
        assert w3.eth.get_block_number.await_count == 2
