"""Chain access - log fetching/decoding and ABI lookup."""

from contract_alarms.chain.abi import AbiResolver, parse_abi_response
from contract_alarms.chain.events import ChainError, ChainEventSource

__all__ = [
    "AbiResolver",
    "ChainError",
    "ChainEventSource",
    "parse_abi_response",
]
