"""Contract ABI lookup against an Etherscan-compatible API."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from contract_alarms.config import EtherscanSettings

logger = logging.getLogger(__name__)

NOT_OK = "NOTOK"


def parse_abi_response(data: Any) -> list[dict[str, Any]] | None:
    """Extract an ABI from a ``getabi`` response body.

    Accepts the raw ABI array (``format=raw``) or the enveloped form with
    the ABI as JSON text in ``result``. ``NOTOK`` envelopes and anything
    that is not a list of ABI entries mean "not found".
    """
    if isinstance(data, dict):
        if data.get("message") == NOT_OK or data.get("status") == "0":
            return None
        data = data.get("result")
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError:
                return None

    if isinstance(data, list) and data and all(isinstance(e, dict) for e in data):
        return data
    return None


class AbiResolver:
    """Looks up verified contract ABIs by address."""

    def __init__(
        self,
        api_url: str = "https://api.etherscan.io/api",
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        """Initialize the resolver.

        Args:
            api_url: Etherscan-compatible API endpoint.
            api_key: Optional API key.
            timeout: HTTP request timeout in seconds.
        """
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: EtherscanSettings) -> AbiResolver:
        """Build the resolver from Etherscan settings."""
        return cls(
            settings.api_url,
            api_key=settings.api_key.get_secret_value() if settings.api_key else None,
        )

    async def fetch_abi(self, address: str) -> list[dict[str, Any]] | None:
        """Fetch the ABI of a verified contract.

        Args:
            address: Contract address.

        Returns:
            The ABI, or None if the contract is unknown, unverified, or the
            response could not be understood.
        """
        params = {
            "module": "contract",
            "action": "getabi",
            "address": address,
            "format": "raw",
        }
        if self.api_key:
            params["apikey"] = self.api_key

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.api_url, params=params)
        except httpx.HTTPError as e:
            logger.warning("ABI lookup for %s failed: %s", address, e)
            return None

        if response.status_code != 200:
            logger.warning("ABI lookup for %s returned HTTP %d", address, response.status_code)
            return None

        try:
            body = response.json()
        except ValueError:
            logger.warning("ABI lookup for %s returned malformed JSON", address)
            return None

        abi = parse_abi_response(body)
        if abi is None:
            logger.info("No ABI available for %s", address)
        return abi
