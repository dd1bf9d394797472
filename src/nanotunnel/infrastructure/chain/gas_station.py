"""Gas station relay: gets transactions sponsored before execution."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ...domain.errors import RelayError
from ...domain.shared import SponsoredTransaction
from ..http.http_client import AsyncHttpClient

logger = logging.getLogger(__name__)


class GasStationRelay:
    """Relay client for a gas station sponsoring endpoint.

    Request:  {apiKey, rawTxBytesHex, sender, network}
    Response: {txBytesHex, sponsorSignature, digest?}

    Every failure, including timeouts and malformed responses, is raised as
    ``RelayError`` so the settlement retry loop can treat them alike.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        network: str,
        timeout: float = 10.0,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key:
            raise ValueError("Gas station API key is not configured")
        self._http = AsyncHttpClient(url, timeout=timeout, transport=transport)
        self._api_key = api_key
        self._network = network

    async def sponsor(self, raw_tx_bytes: bytes, sender: str) -> SponsoredTransaction:
        body = {
            "apiKey": self._api_key,
            "rawTxBytesHex": raw_tx_bytes.hex(),
            "sender": sender,
            "network": self._network,
        }
        try:
            resp = await self._http.post("", json=body)
        except httpx.HTTPStatusError as e:
            raise RelayError(
                f"Gas station {e.response.status_code}: {e.response.text}"
            ) from e
        except httpx.RequestError as e:
            raise RelayError(f"Gas station request failed: {e!r}") from e

        try:
            data = resp.json()
            return SponsoredTransaction(
                tx_bytes=bytes.fromhex(data["txBytesHex"]),
                sponsor_signature=data["sponsorSignature"],
                digest=data.get("digest"),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise RelayError(f"Malformed gas station response: {e}") from e

    async def aclose(self) -> None:
        await self._http.aclose()
