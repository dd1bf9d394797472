"""Sui JSON-RPC chain client."""

from __future__ import annotations

import base64
from typing import Any, Optional, Sequence

import httpx

from ...domain.errors import InfrastructureError
from ...domain.shared import OnChainTunnel, SubmissionResult
from ..http.http_client import AsyncHttpClient


def _balance_value(raw: Any) -> int:
    # Balance<T> renders either as a plain string or as a nested struct.
    if isinstance(raw, dict):
        fields = raw.get("fields", raw)
        raw = fields.get("balance", fields.get("value", 0))
    return int(raw or 0)


class SuiRpcChainClient:
    """Reads tunnel objects and executes signed transactions over JSON-RPC."""

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._http = AsyncHttpClient(rpc_url, timeout=timeout, transport=transport)
        self._request_id = 0

    async def _call(self, method: str, params: list[Any]) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }
        try:
            resp = await self._http.post("", json=payload)
            body = resp.json()
        except httpx.HTTPError as e:
            raise InfrastructureError(f"Sui RPC {method} failed: {e!r}") from e
        except ValueError as e:
            raise InfrastructureError(f"Sui RPC {method} returned invalid JSON") from e
        if body.get("error"):
            raise InfrastructureError(
                f"Sui RPC {method} error: {body['error'].get('message', body['error'])}"
            )
        return body.get("result")

    async def read_object(self, object_id: str) -> OnChainTunnel:
        result = await self._call("sui_getObject", [object_id, {"showContent": True}])
        content = ((result or {}).get("data") or {}).get("content") or {}
        fields = content.get("fields")
        if not fields:
            raise InfrastructureError(f"Object {object_id} has no readable content")
        try:
            return OnChainTunnel(
                object_id=object_id,
                payer=fields.get("payer", ""),
                balance=_balance_value(fields.get("balance")),
                cumulative_claimed=int(fields.get("cumulative_claimed") or 0),
                nonce=int(fields.get("nonce") or 0),
                closing=bool(fields.get("closing", False)),
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise InfrastructureError(
                f"Object {object_id} has malformed tunnel fields: {e}"
            ) from e

    async def submit(
        self, tx_bytes: bytes, signatures: Sequence[str]
    ) -> SubmissionResult:
        result = await self._call(
            "sui_executeTransactionBlock",
            [
                base64.b64encode(tx_bytes).decode("utf-8"),
                list(signatures),
                {"showEffects": True},
                "WaitForLocalExecution",
            ],
        )
        result = result or {}
        status = ((result.get("effects") or {}).get("status") or {}).get("status")
        return SubmissionResult(
            digest=result.get("digest", ""), success=status == "success"
        )

    async def aclose(self) -> None:
        await self._http.aclose()
