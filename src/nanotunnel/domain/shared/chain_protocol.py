"""Protocol interfaces for the external chain collaborators.

These protocols define the narrow contracts the ledger core relies on. The
core never builds Move calls itself or talks to a node directly; services
accept any implementation satisfying these interfaces, which keeps them
testable with in-process fakes.
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

from pydantic import BaseModel


class OnChainTunnel(BaseModel):
    """Fields of the on-chain tunnel object relevant to the ledger mirror."""

    object_id: str
    payer: str
    balance: int
    cumulative_claimed: int
    nonce: int
    closing: bool = False


class SponsoredTransaction(BaseModel):
    """Relay response: transaction with gas attached plus the sponsor signature."""

    tx_bytes: bytes
    sponsor_signature: str
    digest: Optional[str] = None


class SubmissionResult(BaseModel):
    digest: str
    success: bool


class ChainClientProtocol(Protocol):
    """Reads on-chain objects and executes prepared transactions."""

    async def read_object(self, object_id: str) -> OnChainTunnel:
        """Read the on-chain tunnel object.

        Raises:
            InfrastructureError: node unreachable or object missing
        """
        ...

    async def submit(
        self, tx_bytes: bytes, signatures: Sequence[str]
    ) -> SubmissionResult:
        """Execute a fully signed transaction and report its outcome."""
        ...


class RelayProtocol(Protocol):
    """Gas sponsorship step run before final submission."""

    async def sponsor(self, raw_tx_bytes: bytes, sender: str) -> SponsoredTransaction:
        """
        Args:
            raw_tx_bytes: transaction kind bytes, without gas data
            sender: address of the transaction sender

        Raises:
            RelayError: the relay rejected the request or was unreachable
        """
        ...


class TransactionBuilderProtocol(Protocol):
    """Builds transaction kind bytes for the tunnel contract entry points."""

    async def build_claim(
        self,
        channel_id: str,
        cumulative_amount: int,
        nonce: int,
        signature: bytes,
        sender: str,
    ) -> bytes:
        ...

    async def build_close(self, channel_id: str, sender: str) -> bytes:
        ...
