"""Data Transfer Objects for the ledger application layer."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..domain.entities import ApiKeyRecord, Tunnel, TunnelStatus


class RegisterTunnelDTO(BaseModel):
    """Registration of a tunnel after its on-chain creation was observed."""

    owner_identity: str = Field(..., min_length=1)
    channel_id: str
    payer_public_key_b64: str
    total_deposited: int = Field(..., ge=0)


class ChargeResultDTO(BaseModel):
    """New voucher state returned to the metered-call handler."""

    channel_id: str
    price: int
    cumulative_amount: int
    nonce: int
    signature_b64: str


class SettlementResultDTO(BaseModel):
    channel_id: str
    digest: str
    settled_cumulative: int
    claimed_amount: int
    pending_amount: int


class CloseResultDTO(BaseModel):
    channel_id: str
    digest: str
    status: TunnelStatus
    settlement: Optional[SettlementResultDTO] = None


class TunnelStatusDTO(BaseModel):
    """Ledger view of a tunnel with its spendable balance."""

    channel_id: str
    total_deposited: int
    claimed_amount: int
    pending_amount: int
    available_balance: int
    nonce: int
    status: TunnelStatus
    created_at: datetime

    @classmethod
    def from_tunnel(cls, tunnel: Tunnel) -> "TunnelStatusDTO":
        return cls(
            channel_id=tunnel.channel_id,
            total_deposited=tunnel.total_deposited,
            claimed_amount=tunnel.claimed_amount,
            pending_amount=tunnel.pending_amount,
            available_balance=tunnel.available_balance,
            nonce=tunnel.nonce,
            status=tunnel.status,
            created_at=tunnel.created_at,
        )


class OnChainComparisonDTO(BaseModel):
    """On-chain tunnel fields next to the ledger mirror.

    On-chain fields are None and ``error`` is set when the object could not
    be read.
    """

    channel_id: str
    on_chain_balance: Optional[int] = None
    cumulative_claimed: Optional[int] = None
    on_chain_nonce: Optional[int] = None
    closing: Optional[bool] = None
    db_total_deposited: int
    db_claimed_amount: int
    db_pending_amount: int
    error: Optional[str] = None


class MeteredCallDTO(BaseModel):
    """A metered call authenticated by the caller's credential."""

    credential: str = Field(..., min_length=1)
    model: str = "default"
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    latency_ms: int = Field(default=0, ge=0)


class MeteredCallResultDTO(BaseModel):
    usage_id: UUID
    charge: ChargeResultDTO


class ApiKeyDTO(BaseModel):
    """Registered key as shown to its owner. Never carries the credential."""

    id: UUID
    owner_identity: str
    public_key_b64: str
    key_hint: str
    name: str
    is_active: bool
    created_at: datetime
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: ApiKeyRecord) -> "ApiKeyDTO":
        return cls(**record.model_dump(mode="python"))


class GeneratedApiKeyDTO(ApiKeyDTO):
    """Freshly generated key. ``api_key`` is returned once and not stored."""

    api_key: str


class UsageTotalsDTO(BaseModel):
    requests: int = 0
    cost: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class UsageSummaryDTO(BaseModel):
    last_24h: UsageTotalsDTO
    last_7d: UsageTotalsDTO
    total: UsageTotalsDTO
