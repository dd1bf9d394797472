"""Ledger domain entities: Tunnel, UsageRecord and PricingRule."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_serializer

from .errors import (
    ChannelNotActiveError,
    ConflictError,
    InsufficientBalanceError,
    InvalidTransitionError,
    StaleNonceError,
    ValidationError,
)

U64_MAX = 2**64 - 1


class TunnelStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


# CLOSED is terminal. ACTIVE -> CLOSED is the operator settle-and-close path.
ALLOWED_TRANSITIONS: dict[TunnelStatus, frozenset[TunnelStatus]] = {
    TunnelStatus.ACTIVE: frozenset({TunnelStatus.CLOSING, TunnelStatus.CLOSED}),
    TunnelStatus.CLOSING: frozenset({TunnelStatus.CLOSED}),
    TunnelStatus.CLOSED: frozenset(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Tunnel(BaseModel):
    """Off-chain mirror of an on-chain escrow (payment channel).

    ``latest_signature_b64`` always signs the voucher for
    ``(channel_id, claimed_amount + pending_amount, nonce)``; the fields are
    only ever changed together through the Ledger Store.
    """

    channel_id: str
    owner_identity: str
    payer_public_key_b64: str
    total_deposited: int = Field(..., ge=0, le=U64_MAX)
    claimed_amount: int = Field(default=0, ge=0, le=U64_MAX)
    pending_amount: int = Field(default=0, ge=0, le=U64_MAX)
    nonce: int = Field(default=0, ge=0, le=U64_MAX)
    latest_signature_b64: Optional[str] = None
    status: TunnelStatus = TunnelStatus.ACTIVE
    revision: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: Optional[datetime] = None

    @field_serializer("created_at")
    def serialize_created_at(self, value: datetime) -> str:
        return value.isoformat()

    @field_serializer("updated_at")
    def serialize_updated_at(self, value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @property
    def cumulative_amount(self) -> int:
        return self.claimed_amount + self.pending_amount

    @property
    def available_balance(self) -> int:
        return self.total_deposited - self.claimed_amount - self.pending_amount

    def _touch(self) -> None:
        self.revision += 1
        self.updated_at = _now()

    def quote_charge(self, price: int) -> tuple[int, int]:
        """Check a charge against the current state without mutating it.

        Returns the ``(new_cumulative, new_nonce)`` pair the charge would
        produce.
        """
        if price <= 0 or price > U64_MAX:
            raise ValidationError(
                f"Price must be a positive u64, got {price}", channel_id=self.channel_id
            )
        if self.status != TunnelStatus.ACTIVE:
            raise ChannelNotActiveError(self.channel_id, self.status.value)
        available = self.available_balance
        if available < price:
            raise InsufficientBalanceError(self.channel_id, available, price)
        if self.nonce >= U64_MAX:
            raise ConflictError("Channel nonce exhausted", channel_id=self.channel_id)
        return self.cumulative_amount + price, self.nonce + 1

    def apply_charge(
        self, price: int, expected_nonce: int, signature_b64: str
    ) -> tuple[int, int]:
        """Advance pending amount, nonce and signature as one unit."""
        if self.nonce != expected_nonce:
            raise StaleNonceError(self.channel_id, expected_nonce, self.nonce)
        new_cumulative, new_nonce = self.quote_charge(price)
        self.pending_amount += price
        self.nonce = new_nonce
        self.latest_signature_b64 = signature_b64
        self._touch()
        return new_cumulative, new_nonce

    def apply_topup(self, additional_amount: int) -> None:
        if additional_amount <= 0:
            raise ValidationError(
                f"Top-up amount must be positive, got {additional_amount}",
                channel_id=self.channel_id,
            )
        if self.total_deposited + additional_amount > U64_MAX:
            raise ValidationError(
                "Top-up would overflow total deposit", channel_id=self.channel_id
            )
        self.total_deposited += additional_amount
        self._touch()

    def apply_settlement(self, settled_cumulative: int) -> int:
        """Fold a confirmed on-chain claim into ``claimed_amount``.

        Only the settled part of ``pending_amount`` moves, so charges that
        landed while the claim was in flight stay pending and the cumulative
        amount (and with it the latest signature) is unchanged. Returns the
        amount moved; a claim at or below ``claimed_amount`` moves nothing.
        """
        if settled_cumulative > self.cumulative_amount:
            raise ValidationError(
                f"Settled amount {settled_cumulative} exceeds cumulative "
                f"{self.cumulative_amount}",
                channel_id=self.channel_id,
            )
        if settled_cumulative <= self.claimed_amount:
            return 0
        moved = settled_cumulative - self.claimed_amount
        self.claimed_amount = settled_cumulative
        self.pending_amount -= moved
        self._touch()
        return moved

    def transition_to(self, new_status: TunnelStatus) -> None:
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                self.channel_id, self.status.value, new_status.value
            )
        self.status = new_status
        self._touch()


class UsageRecord(BaseModel):
    """One metered call charged against a tunnel."""

    id: UUID = Field(default_factory=uuid4)
    owner_identity: str
    channel_id: str
    model: str
    api_key_id: Optional[UUID] = None
    api_key_hint: Optional[str] = None
    cost: int = Field(..., ge=0)
    nonce: int = Field(..., ge=0)
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0
    created_at: datetime = Field(default_factory=_now)

    @field_serializer("id")
    def serialize_id(self, value: UUID) -> str:
        return str(value)

    @field_serializer("created_at")
    def serialize_created_at(self, value: datetime) -> str:
        return value.isoformat()

    @field_serializer("api_key_id")
    def serialize_api_key_id(self, value: Optional[UUID]) -> Optional[str]:
        return str(value) if value else None


class PricingRule(BaseModel):
    """Flat per-call fee for a model; ``default`` applies when no rule matches."""

    model: str = Field(..., min_length=1)
    flat_fee: int = Field(..., gt=0)
    is_active: bool = True


class ApiKeyRecord(BaseModel):
    """Registered credential. Only the public key and a display hint are kept."""

    id: UUID = Field(default_factory=uuid4)
    owner_identity: str = Field(..., min_length=1)
    public_key_b64: str
    key_hint: str
    name: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=_now)
    last_used_at: Optional[datetime] = None

    @field_serializer("id")
    def serialize_id(self, value: UUID) -> str:
        return str(value)

    @field_serializer("created_at")
    def serialize_created_at(self, value: datetime) -> str:
        return value.isoformat()

    @field_serializer("last_used_at")
    def serialize_last_used_at(self, value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None
