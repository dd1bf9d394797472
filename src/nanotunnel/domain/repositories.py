"""Ledger domain repository interfaces."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from .entities import ApiKeyRecord, PricingRule, Tunnel, TunnelStatus, UsageRecord


class TunnelRepository(ABC):
    """Ledger Store: authoritative off-chain mirror of every tunnel.

    All mutators are linearizable per channel; distinct channels never
    contend.
    """

    @abstractmethod
    async def create(
        self,
        channel_id: str,
        owner_identity: str,
        payer_public_key_b64: str,
        total_deposited: int,
    ) -> Tunnel:
        """Register a new tunnel. Raises ChannelAlreadyExistsError."""
        pass

    @abstractmethod
    async def get(self, channel_id: str) -> Tunnel:
        """Return the tunnel or raise NotFoundError."""
        pass

    @abstractmethod
    async def list_by_owner(self, owner_identity: str) -> List[Tunnel]:
        """Tunnels funded by ``owner_identity``, most recently created first."""
        pass

    @abstractmethod
    async def apply_topup(self, channel_id: str, additional_amount: int) -> Tunnel:
        pass

    @abstractmethod
    async def transition_status(
        self, channel_id: str, new_status: TunnelStatus
    ) -> Tunnel:
        pass

    @abstractmethod
    async def compare_and_advance(
        self,
        channel_id: str,
        charge_amount: int,
        expected_nonce: int,
        signature_b64: str,
    ) -> tuple[int, int]:
        """
        Atomically add ``charge_amount`` to pending, bump the nonce and store
        the signature, provided the nonce still equals ``expected_nonce``.

        Returns:
          (new_cumulative, new_nonce)
        Raises:
          StaleNonceError, ChannelNotActiveError, InsufficientBalanceError
        """
        pass

    @abstractmethod
    async def reconcile_settlement(
        self, channel_id: str, settled_cumulative: int
    ) -> Tunnel:
        """Move the settled part of pending into claimed after an on-chain claim."""
        pass


class UsageLogRepository(ABC):
    @abstractmethod
    async def append(self, record: UsageRecord) -> UsageRecord:
        pass

    @abstractmethod
    async def list_by_owner(
        self, owner_identity: str, skip: int = 0, limit: Optional[int] = 100
    ) -> List[UsageRecord]:
        """Most recent first. ``limit=None`` returns every record from ``skip`` on.

        Raises ValidationError for a negative ``skip``.
        """
        pass


class PricingRepository(ABC):
    @abstractmethod
    async def save(self, rule: PricingRule) -> PricingRule:
        pass

    @abstractmethod
    async def get(self, model: str) -> Optional[PricingRule]:
        pass


class ApiKeyRepository(ABC):
    @abstractmethod
    async def create(self, record: ApiKeyRecord) -> ApiKeyRecord:
        """Store a new key. Raises ApiKeyAlreadyRegisteredError for a known public key."""
        pass

    @abstractmethod
    async def get(self, key_id: UUID) -> Optional[ApiKeyRecord]:
        pass

    @abstractmethod
    async def get_by_public_key(self, public_key_b64: str) -> Optional[ApiKeyRecord]:
        pass

    @abstractmethod
    async def list_by_owner(self, owner_identity: str) -> List[ApiKeyRecord]:
        """Most recently created first."""
        pass

    @abstractmethod
    async def update(self, record: ApiKeyRecord) -> ApiKeyRecord:
        pass

    @abstractmethod
    async def touch(self, key_id: UUID, used_at: datetime) -> None:
        """Record the last use of a key without rewriting the record."""
        pass
