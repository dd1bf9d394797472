"""Tunnel registration, top-ups and status views."""

from __future__ import annotations

import asyncio
import logging
from typing import List

from ...crypto.voucher import normalize_channel_id
from ...domain.entities import Tunnel, TunnelStatus
from ...domain.errors import InfrastructureError, ValidationError
from ...domain.repositories import TunnelRepository
from ...domain.shared import ChainClientProtocol
from ..concurrency import KeyedLock
from ..dtos import OnChainComparisonDTO, RegisterTunnelDTO, TunnelStatusDTO

logger = logging.getLogger(__name__)


class TunnelService:
    """Service to register tunnels and report their balances."""

    def __init__(
        self,
        tunnel_repository: TunnelRepository,
        chain_client: ChainClientProtocol,
        ledger_locks: KeyedLock,
    ):
        self.tunnel_repository = tunnel_repository
        self.chain_client = chain_client
        self.ledger_locks = ledger_locks

    async def register(self, dto: RegisterTunnelDTO) -> Tunnel:
        """Mirror a tunnel whose on-chain creation was observed.

        The on-chain payer must be the registering owner. If the chain cannot
        be read the check is skipped with a warning, matching how top-ups and
        opens are trusted as external events.
        """
        channel_id = normalize_channel_id(dto.channel_id)
        try:
            on_chain = await self.chain_client.read_object(channel_id)
        except InfrastructureError as e:
            logger.warning("Could not verify on-chain tunnel %s: %s", channel_id, e)
        else:
            if on_chain.payer != dto.owner_identity:
                raise ValidationError(
                    "Tunnel payer does not match owner identity",
                    channel_id=channel_id,
                )

        return await self.tunnel_repository.create(
            channel_id,
            dto.owner_identity,
            dto.payer_public_key_b64,
            dto.total_deposited,
        )

    async def apply_topup(self, channel_id: str, additional_amount: int) -> Tunnel:
        """Apply a confirmed on-chain top-up. Deduplication is the caller's job."""
        channel_id = normalize_channel_id(channel_id)
        async with self.ledger_locks.hold(channel_id):
            return await self.tunnel_repository.apply_topup(
                channel_id, additional_amount
            )

    async def get_status(self, owner_identity: str) -> List[TunnelStatusDTO]:
        tunnels = await self.tunnel_repository.list_by_owner(owner_identity)
        return [TunnelStatusDTO.from_tunnel(t) for t in tunnels]

    async def _compare(self, tunnel: Tunnel) -> OnChainComparisonDTO:
        comparison = OnChainComparisonDTO(
            channel_id=tunnel.channel_id,
            db_total_deposited=tunnel.total_deposited,
            db_claimed_amount=tunnel.claimed_amount,
            db_pending_amount=tunnel.pending_amount,
        )
        try:
            on_chain = await self.chain_client.read_object(tunnel.channel_id)
        except InfrastructureError as e:
            logger.warning(
                "Failed to fetch on-chain data for %s: %s", tunnel.channel_id, e
            )
            comparison.error = "Could not fetch on-chain data"
            return comparison
        comparison.on_chain_balance = on_chain.balance
        comparison.cumulative_claimed = on_chain.cumulative_claimed
        comparison.on_chain_nonce = on_chain.nonce
        comparison.closing = on_chain.closing
        return comparison

    async def compare_on_chain(self, owner_identity: str) -> List[OnChainComparisonDTO]:
        """On-chain state next to the ledger for every ACTIVE tunnel of an owner."""
        tunnels = await self.tunnel_repository.list_by_owner(owner_identity)
        active = [t for t in tunnels if t.status == TunnelStatus.ACTIVE]
        return list(await asyncio.gather(*(self._compare(t) for t in active)))
