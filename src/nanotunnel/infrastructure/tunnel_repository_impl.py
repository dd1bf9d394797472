"""Tunnel repository (Ledger Store) implementation over a storage abstraction."""

from __future__ import annotations

import logging
from typing import Callable, List, TypeVar

from pydantic import ValidationError as PydanticValidationError

from ..crypto.credentials import public_key_from_b64
from ..crypto.voucher import normalize_channel_id
from ..domain.entities import Tunnel, TunnelStatus
from ..domain.errors import (
    ChannelAlreadyExistsError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from ..domain.repositories import TunnelRepository
from .scripts import LEDGER_SCRIPTS
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_CAS_ATTEMPTS = 16


class TunnelRepositoryImpl(TunnelRepository):
    """Tunnel repository using a KeyValueStore.

    Keys:
      - tunnel:{channel_id} -> Tunnel JSON (authoritative state)
      - tunnels:owner:{owner_identity} -> sorted set of channel ids by creation time

    Every mutation reads the document, applies the change on the entity and
    writes it back with ``compare_and_swap_tunnel``. A concurrent writer makes
    the swap fail, in which case the read-modify-write is replayed on the
    fresh document.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_cas_attempts: int = DEFAULT_MAX_CAS_ATTEMPTS,
    ):
        self.store = store
        self.max_cas_attempts = max_cas_attempts

    @staticmethod
    def _tunnel_key(channel_id: str) -> str:
        return f"tunnel:{channel_id}"

    @staticmethod
    def _owner_index_key(owner_identity: str) -> str:
        return f"tunnels:owner:{owner_identity}"

    async def register_scripts(self) -> None:
        for name, script in LEDGER_SCRIPTS.items():
            await self.store.register_script(name, script)

    async def create(
        self,
        channel_id: str,
        owner_identity: str,
        payer_public_key_b64: str,
        total_deposited: int,
    ) -> Tunnel:
        channel_id = normalize_channel_id(channel_id)
        if not owner_identity:
            raise ValidationError("Owner identity is required", channel_id=channel_id)
        try:
            public_key_from_b64(payer_public_key_b64)
        except ValidationError as e:
            raise ValidationError(
                f"Invalid payer public key: {e}", channel_id=channel_id
            ) from e
        try:
            tunnel = Tunnel(
                channel_id=channel_id,
                owner_identity=owner_identity,
                payer_public_key_b64=payer_public_key_b64,
                total_deposited=total_deposited,
            )
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid tunnel data: {e}", channel_id=channel_id
            ) from e

        code, _ = await self.store.run_script(
            "create_tunnel",
            [self._tunnel_key(channel_id), self._owner_index_key(owner_identity)],
            [tunnel.model_dump_json(), str(tunnel.created_at.timestamp()), channel_id],
        )
        if int(code) != 1:
            raise ChannelAlreadyExistsError(
                "Tunnel already registered", channel_id=channel_id
            )
        logger.info(
            "Registered tunnel %s for %s with deposit %s",
            channel_id,
            owner_identity,
            total_deposited,
        )
        return tunnel

    async def _load(self, channel_id: str) -> tuple[str, Tunnel]:
        raw = await self.store.get(self._tunnel_key(channel_id))
        if raw is None:
            raise NotFoundError("Tunnel not found", channel_id=channel_id)
        return raw, Tunnel.model_validate_json(raw)

    async def get(self, channel_id: str) -> Tunnel:
        _, tunnel = await self._load(normalize_channel_id(channel_id))
        return tunnel

    async def list_by_owner(self, owner_identity: str) -> List[Tunnel]:
        ids: list[str] = await self.store.zrevrange(
            self._owner_index_key(owner_identity), 0, -1
        )
        tunnels: List[Tunnel] = []
        for channel_id in ids:
            data = await self.store.get(self._tunnel_key(channel_id))
            if data:
                tunnels.append(Tunnel.model_validate_json(data))
        return tunnels

    async def _mutate(
        self, channel_id: str, mutation: Callable[[Tunnel], T]
    ) -> tuple[Tunnel, T]:
        """Apply ``mutation`` to the stored tunnel as one atomic unit."""
        channel_id = normalize_channel_id(channel_id)
        key = self._tunnel_key(channel_id)
        for attempt in range(1, self.max_cas_attempts + 1):
            raw, tunnel = await self._load(channel_id)
            result = mutation(tunnel)
            code, _ = await self.store.run_script(
                "compare_and_swap_tunnel", [key], [raw, tunnel.model_dump_json()]
            )
            code = int(code)
            if code == 1:
                return tunnel, result
            if code == 2:
                raise NotFoundError("Tunnel not found", channel_id=channel_id)
            logger.debug(
                "Concurrent write on tunnel %s, replaying update (attempt %s)",
                channel_id,
                attempt,
            )
        raise ConflictError(
            f"Tunnel update lost {self.max_cas_attempts} races in a row",
            channel_id=channel_id,
        )

    async def apply_topup(self, channel_id: str, additional_amount: int) -> Tunnel:
        tunnel, _ = await self._mutate(
            channel_id, lambda t: t.apply_topup(additional_amount)
        )
        logger.info(
            "Applied top-up of %s to tunnel %s (total %s)",
            additional_amount,
            tunnel.channel_id,
            tunnel.total_deposited,
        )
        return tunnel

    async def transition_status(
        self, channel_id: str, new_status: TunnelStatus
    ) -> Tunnel:
        tunnel, _ = await self._mutate(
            channel_id, lambda t: t.transition_to(new_status)
        )
        logger.info("Tunnel %s is now %s", tunnel.channel_id, new_status.value)
        return tunnel

    async def compare_and_advance(
        self,
        channel_id: str,
        charge_amount: int,
        expected_nonce: int,
        signature_b64: str,
    ) -> tuple[int, int]:
        _, advanced = await self._mutate(
            channel_id,
            lambda t: t.apply_charge(charge_amount, expected_nonce, signature_b64),
        )
        return advanced

    async def reconcile_settlement(
        self, channel_id: str, settled_cumulative: int
    ) -> Tunnel:
        tunnel, moved = await self._mutate(
            channel_id, lambda t: t.apply_settlement(settled_cumulative)
        )
        logger.info(
            "Reconciled tunnel %s: %s moved to claimed (claimed %s, pending %s)",
            tunnel.channel_id,
            moved,
            tunnel.claimed_amount,
            tunnel.pending_amount,
        )
        return tunnel
