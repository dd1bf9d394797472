"""Charge authorization: the check-and-advance step behind every metered call."""

from __future__ import annotations

import base64
import logging
import time
from typing import Optional

from prometheus_client import Counter, Histogram

from ...crypto.credentials import KeyPair
from ...crypto.voucher import normalize_channel_id, voucher_message
from ...domain.errors import (
    ConflictError,
    InfrastructureError,
    InsufficientBalanceError,
    StaleNonceError,
    TunnelError,
)
from ...domain.repositories import TunnelRepository
from ..concurrency import KeyedLock
from ..dtos import ChargeResultDTO

logger = logging.getLogger(__name__)

charge_requests_total = Counter(
    "tunnel_charge_requests_total",
    "Total charge authorizations processed",
    ["status"],
)
charge_duration_milliseconds = Histogram(
    "tunnel_charge_duration_milliseconds",
    "Wall time to authorize a charge (ms)",
    ["status"],
)


class ChargeAuthorizer:
    """Atomically reserves ``price`` on a tunnel and signs the new voucher.

    The operator key signs vouchers: the operator is the party that claims
    on-chain, so it attests to the usage it has metered.

    Within this process, charges on one channel are serialized by ``locks``.
    Across processes the Ledger Store's nonce check decides; a charge that
    loses that race is re-quoted and re-signed up to ``max_attempts`` times.
    """

    def __init__(
        self,
        tunnel_repository: TunnelRepository,
        operator_keypair: KeyPair,
        locks: KeyedLock,
        *,
        max_attempts: int = 3,
        lock_timeout: Optional[float] = None,
    ):
        if max_attempts < 1:
            raise ValueError("At least one charge attempt is required")
        self.tunnel_repository = tunnel_repository
        self.operator_keypair = operator_keypair
        self.locks = locks
        self.max_attempts = max_attempts
        self.lock_timeout = lock_timeout

    @property
    def operator_public_key(self) -> bytes:
        return self.operator_keypair.public_key

    async def authorize(self, channel_id: str, price: int) -> ChargeResultDTO:
        channel_id = normalize_channel_id(channel_id)
        start_time = time.perf_counter()
        outcome = "error"
        try:
            async with self.locks.hold(channel_id, timeout=self.lock_timeout):
                result = await self._authorize_locked(channel_id, price)
            outcome = "success"
            return result
        except InsufficientBalanceError as e:
            outcome = "insufficient_balance"
            logger.info(
                "Rejected charge of %s on tunnel %s: available %s",
                price,
                channel_id,
                e.balance,
            )
            raise
        except ConflictError:
            outcome = "conflict"
            raise
        except InfrastructureError as e:
            logger.error("Charge on tunnel %s failed before commit: %s", channel_id, e)
            raise
        except TunnelError:
            outcome = "client_error"
            raise
        except Exception:
            logger.exception("Unexpected failure authorizing charge on %s", channel_id)
            raise
        finally:
            charge_requests_total.labels(status=outcome).inc()
            elapsed = (time.perf_counter() - start_time) * 1000
            charge_duration_milliseconds.labels(status=outcome).observe(elapsed)

    async def _authorize_locked(self, channel_id: str, price: int) -> ChargeResultDTO:
        for attempt in range(1, self.max_attempts + 1):
            tunnel = await self.tunnel_repository.get(channel_id)
            new_cumulative, new_nonce = tunnel.quote_charge(price)

            signature = self.operator_keypair.sign(
                voucher_message(channel_id, new_cumulative, new_nonce)
            )
            signature_b64 = base64.b64encode(signature).decode("utf-8")

            try:
                cumulative, nonce = await self.tunnel_repository.compare_and_advance(
                    channel_id, price, tunnel.nonce, signature_b64
                )
            except StaleNonceError as e:
                logger.debug(
                    "Tunnel %s advanced to nonce %s by another writer (attempt %s)",
                    channel_id,
                    e.current_nonce,
                    attempt,
                )
                continue

            # Same nonce means same cumulative: settlements and top-ups never
            # change claimed + pending.
            logger.info(
                "Charged %s on tunnel %s: cumulative %s, nonce %s",
                price,
                channel_id,
                cumulative,
                nonce,
            )
            return ChargeResultDTO(
                channel_id=channel_id,
                price=price,
                cumulative_amount=cumulative,
                nonce=nonce,
                signature_b64=signature_b64,
            )

        raise ConflictError(
            f"Charge lost {self.max_attempts} nonce races in a row",
            channel_id=channel_id,
        )
