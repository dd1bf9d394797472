"""Settlement: pushes the latest voucher on-chain and reconciles the ledger."""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Awaitable, Callable, Optional, Sequence

from prometheus_client import Counter

from ...crypto.credentials import KeyPair, sign_transaction
from ...crypto.voucher import normalize_channel_id
from ...domain.entities import Tunnel, TunnelStatus
from ...domain.errors import (
    ConflictError,
    InfrastructureError,
    InvalidTransitionError,
    NothingToSettleError,
    RelayError,
    SettlementError,
)
from ...domain.repositories import TunnelRepository
from ...domain.shared import (
    ChainClientProtocol,
    RelayProtocol,
    SponsoredTransaction,
    TransactionBuilderProtocol,
)
from ..concurrency import KeyedLock
from ..dtos import CloseResultDTO, SettlementResultDTO

logger = logging.getLogger(__name__)

# Delay before each relay attempt, in seconds.
DEFAULT_RETRY_DELAYS: tuple[float, ...] = (0.0, 1.0, 2.0, 3.0, 5.0)

settlement_attempts_total = Counter(
    "tunnel_settlement_attempts_total",
    "Settlement and close submissions by outcome",
    ["operation", "status"],
)
relay_retries_total = Counter(
    "tunnel_relay_retries_total",
    "Gas station requests that failed and were retried or abandoned",
)


class SettlementSubmitter:
    """Submits claims and closes for tunnels through the relay and chain client.

    Submissions for one channel are serialized so at most one transaction
    per channel is in flight. The ledger lock is only taken for the local
    state change after confirmation, never across network calls, so charges
    keep flowing while a claim is being executed. Those charges stay pending
    after reconciliation.
    """

    def __init__(
        self,
        tunnel_repository: TunnelRepository,
        chain_client: ChainClientProtocol,
        relay: RelayProtocol,
        transaction_builder: TransactionBuilderProtocol,
        operator_keypair: KeyPair,
        ledger_locks: KeyedLock,
        *,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        relay_timeout: Optional[float] = 10.0,
        execution_timeout: Optional[float] = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not retry_delays:
            raise ValueError("At least one relay attempt is required")
        self.tunnel_repository = tunnel_repository
        self.chain_client = chain_client
        self.relay = relay
        self.transaction_builder = transaction_builder
        self.operator_keypair = operator_keypair
        self.ledger_locks = ledger_locks
        self.retry_delays = tuple(retry_delays)
        self.relay_timeout = relay_timeout
        self.execution_timeout = execution_timeout
        self._sleep = sleep
        self._submission_locks = KeyedLock()

    @property
    def sender(self) -> str:
        return self.operator_keypair.address

    async def _sponsor_with_retry(
        self, channel_id: str, raw_tx_bytes: bytes
    ) -> SponsoredTransaction:
        max_attempts = len(self.retry_delays)
        last_error = ""
        for attempt, delay in enumerate(self.retry_delays, start=1):
            if delay > 0:
                logger.info(
                    "Relay retry %s/%s for tunnel %s after %ss",
                    attempt,
                    max_attempts,
                    channel_id,
                    delay,
                )
                await self._sleep(delay)
            try:
                return await asyncio.wait_for(
                    self.relay.sponsor(raw_tx_bytes, self.sender),
                    timeout=self.relay_timeout,
                )
            except asyncio.TimeoutError:
                last_error = f"timed out after {self.relay_timeout}s"
            except RelayError as e:
                last_error = str(e)
            relay_retries_total.inc()
            logger.warning(
                "Relay request failed for tunnel %s (attempt %s/%s): %s",
                channel_id,
                attempt,
                max_attempts,
                last_error,
            )
        raise SettlementError(
            f"Gas station failed after {max_attempts} attempts: {last_error}",
            channel_id=channel_id,
        )

    async def _sponsor_and_execute(self, channel_id: str, raw_tx_bytes: bytes) -> str:
        """Run the relay step with retries, then execute exactly once.

        Returns the transaction digest. Raises SettlementError on any failure.
        """
        sponsored = await self._sponsor_with_retry(channel_id, raw_tx_bytes)
        operator_signature = sign_transaction(self.operator_keypair, sponsored.tx_bytes)
        try:
            result = await asyncio.wait_for(
                self.chain_client.submit(
                    sponsored.tx_bytes,
                    [operator_signature, sponsored.sponsor_signature],
                ),
                timeout=self.execution_timeout,
            )
        except asyncio.TimeoutError as e:
            raise SettlementError(
                f"On-chain execution timed out after {self.execution_timeout}s",
                channel_id=channel_id,
                digest=sponsored.digest,
            ) from e
        except InfrastructureError as e:
            raise SettlementError(
                f"On-chain execution failed: {e}",
                channel_id=channel_id,
                digest=sponsored.digest,
            ) from e

        digest = result.digest or sponsored.digest or ""
        if not result.success:
            raise SettlementError(
                "On-chain execution reported failure",
                channel_id=channel_id,
                digest=digest,
            )
        logger.info("Tx success for tunnel %s: %s", channel_id, digest)
        return digest

    async def _build(self, channel_id: str, build: Awaitable[bytes]) -> bytes:
        try:
            return await asyncio.wait_for(build, timeout=self.execution_timeout)
        except asyncio.TimeoutError as e:
            raise SettlementError(
                f"Building transaction timed out after {self.execution_timeout}s",
                channel_id=channel_id,
            ) from e
        except InfrastructureError as e:
            raise SettlementError(
                f"Could not build transaction: {e}", channel_id=channel_id
            ) from e

    async def settle(self, channel_id: str) -> SettlementResultDTO:
        """Claim the latest voucher on-chain and fold it into ``claimed_amount``."""
        channel_id = normalize_channel_id(channel_id)
        async with self._submission_locks.hold(channel_id):
            tunnel = await self.tunnel_repository.get(channel_id)
            return await self._settle_locked(tunnel)

    async def _settle_locked(self, tunnel: Tunnel) -> SettlementResultDTO:
        channel_id = tunnel.channel_id
        if tunnel.status == TunnelStatus.CLOSED:
            raise ConflictError("Tunnel is already closed", channel_id=channel_id)
        if tunnel.pending_amount == 0 or not tunnel.latest_signature_b64:
            raise NothingToSettleError(
                "No pending amount to claim", channel_id=channel_id
            )

        cumulative = tunnel.cumulative_amount
        raw_tx_bytes = await self._build(
            channel_id,
            self.transaction_builder.build_claim(
                channel_id,
                cumulative,
                tunnel.nonce,
                base64.b64decode(tunnel.latest_signature_b64),
                self.sender,
            ),
        )
        try:
            digest = await self._sponsor_and_execute(channel_id, raw_tx_bytes)
        except SettlementError as e:
            settlement_attempts_total.labels(operation="claim", status="failed").inc()
            logger.error("Settlement of tunnel %s failed: %s", channel_id, e)
            raise

        settlement_attempts_total.labels(operation="claim", status="success").inc()
        try:
            async with self.ledger_locks.hold(channel_id):
                updated = await self.tunnel_repository.reconcile_settlement(
                    channel_id, cumulative
                )
        except InfrastructureError:
            logger.exception(
                "Claim %s for tunnel %s confirmed on-chain but ledger was not "
                "updated; run resync",
                digest,
                channel_id,
            )
            raise

        return SettlementResultDTO(
            channel_id=channel_id,
            digest=digest,
            settled_cumulative=cumulative,
            claimed_amount=updated.claimed_amount,
            pending_amount=updated.pending_amount,
        )

    async def close(self, channel_id: str) -> CloseResultDTO:
        """Stop spending, settle what is pending, then close on-chain.

        The tunnel enters CLOSING before any network call, so no new charge is
        authorized from that point. A failure leaves it in CLOSING; calling
        ``close`` again resumes from there.
        """
        channel_id = normalize_channel_id(channel_id)
        async with self._submission_locks.hold(channel_id):
            tunnel = await self.tunnel_repository.get(channel_id)
            if tunnel.status == TunnelStatus.ACTIVE:
                async with self.ledger_locks.hold(channel_id):
                    tunnel = await self.tunnel_repository.transition_status(
                        channel_id, TunnelStatus.CLOSING
                    )
            elif tunnel.status == TunnelStatus.CLOSED:
                raise InvalidTransitionError(
                    channel_id, tunnel.status.value, TunnelStatus.CLOSING.value
                )

            settlement: Optional[SettlementResultDTO] = None
            if tunnel.pending_amount > 0 and tunnel.latest_signature_b64:
                settlement = await self._settle_locked(tunnel)

            raw_tx_bytes = await self._build(
                channel_id,
                self.transaction_builder.build_close(channel_id, self.sender),
            )
            try:
                digest = await self._sponsor_and_execute(channel_id, raw_tx_bytes)
            except SettlementError as e:
                settlement_attempts_total.labels(
                    operation="close", status="failed"
                ).inc()
                logger.error("Close of tunnel %s failed: %s", channel_id, e)
                raise
            settlement_attempts_total.labels(operation="close", status="success").inc()

            async with self.ledger_locks.hold(channel_id):
                closed = await self.tunnel_repository.transition_status(
                    channel_id, TunnelStatus.CLOSED
                )
            return CloseResultDTO(
                channel_id=channel_id,
                digest=digest,
                status=closed.status,
                settlement=settlement,
            )

    async def confirm_closed(self, channel_id: str) -> Tunnel:
        """Apply an on-chain close observed outside this service."""
        channel_id = normalize_channel_id(channel_id)
        async with self.ledger_locks.hold(channel_id):
            return await self.tunnel_repository.transition_status(
                channel_id, TunnelStatus.CLOSED
            )

    async def resync(self, channel_id: str) -> Tunnel:
        """Fold the on-chain ``cumulative_claimed`` into the ledger.

        Recovers from a claim that executed on-chain while the local
        reconciliation could not be written.
        """
        channel_id = normalize_channel_id(channel_id)
        async with self._submission_locks.hold(channel_id):
            on_chain = await self.chain_client.read_object(channel_id)
            async with self.ledger_locks.hold(channel_id):
                return await self.tunnel_repository.reconcile_settlement(
                    channel_id, on_chain.cumulative_claimed
                )
