"""Use case tests for SettlementSubmitter with in-process chain fakes."""

from __future__ import annotations

import base64
import hashlib

import pytest

from nanotunnel.application.concurrency import KeyedLock
from nanotunnel.application.use_cases.charge import ChargeAuthorizer
from nanotunnel.application.use_cases.settlement import SettlementSubmitter
from nanotunnel.crypto.credentials import KeyPair, verify
from nanotunnel.domain.entities import Tunnel, TunnelStatus
from nanotunnel.domain.errors import (
    ChannelNotActiveError,
    ConflictError,
    InfrastructureError,
    InvalidTransitionError,
    NothingToSettleError,
    SettlementError,
)
from nanotunnel.infrastructure.tunnel_repository_impl import TunnelRepositoryImpl
from tests.fixtures import (
    CHANNEL_ID,
    OWNER,
    DEPOSIT,
    FakeChainClient,
    FakeRelay,
    FakeTransactionBuilder,
)


async def _charge(authorizer: ChargeAuthorizer, times: int, price: int = 100_000) -> None:
    for _ in range(times):
        await authorizer.authorize(CHANNEL_ID, price)


@pytest.mark.asyncio
async def test_settle_claims_latest_voucher_and_reconciles(
    settlement_submitter: SettlementSubmitter,
    charge_authorizer: ChargeAuthorizer,
    tunnel_repository: TunnelRepositoryImpl,
    chain_client: FakeChainClient,
    relay: FakeRelay,
    transaction_builder: FakeTransactionBuilder,
    operator_keypair: KeyPair,
    recorded_sleeps: list[float],
    active_tunnel: Tunnel,
) -> None:
    await _charge(charge_authorizer, 3)
    before = await tunnel_repository.get(CHANNEL_ID)

    result = await settlement_submitter.settle(CHANNEL_ID)

    assert result.digest == "digest-1"
    assert result.settled_cumulative == 300_000
    assert result.claimed_amount == 300_000
    assert result.pending_amount == 0

    tunnel = await tunnel_repository.get(CHANNEL_ID)
    assert tunnel.claimed_amount == 300_000
    assert tunnel.pending_amount == 0
    assert tunnel.nonce == 3
    assert tunnel.latest_signature_b64 == before.latest_signature_b64
    assert tunnel.available_balance == DEPOSIT - 300_000

    assert transaction_builder.claims == [
        (
            CHANNEL_ID,
            300_000,
            3,
            base64.b64decode(before.latest_signature_b64 or ""),
            operator_keypair.address,
        )
    ]
    assert len(relay.calls) == 1
    assert relay.calls[0][1] == operator_keypair.address
    assert recorded_sleeps == []

    tx_bytes, signatures = chain_client.submissions[0]
    assert tx_bytes.startswith(b"sponsored:")
    assert signatures[1] == "sponsor-signature"
    operator_signature = base64.b64decode(signatures[0])
    digest = hashlib.blake2b(b"\x00\x00\x00" + tx_bytes, digest_size=32).digest()
    assert verify(operator_keypair.public_key, digest, operator_signature[1:65])


@pytest.mark.asyncio
async def test_charges_during_submission_stay_pending(
    settlement_submitter: SettlementSubmitter,
    charge_authorizer: ChargeAuthorizer,
    tunnel_repository: TunnelRepositoryImpl,
    chain_client: FakeChainClient,
    active_tunnel: Tunnel,
) -> None:
    await _charge(charge_authorizer, 3)
    chain_client.before_submit = lambda: charge_authorizer.authorize(CHANNEL_ID, 50_000)

    result = await settlement_submitter.settle(CHANNEL_ID)

    assert result.settled_cumulative == 300_000
    tunnel = await tunnel_repository.get(CHANNEL_ID)
    assert tunnel.claimed_amount == 300_000
    assert tunnel.pending_amount == 50_000
    assert tunnel.nonce == 4
    assert tunnel.cumulative_amount == 350_000


@pytest.mark.asyncio
async def test_relay_exhaustion_leaves_ledger_untouched(
    tunnel_repository: TunnelRepositoryImpl,
    charge_authorizer: ChargeAuthorizer,
    chain_client: FakeChainClient,
    transaction_builder: FakeTransactionBuilder,
    operator_keypair: KeyPair,
    ledger_locks: KeyedLock,
    recorded_sleeps: list[float],
    active_tunnel: Tunnel,
) -> None:
    await _charge(charge_authorizer, 3)
    before = await tunnel_repository.get(CHANNEL_ID)
    relay = FakeRelay(failures=-1)

    async def sleep(delay: float) -> None:
        recorded_sleeps.append(delay)

    submitter = SettlementSubmitter(
        tunnel_repository,
        chain_client,
        relay,
        transaction_builder,
        operator_keypair,
        ledger_locks,
        sleep=sleep,
    )

    with pytest.raises(SettlementError) as exc_info:
        await submitter.settle(CHANNEL_ID)

    assert "5 attempts" in str(exc_info.value)
    assert exc_info.value.channel_id == CHANNEL_ID
    assert len(relay.calls) == 5
    assert recorded_sleeps == [1.0, 2.0, 3.0, 5.0]
    assert chain_client.submissions == []
    assert await tunnel_repository.get(CHANNEL_ID) == before


@pytest.mark.asyncio
async def test_relay_recovers_after_transient_failures(
    tunnel_repository: TunnelRepositoryImpl,
    charge_authorizer: ChargeAuthorizer,
    chain_client: FakeChainClient,
    transaction_builder: FakeTransactionBuilder,
    operator_keypair: KeyPair,
    ledger_locks: KeyedLock,
    active_tunnel: Tunnel,
) -> None:
    await _charge(charge_authorizer, 1)
    sleeps: list[float] = []

    async def sleep(delay: float) -> None:
        sleeps.append(delay)

    submitter = SettlementSubmitter(
        tunnel_repository,
        chain_client,
        FakeRelay(failures=2),
        transaction_builder,
        operator_keypair,
        ledger_locks,
        sleep=sleep,
    )

    result = await submitter.settle(CHANNEL_ID)

    assert sleeps == [1.0, 2.0]
    assert result.claimed_amount == 100_000


@pytest.mark.asyncio
async def test_failed_execution_leaves_ledger_untouched(
    settlement_submitter: SettlementSubmitter,
    charge_authorizer: ChargeAuthorizer,
    tunnel_repository: TunnelRepositoryImpl,
    chain_client: FakeChainClient,
    relay: FakeRelay,
    active_tunnel: Tunnel,
) -> None:
    await _charge(charge_authorizer, 2)
    before = await tunnel_repository.get(CHANNEL_ID)
    chain_client.succeed = False

    with pytest.raises(SettlementError) as exc_info:
        await settlement_submitter.settle(CHANNEL_ID)

    assert exc_info.value.digest == "digest-1"
    assert len(relay.calls) == 1
    assert await tunnel_repository.get(CHANNEL_ID) == before


@pytest.mark.asyncio
async def test_unreachable_node_is_a_settlement_error(
    settlement_submitter: SettlementSubmitter,
    charge_authorizer: ChargeAuthorizer,
    tunnel_repository: TunnelRepositoryImpl,
    chain_client: FakeChainClient,
    active_tunnel: Tunnel,
) -> None:
    await _charge(charge_authorizer, 1)
    chain_client.submit_error = InfrastructureError("node unreachable")

    with pytest.raises(SettlementError):
        await settlement_submitter.settle(CHANNEL_ID)

    assert (await tunnel_repository.get(CHANNEL_ID)).claimed_amount == 0


@pytest.mark.asyncio
async def test_execution_timeout_is_a_settlement_error(
    tunnel_repository: TunnelRepositoryImpl,
    charge_authorizer: ChargeAuthorizer,
    chain_client: FakeChainClient,
    relay: FakeRelay,
    transaction_builder: FakeTransactionBuilder,
    operator_keypair: KeyPair,
    ledger_locks: KeyedLock,
    active_tunnel: Tunnel,
) -> None:
    await _charge(charge_authorizer, 1)
    chain_client.submit_delay = 1.0
    submitter = SettlementSubmitter(
        tunnel_repository,
        chain_client,
        relay,
        transaction_builder,
        operator_keypair,
        ledger_locks,
        execution_timeout=0.01,
    )

    with pytest.raises(SettlementError, match="timed out"):
        await submitter.settle(CHANNEL_ID)

    assert (await tunnel_repository.get(CHANNEL_ID)).pending_amount == 100_000


@pytest.mark.asyncio
async def test_slow_transaction_build_is_a_settlement_error(
    tunnel_repository: TunnelRepositoryImpl,
    charge_authorizer: ChargeAuthorizer,
    chain_client: FakeChainClient,
    relay: FakeRelay,
    transaction_builder: FakeTransactionBuilder,
    operator_keypair: KeyPair,
    ledger_locks: KeyedLock,
    active_tunnel: Tunnel,
) -> None:
    await _charge(charge_authorizer, 1)
    transaction_builder.build_delay = 1.0
    submitter = SettlementSubmitter(
        tunnel_repository,
        chain_client,
        relay,
        transaction_builder,
        operator_keypair,
        ledger_locks,
        execution_timeout=0.01,
    )

    with pytest.raises(SettlementError, match="Building transaction timed out"):
        await submitter.settle(CHANNEL_ID)
    with pytest.raises(SettlementError, match="Building transaction timed out"):
        await submitter.close(CHANNEL_ID)

    tunnel = await tunnel_repository.get(CHANNEL_ID)
    assert tunnel.pending_amount == 100_000
    assert tunnel.claimed_amount == 0
    assert tunnel.status == TunnelStatus.CLOSING
    assert relay.calls == []
    assert chain_client.submissions == []


@pytest.mark.asyncio
async def test_nothing_to_settle(
    settlement_submitter: SettlementSubmitter,
    relay: FakeRelay,
    active_tunnel: Tunnel,
) -> None:
    with pytest.raises(NothingToSettleError):
        await settlement_submitter.settle(CHANNEL_ID)

    assert relay.calls == []


@pytest.mark.asyncio
async def test_settle_after_full_settlement_is_nothing_to_settle(
    settlement_submitter: SettlementSubmitter,
    charge_authorizer: ChargeAuthorizer,
    active_tunnel: Tunnel,
) -> None:
    await _charge(charge_authorizer, 1)
    await settlement_submitter.settle(CHANNEL_ID)

    with pytest.raises(NothingToSettleError):
        await settlement_submitter.settle(CHANNEL_ID)


@pytest.mark.asyncio
async def test_settle_closed_tunnel_rejected(
    settlement_submitter: SettlementSubmitter,
    tunnel_repository: TunnelRepositoryImpl,
    active_tunnel: Tunnel,
) -> None:
    await tunnel_repository.transition_status(CHANNEL_ID, TunnelStatus.CLOSED)

    with pytest.raises(ConflictError):
        await settlement_submitter.settle(CHANNEL_ID)


@pytest.mark.asyncio
async def test_close_settles_pending_then_closes(
    settlement_submitter: SettlementSubmitter,
    charge_authorizer: ChargeAuthorizer,
    tunnel_repository: TunnelRepositoryImpl,
    chain_client: FakeChainClient,
    transaction_builder: FakeTransactionBuilder,
    operator_keypair: KeyPair,
    active_tunnel: Tunnel,
) -> None:
    await _charge(charge_authorizer, 2)

    result = await settlement_submitter.close(CHANNEL_ID)

    assert result.status == TunnelStatus.CLOSED
    assert result.digest == "digest-2"
    assert result.settlement is not None
    assert result.settlement.claimed_amount == 200_000
    assert transaction_builder.closes == [(CHANNEL_ID, operator_keypair.address)]
    assert len(chain_client.submissions) == 2

    tunnel = await tunnel_repository.get(CHANNEL_ID)
    assert tunnel.status == TunnelStatus.CLOSED
    assert tunnel.claimed_amount == 200_000
    assert tunnel.pending_amount == 0


@pytest.mark.asyncio
async def test_close_without_pending_skips_claim(
    settlement_submitter: SettlementSubmitter,
    transaction_builder: FakeTransactionBuilder,
    active_tunnel: Tunnel,
) -> None:
    result = await settlement_submitter.close(CHANNEL_ID)

    assert result.settlement is None
    assert result.status == TunnelStatus.CLOSED
    assert transaction_builder.claims == []


@pytest.mark.asyncio
async def test_failed_close_stays_closing_and_can_resume(
    settlement_submitter: SettlementSubmitter,
    charge_authorizer: ChargeAuthorizer,
    tunnel_repository: TunnelRepositoryImpl,
    relay: FakeRelay,
    active_tunnel: Tunnel,
) -> None:
    await _charge(charge_authorizer, 1)
    relay.failures = -1

    with pytest.raises(SettlementError):
        await settlement_submitter.close(CHANNEL_ID)

    tunnel = await tunnel_repository.get(CHANNEL_ID)
    assert tunnel.status == TunnelStatus.CLOSING
    assert tunnel.pending_amount == 100_000
    with pytest.raises(ChannelNotActiveError):
        await charge_authorizer.authorize(CHANNEL_ID, 1)

    relay.failures = 0
    result = await settlement_submitter.close(CHANNEL_ID)

    assert result.status == TunnelStatus.CLOSED
    assert result.settlement is not None
    assert result.settlement.settled_cumulative == 100_000


@pytest.mark.asyncio
async def test_close_already_closed_rejected(
    settlement_submitter: SettlementSubmitter,
    tunnel_repository: TunnelRepositoryImpl,
    active_tunnel: Tunnel,
) -> None:
    await tunnel_repository.transition_status(CHANNEL_ID, TunnelStatus.CLOSED)

    with pytest.raises(InvalidTransitionError):
        await settlement_submitter.close(CHANNEL_ID)


@pytest.mark.asyncio
async def test_confirm_closed(
    settlement_submitter: SettlementSubmitter,
    active_tunnel: Tunnel,
) -> None:
    tunnel = await settlement_submitter.confirm_closed(CHANNEL_ID)

    assert tunnel.status == TunnelStatus.CLOSED
    with pytest.raises(InvalidTransitionError):
        await settlement_submitter.confirm_closed(CHANNEL_ID)


@pytest.mark.asyncio
async def test_resync_folds_on_chain_claim(
    settlement_submitter: SettlementSubmitter,
    charge_authorizer: ChargeAuthorizer,
    chain_client: FakeChainClient,
    active_tunnel: Tunnel,
) -> None:
    await _charge(charge_authorizer, 3)
    chain_client.put(
        CHANNEL_ID, payer=OWNER, balance=DEPOSIT, cumulative_claimed=200_000, nonce=2
    )

    tunnel = await settlement_submitter.resync(CHANNEL_ID)

    assert tunnel.claimed_amount == 200_000
    assert tunnel.pending_amount == 100_000
    assert tunnel.nonce == 3
