"""Shared pytest fixtures for ledger core tests."""

from __future__ import annotations

import os
import warnings
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from nanotunnel.application.concurrency import KeyedLock
from nanotunnel.application.use_cases.api_key import ApiKeyService
from nanotunnel.application.use_cases.charge import ChargeAuthorizer
from nanotunnel.application.use_cases.metering import MeteringService
from nanotunnel.application.use_cases.settlement import SettlementSubmitter
from nanotunnel.application.use_cases.tunnel import TunnelService
from nanotunnel.crypto.credentials import SUI_PREFIX, KeyPair, decode, encode_seed
from nanotunnel.domain.entities import Tunnel
from nanotunnel.infrastructure.api_key_repository_impl import ApiKeyRepositoryImpl
from nanotunnel.infrastructure.database import DatabaseClient
from nanotunnel.infrastructure.storage import RedisKeyValueStore
from nanotunnel.infrastructure.tunnel_repository_impl import TunnelRepositoryImpl
from nanotunnel.infrastructure.usage_repository_impl import (
    PricingRepositoryImpl,
    UsageLogRepositoryImpl,
)
from tests.fixtures import (
    CALLER_CREDENTIAL,
    CHANNEL_ID,
    DEPOSIT,
    OWNER,
    FakeChainClient,
    FakeRelay,
    FakeTransactionBuilder,
    InMemoryKeyValueStore,
)


@pytest.fixture
def operator_credential() -> str:
    """Operator credential over a fixed seed so signatures are reproducible."""
    return encode_seed(bytes(range(32)), SUI_PREFIX)


@pytest.fixture
def operator_keypair(operator_credential: str) -> KeyPair:
    return decode(operator_credential)


@pytest_asyncio.fixture
async def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest_asyncio.fixture
async def tunnel_repository(store: InMemoryKeyValueStore) -> TunnelRepositoryImpl:
    repo = TunnelRepositoryImpl(store)
    await repo.register_scripts()
    return repo


@pytest.fixture
def ledger_locks() -> KeyedLock:
    return KeyedLock()


@pytest.fixture
def chain_client() -> FakeChainClient:
    client = FakeChainClient()
    client.put(CHANNEL_ID, payer=OWNER, balance=DEPOSIT)
    return client


@pytest.fixture
def relay() -> FakeRelay:
    return FakeRelay()


@pytest.fixture
def transaction_builder() -> FakeTransactionBuilder:
    return FakeTransactionBuilder()


@pytest.fixture
def recorded_sleeps() -> list[float]:
    return []


@pytest.fixture
def charge_authorizer(
    tunnel_repository: TunnelRepositoryImpl,
    operator_keypair: KeyPair,
    ledger_locks: KeyedLock,
) -> ChargeAuthorizer:
    return ChargeAuthorizer(tunnel_repository, operator_keypair, ledger_locks)


@pytest.fixture
def settlement_submitter(
    tunnel_repository: TunnelRepositoryImpl,
    chain_client: FakeChainClient,
    relay: FakeRelay,
    transaction_builder: FakeTransactionBuilder,
    operator_keypair: KeyPair,
    ledger_locks: KeyedLock,
    recorded_sleeps: list[float],
) -> SettlementSubmitter:
    """Submitter with the production retry schedule and a sleep that only records."""

    async def sleep(delay: float) -> None:
        recorded_sleeps.append(delay)

    return SettlementSubmitter(
        tunnel_repository,
        chain_client,
        relay,
        transaction_builder,
        operator_keypair,
        ledger_locks,
        sleep=sleep,
    )


@pytest.fixture
def tunnel_service(
    tunnel_repository: TunnelRepositoryImpl,
    chain_client: FakeChainClient,
    ledger_locks: KeyedLock,
) -> TunnelService:
    return TunnelService(tunnel_repository, chain_client, ledger_locks)


@pytest.fixture
def usage_log_repository(store: InMemoryKeyValueStore) -> UsageLogRepositoryImpl:
    return UsageLogRepositoryImpl(store)


@pytest.fixture
def pricing_repository(store: InMemoryKeyValueStore) -> PricingRepositoryImpl:
    return PricingRepositoryImpl(store)


@pytest.fixture
def metering_service(
    tunnel_repository: TunnelRepositoryImpl,
    pricing_repository: PricingRepositoryImpl,
    usage_log_repository: UsageLogRepositoryImpl,
    charge_authorizer: ChargeAuthorizer,
    api_key_service: ApiKeyService,
) -> MeteringService:
    return MeteringService(
        tunnel_repository,
        pricing_repository,
        usage_log_repository,
        charge_authorizer,
        api_key_service,
    )


@pytest_asyncio.fixture
async def api_key_repository(store: InMemoryKeyValueStore) -> ApiKeyRepositoryImpl:
    repo = ApiKeyRepositoryImpl(store)
    await repo.register_scripts()
    return repo


@pytest.fixture
def api_key_service(api_key_repository: ApiKeyRepositoryImpl) -> ApiKeyService:
    return ApiKeyService(api_key_repository)


@pytest_asyncio.fixture
async def caller_credential(api_key_service: ApiKeyService) -> str:
    """``CALLER_CREDENTIAL`` registered to ``OWNER``."""
    await api_key_service.register(OWNER, CALLER_CREDENTIAL)
    return CALLER_CREDENTIAL


@pytest_asyncio.fixture
async def active_tunnel(
    tunnel_repository: TunnelRepositoryImpl, operator_keypair: KeyPair
) -> Tunnel:
    """An ACTIVE tunnel holding ``DEPOSIT`` with nothing charged yet."""
    return await tunnel_repository.create(
        CHANNEL_ID, OWNER, operator_keypair.public_key_b64, DEPOSIT
    )


class TestDatabaseSettings:
    """Test settings for Redis connection."""

    __test__ = False

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url


@pytest_asyncio.fixture
async def redis_db_client() -> AsyncGenerator[DatabaseClient, None]:
    """Create a Redis database client for testing.

    Uses database 15 by default, or TEST_REDIS_URL if set.
    """
    test_redis_url = os.getenv("TEST_REDIS_URL", "redis://localhost:6379/15")
    client = DatabaseClient(TestDatabaseSettings(database_url=test_redis_url))
    client.initialize_database()

    try:
        async with client.get_connection() as conn:
            await conn.ping()
    except Exception as e:
        warnings.warn(
            f"Redis not available at {test_redis_url}: {e}. "
            "Tests requiring Redis will be skipped.",
            UserWarning,
        )
        await client.close()
        pytest.skip(f"Redis not available: {e}")

    yield client

    async with client.get_connection() as conn:
        await conn.flushdb()
    await client.close()


@pytest_asyncio.fixture
async def redis_store(redis_db_client: DatabaseClient) -> RedisKeyValueStore:
    """Create a Redis-backed key-value store for testing."""
    return RedisKeyValueStore(redis_db_client)
