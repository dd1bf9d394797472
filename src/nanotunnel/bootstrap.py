"""Explicit construction of the ledger core from settings.

Every component receives its collaborators through its constructor; the only
process-wide resource is the store, opened by ``start`` and released by
``aclose``.
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Optional, Type

from .application.concurrency import KeyedLock
from .application.use_cases.api_key import ApiKeyService
from .application.use_cases.charge import ChargeAuthorizer
from .application.use_cases.metering import MeteringService
from .application.use_cases.settlement import SettlementSubmitter
from .application.use_cases.tunnel import TunnelService
from .crypto.credentials import decode
from .domain.shared import (
    ChainClientProtocol,
    RelayProtocol,
    TransactionBuilderProtocol,
)
from .envs.ledger_env import Settings
from .infrastructure.api_key_repository_impl import ApiKeyRepositoryImpl
from .infrastructure.chain.gas_station import GasStationRelay
from .infrastructure.chain.sui_rpc import SuiRpcChainClient
from .infrastructure.database import DatabaseClient
from .infrastructure.storage import KeyValueStore, RedisKeyValueStore
from .infrastructure.tunnel_repository_impl import TunnelRepositoryImpl
from .infrastructure.usage_repository_impl import (
    PricingRepositoryImpl,
    UsageLogRepositoryImpl,
)

logger = logging.getLogger(__name__)


class LedgerCore:
    """Ledger components wired around one store and one per-channel lock registry."""

    def __init__(
        self,
        settings: Settings,
        transaction_builder: TransactionBuilderProtocol,
        *,
        store: Optional[KeyValueStore] = None,
        chain_client: Optional[ChainClientProtocol] = None,
        relay: Optional[RelayProtocol] = None,
    ):
        self.settings = settings
        self._db_client: Optional[DatabaseClient] = None
        if store is None:
            self._db_client = DatabaseClient(settings)
            store = RedisKeyValueStore(self._db_client)
        self.store = store

        if chain_client is None:
            chain_client = SuiRpcChainClient(
                settings.sui_rpc_url, timeout=settings.execution_timeout_seconds
            )
        if relay is None:
            relay = GasStationRelay(
                settings.gas_station_url,
                settings.gas_station_api_key,
                settings.sui_network,
                timeout=settings.relay_timeout_seconds,
            )
        self.chain_client = chain_client
        self.relay = relay

        operator_keypair = decode(settings.operator_credential)
        self.ledger_locks = KeyedLock()

        self.tunnel_repository = TunnelRepositoryImpl(store)
        self.usage_log_repository = UsageLogRepositoryImpl(store)
        self.pricing_repository = PricingRepositoryImpl(store)
        self.api_key_repository = ApiKeyRepositoryImpl(store)

        self.charge_authorizer = ChargeAuthorizer(
            self.tunnel_repository,
            operator_keypair,
            self.ledger_locks,
            max_attempts=settings.max_charge_attempts,
            lock_timeout=settings.lock_timeout_seconds,
        )
        self.settlement_submitter = SettlementSubmitter(
            self.tunnel_repository,
            chain_client,
            relay,
            transaction_builder,
            operator_keypair,
            self.ledger_locks,
            retry_delays=settings.relay_retry_delays,
            relay_timeout=settings.relay_timeout_seconds,
            execution_timeout=settings.execution_timeout_seconds,
        )
        self.tunnel_service = TunnelService(
            self.tunnel_repository, chain_client, self.ledger_locks
        )
        self.api_key_service = ApiKeyService(self.api_key_repository)
        self.metering_service = MeteringService(
            self.tunnel_repository,
            self.pricing_repository,
            self.usage_log_repository,
            self.charge_authorizer,
            self.api_key_service,
            default_price=settings.default_price,
        )

    async def start(self) -> None:
        if self._db_client is not None:
            self._db_client.initialize_database()
        await self.tunnel_repository.register_scripts()
        await self.api_key_repository.register_scripts()
        logger.info(
            "Started %s v%s (operator %s)",
            self.settings.app_name,
            self.settings.app_version,
            self.settlement_submitter.sender,
        )

    async def aclose(self) -> None:
        for client in (self.chain_client, self.relay):
            aclose = getattr(client, "aclose", None)
            if aclose is not None:
                await aclose()
        if self._db_client is not None:
            await self._db_client.close()

    async def __aenter__(self) -> "LedgerCore":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        await self.aclose()
