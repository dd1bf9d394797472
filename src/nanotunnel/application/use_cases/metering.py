"""Metering: price a call, charge the caller's tunnel and log the usage."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from ...domain.entities import PricingRule, TunnelStatus, UsageRecord
from ...domain.errors import NotFoundError
from ...domain.repositories import (
    PricingRepository,
    TunnelRepository,
    UsageLogRepository,
)
from ..dtos import (
    MeteredCallDTO,
    MeteredCallResultDTO,
    UsageSummaryDTO,
    UsageTotalsDTO,
)
from .api_key import ApiKeyService
from .charge import ChargeAuthorizer

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "default"
DEFAULT_PRICE = 100_000  # 0.1 USDC (6 decimals)


def _totals(records: Iterable[UsageRecord]) -> UsageTotalsDTO:
    totals = UsageTotalsDTO()
    for record in records:
        totals.requests += 1
        totals.cost += record.cost
        totals.input_tokens += record.input_tokens
        totals.output_tokens += record.output_tokens
    return totals


class MeteringService:
    def __init__(
        self,
        tunnel_repository: TunnelRepository,
        pricing_repository: PricingRepository,
        usage_log_repository: UsageLogRepository,
        charge_authorizer: ChargeAuthorizer,
        api_key_service: ApiKeyService,
        *,
        default_price: int = DEFAULT_PRICE,
    ):
        self.tunnel_repository = tunnel_repository
        self.pricing_repository = pricing_repository
        self.usage_log_repository = usage_log_repository
        self.charge_authorizer = charge_authorizer
        self.api_key_service = api_key_service
        self.default_price = default_price

    async def set_price(self, model: str, flat_fee: int) -> PricingRule:
        return await self.pricing_repository.save(
            PricingRule(model=model, flat_fee=flat_fee)
        )

    async def resolve_price(self, model: str) -> int:
        """Model-specific rule, then the ``default`` rule, then the configured price."""
        for candidate in (model, DEFAULT_MODEL):
            rule = await self.pricing_repository.get(candidate)
            if rule and rule.is_active:
                return rule.flat_fee
        return self.default_price

    async def charge_call(self, dto: MeteredCallDTO) -> MeteredCallResultDTO:
        api_key = await self.api_key_service.resolve_owner(dto.credential)
        owner = api_key.owner_identity

        tunnels = await self.tunnel_repository.list_by_owner(owner)
        tunnel = next((t for t in tunnels if t.status == TunnelStatus.ACTIVE), None)
        if tunnel is None:
            raise NotFoundError(f"No active tunnel for {owner}")

        price = await self.resolve_price(dto.model)
        charge = await self.charge_authorizer.authorize(tunnel.channel_id, price)

        # Charge is already committed here.
        usage = await self.usage_log_repository.append(
            UsageRecord(
                owner_identity=owner,
                channel_id=charge.channel_id,
                api_key_id=api_key.id,
                api_key_hint=api_key.key_hint,
                model=dto.model,
                cost=price,
                nonce=charge.nonce,
                input_tokens=dto.input_tokens,
                output_tokens=dto.output_tokens,
                latency_ms=dto.latency_ms,
            )
        )
        await self.api_key_service.mark_used(api_key)
        return MeteredCallResultDTO(usage_id=usage.id, charge=charge)

    async def usage_history(
        self, owner_identity: str, limit: int = 50, offset: int = 0
    ) -> List[UsageRecord]:
        """Most recent usage first."""
        return await self.usage_log_repository.list_by_owner(
            owner_identity, skip=offset, limit=limit
        )

    async def usage_summary(
        self, owner_identity: str, now: Optional[datetime] = None
    ) -> UsageSummaryDTO:
        now = now or datetime.now(timezone.utc)
        records = await self.usage_log_repository.list_by_owner(
            owner_identity, limit=None
        )
        day_ago = now - timedelta(hours=24)
        week_ago = now - timedelta(days=7)
        return UsageSummaryDTO(
            last_24h=_totals(r for r in records if r.created_at >= day_ago),
            last_7d=_totals(r for r in records if r.created_at >= week_ago),
            total=_totals(records),
        )
