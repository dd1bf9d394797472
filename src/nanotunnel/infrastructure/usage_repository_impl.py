"""UsageRecord and PricingRule repository implementations over a storage abstraction."""

from __future__ import annotations

from typing import List, Optional

from ..domain.entities import PricingRule, UsageRecord
from ..domain.errors import ValidationError
from ..domain.repositories import PricingRepository, UsageLogRepository
from .storage import KeyValueStore


class UsageLogRepositoryImpl(UsageLogRepository):
    """Append-only usage log.

    Keys:
      - usage:{id} -> UsageRecord JSON
      - usage:owner:{owner_identity} -> sorted set of record ids by creation time
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def append(self, record: UsageRecord) -> UsageRecord:
        await self.store.set(f"usage:{record.id}", record.model_dump_json())
        await self.store.zadd(
            f"usage:owner:{record.owner_identity}",
            {str(record.id): record.created_at.timestamp()},
        )
        return record

    async def list_by_owner(
        self, owner_identity: str, skip: int = 0, limit: Optional[int] = 100
    ) -> List[UsageRecord]:
        if skip < 0:
            raise ValidationError(f"Offset cannot be negative, got {skip}")
        if limit is not None and limit <= 0:
            return []
        # zrevrange treats -1 as the last element
        end = -1 if limit is None else skip + limit - 1
        ids: list[str] = await self.store.zrevrange(
            f"usage:owner:{owner_identity}", skip, end
        )
        records: List[UsageRecord] = []
        for record_id in ids:
            data = await self.store.get(f"usage:{record_id}")
            if data:
                records.append(UsageRecord.model_validate_json(data))
        return records


class PricingRepositoryImpl(PricingRepository):
    """Keys: pricing:{model} -> PricingRule JSON"""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def save(self, rule: PricingRule) -> PricingRule:
        await self.store.set(f"pricing:{rule.model}", rule.model_dump_json())
        return rule

    async def get(self, model: str) -> Optional[PricingRule]:
        data = await self.store.get(f"pricing:{model}")
        if not data:
            return None
        return PricingRule.model_validate_json(data)
