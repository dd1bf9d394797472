"""API key repository implementation over a storage abstraction."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from ..domain.entities import ApiKeyRecord
from ..domain.errors import ApiKeyAlreadyRegisteredError
from ..domain.repositories import ApiKeyRepository
from .scripts import API_KEY_SCRIPTS
from .storage import KeyValueStore


class ApiKeyRepositoryImpl(ApiKeyRepository):
    """API key repository using a KeyValueStore.

    Keys:
      - apikey:{id} -> ApiKeyRecord JSON
      - apikey:public:{public_key_b64} -> id (one record per public key)
      - apikey:used:{id} -> ISO timestamp of the last metered call
      - apikeys:owner:{owner_identity} -> sorted set of ids by creation time
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def register_scripts(self) -> None:
        for name, script in API_KEY_SCRIPTS.items():
            await self.store.register_script(name, script)

    async def create(self, record: ApiKeyRecord) -> ApiKeyRecord:
        code, _ = await self.store.run_script(
            "create_api_key",
            [
                f"apikey:public:{record.public_key_b64}",
                f"apikey:{record.id}",
                f"apikeys:owner:{record.owner_identity}",
            ],
            [
                str(record.id),
                record.model_dump_json(),
                str(record.created_at.timestamp()),
            ],
        )
        if int(code) != 1:
            raise ApiKeyAlreadyRegisteredError("This key is already registered")
        return record

    async def get(self, key_id: UUID) -> Optional[ApiKeyRecord]:
        data = await self.store.get(f"apikey:{key_id}")
        if not data:
            return None
        return await self._with_last_used(ApiKeyRecord.model_validate_json(data))

    async def get_by_public_key(self, public_key_b64: str) -> Optional[ApiKeyRecord]:
        key_id = await self.store.get(f"apikey:public:{public_key_b64}")
        if not key_id:
            return None
        return await self.get(UUID(key_id))

    async def list_by_owner(self, owner_identity: str) -> List[ApiKeyRecord]:
        ids: list[str] = await self.store.zrevrange(
            f"apikeys:owner:{owner_identity}", 0, -1
        )
        records: List[ApiKeyRecord] = []
        for key_id in ids:
            data = await self.store.get(f"apikey:{key_id}")
            if data:
                record = ApiKeyRecord.model_validate_json(data)
                records.append(await self._with_last_used(record))
        return records

    async def update(self, record: ApiKeyRecord) -> ApiKeyRecord:
        await self.store.set(f"apikey:{record.id}", record.model_dump_json())
        return record

    async def touch(self, key_id: UUID, used_at: datetime) -> None:
        await self.store.set(f"apikey:used:{key_id}", used_at.isoformat())

    async def _with_last_used(self, record: ApiKeyRecord) -> ApiKeyRecord:
        used = await self.store.get(f"apikey:used:{record.id}")
        if not used:
            return record
        return record.model_copy(
            update={"last_used_at": datetime.fromisoformat(used)}
        )
