"""API key registry: issue, import, list, deactivate and resolve credentials."""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from ...crypto import credentials
from ...domain.entities import ApiKeyRecord
from ...domain.errors import NotFoundError, ValidationError
from ...domain.repositories import ApiKeyRepository
from ..dtos import ApiKeyDTO, GeneratedApiKeyDTO

logger = logging.getLogger(__name__)

GENERATED_KEY_NAME = "Default Key"
IMPORTED_KEY_NAME = "Imported Key"


class ApiKeyService:
    """Keys are stored by public key only. The credential itself is never persisted."""

    def __init__(self, api_key_repository: ApiKeyRepository):
        self.api_key_repository = api_key_repository

    async def generate(
        self, owner_identity: str, name: Optional[str] = None
    ) -> GeneratedApiKeyDTO:
        credential, public_key = credentials.generate()
        record = await self._store(
            owner_identity,
            base64.b64encode(public_key).decode("utf-8"),
            credentials.hint(credential),
            name or GENERATED_KEY_NAME,
        )
        return GeneratedApiKeyDTO(
            **ApiKeyDTO.from_record(record).model_dump(), api_key=credential
        )

    async def register(
        self, owner_identity: str, credential: str, name: Optional[str] = None
    ) -> ApiKeyDTO:
        """Import an existing credential. Each public key can be registered once."""
        keypair = credentials.decode(credential)
        record = await self._store(
            owner_identity,
            keypair.public_key_b64,
            credentials.hint(credential),
            name or IMPORTED_KEY_NAME,
        )
        return ApiKeyDTO.from_record(record)

    async def list_keys(self, owner_identity: str) -> List[ApiKeyDTO]:
        records = await self.api_key_repository.list_by_owner(owner_identity)
        return [ApiKeyDTO.from_record(r) for r in records]

    async def deactivate(self, key_id: UUID) -> ApiKeyDTO:
        record = await self.api_key_repository.get(key_id)
        if record is None:
            raise NotFoundError(f"API key {key_id} not found")
        if record.is_active:
            record = await self.api_key_repository.update(
                record.model_copy(update={"is_active": False})
            )
            logger.info(
                "Deactivated API key ...%s for %s",
                record.key_hint,
                record.owner_identity,
            )
        return ApiKeyDTO.from_record(record)

    async def resolve_owner(self, credential: str) -> ApiKeyRecord:
        """Registered, active key record for ``credential``."""
        keypair = credentials.decode(credential)
        record = await self.api_key_repository.get_by_public_key(keypair.public_key_b64)
        if record is None or not record.is_active:
            raise NotFoundError("API key not registered")
        return record

    async def mark_used(self, record: ApiKeyRecord) -> None:
        await self.api_key_repository.touch(record.id, datetime.now(timezone.utc))

    async def _store(
        self, owner_identity: str, public_key_b64: str, key_hint: str, name: str
    ) -> ApiKeyRecord:
        if not owner_identity:
            raise ValidationError("Owner identity is required")
        record = await self.api_key_repository.create(
            ApiKeyRecord(
                owner_identity=owner_identity,
                public_key_b64=public_key_b64,
                key_hint=key_hint,
                name=name,
            )
        )
        logger.info("Registered API key ...%s for %s", key_hint, owner_identity)
        return record
