"""Test fixtures for in-memory implementations."""

from .fake_chain import FakeChainClient, FakeRelay, FakeTransactionBuilder
from .in_memory_storage import InMemoryKeyValueStore
from .tunnels import (
    CALLER_CREDENTIAL,
    CHANNEL_ID,
    DEPOSIT,
    OTHER_CHANNEL_ID,
    OWNER,
    PAYER_PUBLIC_KEY_B64,
)

__all__ = [
    "CALLER_CREDENTIAL",
    "CHANNEL_ID",
    "DEPOSIT",
    "OTHER_CHANNEL_ID",
    "OWNER",
    "PAYER_PUBLIC_KEY_B64",
    "FakeChainClient",
    "FakeRelay",
    "FakeTransactionBuilder",
    "InMemoryKeyValueStore",
]
