"""Voucher message layout shared with the on-chain verifier.

    bytes[0..32)  channel identifier
    bytes[32..40) cumulative amount, u64 little-endian
    bytes[40..48) nonce, u64 little-endian
"""

from __future__ import annotations

import binascii
import struct
from typing import NamedTuple, Union

from ..domain.errors import InvalidChannelIdError, ValidationError

CHANNEL_ID_LENGTH = 32
VOUCHER_LENGTH = 48

_AMOUNTS = struct.Struct("<QQ")


class Voucher(NamedTuple):
    channel_id: str
    cumulative_amount: int
    nonce: int


def channel_id_to_bytes(channel_id: Union[str, bytes]) -> bytes:
    """Decode a ``0x``-prefixed (or bare) hex object id into 32 raw bytes."""
    if isinstance(channel_id, (bytes, bytearray)):
        raw = bytes(channel_id)
    else:
        hex_part = channel_id[2:] if channel_id.lower().startswith("0x") else channel_id
        try:
            raw = binascii.unhexlify(hex_part)
        except (binascii.Error, ValueError):
            raise InvalidChannelIdError(
                f"Channel id is not valid hex: {channel_id!r}", channel_id=channel_id
            )
    if len(raw) != CHANNEL_ID_LENGTH:
        raise InvalidChannelIdError(
            f"Channel id must be {CHANNEL_ID_LENGTH} bytes, got {len(raw)}",
            channel_id=str(channel_id),
        )
    return raw


def normalize_channel_id(channel_id: Union[str, bytes]) -> str:
    """Canonical storage form: lowercase ``0x`` + 64 hex chars."""
    return "0x" + channel_id_to_bytes(channel_id).hex()


def voucher_message(
    channel_id: Union[str, bytes], cumulative_amount: int, nonce: int
) -> bytes:
    """Serialize ``(channel_id, cumulative_amount, nonce)`` into the 48-byte message."""
    channel_bytes = channel_id_to_bytes(channel_id)
    try:
        amounts = _AMOUNTS.pack(cumulative_amount, nonce)
    except struct.error as e:
        raise ValidationError(
            f"Cumulative amount and nonce must be u64: {e}",
            channel_id=normalize_channel_id(channel_bytes),
        ) from e
    return channel_bytes + amounts


def parse_voucher_message(message: bytes) -> Voucher:
    """Inverse of :func:`voucher_message`."""
    if len(message) != VOUCHER_LENGTH:
        raise ValidationError(
            f"Voucher message must be {VOUCHER_LENGTH} bytes, got {len(message)}"
        )
    cumulative_amount, nonce = _AMOUNTS.unpack(message[CHANNEL_ID_LENGTH:])
    return Voucher(
        channel_id="0x" + message[:CHANNEL_ID_LENGTH].hex(),
        cumulative_amount=cumulative_amount,
        nonce=nonce,
    )
