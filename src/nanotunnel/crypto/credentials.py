"""Credential codec: opaque API keys <-> Ed25519 keypairs.

A credential is a bech32 string over ``scheme_tag || seed`` where the scheme
tag ``0x00`` means Ed25519 and the seed is 32 bytes. The checksum is always
computed under the ``suiprivkey`` prefix.

Two prefixes are accepted:

- ``suiprivkey`` - operator namespace, the native Sui private key format.
- ``mateapikey`` - platform namespace, handed out as API keys. It is the
  same encoding with the prefix swapped after checksumming, so decoding swaps
  it back before verifying. Keep this alias: issued API keys depend on it.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from typing import NamedTuple

import bech32
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from ..domain.errors import (
    InvalidFormatError,
    InvalidLengthError,
    UnsupportedSchemeError,
    ValidationError,
)

SUI_PREFIX = "suiprivkey"
PLATFORM_PREFIX = "mateapikey"

ED25519_SCHEME = 0x00
SEED_LENGTH = 32
HINT_LENGTH = 6

# Sui intent prefix for transaction data: (scope, version, app_id)
_TRANSACTION_INTENT = bytes([0, 0, 0])


class KeyPair(NamedTuple):
    private_key: Ed25519PrivateKey
    public_key: bytes

    def sign(self, message: bytes) -> bytes:
        return self.private_key.sign(message)

    @property
    def public_key_b64(self) -> str:
        return base64.b64encode(self.public_key).decode("utf-8")

    @property
    def address(self) -> str:
        return derive_address(self.public_key)


def _raw_public_key(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def _normalize_prefix(credential: str) -> str:
    if credential.startswith(PLATFORM_PREFIX):
        return SUI_PREFIX + credential[len(PLATFORM_PREFIX) :]
    if credential.startswith(SUI_PREFIX):
        return credential
    raise InvalidFormatError("Invalid API key format")


def encode_seed(seed: bytes, prefix: str = PLATFORM_PREFIX) -> str:
    """Encode a raw seed as a credential under ``prefix``."""
    if len(seed) != SEED_LENGTH:
        raise InvalidLengthError(f"Seed must be {SEED_LENGTH} bytes, got {len(seed)}")
    if prefix not in (SUI_PREFIX, PLATFORM_PREFIX):
        raise InvalidFormatError(f"Unknown credential prefix: {prefix}")
    words = bech32.convertbits(bytes([ED25519_SCHEME]) + seed, 8, 5)
    encoded = bech32.bech32_encode(SUI_PREFIX, words)
    return prefix + encoded[len(SUI_PREFIX) :]


def generate(prefix: str = PLATFORM_PREFIX) -> tuple[str, bytes]:
    """Create a fresh credential. Returns ``(credential, raw_public_key)``."""
    seed = os.urandom(SEED_LENGTH)
    private_key = Ed25519PrivateKey.from_private_bytes(seed)
    return encode_seed(seed, prefix), _raw_public_key(private_key)


def decode(credential: str) -> KeyPair:
    """Decode a credential into its Ed25519 keypair."""
    normalized = _normalize_prefix(credential)
    hrp, words = bech32.bech32_decode(normalized)
    if hrp != SUI_PREFIX or words is None:
        raise InvalidFormatError("Invalid API key format")
    data = bech32.convertbits(words, 5, 8, False)
    if not data:
        raise InvalidFormatError("Invalid API key encoding")
    if data[0] != ED25519_SCHEME:
        raise UnsupportedSchemeError("Only Ed25519 keys are supported")
    seed = bytes(data[1:])
    if len(seed) != SEED_LENGTH:
        raise InvalidLengthError("Invalid private key length")
    private_key = Ed25519PrivateKey.from_private_bytes(seed)
    return KeyPair(private_key=private_key, public_key=_raw_public_key(private_key))


def hint(credential: str) -> str:
    """Last characters of the credential, for display only."""
    return credential[-HINT_LENGTH:]


def sign(credential: str, message: bytes) -> bytes:
    """Deterministic detached Ed25519 signature over ``message``."""
    return decode(credential).sign(message)


def _load_public_key(public_key: bytes) -> Ed25519PublicKey:
    try:
        return Ed25519PublicKey.from_public_bytes(public_key)
    except ValueError as e:
        raise ValidationError(f"Invalid Ed25519 public key: {e}") from e


def public_key_from_b64(public_key_b64: str) -> bytes:
    """Decode a base64 Ed25519 public key, rejecting anything but 32 raw bytes."""
    try:
        raw = base64.b64decode(public_key_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Public key is not valid base64") from e
    _load_public_key(raw)
    return raw


def verify(public_key: bytes, message: bytes, signature: bytes) -> bool:
    key = _load_public_key(public_key)
    try:
        key.verify(signature, message)
    except InvalidSignature:
        return False
    return True


def derive_address(public_key: bytes) -> str:
    """Sui address: blake2b-256 over the scheme flag and the public key."""
    digest = hashlib.blake2b(bytes([ED25519_SCHEME]) + public_key, digest_size=32)
    return "0x" + digest.hexdigest()


def sign_transaction(keypair: KeyPair, tx_bytes: bytes) -> str:
    """Sign transaction data the way a Sui node verifies it.

    Returns the base64 serialized signature ``flag || signature || public_key``.
    """
    digest = hashlib.blake2b(_TRANSACTION_INTENT + tx_bytes, digest_size=32).digest()
    signature = keypair.sign(digest)
    serialized = bytes([ED25519_SCHEME]) + signature + keypair.public_key
    return base64.b64encode(serialized).decode("utf-8")
