"""Domain-specific exceptions.

Every error raised by the ledger core derives from ``TunnelError`` and falls
into one of the kinds below so callers can decide on retry without parsing
messages.
"""

from __future__ import annotations

from typing import Optional


class TunnelError(Exception):
    """Base class for all ledger core errors."""

    def __init__(self, message: str, *, channel_id: Optional[str] = None):
        super().__init__(message)
        self.channel_id = channel_id


class ValidationError(TunnelError):
    """Malformed input: credential, channel id, amount or missing field."""


class InvalidFormatError(ValidationError):
    """Credential prefix or encoding is not recognized."""


class UnsupportedSchemeError(ValidationError):
    """Credential carries a key scheme other than Ed25519."""


class InvalidLengthError(ValidationError):
    """Credential payload does not hold exactly a 32-byte seed."""


class InvalidChannelIdError(ValidationError):
    """Channel identifier is not exactly 32 bytes."""


class NotFoundError(TunnelError):
    """Unknown channel or owner."""


class ConflictError(TunnelError):
    """Request conflicts with the current channel state."""


class ChannelAlreadyExistsError(ConflictError):
    pass


class ApiKeyAlreadyRegisteredError(ConflictError):
    """The public key behind a credential is already registered."""


class InvalidTransitionError(ConflictError):
    def __init__(self, channel_id: str, current: str, requested: str):
        super().__init__(
            f"Cannot transition channel from {current} to {requested}",
            channel_id=channel_id,
        )
        self.current = current
        self.requested = requested


class ChannelNotActiveError(ConflictError):
    def __init__(self, channel_id: str, status: str):
        super().__init__(f"Channel is {status}, not ACTIVE", channel_id=channel_id)
        self.status = status


class StaleNonceError(ConflictError):
    """Channel nonce moved on between read and write."""

    def __init__(self, channel_id: str, expected_nonce: int, current_nonce: int):
        super().__init__(
            f"Expected nonce {expected_nonce}, channel is at {current_nonce}",
            channel_id=channel_id,
        )
        self.expected_nonce = expected_nonce
        self.current_nonce = current_nonce


class NothingToSettleError(ConflictError):
    pass


class InsufficientBalanceError(TunnelError):
    """Available balance does not cover the requested price."""

    def __init__(self, channel_id: str, balance: int, required: int):
        super().__init__(
            f"Insufficient balance in tunnel: available {balance}, required {required}",
            channel_id=channel_id,
        )
        self.balance = balance
        self.required = required


class InfrastructureError(TunnelError):
    """Storage, signer or network dependency is unavailable."""


class RelayError(InfrastructureError):
    """Gas station did not return a sponsored transaction."""


class SettlementError(TunnelError):
    """On-chain settlement or close could not be completed."""

    def __init__(
        self,
        message: str,
        *,
        channel_id: Optional[str] = None,
        digest: Optional[str] = None,
    ):
        super().__init__(message, channel_id=channel_id)
        self.digest = digest
