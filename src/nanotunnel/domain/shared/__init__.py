"""Shared domain utilities.

This package is domain-accessible and should not depend on application code.
"""

from .chain_protocol import (
    ChainClientProtocol,
    OnChainTunnel,
    RelayProtocol,
    SponsoredTransaction,
    SubmissionResult,
    TransactionBuilderProtocol,
)

__all__ = [
    "ChainClientProtocol",
    "OnChainTunnel",
    "RelayProtocol",
    "SponsoredTransaction",
    "SubmissionResult",
    "TransactionBuilderProtocol",
]
