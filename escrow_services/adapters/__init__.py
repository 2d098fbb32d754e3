"""Port adapters.  Only the in-memory set ships with the library."""

from escrow_services.adapters.memory import (
    FixedMarketSignal,
    InMemoryApproverDirectory,
    InMemoryBusinessDirectory,
    InMemoryContractRegistry,
    InMemoryFundTransfer,
    InMemoryVerificationService,
    RecordedTransfer,
)

__all__ = [
    "FixedMarketSignal",
    "InMemoryApproverDirectory",
    "InMemoryBusinessDirectory",
    "InMemoryContractRegistry",
    "InMemoryFundTransfer",
    "InMemoryVerificationService",
    "RecordedTransfer",
]
