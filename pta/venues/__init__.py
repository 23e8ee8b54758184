"""
External collaborators of the settlement engine.

Protocols and receipts live in `pta.venues.base`; concrete adapters:
- oracle:   StaticPriceOracle, HttpPriceOracle
- swap:     HttpSwapVenue
- executor: Web3Executor
- mock:     MockSwapVenue, MockExecutor
"""

from pta.venues.base import (
    AuthorizationError,
    ExecutionRevertedError,
    OnChainExecutor,
    PriceOracle,
    PriceOracleError,
    PriceQuote,
    SwapReceipt,
    SwapRejectedError,
    SwapVenue,
    TransferReceipt,
    VenueError,
)

__all__ = [
    "AuthorizationError",
    "ExecutionRevertedError",
    "OnChainExecutor",
    "PriceOracle",
    "PriceOracleError",
    "PriceQuote",
    "SwapReceipt",
    "SwapRejectedError",
    "SwapVenue",
    "TransferReceipt",
    "VenueError",
]
