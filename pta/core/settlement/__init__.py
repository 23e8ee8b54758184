"""
Settlement engine.

Stages:
- valuation:    price bids in the unit of account
- allocation:   pay-as-bid winner selection over the target allocation
- conversion:   realize winners' bid tokens (direct transfer or swap)
- distribution: deliver auction tokens to executed winners
- orchestrator: lock, checkpoint and sequence the stages per auction
"""

from pta.core.settlement.allocation import AllocationResult, SettlementInputError, allocate
from pta.core.settlement.conversion import (
    ConversionOutcome,
    ConversionStage,
    DirectTransferStrategy,
    SwapVenueStrategy,
)
from pta.core.settlement.distribution import DistributionStage, tokens_owed
from pta.core.settlement.orchestrator import SettlementOrchestrator, SettlementReport
from pta.core.settlement.valuation import value_bids

__all__ = [
    "AllocationResult",
    "ConversionOutcome",
    "ConversionStage",
    "DirectTransferStrategy",
    "DistributionStage",
    "SettlementInputError",
    "SettlementOrchestrator",
    "SettlementReport",
    "SwapVenueStrategy",
    "allocate",
    "tokens_owed",
    "value_bids",
]
