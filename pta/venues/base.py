"""
Collaborator contracts for the settlement engine.

The engine never talks to a price API, DEX or chain directly; it talks to
objects satisfying these protocols, injected by the process entry point:

- PriceOracle:     get_prices(tokens) -> {token: PriceQuote}
- SwapVenue:       quote_and_execute(from_token, amount, to_token, authorization,
                                   on_submitted) -> SwapReceipt
- OnChainExecutor: collect(permit, amount) / distribute(...) / distribute_batch(...)

All calls are coroutines. Collaborators signal failure by raising a
VenueError subclass.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from pta.core.permit import Permit


# =============================================================================
# Errors
# =============================================================================


class VenueError(Exception):
    """Base class for collaborator failures."""
    kind = "venue"


class SwapRejectedError(VenueError):
    """Swap venue refused the order (slippage, insufficient liquidity, ...)."""
    kind = "swap_rejected"


class AuthorizationError(VenueError):
    """Spending authorization missing, expired or invalid."""
    kind = "authorization"


class ExecutionRevertedError(VenueError):
    """On-chain execution reverted."""
    kind = "reverted"


class PriceOracleError(VenueError):
    """The price source as a whole could not be queried."""
    kind = "oracle"


OUTCOME_KNOWN_ERRORS = (SwapRejectedError, AuthorizationError, ExecutionRevertedError)


def outcome_unknown(exc: BaseException) -> bool:
    """True if funds may have moved despite the failure (timeouts, transport errors)."""
    return not isinstance(exc, OUTCOME_KNOWN_ERRORS)


def describe_error(exc: BaseException) -> str:
    """Reason string recorded on a failed bid."""
    if isinstance(exc, VenueError):
        return f"{exc.kind}: {exc}"
    if isinstance(exc, TimeoutError):
        return "timeout: collaborator call timed out"
    return f"{type(exc).__name__}: {exc}"


# =============================================================================
# Receipts
# =============================================================================


@dataclass(frozen=True)
class PriceQuote:
    """Price of one whole token in units of the unit of account."""
    price: Decimal
    decimals: int


@dataclass(frozen=True)
class SwapReceipt:
    """Confirmed conversion into the unit of account."""
    realized_amount: int            # Raw unit-of-account amount received
    tx_ref: str
    order_ref: Optional[str] = None


@dataclass(frozen=True)
class TransferReceipt:
    """Confirmed pull of funds into the settlement executor."""
    amount: int
    tx_ref: str


# =============================================================================
# Protocols
# =============================================================================

OrderCallback = Callable[[str], None]


@runtime_checkable
class PriceOracle(Protocol):
    """Pure price query. Unknown tokens are absent from the result."""

    async def get_prices(self, tokens: Iterable[str]) -> Dict[str, PriceQuote]:
        ...


@runtime_checkable
class SwapVenue(Protocol):
    """
    Pulls `amount` of `from_token` under `authorization` and swaps it into `to_token`.

    `on_submitted` is called with the venue order reference as soon as the
    venue has accepted the order, before the fill is known.
    """

    async def quote_and_execute(
        self,
        from_token: str,
        amount: int,
        to_token: str,
        authorization: Permit,
        on_submitted: Optional[OrderCallback] = None,
    ) -> SwapReceipt:
        ...


@runtime_checkable
class OnChainExecutor(Protocol):
    """Settlement contract: escrow pulls and auction-token distribution."""

    async def collect(self, permit: Permit, amount: int) -> TransferReceipt:
        ...

    async def distribute(self, bidder: str, auction_token: str, quantity: int) -> str:
        ...

    async def distribute_batch(
        self,
        auction_token: str,
        bidders: List[str],
        quantities: List[int],
    ) -> str:
        ...
